from datetime import date, datetime

import numpy as np
import pytest

from face_timeclock.exceptions import DatabaseError
from face_timeclock.models import AttendanceRecord, Direction, Shift, Slot


def _record(enrollee_id: str, shift: Shift, direction: Direction, when: datetime, **kwargs) -> AttendanceRecord:
    return AttendanceRecord(enrollee_id=enrollee_id, shift=shift, direction=direction, timestamp=when, **kwargs)


def test_slots_are_stored_independently(db):
    db.upsert_enrollee("alice", "Alice")
    db.save_slot("alice", Slot.FRONT, np.full(4, 0.5), "ZnJvbnQ=")
    db.save_slot("alice", Slot.LEGACY, None, "bGVnYWN5")
    db.save_slot("alice", Slot.FRONT, np.full(4, 0.25), None)

    alice = db.find_enrollee("alice")
    assert alice.name == "Alice"
    np.testing.assert_allclose(alice.slot(Slot.FRONT).vector, np.full(4, 0.25))
    assert alice.slot(Slot.FRONT).reference_image is None
    assert alice.slot(Slot.LEGACY).vector is None
    assert alice.slot(Slot.LEGACY).reference_image == "bGVnYWN5"
    assert alice.slot(Slot.LEFT).is_empty


def test_enrollee_without_slots_is_not_listed_for_matching(db):
    db.upsert_enrollee("alice", "Alice")
    db.upsert_enrollee("bob", "Bob")
    db.save_slot("bob", Slot.LEGACY, None, "aW1hZ2U=")

    assert [enrollee.enrollee_id for enrollee in db.list_enrollees_with_descriptors()] == ["bob"]
    profiles = {profile.enrollee_id: profile for profile in db.list_enrollee_profiles()}
    assert profiles["alice"].slots == []
    assert profiles["bob"].slots == ["legacy"]


def test_commit_and_find_today_records(db):
    db.upsert_enrollee("alice", "Alice")
    first = db.commit_attendance(_record("alice", Shift.MORNING, Direction.IN, datetime(2024, 3, 4, 8, 0)))
    second = db.commit_attendance(_record("alice", Shift.MORNING, Direction.OUT, datetime(2024, 3, 4, 12, 0)))
    db.commit_attendance(_record("alice", Shift.MORNING, Direction.IN, datetime(2024, 3, 3, 8, 0)))

    today = db.find_today_records("alice", date(2024, 3, 4))
    assert [record.id for record in today] == [first, second]
    assert today[0].shift is Shift.MORNING
    assert today[1].direction is Direction.OUT


def test_commit_for_unknown_enrollee_fails(db):
    with pytest.raises(DatabaseError):
        db.commit_attendance(_record("ghost", Shift.MORNING, Direction.IN, datetime(2024, 3, 4, 8, 0)))


def test_search_filters_and_image(db):
    db.upsert_enrollee("alice", "Alice")
    db.upsert_enrollee("bob", "Bob")
    with_image = db.commit_attendance(
        _record("alice", Shift.MORNING, Direction.IN, datetime(2024, 3, 4, 8, 0), reference_image="aW1n")
    )
    db.commit_attendance(_record("bob", Shift.AFTERNOON, Direction.IN, datetime(2024, 3, 5, 13, 0), verified=False))

    assert [r.enrollee_id for r in db.search_attendance(enrollee_id="bob")] == ["bob"]
    assert [r.enrollee_id for r in db.search_attendance(date_from="2024-03-05")] == ["bob"]
    assert [r.enrollee_id for r in db.search_attendance(date_to="2024-03-04")] == ["alice"]
    assert [r.enrollee_id for r in db.search_attendance(shift=Shift.AFTERNOON)] == ["bob"]
    assert [r.enrollee_id for r in db.search_attendance(verified=False)] == ["bob"]
    assert [r.enrollee_id for r in db.search_attendance(limit=1)] == ["bob"]
    assert [r.enrollee_id for r in db.search_attendance(limit=1, offset=1)] == ["alice"]

    assert db.attendance_image(with_image) == "aW1n"
    assert db.attendance_image(9999) is None


def test_attendance_stats(db):
    db.upsert_enrollee("alice", "Alice")
    db.upsert_enrollee("bob", "Bob")
    db.commit_attendance(_record("alice", Shift.MORNING, Direction.IN, datetime(2024, 3, 4, 8, 0)))
    db.commit_attendance(_record("alice", Shift.MORNING, Direction.OUT, datetime(2024, 3, 4, 12, 0)))
    db.commit_attendance(_record("bob", Shift.AFTERNOON, Direction.IN, datetime(2024, 3, 4, 13, 0), verified=False))

    stats = db.attendance_stats()
    assert stats["totalRecords"] == 3
    assert stats["uniqueEnrollees"] == 2
    assert stats["byShift"] == {"Morning": 2, "Afternoon": 1}
    assert stats["byDirection"] == {"In": 2, "Out": 1}
    assert stats["byVerified"] == {"verified": 2, "unverified": 1}
    assert db.attendance_stats(date_from="2024-03-05")["totalRecords"] == 0


def test_delete_enrollee_removes_attendance(db):
    db.upsert_enrollee("alice", "Alice")
    db.save_slot("alice", Slot.FRONT, np.ones(4), None)
    db.commit_attendance(_record("alice", Shift.MORNING, Direction.IN, datetime(2024, 3, 4, 8, 0)))

    assert db.delete_enrollee("alice")
    assert db.find_enrollee("alice") is None
    assert db.search_attendance() == []
    assert not db.delete_enrollee("alice")


def test_record_dict_shapes(db):
    db.upsert_enrollee("alice", "Alice")
    db.commit_attendance(
        _record("alice", Shift.MORNING, Direction.IN, datetime(2024, 3, 4, 8, 0), reference_image="aW1n")
    )
    stored = db.search_attendance()[0]

    listed = stored.to_dict()
    assert "referenceImage" not in listed
    assert listed["hasReferenceImage"] is True

    full = stored.to_dict(include_image=True)
    assert full == {**listed, "referenceImage": "aW1n"}
    assert full["timestamp"] == "2024-03-04T08:00:00"
