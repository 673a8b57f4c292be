import json

import pytest

from conftest import DIM, vec
from face_timeclock.enrollment_service import EnrollmentService
from face_timeclock.exceptions import AttendanceError, DimensionMismatch
from face_timeclock.gallery import DescriptorGallery
from face_timeclock.models import Slot


@pytest.fixture
def service(db):
    return EnrollmentService(db=db, gallery=DescriptorGallery(dim=DIM))


def test_save_slot_updates_store_and_gallery(service, db):
    service.save_slot(" alice ", "Alice", Slot.FRONT, vec(1.0), "data:image/jpeg;base64,ZnJvbnQ=")

    stored = db.find_enrollee("alice")
    assert stored.slot(Slot.FRONT).reference_image == "ZnJvbnQ="
    assert stored.slot(Slot.FRONT).vector[0] == pytest.approx(1.0)
    assert service.gallery.get("alice").slot(Slot.FRONT).has_vector


def test_save_slot_rejects_wrong_dimension_before_writing(service, db):
    with pytest.raises(DimensionMismatch):
        service.save_slot("alice", "Alice", Slot.FRONT, [0.1, 0.2])
    assert db.find_enrollee("alice") is None


def test_save_slot_requires_some_data(service):
    with pytest.raises(AttendanceError):
        service.save_slot("alice", "Alice", Slot.LEFT)
    with pytest.raises(AttendanceError):
        service.save_slot("", "Alice", Slot.LEFT, vec(1.0))


def test_import_full_payload(service, db):
    payload = json.dumps(
        {
            "image": "bGVnYWN5",
            "descriptor": list(vec(0.1)),
            "angles": {
                "front": {"image": "ZnJvbnQ=", "descriptor": list(vec(0.2))},
                "left": {"image": "bGVmdA==", "descriptor": None},
                "sideways": {"image": "eA==", "descriptor": list(vec(0.3))},
            },
        }
    )
    saved = service.import_payload("alice", "Alice", payload)

    assert saved == [Slot.FRONT, Slot.LEGACY]
    alice = db.find_enrollee("alice")
    assert alice.slot(Slot.FRONT).has_vector
    assert alice.slot(Slot.LEFT).is_empty
    assert alice.slot(Slot.LEGACY).reference_image == "bGVnYWN5"


def test_import_bare_image(service, db):
    assert service.import_payload("bob", "Bob", "data:image/png;base64,aW1hZ2U=") == [Slot.LEGACY]
    bob = db.find_enrollee("bob")
    assert bob.slot(Slot.LEGACY).reference_image == "aW1hZ2U="
    assert bob.slot(Slot.LEGACY).vector is None


def test_import_empty_payload_fails(service):
    with pytest.raises(AttendanceError):
        service.import_payload("bob", "Bob", json.dumps({"angles": {}}))


def test_capture_requires_engine(service):
    with pytest.raises(AttendanceError):
        service.capture_slot("alice", "Alice")


def test_import_with_bad_legacy_descriptor_writes_nothing(service, db):
    payload = json.dumps(
        {
            "descriptor": [0.1, 0.2],
            "angles": {"front": {"image": "ZnJvbnQ=", "descriptor": list(vec(0.2))}},
        }
    )
    with pytest.raises(DimensionMismatch):
        service.import_payload("alice", "Alice", payload)

    assert db.find_enrollee("alice") is None
    assert service.gallery.get("alice") is None
