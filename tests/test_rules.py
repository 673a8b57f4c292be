from datetime import datetime, time

import pytest

from face_timeclock.exceptions import DuplicateOrOrderingViolation, TimeWindowViolation
from face_timeclock.models import AttendanceRecord, Direction, Shift
from face_timeclock.rules import validate_sequence, validate_time_window


def _at(hour: int, minute: int = 0, second: int = 0) -> datetime:
    return datetime(2024, 3, 4, hour, minute, second)


def _record(shift: Shift, direction: Direction, hour: int) -> AttendanceRecord:
    return AttendanceRecord(enrollee_id="alice", shift=shift, direction=direction, timestamp=_at(hour))


@pytest.mark.parametrize(
    "now, allowed",
    [
        (_at(5, 59, 59), False),
        (_at(6, 0), True),
        (_at(12, 59, 59), True),
        (_at(13, 0), False),
    ],
)
def test_morning_window_is_half_open(now, allowed):
    if allowed:
        validate_time_window(Shift.MORNING, now)
    else:
        with pytest.raises(TimeWindowViolation):
            validate_time_window(Shift.MORNING, now)


def test_windows_overlap_at_noon():
    validate_time_window(Shift.MORNING, _at(12, 30))
    validate_time_window(Shift.AFTERNOON, _at(12, 30))
    with pytest.raises(TimeWindowViolation):
        validate_time_window(Shift.AFTERNOON, _at(22, 0))


def test_window_violation_message():
    with pytest.raises(TimeWindowViolation) as excinfo:
        validate_time_window(Shift.MORNING, _at(5, 59, 0))
    assert str(excinfo.value) == (
        "Morning attendance is only available between 6:00 AM and 1:00 PM. Current time: 05:59:00"
    )


def test_custom_windows():
    windows = {Shift.MORNING: (time(7, 0), time(9, 0)), Shift.AFTERNOON: (time(13, 0), time(17, 0))}
    with pytest.raises(TimeWindowViolation):
        validate_time_window(Shift.MORNING, _at(6, 30), windows)


def test_first_clock_in_is_allowed():
    validate_sequence(Shift.MORNING, Direction.IN, [])


def test_duplicate_clock_in_is_rejected():
    with pytest.raises(DuplicateOrOrderingViolation) as excinfo:
        validate_sequence(Shift.MORNING, Direction.IN, [_record(Shift.MORNING, Direction.IN, 8)])
    assert "already clocked in for Morning today at 08:00:00" in str(excinfo.value)


def test_clock_out_requires_clock_in_for_same_shift():
    with pytest.raises(DuplicateOrOrderingViolation) as excinfo:
        validate_sequence(Shift.AFTERNOON, Direction.OUT, [_record(Shift.MORNING, Direction.IN, 8)])
    assert str(excinfo.value) == "You need to clock in for Afternoon before clocking out."


def test_duplicate_clock_out_is_rejected():
    records = [_record(Shift.MORNING, Direction.IN, 8), _record(Shift.MORNING, Direction.OUT, 12)]
    with pytest.raises(DuplicateOrOrderingViolation, match="already clocked out"):
        validate_sequence(Shift.MORNING, Direction.OUT, records)


def test_shifts_are_independent():
    records = [_record(Shift.MORNING, Direction.IN, 8), _record(Shift.MORNING, Direction.OUT, 12)]
    validate_sequence(Shift.AFTERNOON, Direction.IN, records)
    validate_sequence(Shift.MORNING, Direction.OUT, [_record(Shift.MORNING, Direction.IN, 8)])
