from __future__ import annotations

from datetime import datetime, time
from typing import Iterable, Optional

from .config import AFTERNOON_WINDOW, MORNING_WINDOW
from .exceptions import DuplicateOrOrderingViolation, TimeWindowViolation
from .models import AttendanceRecord, Direction, Shift

SHIFT_WINDOWS: dict[Shift, tuple[time, time]] = {
    Shift.MORNING: MORNING_WINDOW,
    Shift.AFTERNOON: AFTERNOON_WINDOW,
}


def _clock(value: time) -> str:
    return value.strftime("%I:%M %p").lstrip("0")


def shift_window(shift: Shift, windows: Optional[dict[Shift, tuple[time, time]]] = None) -> tuple[time, time]:
    return (windows or SHIFT_WINDOWS)[Shift(shift)]


def validate_time_window(
    shift: Shift,
    now: datetime,
    windows: Optional[dict[Shift, tuple[time, time]]] = None,
) -> None:
    start, end = shift_window(shift, windows)
    current = now.time()
    if not start <= current < end:
        raise TimeWindowViolation(
            f"{Shift(shift).value} attendance is only available between {_clock(start)} and "
            f"{_clock(end)}. Current time: {now.strftime('%H:%M:%S')}"
        )


def validate_sequence(
    shift: Shift,
    direction: Direction,
    today_records: Iterable[AttendanceRecord],
) -> None:
    """Reject duplicate clock-ins and clock-outs without a matching clock-in."""
    shift = Shift(shift)
    direction = Direction(direction)
    same_shift = [record for record in today_records if record.shift is shift]
    existing = next((record for record in same_shift if record.direction is direction), None)

    if direction is Direction.IN:
        if existing is not None:
            raise DuplicateOrOrderingViolation(
                f"You have already clocked in for {shift.value} today at "
                f"{existing.timestamp.strftime('%H:%M:%S')}. Cannot clock in again."
            )
        return

    if not any(record.direction is Direction.IN for record in same_shift):
        raise DuplicateOrOrderingViolation(f"You need to clock in for {shift.value} before clocking out.")
    if existing is not None:
        raise DuplicateOrOrderingViolation(
            f"You have already clocked out for {shift.value} today at "
            f"{existing.timestamp.strftime('%H:%M:%S')}. Cannot clock out again."
        )
