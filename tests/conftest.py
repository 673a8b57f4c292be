import itertools
from datetime import date, datetime
from typing import Callable, List, Optional

import numpy as np
import pytest

from face_timeclock.database import AttendanceDatabase
from face_timeclock.exceptions import DatabaseError
from face_timeclock.gallery import DescriptorGallery
from face_timeclock.identification import IdentificationService
from face_timeclock.kiosk import KioskSession
from face_timeclock.models import AttendanceRecord, Slot
from face_timeclock.presence import PresenceDetector

DIM = 8


def vec(*values: float, dim: int = DIM) -> np.ndarray:
    """Vector of ``dim`` zeros whose leading components are ``values``."""
    out = np.zeros(dim, dtype=np.float64)
    out[: len(values)] = values
    return out


def skin_frame(height: int = 120, width: int = 160, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    base = np.array([180, 120, 90], dtype=np.int16)
    noise = rng.integers(-20, 21, size=(height, width, 3), dtype=np.int16)
    return np.clip(base + noise, 0, 255).astype(np.uint8)


def blank_frame(height: int = 120, width: int = 160) -> np.ndarray:
    return np.zeros((height, width, 3), dtype=np.uint8)


class _ManualHandle:
    def __init__(self):
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.fired)


class ManualScheduler:
    """Deterministic stand-in for ThreadingScheduler; time moves only on ``advance``."""

    def __init__(self):
        self.now = 0.0
        self._seq = itertools.count()
        self._entries: list = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> _ManualHandle:
        handle = _ManualHandle()
        self._entries.append((self.now + delay, next(self._seq), callback, handle))
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for *_, handle in self._entries if handle.active)

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [entry for entry in self._entries if entry[3].active and entry[0] <= target]
            if not due:
                break
            entry = min(due, key=lambda item: (item[0], item[1]))
            self._entries.remove(entry)
            self.now = entry[0]
            entry[3].fired = True
            entry[2]()
        self.now = target


class FixedClock:
    def __init__(self, value: datetime):
        self.value = value

    def __call__(self) -> datetime:
        return self.value

    def set(self, hour: int, minute: int = 0, second: int = 0) -> None:
        self.value = self.value.replace(hour=hour, minute=minute, second=second)


class FakeMonotonic:
    def __init__(self):
        self.value = 100.0

    def __call__(self) -> float:
        return self.value


class FakeStore:
    def __init__(self):
        self.records: List[AttendanceRecord] = []
        self.fail_commits = False
        self.fail_reads = False

    def find_today_records(self, enrollee_id: str, today: Optional[date] = None) -> List[AttendanceRecord]:
        if self.fail_reads:
            raise DatabaseError("database is locked")
        return [
            record
            for record in self.records
            if record.enrollee_id == enrollee_id and (today is None or record.timestamp.date() == today)
        ]

    def commit_attendance(self, record: AttendanceRecord) -> int:
        if self.fail_commits:
            raise DatabaseError("disk I/O error")
        record_id = len(self.records) + 1
        self.records.append(record)
        return record_id

    def list_enrollees_with_descriptors(self):
        return []


class FakeExtractor:
    def __init__(self, embedding: Optional[np.ndarray] = None):
        self.embedding = embedding
        self.calls = 0
        self.before_return: Optional[Callable[[], None]] = None

    def extract(self, frame):
        self.calls += 1
        if self.before_return is not None:
            self.before_return()
        return self.embedding


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 3, 4, 8, 0, 0))


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def gallery() -> DescriptorGallery:
    gallery = DescriptorGallery(dim=DIM)
    gallery.add_or_replace_slot("alice", Slot.FRONT, vec(1.0), name="Alice")
    gallery.add_or_replace_slot("bob", Slot.FRONT, vec(0.0, 1.0), name="Bob")
    return gallery


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor(vec(1.0, 0.05))


@pytest.fixture
def make_kiosk(store, gallery, extractor, scheduler, clock, monotonic):
    def _make(**overrides) -> KioskSession:
        options = dict(
            store=store,
            identifier=IdentificationService(gallery),
            extractor=extractor,
            presence=PresenceDetector(confirm_frames=2),
            scheduler=scheduler,
            clock=clock,
            monotonic=monotonic,
        )
        options.update(overrides)
        return KioskSession(**options)

    return _make


@pytest.fixture
def db(tmp_path) -> AttendanceDatabase:
    return AttendanceDatabase(tmp_path / "timeclock.db")
