"""Attendance authorization state machine for one kiosk session.

All transitions run under a single re-entrant lock. Extraction and matching
run outside the lock; their result is applied only if the session epoch has
not moved on in the meantime (cancel, reset or a new selection bump it).
Listeners are called after the lock is released, in emission order.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional

import numpy as np

from .config import (
    CONFIRM_DELAY_SECONDS,
    EVENT_HISTORY,
    IDENTIFICATION_COOLDOWN_SECONDS,
    JPEG_QUALITY,
    REJECTION_RESET_SECONDS,
    SUCCESS_RESET_SECONDS,
)
from .exceptions import (
    AttendanceError,
    DatabaseError,
    DuplicateOrOrderingViolation,
    FaceEngineError,
    NoUsableSignal,
    PersistenceFailure,
    TimeWindowViolation,
)
from .gallery import DescriptorGallery
from .identification import IdentificationService, describe_result
from .image_compare import encode_image_b64
from .logger import setup_logger
from .models import AttendanceRecord, CaptureSample, Direction, MatchResult, Shift
from .presence import PresenceDetector
from .rules import validate_sequence, validate_time_window
from .scheduler import ThreadingScheduler


class KioskState(str, Enum):
    IDLE = "Idle"
    MODE_SELECTED = "ModeSelected"
    AWAITING_PRESENCE = "AwaitingPresence"
    IDENTIFYING = "Identifying"
    VERIFYING = "Verifying"
    COMMITTING = "Committing"
    COMPLETE = "Complete"
    REJECTED = "Rejected"


# Every state may also return to IDLE.
ALLOWED_TRANSITIONS: Dict[KioskState, frozenset] = {
    KioskState.IDLE: frozenset({KioskState.MODE_SELECTED}),
    KioskState.MODE_SELECTED: frozenset({KioskState.AWAITING_PRESENCE}),
    KioskState.AWAITING_PRESENCE: frozenset({KioskState.IDENTIFYING, KioskState.MODE_SELECTED}),
    KioskState.IDENTIFYING: frozenset({KioskState.AWAITING_PRESENCE, KioskState.VERIFYING}),
    KioskState.VERIFYING: frozenset({KioskState.COMMITTING, KioskState.REJECTED}),
    KioskState.COMMITTING: frozenset({KioskState.COMPLETE, KioskState.REJECTED}),
    KioskState.COMPLETE: frozenset(),
    KioskState.REJECTED: frozenset({KioskState.COMMITTING, KioskState.MODE_SELECTED}),
}

SELECTABLE_STATES = frozenset(
    {KioskState.IDLE, KioskState.MODE_SELECTED, KioskState.AWAITING_PRESENCE, KioskState.REJECTED}
)


class EventKind(str, Enum):
    PRESENCE_CHANGED = "presence_changed"
    IDENTIFICATION_RESULT = "identification_result"
    ATTENDANCE_COMMITTED = "attendance_committed"
    REJECTED = "rejected"
    STATE_CHANGED = "state_changed"


@dataclass(frozen=True)
class KioskEvent:
    kind: EventKind
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(timespec="milliseconds"),
        }


Listener = Callable[[KioskEvent], None]


class KioskSession:
    def __init__(
        self,
        store,
        identifier: IdentificationService,
        extractor=None,
        presence: Optional[PresenceDetector] = None,
        scheduler=None,
        clock: Callable[[], datetime] = datetime.now,
        monotonic: Callable[[], float] = time.monotonic,
        windows=None,
        cooldown_seconds: float = IDENTIFICATION_COOLDOWN_SECONDS,
        confirm_delay_seconds: float = CONFIRM_DELAY_SECONDS,
        success_reset_seconds: float = SUCCESS_RESET_SECONDS,
        rejection_reset_seconds: float = REJECTION_RESET_SECONDS,
    ):
        self.store = store
        self.identifier = identifier
        self.extractor = extractor
        self.presence = presence or PresenceDetector()
        self.scheduler = scheduler or ThreadingScheduler()
        self.clock = clock
        self.monotonic = monotonic
        self.windows = windows
        self.cooldown_seconds = cooldown_seconds
        self.confirm_delay_seconds = confirm_delay_seconds
        self.success_reset_seconds = success_reset_seconds
        self.rejection_reset_seconds = rejection_reset_seconds
        self.logger = setup_logger(self.__class__.__name__)

        self._lock = threading.RLock()
        self._listeners: List[Listener] = []
        self._timers: Dict[str, Any] = {}
        self.history: Deque[KioskEvent] = deque(maxlen=EVENT_HISTORY)

        self.state = KioskState.IDLE
        self.epoch = 0
        self.shift: Optional[Shift] = None
        self.direction: Optional[Direction] = None
        self.enrollee_id: Optional[str] = None
        self.enrollee_name: Optional[str] = None
        self.last_result: Optional[MatchResult] = None
        self.last_attempt_at: Optional[float] = None
        self.pending_record: Optional[AttendanceRecord] = None
        self.retryable = False
        self.message = "Select an attendance option."

    # Listeners

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    # Operations

    def select_mode(self, shift: Shift | str, direction: Direction | str) -> KioskState:
        shift = Shift(shift)
        direction = Direction(direction)
        violation: Optional[TimeWindowViolation] = None

        with self._transaction() as events:
            if self.state not in SELECTABLE_STATES:
                raise AttendanceError(f"Cannot select a mode while {self.state.value}.")
            try:
                validate_time_window(shift, self.clock(), self.windows)
            except TimeWindowViolation as exc:
                violation = exc
                self._reset_locked(events, message=str(exc))
                self._emit(events, EventKind.REJECTED, reason=str(exc), category="time_window", retryable=False)
            else:
                self._cancel_timers()
                self.epoch += 1
                self._clear_attempt()
                self.shift = shift
                self.direction = direction
                self._set_state(events, KioskState.MODE_SELECTED)
                self._set_state(events, KioskState.AWAITING_PRESENCE)
                self.message = f"Selected {shift.value} {direction.value}. Please position your face in the camera."
                self.logger.info("Mode selected: %s %s", shift.value, direction.value)

        if violation is not None:
            self.logger.info("Mode rejected: %s", violation)
            raise violation
        return self.state

    def on_presence_frame(self, frame: Optional[np.ndarray]) -> bool:
        """Feed one video frame. Returns True if an identification attempt ran."""
        with self._transaction() as events:
            if frame is not None and self.presence.update(frame):
                present = self.presence.present
                self._emit(events, EventKind.PRESENCE_CHANGED, present=present)
                if self.state in (KioskState.AWAITING_PRESENCE, KioskState.IDLE):
                    self.message = (
                        "Face detected." if present else "No face detected. Please position your face in the camera."
                    )
            if not self._identification_due():
                return False
            token = self.epoch
            self.last_attempt_at = self.monotonic()
            self._set_state(events, KioskState.IDENTIFYING)
            self.message = "Identifying..."

        try:
            sample = self._capture(frame)
            result = self.identifier.identify(sample)
        except NoUsableSignal as exc:
            self._abandon_attempt(token, f"{exc} Please try again.")
            return True
        except Exception:
            self.logger.exception("Identification attempt failed")
            self._abandon_attempt(token, "Identification failed. Please try again.")
            return True
        self._apply_identification(token, sample, result)
        return True

    def cancel(self) -> None:
        with self._transaction() as events:
            self._reset_locked(events, message="Cancelled. Select an attendance option.")
        self.logger.info("Session cancelled")

    def retry_commit(self) -> KioskState:
        with self._transaction() as events:
            if self.state is not KioskState.REJECTED or not self.retryable or self.pending_record is None:
                raise AttendanceError("There is no failed attendance commit to retry.")
            self._commit_locked(events)
            return self.state

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "state": self.state.value,
                "shift": self.shift.value if self.shift else None,
                "direction": self.direction.value if self.direction else None,
                "present": self.presence.present,
                "enrolleeId": self.enrollee_id,
                "enrolleeName": self.enrollee_name,
                "lastResult": self.last_result.to_dict() if self.last_result else None,
                "message": self.message,
                "retryable": self.retryable,
            }

    def recent_events(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self._lock:
            events = list(self.history)[-max(0, int(limit)):]
        return [event.to_dict() for event in events]

    # Identification

    def _identification_due(self) -> bool:
        if self.state is not KioskState.AWAITING_PRESENCE or not self.presence.present:
            return False
        if self.last_attempt_at is None:
            return True
        return (self.monotonic() - self.last_attempt_at) >= self.cooldown_seconds

    def _capture(self, frame: Optional[np.ndarray]) -> CaptureSample:
        if frame is None:
            return CaptureSample()
        embedding = None
        if self.extractor is not None:
            try:
                embedding = self.extractor.extract(frame)
            except FaceEngineError as exc:
                self.logger.warning("Embedding extraction failed: %s", exc)
        try:
            image_b64 = encode_image_b64(frame, quality=JPEG_QUALITY)
        except ValueError as exc:
            self.logger.warning("Could not encode capture image: %s", exc)
            image_b64 = None
        return CaptureSample(image=frame, embedding=embedding, image_b64=image_b64)

    def _abandon_attempt(self, token: int, message: str) -> None:
        with self._transaction() as events:
            if not self._attempt_current(token):
                return
            self.message = message
            self._set_state(events, KioskState.AWAITING_PRESENCE)

    def _apply_identification(self, token: int, sample: CaptureSample, result: MatchResult) -> None:
        with self._transaction() as events:
            if not self._attempt_current(token):
                self.logger.info("Discarding stale identification result for %s", result.enrollee_id)
                return

            name = None
            if result.enrollee_id is not None:
                enrollee = self.identifier.gallery.get(result.enrollee_id)
                name = enrollee.name if enrollee else None
            self.last_result = result
            self.message = describe_result(result, name)
            self._emit(
                events,
                EventKind.IDENTIFICATION_RESULT,
                result=result.to_dict(),
                name=name,
                message=self.message,
            )

            if not result.accepted:
                self._set_state(events, KioskState.AWAITING_PRESENCE)
                return

            self.enrollee_id = result.enrollee_id
            self.enrollee_name = name
            self._set_state(events, KioskState.VERIFYING)
            try:
                today = self.store.find_today_records(result.enrollee_id, self.clock().date())
                validate_sequence(self.shift, self.direction, today)
            except DuplicateOrOrderingViolation as exc:
                self._reject_locked(events, str(exc), category="duplicate")
                return
            except DatabaseError as exc:
                self.logger.error("Could not load today's records for %s: %s", result.enrollee_id, exc)
                self._reject_locked(events, f"Could not verify today's attendance: {exc}", category="persistence")
                return

            self.pending_record = AttendanceRecord(
                enrollee_id=result.enrollee_id,
                shift=self.shift,
                direction=self.direction,
                timestamp=self.clock(),
                verified=True,
                reference_image=sample.image_b64,
            )
            self.message = f"Welcome, {name or result.enrollee_id}! Processing {self.shift.value} {self.direction.value}..."
            if self.confirm_delay_seconds > 0:
                self._arm("confirm", self.confirm_delay_seconds, self._on_confirm_timer)
            else:
                self._commit_locked(events)

    def _attempt_current(self, token: int) -> bool:
        return token == self.epoch and self.state is KioskState.IDENTIFYING

    # Commit

    def _commit_locked(self, events: List[KioskEvent]) -> None:
        self._set_state(events, KioskState.COMMITTING)
        record = replace(self.pending_record, timestamp=self.clock())
        try:
            record_id = self.store.commit_attendance(record)
        except AttendanceError as exc:
            failure = PersistenceFailure(f"Failed to record attendance: {exc}")
            self.logger.error("%s (enrollee=%s)", failure, record.enrollee_id)
            self.pending_record = record
            self._reject_locked(events, str(failure), category="persistence", auto_reset=False)
            self.retryable = True
            return

        committed = replace(record, id=record_id)
        self.pending_record = None
        self.retryable = False
        self._set_state(events, KioskState.COMPLETE)
        self.message = f"Successfully recorded {committed.shift.value} {committed.direction.value}."
        self._emit(events, EventKind.ATTENDANCE_COMMITTED, record=committed.to_dict(), name=self.enrollee_name)
        self.logger.info(
            "Attendance %s %s recorded for %s (id=%s)",
            committed.shift.value,
            committed.direction.value,
            committed.enrollee_id,
            record_id,
        )
        self._arm("reset", self.success_reset_seconds, self._on_reset_timer)

    def _reject_locked(self, events: List[KioskEvent], reason: str, category: str, auto_reset: bool = True) -> None:
        self.message = f"Error: {reason}"
        self.retryable = False
        self._set_state(events, KioskState.REJECTED)
        self._emit(events, EventKind.REJECTED, reason=reason, category=category, retryable=not auto_reset)
        if auto_reset:
            self._arm("reset", self.rejection_reset_seconds, self._on_reset_timer)

    # Timers

    def _arm(self, name: str, delay: float, callback: Callable[[int], None]) -> None:
        existing = self._timers.pop(name, None)
        if existing is not None:
            existing.cancel()
        token = self.epoch
        self._timers[name] = self.scheduler.call_later(delay, lambda: callback(token))

    def _cancel_timers(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def _on_confirm_timer(self, token: int) -> None:
        with self._transaction() as events:
            self._timers.pop("confirm", None)
            if token != self.epoch or self.state is not KioskState.VERIFYING or self.pending_record is None:
                return
            self._commit_locked(events)

    def _on_reset_timer(self, token: int) -> None:
        with self._transaction() as events:
            if token != self.epoch:
                return
            self._reset_locked(events, message="Select an attendance option.")

    # State helpers

    def _reset_locked(self, events: List[KioskEvent], message: str) -> None:
        self._cancel_timers()
        self.epoch += 1
        self.shift = None
        self.direction = None
        self._clear_attempt()
        self._set_state(events, KioskState.IDLE)
        self.message = message

    def _clear_attempt(self) -> None:
        self.enrollee_id = None
        self.enrollee_name = None
        self.last_result = None
        self.pending_record = None
        self.retryable = False

    def _set_state(self, events: List[KioskEvent], new_state: KioskState) -> None:
        if new_state is self.state:
            return
        if new_state is not KioskState.IDLE and new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise AttendanceError(f"Invalid transition {self.state.value} -> {new_state.value}")
        previous = self.state
        self.state = new_state
        self._emit(events, EventKind.STATE_CHANGED, state=new_state.value, previous=previous.value)

    def _emit(self, events: List[KioskEvent], kind: EventKind, **payload: Any) -> None:
        event = KioskEvent(kind=kind, payload=payload)
        self.history.append(event)
        events.append(event)

    @contextmanager
    def _transaction(self) -> Iterator[List[KioskEvent]]:
        events: List[KioskEvent] = []
        try:
            with self._lock:
                yield events
        finally:
            self._dispatch(events)

    def _dispatch(self, events: List[KioskEvent]) -> None:
        if not events:
            return
        with self._lock:
            listeners = list(self._listeners)
        for event in events:
            for listener in listeners:
                try:
                    listener(event)
                except Exception:
                    self.logger.exception("Kiosk listener failed for %s", event.kind.value)


def create_kiosk(store, extractor=None, gallery: Optional[DescriptorGallery] = None, **kwargs) -> KioskSession:
    """Build a session whose gallery is loaded from ``store``."""
    if gallery is None:
        gallery = DescriptorGallery()
    gallery.load(store.list_enrollees_with_descriptors())
    return KioskSession(store=store, identifier=IdentificationService(gallery), extractor=extractor, **kwargs)
