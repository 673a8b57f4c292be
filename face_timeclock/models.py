from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import numpy as np

_DATA_URI_PREFIX = re.compile(r"^data:image/[a-z]+;base64,")


class Shift(str, Enum):
    MORNING = "Morning"
    AFTERNOON = "Afternoon"


class Direction(str, Enum):
    IN = "In"
    OUT = "Out"


class Slot(str, Enum):
    LEGACY = "legacy"
    FRONT = "front"
    LEFT = "left"
    RIGHT = "right"
    TILT = "tilt"


ANGLED_SLOTS = (Slot.FRONT, Slot.LEFT, Slot.RIGHT, Slot.TILT)
SLOT_ORDER = ANGLED_SLOTS + (Slot.LEGACY,)


def strip_data_uri(image_b64: Optional[str]) -> Optional[str]:
    if not image_b64:
        return None
    return _DATA_URI_PREFIX.sub("", image_b64.strip())


@dataclass(frozen=True)
class SlotEntry:
    """One descriptor slot. ``vector`` is None when the slot holds no embedding."""

    vector: Optional[np.ndarray] = None
    reference_image: Optional[str] = None

    @property
    def has_vector(self) -> bool:
        return self.vector is not None

    @property
    def is_empty(self) -> bool:
        return self.vector is None and not self.reference_image


EMPTY_SLOT = SlotEntry()


@dataclass
class Enrollee:
    enrollee_id: str
    name: str
    slots: dict[Slot, SlotEntry] = field(default_factory=lambda: {slot: EMPTY_SLOT for slot in SLOT_ORDER})

    def slot(self, slot: Slot) -> SlotEntry:
        return self.slots.get(slot, EMPTY_SLOT)

    @property
    def has_descriptors(self) -> bool:
        return any(entry.has_vector for entry in self.slots.values())


@dataclass
class CaptureSample:
    image: Optional[Any] = None
    embedding: Optional[np.ndarray] = None
    image_b64: Optional[str] = None


@dataclass(frozen=True)
class MatchResult:
    enrollee_id: Optional[str]
    slot: Optional[Slot]
    distance: Optional[float]
    similarity: float
    accepted: bool
    method: str = "descriptor"

    @classmethod
    def from_distance(
        cls,
        enrollee_id: Optional[str],
        slot: Optional[Slot],
        distance: float,
        threshold: float,
    ) -> "MatchResult":
        accepted = enrollee_id is not None and distance < threshold
        return cls(
            enrollee_id=enrollee_id,
            slot=slot,
            distance=distance,
            similarity=1.0 - distance,
            accepted=accepted,
            method="descriptor",
        )

    @classmethod
    def from_similarity(
        cls,
        enrollee_id: Optional[str],
        slot: Optional[Slot],
        similarity: float,
        threshold: float,
    ) -> "MatchResult":
        accepted = enrollee_id is not None and similarity >= threshold
        return cls(
            enrollee_id=enrollee_id,
            slot=slot,
            distance=None,
            similarity=similarity,
            accepted=accepted,
            method="image",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "enrolleeId": self.enrollee_id,
            "slot": self.slot.value if self.slot else None,
            "distance": self.distance,
            "similarity": self.similarity,
            "accepted": self.accepted,
            "method": self.method,
        }


@dataclass(frozen=True)
class AttendanceRecord:
    enrollee_id: str
    shift: Shift
    direction: Direction
    timestamp: datetime
    verified: bool = True
    reference_image: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self, include_image: bool = False) -> dict[str, Any]:
        """List view by default. ``include_image=True`` gives the full persisted row,
        reference image included, and is the shape exports should use.
        """
        payload: dict[str, Any] = {
            "id": self.id,
            "enrolleeId": self.enrollee_id,
            "shift": self.shift.value,
            "direction": self.direction.value,
            "timestamp": self.timestamp.isoformat(timespec="seconds"),
            "verified": self.verified,
            "hasReferenceImage": bool(self.reference_image),
        }
        if include_image and self.reference_image:
            payload["referenceImage"] = self.reference_image
        return payload
