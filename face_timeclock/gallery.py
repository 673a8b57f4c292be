"""In-memory gallery of enrolled descriptor templates.

Vectors are stored as read-only float64 arrays and a slot update swaps the
whole ``SlotEntry`` under the gallery lock, so a reader sees either the old
or the new vector of a slot, never a mix.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import Iterable, Iterator, Optional, Sequence

import numpy as np

from .config import EMBEDDING_DIM
from .exceptions import DimensionMismatch
from .logger import setup_logger
from .models import EMPTY_SLOT, SLOT_ORDER, Enrollee, Slot, SlotEntry


def coerce_vector(vector: Sequence[float] | np.ndarray, dim: int = EMBEDDING_DIM) -> np.ndarray:
    array = np.asarray(vector, dtype=np.float64)
    if array.ndim != 1 or array.size != dim:
        raise DimensionMismatch(expected=dim, actual=int(array.size))
    frozen = array.copy()
    frozen.setflags(write=False)
    return frozen


class _SlotView:
    """Restartable iterable; every ``iter()`` starts from a fresh snapshot."""

    def __init__(self, gallery: "DescriptorGallery"):
        self._gallery = gallery

    def __iter__(self) -> Iterator[tuple[str, Slot, np.ndarray]]:
        for enrollee_id, slots in self._gallery._snapshot():
            for slot in SLOT_ORDER:
                entry = slots.get(slot, EMPTY_SLOT)
                if entry.has_vector:
                    yield enrollee_id, slot, entry.vector


class DescriptorGallery:
    def __init__(self, dim: int = EMBEDDING_DIM):
        self.dim = dim
        self._lock = threading.Lock()
        self._enrollees: dict[str, Enrollee] = {}
        self.logger = setup_logger(self.__class__.__name__)

    def __len__(self) -> int:
        with self._lock:
            return len(self._enrollees)

    def load(self, enrollees: Iterable[Enrollee]) -> int:
        loaded: dict[str, Enrollee] = {}
        for enrollee in enrollees:
            slots: dict[Slot, SlotEntry] = {}
            for slot in SLOT_ORDER:
                entry = enrollee.slot(slot)
                if entry.has_vector:
                    try:
                        entry = replace(entry, vector=coerce_vector(entry.vector, self.dim))
                    except DimensionMismatch as exc:
                        self.logger.warning(
                            "Ignoring %s descriptor of %s: %s", slot.value, enrollee.enrollee_id, exc
                        )
                        entry = replace(entry, vector=None)
                slots[slot] = entry
            loaded[enrollee.enrollee_id] = Enrollee(enrollee.enrollee_id, enrollee.name, slots)

        with self._lock:
            self._enrollees = loaded
        self.logger.info("Gallery loaded with %d enrollees", len(loaded))
        return len(loaded)

    def add_or_replace_slot(
        self,
        enrollee_id: str,
        slot: Slot | str,
        vector: Optional[Sequence[float] | np.ndarray],
        reference_image: Optional[str] = None,
        name: Optional[str] = None,
    ) -> None:
        slot = Slot(slot)
        frozen = coerce_vector(vector, self.dim) if vector is not None else None
        entry = SlotEntry(vector=frozen, reference_image=reference_image)

        with self._lock:
            current = self._enrollees.get(enrollee_id)
            if current is None:
                current = Enrollee(enrollee_id=enrollee_id, name=name or enrollee_id)
            slots = dict(current.slots)
            slots[slot] = entry
            self._enrollees[enrollee_id] = Enrollee(enrollee_id, name or current.name, slots)

    def remove(self, enrollee_id: str) -> bool:
        with self._lock:
            return self._enrollees.pop(enrollee_id, None) is not None

    def get(self, enrollee_id: str) -> Optional[Enrollee]:
        with self._lock:
            return self._enrollees.get(enrollee_id)

    def all_slots_with_vectors(self) -> Iterable[tuple[str, Slot, np.ndarray]]:
        return _SlotView(self)

    def all_reference_images(self) -> Iterator[tuple[str, Slot, str]]:
        for enrollee_id, slots in self._snapshot(require_vector=False):
            for slot in SLOT_ORDER:
                entry = slots.get(slot, EMPTY_SLOT)
                if entry.reference_image:
                    yield enrollee_id, slot, entry.reference_image

    def has_vectors(self) -> bool:
        with self._lock:
            return any(enrollee.has_descriptors for enrollee in self._enrollees.values())

    def _snapshot(self, require_vector: bool = True) -> list[tuple[str, dict[Slot, SlotEntry]]]:
        with self._lock:
            return [
                (enrollee_id, dict(enrollee.slots))
                for enrollee_id, enrollee in self._enrollees.items()
                if enrollee.has_descriptors or not require_vector
            ]
