from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import numpy as np

from .config import DISTANCE_THRESHOLD, LEGACY_GATE_DISTANCE, MAX_DISTANCE
from .gallery import DescriptorGallery, coerce_vector
from .logger import setup_logger
from .models import MatchResult, Slot


class DescriptorMatcher:
    """Nearest-neighbour search over the gallery by Euclidean distance.

    Angled slots are evaluated first. A legacy template is only considered
    when none of the angled templates came closer than ``legacy_gate``.
    Equal distances resolve to the candidate evaluated first.
    """

    def __init__(
        self,
        gallery: DescriptorGallery,
        threshold: float = DISTANCE_THRESHOLD,
        legacy_gate: float = LEGACY_GATE_DISTANCE,
    ):
        self.gallery = gallery
        self.threshold = threshold
        self.legacy_gate = legacy_gate
        self.logger = setup_logger(self.__class__.__name__)

    def identify(self, captured: Sequence[float] | np.ndarray) -> MatchResult:
        query = coerce_vector(captured, self.gallery.dim)

        angled_meta: List[Tuple[str, Slot]] = []
        angled_vectors: List[np.ndarray] = []
        legacy_meta: List[Tuple[str, Slot]] = []
        legacy_vectors: List[np.ndarray] = []
        for enrollee_id, slot, vector in self.gallery.all_slots_with_vectors():
            if slot is Slot.LEGACY:
                legacy_meta.append((enrollee_id, slot))
                legacy_vectors.append(vector)
            else:
                angled_meta.append((enrollee_id, slot))
                angled_vectors.append(vector)

        best_id: Optional[str] = None
        best_slot: Optional[Slot] = None
        best_distance = MAX_DISTANCE

        if angled_vectors:
            idx, distance = self._nearest(angled_vectors, query)
            if distance < best_distance:
                best_id, best_slot = angled_meta[idx]
                best_distance = distance

        # Legacy may only win when no angled template is reasonably close.
        if legacy_vectors and best_distance >= self.legacy_gate:
            idx, distance = self._nearest(legacy_vectors, query)
            if distance < best_distance:
                best_id, best_slot = legacy_meta[idx]
                best_distance = distance

        result = MatchResult.from_distance(best_id, best_slot, best_distance, self.threshold)
        self.logger.debug(
            "Descriptor match: enrollee=%s slot=%s distance=%.4f accepted=%s",
            best_id,
            best_slot.value if best_slot else None,
            best_distance,
            result.accepted,
        )
        return result

    @staticmethod
    def _nearest(vectors: List[np.ndarray], query: np.ndarray) -> Tuple[int, float]:
        matrix = np.vstack(vectors)
        distances = np.linalg.norm(matrix - query, axis=1)
        idx = int(np.argmin(distances))
        return idx, float(distances[idx])
