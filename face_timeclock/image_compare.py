"""Last-resort raw pixel similarity.

This is a crude brightness and colour comparison over raw pixel bytes. It
knows nothing about facial geometry and is only used when no embedding is
available for the capture or for the enrollee. It is not a biometric matcher.
"""

from __future__ import annotations

import base64
import binascii
from typing import Iterable, Optional, Tuple, Union

import cv2
import numpy as np

from .config import (
    COLOR_DISTANCE_LIMIT,
    HISTOGRAM_BINS,
    HISTOGRAM_SAMPLE_STRIDE,
    IMAGE_SIMILARITY_THRESHOLD,
    LUMA_DIFFERENCE_LIMIT,
    PIXEL_SAMPLE_STRIDE,
    STRATEGY_WEIGHTS,
)
from .models import MatchResult, Slot, strip_data_uri

ImageLike = Union[np.ndarray, bytes, bytearray, memoryview]

_LUMA = np.array([0.299, 0.587, 0.114], dtype=np.float64)


def decode_image_b64(image_b64: str) -> Optional[np.ndarray]:
    """Decode a base64 JPEG/PNG into an RGB array, or None if it is not an image."""
    payload = strip_data_uri(image_b64)
    if not payload:
        return None
    try:
        raw = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError):
        return None
    buffer = np.frombuffer(raw, dtype=np.uint8)
    if buffer.size == 0:
        return None
    bgr = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if bgr is None:
        return None
    return cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)


def encode_image_b64(rgb: np.ndarray, quality: int = 95) -> str:
    bgr = cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)
    ok, encoded = cv2.imencode(".jpg", bgr, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ValueError("Failed to encode image as JPEG.")
    return base64.b64encode(encoded.tobytes()).decode("ascii")


def _as_bytes(image: ImageLike) -> np.ndarray:
    if isinstance(image, np.ndarray):
        return np.ascontiguousarray(image, dtype=np.uint8).reshape(-1)
    return np.frombuffer(bytes(image), dtype=np.uint8)


class FallbackImageComparator:
    def __init__(self, threshold: float = IMAGE_SIMILARITY_THRESHOLD):
        self.threshold = threshold

    def compare(self, sample: ImageLike, reference: ImageLike) -> float:
        first = _as_bytes(sample)
        second = _as_bytes(reference)
        overlap = min(first.size, second.size)
        if overlap == 0:
            return 0.0
        first = first[:overlap]
        second = second[:overlap]

        results = (
            self._channel_triplets(first, second),
            self._luma(first, second),
            self._histogram(first, second),
        )
        weighted_matches = sum(w * m for w, (m, _) in zip(STRATEGY_WEIGHTS, results))
        weighted_samples = sum(w * s for w, (_, s) in zip(STRATEGY_WEIGHTS, results))
        if weighted_samples <= 0:
            return 0.0
        return float(weighted_matches / weighted_samples)

    def best_match(
        self,
        sample: ImageLike,
        references: Iterable[Tuple[str, Slot, ImageLike]],
    ) -> MatchResult:
        best_id: Optional[str] = None
        best_slot: Optional[Slot] = None
        best_similarity = 0.0
        for enrollee_id, slot, reference in references:
            similarity = self.compare(sample, reference)
            if similarity > best_similarity:
                best_id, best_slot, best_similarity = enrollee_id, slot, similarity
        return MatchResult.from_similarity(best_id, best_slot, best_similarity, self.threshold)

    @staticmethod
    def _triplet_indices(size: int) -> np.ndarray:
        # Every sampled offset has two following bytes inside the overlap.
        return np.arange(0, max(size - 3, 0), PIXEL_SAMPLE_STRIDE)

    def _channel_triplets(self, first: np.ndarray, second: np.ndarray) -> Tuple[int, int]:
        idx = self._triplet_indices(first.size)
        if idx.size == 0:
            return 0, 0
        a = np.stack([first[idx], first[idx + 1], first[idx + 2]], axis=1).astype(np.float64)
        b = np.stack([second[idx], second[idx + 1], second[idx + 2]], axis=1).astype(np.float64)
        distance = np.sqrt(((a - b) ** 2).sum(axis=1))
        return int(np.count_nonzero(distance < COLOR_DISTANCE_LIMIT)), int(idx.size)

    def _luma(self, first: np.ndarray, second: np.ndarray) -> Tuple[int, int]:
        idx = self._triplet_indices(first.size)
        if idx.size == 0:
            return 0, 0
        a = np.stack([first[idx], first[idx + 1], first[idx + 2]], axis=1).astype(np.float64) @ _LUMA
        b = np.stack([second[idx], second[idx + 1], second[idx + 2]], axis=1).astype(np.float64) @ _LUMA
        return int(np.count_nonzero(np.abs(a - b) < LUMA_DIFFERENCE_LIMIT)), int(idx.size)

    @staticmethod
    def _histogram(first: np.ndarray, second: np.ndarray) -> Tuple[int, int]:
        idx = np.arange(0, first.size, HISTOGRAM_SAMPLE_STRIDE)
        bucket_width = 256 // HISTOGRAM_BINS
        hist_a = np.bincount(np.minimum(first[idx] // bucket_width, HISTOGRAM_BINS - 1), minlength=HISTOGRAM_BINS)
        hist_b = np.bincount(np.minimum(second[idx] // bucket_width, HISTOGRAM_BINS - 1), minlength=HISTOGRAM_BINS)
        return int(np.minimum(hist_a, hist_b).sum()), int(np.maximum(hist_a, hist_b).sum())
