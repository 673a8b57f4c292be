from __future__ import annotations

from typing import Iterator, Optional, Tuple

import numpy as np

from .config import IMAGE_SIMILARITY_THRESHOLD, NEAR_MISS_SIMILARITY
from .exceptions import DimensionMismatch, NoUsableSignal
from .gallery import DescriptorGallery
from .image_compare import FallbackImageComparator, decode_image_b64
from .logger import setup_logger
from .matcher import DescriptorMatcher
from .models import CaptureSample, MatchResult, Slot


def describe_result(result: MatchResult, name: Optional[str] = None) -> str:
    if result.accepted:
        who = name or result.enrollee_id
        return f"Identified as {who} (match confidence: {round(result.similarity * 100)}%)."
    if result.similarity > NEAR_MISS_SIMILARITY:
        if result.method == "image":
            required = f"{round(IMAGE_SIMILARITY_THRESHOLD * 100)}% or higher"
        else:
            required = "a closer match"
        return (
            f"Almost recognized you ({round(result.similarity * 100)}% match). "
            f"Need {required} to authenticate."
        )
    return "No matching user found. Please try again or contact administrator."


class IdentificationService:
    """Chooses between descriptor matching and the raw image fallback."""

    def __init__(
        self,
        gallery: DescriptorGallery,
        matcher: Optional[DescriptorMatcher] = None,
        comparator: Optional[FallbackImageComparator] = None,
    ):
        self.gallery = gallery
        self.matcher = matcher or DescriptorMatcher(gallery)
        self.comparator = comparator or FallbackImageComparator()
        self.logger = setup_logger(self.__class__.__name__)

    def identify(self, sample: CaptureSample) -> MatchResult:
        embedding = self._usable_embedding(sample.embedding)
        if embedding is not None and self.gallery.has_vectors():
            return self.matcher.identify(embedding)

        image = sample.image
        if image is None and sample.image_b64:
            image = decode_image_b64(sample.image_b64)
        if image is not None:
            self.logger.info("No usable embedding; falling back to image comparison")
            return self.comparator.best_match(image, self._decoded_references())

        if embedding is not None:
            # Descriptor present but nothing enrolled to compare against.
            return self.matcher.identify(embedding)
        raise NoUsableSignal("Capture has neither a usable embedding nor an image.")

    def _usable_embedding(self, embedding: Optional[np.ndarray]) -> Optional[np.ndarray]:
        if embedding is None:
            return None
        array = np.asarray(embedding, dtype=np.float64).reshape(-1)
        if array.size != self.gallery.dim:
            self.logger.warning(
                "Ignoring capture embedding: %s",
                DimensionMismatch(expected=self.gallery.dim, actual=int(array.size)),
            )
            return None
        return array

    def _decoded_references(self) -> Iterator[Tuple[str, Slot, np.ndarray]]:
        for enrollee_id, slot, image_b64 in self.gallery.all_reference_images():
            decoded = decode_image_b64(image_b64)
            if decoded is None:
                self.logger.warning("Skipping undecodable %s image of %s", slot.value, enrollee_id)
                continue
            yield enrollee_id, slot, decoded

