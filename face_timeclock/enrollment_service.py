import json
from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .camera import CameraStream
from .config import DISTANCE_THRESHOLD, ENROLLMENT_SAMPLES, JPEG_QUALITY, SAMPLE_EVERY_N_FRAMES
from .database import AttendanceDatabase
from .exceptions import AttendanceError, FaceEngineError
from .gallery import DescriptorGallery, coerce_vector
from .image_compare import encode_image_b64
from .logger import setup_logger
from .matcher import DescriptorMatcher
from .models import Slot, strip_data_uri

PreparedSlot = Tuple[Slot, Optional[np.ndarray], Optional[str]]


class EnrollmentService:
    def __init__(self, db: AttendanceDatabase, gallery: DescriptorGallery, engine=None):
        self.db = db
        self.gallery = gallery
        self.engine = engine
        self.logger = setup_logger(self.__class__.__name__)

    def save_slot(
        self,
        enrollee_id: str,
        name: str,
        slot: Slot | str,
        descriptor: Optional[Sequence[float] | np.ndarray] = None,
        image_b64: Optional[str] = None,
    ) -> None:
        """Store one slot. Other slots of the enrollee are left untouched."""
        enrollee_id, name = self._clean_identity(enrollee_id, name)
        slot, vector, image = self._prepare_slot(slot, descriptor, image_b64)
        self._write_slots(enrollee_id, name, [(slot, vector, image)])

    @staticmethod
    def _clean_identity(enrollee_id: str, name: str) -> Tuple[str, str]:
        enrollee_id = enrollee_id.strip()
        name = name.strip()
        if not enrollee_id:
            raise AttendanceError("enrollee_id cannot be empty.")
        if not name:
            raise AttendanceError("name cannot be empty.")
        return enrollee_id, name

    def _prepare_slot(self, slot, descriptor, image_b64) -> PreparedSlot:
        slot = Slot(slot)
        vector = coerce_vector(descriptor, self.gallery.dim) if descriptor is not None else None
        image = strip_data_uri(image_b64)
        if vector is None and image is None:
            raise AttendanceError(f"Nothing to enroll for the {slot.value} slot.")
        return slot, vector, image

    def _write_slots(self, enrollee_id: str, name: str, prepared: List[PreparedSlot]) -> None:
        # Every slot is validated before the first write.
        self.db.upsert_enrollee(enrollee_id, name)
        for slot, vector, image in prepared:
            self.db.save_slot(enrollee_id, slot, vector, image)
            self.gallery.add_or_replace_slot(enrollee_id, slot, vector, reference_image=image, name=name)
            self.logger.info(
                "Enrolled %s slot for %s (descriptor=%s, image=%s)",
                slot.value,
                enrollee_id,
                vector is not None,
                image is not None,
            )

    def import_payload(self, enrollee_id: str, name: str, payload: str) -> List[Slot]:
        """Import face data as produced by the capture front-end.

        Accepts ``{"image", "descriptor"}`` (legacy slot), optionally with
        ``"angles": {"front": {"image", "descriptor"}, ...}``. Anything that
        is not JSON is taken as a bare base64 image for the legacy slot.
        """
        try:
            parsed: Any = json.loads(payload)
        except (TypeError, ValueError):
            parsed = None
        if not isinstance(parsed, dict):
            self.save_slot(enrollee_id, name, Slot.LEGACY, image_b64=payload)
            return [Slot.LEGACY]

        enrollee_id, name = self._clean_identity(enrollee_id, name)
        prepared: List[PreparedSlot] = []
        angles = parsed.get("angles") or {}
        for angle, data in angles.items():
            try:
                slot = Slot(angle)
            except ValueError:
                self.logger.warning("Ignoring unknown angle %r for %s", angle, enrollee_id)
                continue
            if slot is Slot.LEGACY or not isinstance(data, dict):
                continue
            # Angled slots need both a template and its image.
            if data.get("image") and data.get("descriptor"):
                prepared.append(self._prepare_slot(slot, data["descriptor"], data["image"]))

        if parsed.get("image") or parsed.get("descriptor"):
            prepared.append(self._prepare_slot(Slot.LEGACY, parsed.get("descriptor"), parsed.get("image")))

        if not prepared:
            raise AttendanceError("Face data payload did not contain any usable slot.")
        self._write_slots(enrollee_id, name, prepared)
        return [slot for slot, _, _ in prepared]

    def capture_slot(
        self,
        enrollee_id: str,
        name: str,
        slot: Slot | str = Slot.FRONT,
        camera_index: int = 0,
        target_samples: int = ENROLLMENT_SAMPLES,
        sample_every_n_frames: int = SAMPLE_EVERY_N_FRAMES,
    ) -> None:
        if self.engine is None:
            raise AttendanceError("A face engine is required to capture enrollment samples.")
        if target_samples < 3:
            raise AttendanceError("target_samples should be at least 3.")

        slot = Slot(slot)
        collected: List[np.ndarray] = []
        reference: Optional[np.ndarray] = None
        frame_index = 0
        start_time = datetime.now()
        window_name = f"Enrollment ({slot.value}) - Press Q to cancel"

        self.logger.info("Starting %s enrollment for %s (%s)", slot.value, enrollee_id, name)

        with CameraStream(camera_index) as cam:
            while len(collected) < target_samples:
                frame = cam.read()
                frame_index += 1

                try:
                    embedding = self.engine.extract(frame)
                except FaceEngineError as exc:
                    self.logger.exception("Face extraction error during enrollment.")
                    raise AttendanceError(f"Enrollment failed due to face extraction error: {exc}") from exc

                if embedding is None:
                    status = "No face detected"
                elif frame_index % max(1, sample_every_n_frames) == 0:
                    collected.append(embedding)
                    reference = frame
                    status = f"Captured sample {len(collected)}/{target_samples}"
                else:
                    status = "Hold still..."

                preview = cv2.cvtColor(frame, cv2.COLOR_RGB2BGR)
                self._draw_overlay(preview, status, len(collected), target_samples)
                cv2.imshow(window_name, preview)

                key = cv2.waitKey(1) & 0xFF
                if key == ord("q"):
                    raise AttendanceError("Enrollment cancelled by user.")

        descriptor = self._average_descriptor(collected)
        self._validate_identity_uniqueness(descriptor, enrollee_id)
        image_b64 = encode_image_b64(reference, quality=JPEG_QUALITY) if reference is not None else None
        self.save_slot(enrollee_id, name, slot, descriptor, image_b64)

        elapsed = (datetime.now() - start_time).total_seconds()
        self.logger.info(
            "Enrollee %s %s slot captured with %d samples in %.1fs",
            enrollee_id,
            slot.value,
            len(collected),
            elapsed,
        )

    @staticmethod
    def _average_descriptor(embeddings: List[np.ndarray]) -> np.ndarray:
        matrix = np.vstack(embeddings).astype(np.float64)
        vector = matrix.mean(axis=0)
        norm = np.linalg.norm(vector)
        if norm == 0.0:
            raise AttendanceError("Unable to normalize average descriptor.")
        return vector / norm

    def _validate_identity_uniqueness(self, descriptor: np.ndarray, enrollee_id: str) -> None:
        result = DescriptorMatcher(self.gallery).identify(descriptor)
        if result.accepted and result.enrollee_id != enrollee_id:
            existing = self.gallery.get(result.enrollee_id)
            label = existing.name if existing else result.enrollee_id
            raise AttendanceError(
                f"Captured face is too similar to existing enrollee '{label}' ({result.enrollee_id}), "
                f"distance {result.distance:.3f} < {DISTANCE_THRESHOLD}. "
                "Use a different person or capture cleaner samples."
            )

    @staticmethod
    def _draw_overlay(frame: np.ndarray, status: str, collected: int, target_samples: int) -> None:
        cv2.putText(frame, status, (20, 40), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (20, 20, 240), 2, cv2.LINE_AA)
        cv2.putText(
            frame,
            f"Samples: {collected}/{target_samples}",
            (20, 75),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.75,
            (255, 255, 255),
            2,
            cv2.LINE_AA,
        )
