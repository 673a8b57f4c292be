from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np
import torch
import torch.nn.functional as f
import torchvision.models as models
from torchvision.models import ResNet18_Weights

from .config import EMBEDDING_DIM, EXTRACTION_DEVICE, FACE_DETECTION_THRESHOLD, MIN_FACE_SIZE
from .exceptions import FaceEngineError

try:
    import mediapipe as mp
except Exception:  # pragma: no cover - runtime dependency guard
    mp = None


def resolve_device(name: str = EXTRACTION_DEVICE) -> str:
    if name == "auto":
        return "cuda" if torch.cuda.is_available() else "cpu"
    return name


@dataclass
class FaceCrop:
    box: np.ndarray
    confidence: float
    pixels: np.ndarray


class FaceEngine:
    """Extraction collaborator: one RGB frame in, one embedding (or None) out.

    Only the most confident detection is used. The ResNet-18 features are
    average-pooled down to ``dim`` values and L2-normalised.
    """

    def __init__(
        self,
        device: str = EXTRACTION_DEVICE,
        detection_threshold: float = FACE_DETECTION_THRESHOLD,
        min_face_size: int = MIN_FACE_SIZE,
        dim: int = EMBEDDING_DIM,
    ):
        if mp is None:
            raise FaceEngineError("mediapipe is required. Install the project dependencies first.")

        self.device = torch.device(resolve_device(device))
        self.detection_threshold = detection_threshold
        self.min_face_size = min_face_size
        self.dim = dim

        try:
            self.detector = mp.solutions.face_detection.FaceDetection(
                model_selection=0,
                min_detection_confidence=detection_threshold,
            )

            backbone = models.resnet18(weights=ResNet18_Weights.DEFAULT)
            backbone.fc = torch.nn.Identity()
            self.embedder = backbone.eval().to(self.device)

            self.mean = torch.tensor([0.485, 0.456, 0.406], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
            self.std = torch.tensor([0.229, 0.224, 0.225], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
            self.clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        except Exception as exc:
            raise FaceEngineError(f"Failed to initialize face models: {exc}") from exc

    def extract(self, rgb: np.ndarray) -> Optional[np.ndarray]:
        crop = self.detect(rgb)
        if crop is None:
            return None

        try:
            tensor = torch.from_numpy(self._preprocess_crop(crop.pixels)).permute(2, 0, 1).float() / 255.0
            batch = (tensor.unsqueeze(0).to(self.device) - self.mean) / self.std
            with torch.inference_mode():
                raw = self.embedder(batch)
                pooled = f.adaptive_avg_pool1d(raw.unsqueeze(1), self.dim).squeeze(1)
                normed = f.normalize(pooled, p=2, dim=1)
            return normed[0].detach().cpu().numpy().astype(np.float64)
        except Exception as exc:
            raise FaceEngineError(f"Embedding generation failed: {exc}") from exc

    def detect(self, rgb: np.ndarray) -> Optional[FaceCrop]:
        try:
            result = self.detector.process(rgb)
        except Exception as exc:
            raise FaceEngineError(f"Face detection failed: {exc}") from exc

        if not result.detections:
            return None

        h, w = rgb.shape[:2]
        best: Optional[FaceCrop] = None
        for det in result.detections:
            score = float(det.score[0]) if det.score else 0.0
            if score < self.detection_threshold or (best is not None and score <= best.confidence):
                continue

            rel = det.location_data.relative_bounding_box
            x1 = max(0, int(rel.xmin * w))
            y1 = max(0, int(rel.ymin * h))
            x2 = min(w, x1 + int(rel.width * w))
            y2 = min(h, y1 + int(rel.height * h))
            if (x2 - x1) < self.min_face_size or (y2 - y1) < self.min_face_size:
                continue

            pixels, box = self._square_crop(rgb, x1, y1, x2, y2)
            if pixels.size == 0:
                continue
            best = FaceCrop(box=box, confidence=score, pixels=pixels)
        return best

    @staticmethod
    def _square_crop(rgb: np.ndarray, x1: int, y1: int, x2: int, y2: int) -> tuple[np.ndarray, np.ndarray]:
        h, w = rgb.shape[:2]
        side = int(max(x2 - x1, y2 - y1) * 1.05)
        cx = (x1 + x2) // 2
        cy = (y1 + y2) // 2

        sx1 = max(0, cx - side // 2)
        sy1 = max(0, cy - side // 2)
        sx2 = min(w, sx1 + side)
        sy2 = min(h, sy1 + side)
        if sx2 <= sx1 or sy2 <= sy1:
            return np.empty((0, 0, 3), dtype=rgb.dtype), np.array([x1, y1, x2, y2], dtype=np.float32)
        return rgb[sy1:sy2, sx1:sx2], np.array([sx1, sy1, sx2, sy2], dtype=np.float32)

    def _preprocess_crop(self, crop: np.ndarray) -> np.ndarray:
        interpolation = cv2.INTER_CUBIC if min(crop.shape[:2]) < 224 else cv2.INTER_AREA
        resized = cv2.resize(crop, (224, 224), interpolation=interpolation)

        # Equalise luminance only, keep chroma.
        ycrcb = cv2.cvtColor(resized, cv2.COLOR_RGB2YCrCb)
        y_channel, cr_channel, cb_channel = cv2.split(ycrcb)
        y_channel = self.clahe.apply(y_channel)
        return cv2.cvtColor(cv2.merge([y_channel, cr_channel, cb_channel]), cv2.COLOR_YCrCb2RGB)
