from __future__ import annotations

import os
import time
from typing import List, Tuple

import cv2
import numpy as np

from .config import FRAME_FPS, FRAME_HEIGHT, FRAME_WIDTH
from .exceptions import CameraError


def capture_backends() -> List[Tuple[str, int | None]]:
    # Windows webcams are generally more stable on DirectShow.
    names = ["DirectShow", "Media Foundation", "Auto"] if os.name == "nt" else ["Auto", "DirectShow"]
    backend_map: dict[str, int | None] = {
        "Auto": getattr(cv2, "CAP_ANY", None),
        "DirectShow": getattr(cv2, "CAP_DSHOW", None),
        "Media Foundation": getattr(cv2, "CAP_MSMF", None),
    }
    candidates: List[Tuple[str, int | None]] = []
    seen: set[int | None] = set()
    for name in names:
        backend = backend_map.get(name)
        if backend in seen:
            continue
        seen.add(backend)
        candidates.append((name, backend))
    return candidates


def open_camera_capture(camera_index: int) -> tuple[cv2.VideoCapture, str]:
    attempted: List[str] = []
    for backend_name, backend in capture_backends():
        attempted.append(backend_name)
        cap = cv2.VideoCapture(camera_index) if backend is None else cv2.VideoCapture(camera_index, backend)

        if cap.isOpened():
            # Some backends report opened=True but never deliver frames.
            for _ in range(6):
                ok, frame = cap.read()
                if ok and frame is not None:
                    return cap, backend_name
                time.sleep(0.03)
        cap.release()

    raise CameraError(f"Unable to open webcam index {camera_index}. Tried backends: {', '.join(attempted)}.")


class CameraStream:
    """Webcam reader yielding RGB frames."""

    def __init__(self, camera_index: int = 0):
        self.camera_index = camera_index
        self.cap = None
        self.backend_name: str | None = None

    def __enter__(self) -> "CameraStream":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        self.cap, self.backend_name = open_camera_capture(self.camera_index)
        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, FRAME_WIDTH)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, FRAME_HEIGHT)
        self.cap.set(cv2.CAP_PROP_FPS, FRAME_FPS)

    def read_bgr(self) -> np.ndarray:
        if self.cap is None:
            raise CameraError("Webcam stream is not initialized.")

        success, frame = self.cap.read()
        if not success or frame is None:
            raise CameraError("Failed to read frame from webcam.")
        return frame

    def read(self) -> np.ndarray:
        return cv2.cvtColor(self.read_bgr(), cv2.COLOR_BGR2RGB)

    def close(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None
        cv2.destroyAllWindows()
