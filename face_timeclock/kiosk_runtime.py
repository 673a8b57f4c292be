import time
from typing import Dict, Tuple

import cv2
import numpy as np

from .camera import CameraStream
from .config import PRESENCE_INTERVAL_SECONDS
from .exceptions import AttendanceError
from .kiosk import KioskSession, KioskState
from .logger import setup_logger
from .models import Direction, Shift

MODE_KEYS: Dict[int, Tuple[Shift, Direction]] = {
    ord("1"): (Shift.MORNING, Direction.IN),
    ord("2"): (Shift.MORNING, Direction.OUT),
    ord("3"): (Shift.AFTERNOON, Direction.IN),
    ord("4"): (Shift.AFTERNOON, Direction.OUT),
}

STATE_COLORS: Dict[KioskState, Tuple[int, int, int]] = {
    KioskState.COMPLETE: (30, 180, 30),
    KioskState.REJECTED: (20, 20, 220),
    KioskState.IDENTIFYING: (0, 190, 255),
    KioskState.VERIFYING: (0, 190, 255),
    KioskState.COMMITTING: (0, 190, 255),
}


class KioskRuntime:
    """Webcam front-end: feeds frames to the session and draws its state."""

    def __init__(self, kiosk: KioskSession, interval_seconds: float = PRESENCE_INTERVAL_SECONDS):
        self.kiosk = kiosk
        self.interval_seconds = interval_seconds
        self.logger = setup_logger(self.__class__.__name__)

    def run(self, camera_index: int = 0) -> None:
        window_name = "Time Clock - 1-4 select, C cancel, R retry, Q quit"
        self.logger.info("Starting kiosk loop on camera %d", camera_index)
        last_sample = 0.0

        with CameraStream(camera_index) as cam:
            while True:
                frame = cam.read()

                now = time.monotonic()
                if now - last_sample >= self.interval_seconds:
                    last_sample = now
                    self.kiosk.on_presence_frame(frame)

                preview = cv2.cvtColor(frame, cv2.COLOR_RGB2BGR)
                self._draw_status(preview, self.kiosk.snapshot())
                cv2.imshow(window_name, preview)

                key = cv2.waitKey(1) & 0xFF
                if key == ord("q"):
                    break
                self.handle_key(key)

        self.kiosk.cancel()

    def handle_key(self, key: int) -> None:
        try:
            if key in MODE_KEYS:
                self.kiosk.select_mode(*MODE_KEYS[key])
            elif key == ord("c"):
                self.kiosk.cancel()
            elif key == ord("r"):
                self.kiosk.retry_commit()
        except AttendanceError as exc:
            # The session message already carries the reason.
            self.logger.info("Kiosk action rejected: %s", exc)

    @staticmethod
    def _draw_status(frame: np.ndarray, snapshot: dict) -> None:
        state = KioskState(snapshot["state"])
        color = STATE_COLORS.get(state, (35, 35, 35))
        mode = f"{snapshot['shift']} {snapshot['direction']}" if snapshot["shift"] else "No mode"
        presence = "face" if snapshot["present"] else "no face"

        cv2.rectangle(frame, (0, 0), (frame.shape[1], 50), color, -1)
        cv2.putText(
            frame,
            f"{state.value} | {mode} | {presence}",
            (20, 33),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.8,
            (255, 255, 255),
            2,
            cv2.LINE_AA,
        )

        height = frame.shape[0]
        cv2.rectangle(frame, (0, height - 45), (frame.shape[1], height), (35, 35, 35), -1)
        cv2.putText(
            frame,
            snapshot["message"][:110],
            (20, height - 15),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.6,
            (255, 255, 255),
            1,
            cv2.LINE_AA,
        )
