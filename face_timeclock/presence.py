"""Skin-tone region heuristic with hysteresis.

The thresholds below come from the kiosk's original tuning and have no
calibration data behind them; they decide "something face-like is in front
of the camera", nothing more.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple

import numpy as np

from .config import (
    PRESENCE_CONFIRM_FRAMES,
    PRESENCE_RB_RATIO_BAND,
    PRESENCE_RG_RATIO_BAND,
    PRESENCE_SAMPLE_STRIDE,
    PRESENCE_VARIANCE_BAND,
)

# (x, y, width, height) as fractions of the frame: centre, upper, lower, left, right.
DETECTION_REGIONS: Tuple[Tuple[float, float, float, float], ...] = (
    (0.35, 0.25, 0.30, 0.50),
    (0.35, 0.15, 0.30, 0.30),
    (0.35, 0.40, 0.30, 0.35),
    (0.25, 0.25, 0.30, 0.50),
    (0.45, 0.25, 0.30, 0.50),
)


@dataclass
class RegionStats:
    r: float
    g: float
    b: float
    variance: float

    @property
    def skin_tone(self) -> bool:
        return self.r > self.g and self.r > self.b and self.r > 50 and self.g > 30 and self.b > 15 and self.r < 250

    @property
    def textured(self) -> bool:
        low, high = PRESENCE_VARIANCE_BAND
        return low < self.variance < high

    @property
    def ratios_ok(self) -> bool:
        if self.g <= 0 or self.b <= 0:
            return False
        rg = self.r / self.g
        rb = self.r / self.b
        return (
            PRESENCE_RG_RATIO_BAND[0] < rg < PRESENCE_RG_RATIO_BAND[1]
            and PRESENCE_RB_RATIO_BAND[0] < rb < PRESENCE_RB_RATIO_BAND[1]
        )

    @property
    def passes(self) -> bool:
        return self.skin_tone and self.textured and self.ratios_ok


def region_stats(frame: np.ndarray, sample_stride: int = PRESENCE_SAMPLE_STRIDE) -> List[RegionStats]:
    """Mean colour and summed per-channel variance of each detection region of an RGB frame."""
    h, w = frame.shape[:2]
    stride = max(1, int(sample_stride))
    stats: List[RegionStats] = []
    for fx, fy, fw, fh in DETECTION_REGIONS:
        x, y = int(w * fx), int(h * fy)
        rw, rh = int(w * fw), int(h * fh)
        region = frame[y:y + rh:stride, x:x + rw:stride, :3]
        if region.size == 0:
            continue
        pixels = region.reshape(-1, 3).astype(np.float64)
        mean = pixels.mean(axis=0)
        variance = float(pixels.var(axis=0).sum())
        stats.append(RegionStats(r=float(mean[0]), g=float(mean[1]), b=float(mean[2]), variance=variance))
    return stats


def frame_has_face(frame: np.ndarray, sample_stride: int = PRESENCE_SAMPLE_STRIDE) -> bool:
    return any(stat.passes for stat in region_stats(frame, sample_stride))


class PresenceDetector:
    """Debounced presence signal.

    ``update`` returns True exactly once per transition, after
    ``confirm_frames`` consecutive frames agree on the new state.
    """

    def __init__(self, confirm_frames: int = PRESENCE_CONFIRM_FRAMES, sample_stride: int = PRESENCE_SAMPLE_STRIDE):
        self.confirm_frames = max(1, int(confirm_frames))
        self.sample_stride = sample_stride
        self.present = False
        self.consecutive_detections = 0
        self.consecutive_non_detections = 0

    def reset(self) -> None:
        self.present = False
        self.consecutive_detections = 0
        self.consecutive_non_detections = 0

    def update(self, frame: np.ndarray) -> bool:
        return self.observe(frame_has_face(frame, self.sample_stride))

    def observe(self, detected: bool) -> bool:
        if detected:
            self.consecutive_detections += 1
            self.consecutive_non_detections = 0
        else:
            self.consecutive_non_detections += 1
            self.consecutive_detections = 0

        if not self.present and self.consecutive_detections >= self.confirm_frames:
            self.present = True
            return True
        if self.present and self.consecutive_non_detections >= self.confirm_frames:
            self.present = False
            return True
        return False
