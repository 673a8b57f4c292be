import os
from datetime import time
from pathlib import Path


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _window_env(name: str, default: tuple[time, time]) -> tuple[time, time]:
    """Parse an "HH:MM-HH:MM" window; the end is exclusive."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        start_raw, end_raw = raw.split("-", 1)
        start = time.fromisoformat(start_raw.strip())
        end = time.fromisoformat(end_raw.strip())
    except ValueError:
        return default
    if end <= start:
        return default
    return start, end


BASE_DIR = Path(os.getenv("TIMECLOCK_BASE_DIR", Path(__file__).resolve().parent.parent))
DATA_DIR = BASE_DIR / "data"
LOG_DIR = BASE_DIR / "logs"
DB_PATH = Path(os.getenv("TIMECLOCK_DB_PATH", DATA_DIR / "timeclock.db"))

# Webcam settings
CAMERA_INDEX = _int_env("TIMECLOCK_CAMERA_INDEX", 0)
FRAME_WIDTH = _int_env("TIMECLOCK_FRAME_WIDTH", 1280)
FRAME_HEIGHT = _int_env("TIMECLOCK_FRAME_HEIGHT", 720)
FRAME_FPS = _int_env("TIMECLOCK_FRAME_FPS", 30)
JPEG_QUALITY = _int_env("TIMECLOCK_JPEG_QUALITY", 95)

# Extraction settings
EMBEDDING_DIM = _int_env("TIMECLOCK_EMBEDDING_DIM", 128)
EXTRACTION_DEVICE = os.getenv("TIMECLOCK_DEVICE", "auto")
FACE_DETECTION_THRESHOLD = _float_env("TIMECLOCK_FACE_DETECTION_THRESHOLD", 0.6)
MIN_FACE_SIZE = _int_env("TIMECLOCK_MIN_FACE_SIZE", 60)

# Enrollment settings
ENROLLMENT_SAMPLES = _int_env("TIMECLOCK_ENROLLMENT_SAMPLES", 10)
SAMPLE_EVERY_N_FRAMES = _int_env("TIMECLOCK_SAMPLE_EVERY_N_FRAMES", 4)

# Descriptor matching
DISTANCE_THRESHOLD = _float_env("TIMECLOCK_DISTANCE_THRESHOLD", 0.4)
LEGACY_GATE_DISTANCE = _float_env("TIMECLOCK_LEGACY_GATE_DISTANCE", 0.5)
MAX_DISTANCE = 1.0
NEAR_MISS_SIMILARITY = _float_env("TIMECLOCK_NEAR_MISS_SIMILARITY", 0.5)

# Fallback image comparison. These numbers are uncalibrated heuristics.
IMAGE_SIMILARITY_THRESHOLD = _float_env("TIMECLOCK_IMAGE_SIMILARITY_THRESHOLD", 0.7)
PIXEL_SAMPLE_STRIDE = 15
HISTOGRAM_SAMPLE_STRIDE = 20
HISTOGRAM_BINS = 32
COLOR_DISTANCE_LIMIT = 80.0
LUMA_DIFFERENCE_LIMIT = 60.0
STRATEGY_WEIGHTS = (0.5, 0.3, 0.2)

# Presence detection
PRESENCE_INTERVAL_SECONDS = _float_env("TIMECLOCK_PRESENCE_INTERVAL_SECONDS", 0.2)
PRESENCE_CONFIRM_FRAMES = _int_env("TIMECLOCK_PRESENCE_CONFIRM_FRAMES", 2)
PRESENCE_SAMPLE_STRIDE = _int_env("TIMECLOCK_PRESENCE_SAMPLE_STRIDE", 2)
PRESENCE_VARIANCE_BAND = (80.0, 6000.0)
PRESENCE_RG_RATIO_BAND = (0.9, 2.2)
PRESENCE_RB_RATIO_BAND = (1.1, 5.0)

# Shift windows, local clock, half-open [start, end)
MORNING_WINDOW = _window_env("TIMECLOCK_MORNING_WINDOW", (time(6, 0), time(13, 0)))
AFTERNOON_WINDOW = _window_env("TIMECLOCK_AFTERNOON_WINDOW", (time(12, 0), time(22, 0)))

# Kiosk timers
IDENTIFICATION_COOLDOWN_SECONDS = _float_env("TIMECLOCK_IDENTIFICATION_COOLDOWN_SECONDS", 3.0)
CONFIRM_DELAY_SECONDS = _float_env("TIMECLOCK_CONFIRM_DELAY_SECONDS", 1.5)
SUCCESS_RESET_SECONDS = _float_env("TIMECLOCK_SUCCESS_RESET_SECONDS", 3.0)
REJECTION_RESET_SECONDS = _float_env("TIMECLOCK_REJECTION_RESET_SECONDS", 4.0)
EVENT_HISTORY = _int_env("TIMECLOCK_EVENT_HISTORY", 50)

# HTTP API
API_HOST = os.getenv("TIMECLOCK_API_HOST", "127.0.0.1")
API_PORT = _int_env("TIMECLOCK_API_PORT", 8000)
API_LOG_REQUESTS = _bool_env("TIMECLOCK_API_LOG_REQUESTS", False)
