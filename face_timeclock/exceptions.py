class AttendanceError(Exception):
    """Base exception for the time-clock kiosk."""


class CameraError(AttendanceError):
    """Raised when webcam access fails."""


class FaceEngineError(AttendanceError):
    """Raised when face detection or embedding generation fails."""


class DatabaseError(AttendanceError):
    """Raised when database operations fail."""


class DimensionMismatch(AttendanceError):
    """Raised when an embedding does not have the configured dimensionality."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Embedding must have {expected} values, got {actual}.")
        self.expected = expected
        self.actual = actual


class NoUsableSignal(AttendanceError):
    """Raised when a capture carries neither a usable embedding nor an image."""


class TimeWindowViolation(AttendanceError):
    """Raised when a shift is selected outside its configured window."""


class DuplicateOrOrderingViolation(AttendanceError):
    """Raised when a clock event duplicates or precedes today's records."""


class PersistenceFailure(AttendanceError):
    """Raised when the attendance record could not be committed."""
