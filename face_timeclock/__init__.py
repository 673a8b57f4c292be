from .gallery import DescriptorGallery
from .image_compare import FallbackImageComparator
from .kiosk import KioskSession, KioskState, create_kiosk
from .matcher import DescriptorMatcher
from .presence import PresenceDetector

__all__ = [
    "DescriptorGallery",
    "DescriptorMatcher",
    "FallbackImageComparator",
    "KioskSession",
    "KioskState",
    "PresenceDetector",
    "create_kiosk",
]
