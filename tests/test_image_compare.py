import numpy as np
import pytest

from conftest import skin_frame
from face_timeclock.image_compare import FallbackImageComparator, decode_image_b64, encode_image_b64
from face_timeclock.models import Slot


def test_identical_images_score_one():
    image = skin_frame()
    assert FallbackImageComparator().compare(image, image.copy()) == pytest.approx(1.0)


def test_compare_is_symmetric():
    comparator = FallbackImageComparator()
    first = skin_frame(seed=1)
    second = np.clip(skin_frame(seed=2).astype(np.int16) + 40, 0, 255).astype(np.uint8)
    assert comparator.compare(first, second) == pytest.approx(comparator.compare(second, first))


def test_compare_uses_overlapping_prefix_only():
    comparator = FallbackImageComparator()
    image = skin_frame()
    assert comparator.compare(image, image[:60]) == pytest.approx(1.0)


def test_black_and_white_images_do_not_match():
    comparator = FallbackImageComparator()
    black = np.zeros((40, 40, 3), dtype=np.uint8)
    white = np.full((40, 40, 3), 255, dtype=np.uint8)
    assert comparator.compare(black, white) == 0.0


def test_empty_input_scores_zero():
    assert FallbackImageComparator().compare(b"", b"\x01\x02\x03") == 0.0


def test_best_match_applies_threshold():
    comparator = FallbackImageComparator()
    image = skin_frame()
    white = np.full_like(image, 255)

    result = comparator.best_match(image, [("bob", Slot.LEGACY, white), ("alice", Slot.FRONT, image)])
    assert result.enrollee_id == "alice"
    assert result.method == "image"
    assert result.distance is None
    assert result.accepted

    rejected = comparator.best_match(image, [("bob", Slot.LEGACY, white)])
    assert not rejected.accepted


def test_best_match_without_references():
    result = FallbackImageComparator().best_match(skin_frame(), [])
    assert result.enrollee_id is None
    assert result.similarity == 0.0
    assert not result.accepted


def test_base64_helpers_round_trip_shape_and_strip_data_uri():
    image = skin_frame(48, 64)
    encoded = encode_image_b64(image)
    decoded = decode_image_b64("data:image/jpeg;base64," + encoded)
    assert decoded.shape == image.shape
    assert decode_image_b64("not an image") is None
    assert decode_image_b64("") is None
