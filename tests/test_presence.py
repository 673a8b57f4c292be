import numpy as np

from conftest import blank_frame, skin_frame
from face_timeclock.presence import PresenceDetector, RegionStats, frame_has_face, region_stats


def test_textured_skin_frame_is_detected():
    assert frame_has_face(skin_frame())


def test_flat_or_dark_frames_are_not_detected():
    assert not frame_has_face(blank_frame())
    flat_skin = np.empty((120, 160, 3), dtype=np.uint8)
    flat_skin[:] = (180, 120, 90)
    assert not frame_has_face(flat_skin)


def test_region_stats_cover_five_regions():
    stats = region_stats(skin_frame())
    assert len(stats) == 5
    assert all(140 < stat.r < 220 for stat in stats)


def test_ratio_band_rejects_blue_heavy_regions():
    assert not RegionStats(r=120, g=100, b=115, variance=500).passes
    assert RegionStats(r=180, g=120, b=90, variance=500).passes


def test_single_qualifying_frame_does_not_flip():
    detector = PresenceDetector(confirm_frames=2)
    assert not detector.update(blank_frame())
    assert not detector.update(blank_frame())
    assert not detector.update(skin_frame())
    assert detector.present is False


def test_two_qualifying_frames_flip_once():
    detector = PresenceDetector(confirm_frames=2)
    detector.update(blank_frame())
    changes = [detector.update(skin_frame(seed=i)) for i in range(4)]
    assert changes == [False, True, False, False]
    assert detector.present is True


def test_absence_also_needs_consecutive_frames():
    detector = PresenceDetector(confirm_frames=2)
    for seed in range(2):
        detector.update(skin_frame(seed=seed))
    assert detector.present

    assert not detector.observe(False)
    assert not detector.observe(True)
    assert not detector.observe(False)
    assert detector.observe(False)
    assert detector.present is False


def test_reset_clears_counters():
    detector = PresenceDetector(confirm_frames=2)
    detector.observe(True)
    detector.reset()
    assert not detector.observe(True)
    assert detector.observe(True)
