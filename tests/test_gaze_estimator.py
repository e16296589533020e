"""
Tests for raw gaze estimation.
"""

import pytest

from petgaze.vision.gaze_estimator import GazeEstimator, GazeSample
from petgaze.vision.pupil_locator import PupilPosition


def pupils(left_x, right_x, y, confidence=(1.0, 1.0)):
    return PupilPosition(left_x, y, confidence[0]), PupilPosition(right_x, y, confidence[1])


class TestGazeEstimator:
    """Tests for GazeEstimator."""

    def test_midpoint_is_mirrored_by_default(self):
        estimator = GazeEstimator(1920, 1080)
        left, right = pupils(100.0, 220.0, 120.0)

        sample = estimator.estimate(left, right, 640, 480, timestamp=2.5, frame_number=7)

        # Midpoint (160, 120) -> (0.25, 0.25) -> mirrored x = 0.75
        assert sample.valid
        assert sample.normalized == pytest.approx((0.75, 0.25))
        assert sample.raw == pytest.approx((1440.0, 270.0))
        assert sample.timestamp == 2.5
        assert sample.frame_number == 7

    def test_no_flip(self):
        estimator = GazeEstimator(1920, 1080, flip_horizontal=False)
        left, right = pupils(100.0, 220.0, 120.0)

        sample = estimator.estimate(left, right, 640, 480)

        assert sample.raw == pytest.approx((480.0, 270.0))

    def test_vertical_flip(self):
        estimator = GazeEstimator(1000, 1000, flip_horizontal=False, flip_vertical=True)

        assert estimator.normalize(0.0, 120.0, 640, 480) == pytest.approx((0.0, 0.75))

    def test_normalized_is_clipped(self):
        estimator = GazeEstimator(1920, 1080, flip_horizontal=False)

        assert estimator.normalize(-30.0, 900.0, 640, 480) == (0.0, 1.0)

    def test_confidence_is_mean_of_pupils(self):
        estimator = GazeEstimator(1920, 1080)
        left, right = pupils(300.0, 340.0, 240.0, confidence=(0.9, 0.3))

        assert estimator.estimate(left, right, 640, 480).confidence == pytest.approx(0.6)

    def test_invalid_frame_size(self):
        estimator = GazeEstimator(1920, 1080)
        left, right = pupils(300.0, 340.0, 240.0)

        sample = estimator.estimate(left, right, 0, 480, timestamp=1.0)

        assert not sample.valid
        assert sample.timestamp == 1.0

    def test_invalid_screen_size(self):
        with pytest.raises(ValueError):
            GazeEstimator(0, 1080)


class TestGazeSample:
    def test_invalid_constructor(self):
        sample = GazeSample.invalid(3.0, 12)

        assert not sample.valid
        assert sample.confidence == 0.0
        assert sample.frame_number == 12
        assert sample.smoothed is None
