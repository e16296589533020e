"""
Tests for dwell-based fixation detection.
"""

import pytest

from petgaze.core.config import FixationConfig
from petgaze.vision.fixation import FixationDetector

DT = 0.1


def dwell(detector, point, start, seconds):
    """Feed one point for `seconds`; returns (events, end time)."""
    events = []
    t = start
    steps = int(round(seconds / DT))
    for _ in range(steps + 1):
        event = detector.update(point, t)
        if event is not None:
            events.append(event)
        t = round(t + DT, 6)
    return events, t - DT


class TestFixationDetector:
    """Tests for FixationDetector."""

    @pytest.fixture
    def detector(self):
        return FixationDetector(FixationConfig(radius=30.0, dwell_time=1.5))

    def test_fires_after_dwell_time(self, detector):
        events, _ = dwell(detector, (400.0, 300.0), 0.0, 1.5)

        assert len(events) == 1
        assert events[0].point == (400.0, 300.0)
        assert events[0].duration == pytest.approx(1.5)
        assert events[0].timestamp == pytest.approx(1.5)

    def test_not_before_dwell_time(self, detector):
        events, _ = dwell(detector, (400.0, 300.0), 0.0, 1.4)

        assert events == []
        assert detector.progress == pytest.approx(1.4 / 1.5)

    def test_small_jitter_keeps_anchor(self, detector):
        t = 0.0
        events = []
        for i in range(17):
            point = (400.0 + (10.0 if i % 2 else -10.0), 300.0 + (i % 3) * 5.0)
            event = detector.update(point, t)
            if event is not None:
                events.append(event)
            t += DT

        assert len(events) == 1

    def test_leaving_radius_reanchors(self, detector):
        dwell(detector, (400.0, 300.0), 0.0, 1.0)

        detector.update((500.0, 300.0), 1.1)

        assert detector.anchor == (500.0, 300.0)
        assert detector.progress == 0.0

        events, _ = dwell(detector, (500.0, 300.0), 1.2, 1.3)
        assert events == []

    def test_long_stare_fires_repeatedly(self, detector):
        events, _ = dwell(detector, (400.0, 300.0), 0.0, 3.0)

        assert len(events) == 2
        assert events[1].timestamp == pytest.approx(3.0)

    def test_invalid_gaze_resets(self, detector):
        dwell(detector, (400.0, 300.0), 0.0, 1.0)

        detector.update(None, 1.1)
        events, _ = dwell(detector, (400.0, 300.0), 1.2, 1.0)

        assert detector.anchor == (400.0, 300.0)
        assert events == []

    def test_settings_are_clamped(self, detector):
        detector.set_dwell_time(0.1)
        detector.set_radius(500.0)

        assert detector.dwell_time == 0.5
        assert detector.radius == 100.0

    def test_config_is_clamped(self):
        detector = FixationDetector(FixationConfig(radius=1.0, dwell_time=60.0))

        assert detector.radius == 10.0
        assert detector.dwell_time == 5.0

    def test_presets(self, detector):
        detector.easy()
        assert (detector.dwell_time, detector.radius) == (1.0, 50.0)

        detector.hard()
        assert (detector.dwell_time, detector.radius) == (2.0, 20.0)

    def test_reset(self, detector):
        dwell(detector, (400.0, 300.0), 0.0, 1.0)
        detector.reset()

        assert detector.anchor is None
        assert detector.progress == 0.0
