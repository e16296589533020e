"""
Dwell-based fixation detection.

A gaze held within a small radius of an anchor point for the dwell time
counts as a click on that point.
"""

import math
from typing import Optional, Tuple

from petgaze.core.config import FixationConfig
from petgaze.core.events import FixationEvent
from petgaze.utils.logger import get_logger

logger = get_logger(__name__)

Point = Tuple[float, float]

DWELL_TIME_RANGE = (0.5, 5.0)
RADIUS_RANGE = (10.0, 100.0)


def _clamp(value: float, bounds: Tuple[float, float]) -> float:
    return max(bounds[0], min(bounds[1], value))


class FixationDetector:
    """
    Emits a FixationEvent after the gaze dwells on one spot.

    Leaving the radius re-anchors at the new point; firing restarts the
    dwell timer at the same anchor, so a long stare fires repeatedly.
    """

    def __init__(self, config: FixationConfig):
        self._dwell_time = _clamp(config.dwell_time, DWELL_TIME_RANGE)
        self._radius = _clamp(config.radius, RADIUS_RANGE)
        self._anchor: Optional[Point] = None
        self._anchor_time = 0.0
        self._last_time: Optional[float] = None

    def update(self, point: Optional[Point], timestamp: float) -> Optional[FixationEvent]:
        """
        Feed one mapped gaze point (None when gaze is invalid).

        Returns:
            FixationEvent when the dwell time is reached, otherwise None
        """
        self._last_time = timestamp

        if point is None:
            self._anchor = None
            return None

        if self._anchor is None or math.dist(point, self._anchor) >= self._radius:
            self._anchor = (float(point[0]), float(point[1]))
            self._anchor_time = timestamp
            return None

        duration = timestamp - self._anchor_time
        if duration < self._dwell_time:
            return None

        self._anchor_time = timestamp
        logger.debug(f"Fixation at ({self._anchor[0]:.0f}, {self._anchor[1]:.0f})")
        return FixationEvent(point=self._anchor, duration=duration, timestamp=timestamp)

    @property
    def progress(self) -> float:
        """0-1 share of the dwell time already spent on the current anchor."""
        if self._anchor is None or self._last_time is None:
            return 0.0
        return min(1.0, (self._last_time - self._anchor_time) / self._dwell_time)

    @property
    def anchor(self) -> Optional[Point]:
        return self._anchor

    @property
    def dwell_time(self) -> float:
        return self._dwell_time

    @property
    def radius(self) -> float:
        return self._radius

    def set_dwell_time(self, seconds: float):
        self._dwell_time = _clamp(seconds, DWELL_TIME_RANGE)
        logger.info(f"Fixation dwell time set to {self._dwell_time:.1f}s")

    def set_radius(self, pixels: float):
        self._radius = _clamp(pixels, RADIUS_RANGE)
        logger.info(f"Fixation radius set to {self._radius:.0f}px")

    def easy(self):
        """Faster, more forgiving fixation."""
        self.set_dwell_time(1.0)
        self.set_radius(50.0)

    def hard(self):
        self.set_dwell_time(2.0)
        self.set_radius(20.0)

    def reset(self):
        self._anchor = None
        self._last_time = None
