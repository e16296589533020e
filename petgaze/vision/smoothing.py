"""
Temporal gaze stabilization.

Smooths the raw gaze stream with frame-rate independent exponential
interpolation and tracks whether the gaze has settled, which the
calibration protocol waits for before sampling.
"""

from collections import deque
from typing import Deque, Optional, Tuple

import numpy as np

from petgaze.core.config import StabilizerConfig
from petgaze.utils.logger import get_logger

logger = get_logger(__name__)

Point = Tuple[float, float]


class TemporalStabilizer:
    """
    Smooth gaze and detect stability.

    Techniques:
    1. Exponential interpolation toward each new raw point, with a rate
       proportional to the elapsed time
    2. Bounded history of smoothed points
    3. Stability = mean deviation of the history below a threshold,
       held continuously for a minimum duration
    """

    def __init__(self, config: StabilizerConfig):
        """
        Initialize stabilizer.

        Args:
            config: Stabilizer configuration
        """
        self._config = config
        self._history: Deque[Point] = deque(maxlen=config.history_size)
        self._current: Optional[Point] = None
        self._last_timestamp: Optional[float] = None
        self._stable_since: Optional[float] = None

        logger.info(
            f"TemporalStabilizer initialized: "
            f"history={config.history_size}, "
            f"rate={config.smoothing_factor:.1f}/s, "
            f"threshold={config.stability_threshold:.0f}px"
        )

    def add(self, point: Point, timestamp: float) -> Point:
        """
        Feed one raw gaze point.

        Args:
            point: Raw gaze (screen pixels)
            timestamp: Sample time in seconds

        Returns:
            Current smoothed point
        """
        x, y = float(point[0]), float(point[1])

        if self._current is None or self._last_timestamp is None:
            self._current = (x, y)
        else:
            dt = max(0.0, timestamp - self._last_timestamp)
            rate = min(1.0, self._config.smoothing_factor * dt)
            cx, cy = self._current
            self._current = (cx + (x - cx) * rate, cy + (y - cy) * rate)

        self._last_timestamp = timestamp
        self._history.append(self._current)
        self._update_stability(timestamp)

        return self._current

    def _update_stability(self, timestamp: float):
        if len(self._history) < self._config.min_samples:
            self._stable_since = None
            return

        if self.deviation() < self._config.stability_threshold:
            if self._stable_since is None:
                self._stable_since = timestamp
        else:
            self._stable_since = None

    def deviation(self) -> float:
        """Mean distance of the history from its mean (pixels)."""
        if not self._history:
            return 0.0
        points = np.asarray(self._history, dtype=np.float64)
        return float(np.linalg.norm(points - points.mean(axis=0), axis=1).mean())

    def is_stable(self, now: float) -> bool:
        """True once deviation stayed under threshold for the minimum duration."""
        if self._stable_since is None or len(self._history) < self._config.min_samples:
            return False
        return now - self._stable_since >= self._config.min_stable_duration

    def stabilized_point(self) -> Optional[Point]:
        """
        Outlier-rejecting mean of the history.

        Samples farther than outlier_distance from the plain mean are
        dropped before re-averaging; if that drops everything, the plain
        mean is returned.
        """
        if not self._history:
            return None

        points = np.asarray(self._history, dtype=np.float64)
        rough = points.mean(axis=0)
        distances = np.linalg.norm(points - rough, axis=1)
        kept = points[distances <= self._config.outlier_distance]

        mean = kept.mean(axis=0) if len(kept) else rough
        return (float(mean[0]), float(mean[1]))

    def clear_history(self):
        """Forget past samples but keep the smoothed position."""
        self._history.clear()
        self._stable_since = None

    def reset(self):
        """Reset to initial state."""
        self._history.clear()
        self._current = None
        self._last_timestamp = None
        self._stable_since = None
        logger.debug("Stabilizer reset")

    @property
    def current(self) -> Optional[Point]:
        return self._current

    @property
    def stable_since(self) -> Optional[float]:
        return self._stable_since

    @property
    def stability_threshold(self) -> float:
        return self._config.stability_threshold

    @property
    def sample_count(self) -> int:
        return len(self._history)
