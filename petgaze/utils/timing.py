"""
Timing utilities for throughput monitoring and loop pacing.
"""

import time
from collections import deque
from typing import Optional


class FPSCounter:
    """
    Track and calculate frames per second.

    Used by the engine to report how fast the main loop is ticking and
    by camera sources to report detection throughput.
    """

    def __init__(self, window_size: int = 30):
        """
        Initialize FPS counter.

        Args:
            window_size: Number of frame intervals to average over
        """
        self._frame_times: deque[float] = deque(maxlen=window_size)
        self._last_time: Optional[float] = None

    def tick(self, timestamp: Optional[float] = None) -> float:
        """
        Register a frame and return current FPS.

        Args:
            timestamp: Frame time in seconds (defaults to perf_counter)

        Returns:
            Current FPS (frames per second)
        """
        current_time = time.perf_counter() if timestamp is None else timestamp

        if self._last_time is not None:
            self._frame_times.append(current_time - self._last_time)

        self._last_time = current_time

        return self.fps

    @property
    def fps(self) -> float:
        """Current FPS, or 0.0 if fewer than two frames were recorded."""
        if not self._frame_times:
            return 0.0

        avg_frame_time = sum(self._frame_times) / len(self._frame_times)
        if avg_frame_time <= 0:
            return 0.0

        return 1.0 / avg_frame_time

    def reset(self):
        """Reset FPS counter."""
        self._frame_times.clear()
        self._last_time = None


class FrameRateLimiter:
    """
    Limit the headless main loop to a target rate.
    """

    def __init__(self, target_fps: float):
        self._min_frame_time = 1.0 / target_fps if target_fps > 0 else 0.0
        self._last_frame_time: Optional[float] = None

    def wait(self) -> float:
        """
        Sleep out the remainder of the current frame slot.

        Returns:
            Seconds actually slept
        """
        current_time = time.perf_counter()
        slept = 0.0

        if self._last_frame_time is not None:
            sleep_time = self._min_frame_time - (current_time - self._last_frame_time)
            if sleep_time > 0:
                time.sleep(sleep_time)
                slept = sleep_time
                current_time = time.perf_counter()

        self._last_frame_time = current_time
        return slept

    def reset(self):
        self._last_frame_time = None


class Timer:
    """Context manager measuring a pipeline stage in milliseconds."""

    def __init__(self, name: str = ""):
        self.name = name
        self.start_time: Optional[float] = None
        self.elapsed: float = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        if self.start_time is not None:
            self.elapsed = time.perf_counter() - self.start_time

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed * 1000.0

    def __str__(self) -> str:
        name_str = f"{self.name}: " if self.name else ""
        return f"{name_str}{self.elapsed_ms:.2f}ms"
