"""
Pointer-device gaze source: the mouse position stands in for gaze.

Useful for driving the calibration and fixation logic without a webcam.
Install with the ``gui`` extra.
"""

import time
from typing import Callable, Optional

from pynput import mouse

from petgaze.vision.gaze_estimator import GazeSample
from petgaze.vision.sources import GazeSource
from petgaze.utils.logger import get_logger

logger = get_logger(__name__)


class PointerGazeSource(GazeSource):
    """Reads the pointer position on each poll."""

    def __init__(
        self,
        screen_width: int,
        screen_height: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        self._screen_width = screen_width
        self._screen_height = screen_height
        self._clock = clock
        self._controller: Optional[mouse.Controller] = None
        self._frame_number = 0

    def start(self) -> bool:
        if self._running:
            return True

        try:
            self._controller = mouse.Controller()
            # Touch the backend once so display errors surface here
            _ = self._controller.position
        except Exception as e:
            self._last_error = f"Pointer device unavailable: {e}"
            logger.error(self._last_error)
            self._controller = None
            return False

        self._last_error = None
        self._running = True
        logger.info("Pointer gaze source started")
        return True

    def stop(self):
        self._controller = None
        self._running = False

    def poll(self) -> GazeSample:
        now = self._clock()
        if not self._running or self._controller is None:
            return GazeSample.invalid(now)

        self._frame_number += 1
        x, y = self._controller.position
        if not (0 <= x <= self._screen_width and 0 <= y <= self._screen_height):
            # Pointer on another monitor
            return GazeSample.invalid(now, self._frame_number)

        return GazeSample(
            raw=(float(x), float(y)),
            normalized=(x / self._screen_width, y / self._screen_height),
            valid=True,
            confidence=1.0,
            timestamp=now,
            frame_number=self._frame_number,
        )
