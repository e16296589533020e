"""
Raw gaze estimation from pupil positions.

Maps the midpoint of the two pupils from camera frame space to screen
space. The result is uncalibrated: it is what the calibration model is
fitted against.
"""

import numpy as np
from typing import Optional, Tuple
from dataclasses import dataclass

from petgaze.vision.pupil_locator import PupilPosition
from petgaze.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class GazeSample:
    """
    One gaze estimate.

    Coordinates:
    - raw: screen pixels, before calibration
    - normalized: 0-1 in (flipped) camera frame space
    - smoothed: filled in by the engine after temporal stabilization
    """

    raw: Tuple[float, float] = (0.0, 0.0)
    normalized: Tuple[float, float] = (0.0, 0.0)
    valid: bool = False
    confidence: float = 0.0
    timestamp: float = 0.0
    frame_number: int = -1
    used_fallback: bool = False
    smoothed: Optional[Tuple[float, float]] = None

    @classmethod
    def invalid(cls, timestamp: float = 0.0, frame_number: int = -1) -> "GazeSample":
        return cls(valid=False, timestamp=timestamp, frame_number=frame_number)


class GazeEstimator:
    """
    Pupil midpoint to raw screen coordinates.

    Horizontal flip is on by default: the camera sees a mirror image, so a
    pupil moving toward the right edge of the frame means the user looks left.
    """

    def __init__(
        self,
        screen_width: int,
        screen_height: int,
        flip_horizontal: bool = True,
        flip_vertical: bool = False,
    ):
        if screen_width <= 0 or screen_height <= 0:
            raise ValueError("Screen dimensions must be positive")

        self._screen_width = screen_width
        self._screen_height = screen_height
        self.flip_horizontal = flip_horizontal
        self.flip_vertical = flip_vertical

        logger.info(
            f"GazeEstimator initialized: screen={screen_width}x{screen_height}, "
            f"flip_h={flip_horizontal}, flip_v={flip_vertical}"
        )

    @property
    def screen_size(self) -> Tuple[int, int]:
        return (self._screen_width, self._screen_height)

    def normalize(self, x: float, y: float, frame_width: int, frame_height: int) -> Tuple[float, float]:
        """Frame pixel position to flipped, clipped 0-1 coordinates."""
        nx = x / frame_width
        ny = y / frame_height
        if self.flip_horizontal:
            nx = 1.0 - nx
        if self.flip_vertical:
            ny = 1.0 - ny
        return (float(np.clip(nx, 0.0, 1.0)), float(np.clip(ny, 0.0, 1.0)))

    def estimate(
        self,
        left: PupilPosition,
        right: PupilPosition,
        frame_width: int,
        frame_height: int,
        timestamp: float = 0.0,
        frame_number: int = -1,
    ) -> GazeSample:
        """
        Estimate raw gaze from both pupils.

        Args:
            left: Pupil in the left eye box (image left)
            right: Pupil in the right eye box
            frame_width: Camera frame width
            frame_height: Camera frame height

        Returns:
            Valid GazeSample with raw screen coordinates
        """
        if frame_width <= 0 or frame_height <= 0:
            return GazeSample.invalid(timestamp, frame_number)

        mid_x = (left.x + right.x) / 2.0
        mid_y = (left.y + right.y) / 2.0

        nx, ny = self.normalize(mid_x, mid_y, frame_width, frame_height)

        return GazeSample(
            raw=(nx * self._screen_width, ny * self._screen_height),
            normalized=(nx, ny),
            valid=True,
            confidence=(left.confidence + right.confidence) / 2.0,
            timestamp=timestamp,
            frame_number=frame_number,
        )
