"""
Camera capture (frame source) with error handling.

Privacy: All frames processed in-memory only, never saved to disk.
"""

import sys
import time

import cv2
import numpy as np
from typing import Optional, Tuple, List
from dataclasses import dataclass

from petgaze.core.config import CameraConfig
from petgaze.utils.logger import get_logger

logger = get_logger(__name__)


def _api_preference() -> int:
    # DirectShow opens faster and more reliably on Windows
    return cv2.CAP_DSHOW if sys.platform == "win32" else cv2.CAP_ANY


def list_available_cameras(max_test: int = 5) -> List[int]:
    """
    List available camera indices.

    Args:
        max_test: Maximum camera index to test

    Returns:
        List of available camera indices
    """
    available = []
    for i in range(max_test):
        cap = cv2.VideoCapture(i, _api_preference())
        if cap.isOpened():
            available.append(i)
        cap.release()

    logger.info(f"Found {len(available)} available cameras: {available}")
    return available


@dataclass(frozen=True)
class Frame:
    """
    One captured video frame.

    The image buffer is marked read-only; downstream stages copy
    whatever they need to keep.
    """

    image: np.ndarray  # RGB format (H, W, 3)
    timestamp: float
    frame_number: int

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    @classmethod
    def from_array(cls, image: np.ndarray, timestamp: float, frame_number: int) -> "Frame":
        image.setflags(write=False)
        return cls(image=image, timestamp=timestamp, frame_number=frame_number)


class CameraError(Exception):
    """Camera-related errors."""

    pass


class Camera:
    """
    Exclusive owner of one capture device.

    Acquired with open() and released with close() (or by leaving the
    context manager) on every exit path. Frames are converted to RGB and
    handed out read-only; nothing is ever written to disk.
    """

    def __init__(self, config: CameraConfig):
        self._config = config
        self._capture: Optional[cv2.VideoCapture] = None
        self._frame_count = 0
        self._failed_reads = 0
        self._actual_size: Optional[Tuple[int, int]] = None

        logger.info(f"Camera configured for device {config.device!r}")

    def _create_capture(self) -> cv2.VideoCapture:
        device = self._config.device
        if isinstance(device, int):
            return cv2.VideoCapture(device, _api_preference())
        return cv2.VideoCapture(str(device))

    def open(self) -> bool:
        """
        Acquire the device and apply the requested capture settings.

        Returns:
            True once the device is open

        Raises:
            CameraError: If the device cannot be opened or configured
        """
        if self._capture is not None:
            logger.warning("Camera already open")
            return True

        capture = self._create_capture()
        if not capture.isOpened():
            capture.release()
            raise CameraError(
                f"Failed to open camera {self._config.device!r}. "
                "Check that it is connected and not used by another application."
            )

        try:
            cfg = self._config
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, cfg.frame_width)
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, cfg.frame_height)
            capture.set(cv2.CAP_PROP_FPS, cfg.target_fps)

            # First frames after opening are often black or half-exposed
            for _ in range(cfg.warmup_frames):
                capture.read()

            self._actual_size = (
                int(capture.get(cv2.CAP_PROP_FRAME_WIDTH)),
                int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            )
            actual_fps = capture.get(cv2.CAP_PROP_FPS)
        except cv2.error as e:
            capture.release()
            raise CameraError(f"Camera configuration failed: {e}") from e

        self._capture = capture
        self._frame_count = 0
        self._failed_reads = 0

        width, height = self._actual_size
        if (width, height) != (self._config.frame_width, self._config.frame_height):
            logger.warning(
                f"Camera delivers {width}x{height}, "
                f"requested {self._config.frame_width}x{self._config.frame_height}"
            )
        logger.info(f"Camera opened: {width}x{height} @ {actual_fps:.1f}fps")
        return True

    def read_frame(self) -> Optional[Frame]:
        """
        Grab the next frame.

        Returns:
            RGB Frame, or None when the device is closed or the read failed
        """
        if self._capture is None:
            logger.warning("Attempted to read from closed camera")
            return None

        try:
            ok, bgr = self._capture.read()
        except cv2.error as e:
            logger.error(f"Error reading camera frame: {e}")
            ok, bgr = False, None

        if not ok or bgr is None:
            self._failed_reads += 1
            return None

        self._failed_reads = 0
        self._frame_count += 1
        rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
        return Frame.from_array(rgb, time.monotonic(), self._frame_count)

    def get_frame_size(self) -> Tuple[int, int]:
        """(width, height) actually delivered, or the requested size before open()."""
        if self._actual_size is not None and self._capture is not None:
            return self._actual_size
        return (self._config.frame_width, self._config.frame_height)

    def close(self):
        """Release the device. Safe to call any number of times."""
        if self._capture is None:
            return
        self._capture.release()
        self._capture = None
        logger.info(f"Camera closed after {self._frame_count} frames")

    @property
    def is_open(self) -> bool:
        return self._capture is not None

    @property
    def frame_count(self) -> int:
        return self._frame_count

    @property
    def failed_reads(self) -> int:
        """Consecutive failed reads since the last good frame."""
        return self._failed_reads

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __del__(self):
        capture = getattr(self, "_capture", None)
        if capture is not None:
            capture.release()
