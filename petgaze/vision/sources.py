"""
Gaze sources.

A gaze source produces one GazeSample per poll. The engine does not care
whether the sample came from a webcam, a script or the mouse.
"""

import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Deque, Iterable, Optional, Tuple

import numpy as np

from petgaze.core.config import AppConfig
from petgaze.vision.camera import Camera, CameraError
from petgaze.vision.gaze_estimator import GazeSample
from petgaze.vision.pipeline import DetectionPipeline
from petgaze.vision.pupil_locator import PupilStrategy
from petgaze.vision.region_detector import DetectorLoadError
from petgaze.vision.worker import DetectionWorker
from petgaze.utils.logger import ThrottledLogger, get_logger
from petgaze.utils.timing import FPSCounter

logger = get_logger(__name__)

Point = Tuple[float, float]


class GazeSource(ABC):
    """
    Abstract base class for all gaze sources.

    start() acquires whatever the source needs and reports success; after a
    failed start every poll returns an invalid sample until start() is
    called again.
    """

    def __init__(self):
        self._running = False
        self._last_error: Optional[str] = None

    @abstractmethod
    def start(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def stop(self):
        raise NotImplementedError

    @abstractmethod
    def poll(self) -> GazeSample:
        """Latest gaze sample; never blocks on detection."""
        raise NotImplementedError

    def toggle_detection_mode(self) -> Optional[str]:
        """Switch detection strategy if the source has one."""
        return None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error


class CameraGazeSource(GazeSource):
    """
    Webcam gaze through the detection pipeline.

    Owns the camera from start() to stop(). Detection runs on every Nth
    frame, on a worker thread when enabled; if the worker dies the source
    switches to synchronous processing for the rest of the session.
    """

    def __init__(
        self,
        config: AppConfig,
        screen_width: int,
        screen_height: int,
        camera: Optional[Camera] = None,
        pipeline_factory: Optional[Callable[[], DetectionPipeline]] = None,
    ):
        super().__init__()
        self._config = config
        self._camera = camera or Camera(config.camera)
        self._pipeline_factory = pipeline_factory or (
            lambda: DetectionPipeline(config, screen_width, screen_height)
        )

        self._pipeline: Optional[DetectionPipeline] = None
        self._worker: Optional[DetectionWorker] = None
        self._synchronous = not config.camera.use_threading

        self._frames_read = 0
        self._last_sample = GazeSample.invalid()
        self._read_log = ThrottledLogger(logger)
        self._detection_fps = FPSCounter()

    def start(self) -> bool:
        if self._running:
            return True

        self._last_error = None
        try:
            self._camera.open()
            self._pipeline = self._pipeline_factory()
        except (CameraError, DetectorLoadError) as e:
            self._last_error = str(e)
            logger.error(f"Camera gaze source failed to start: {e}")
            self._camera.close()
            self._pipeline = None
            return False

        self._synchronous = not self._config.camera.use_threading
        if not self._synchronous:
            self._worker = DetectionWorker(
                self._pipeline.process,
                join_timeout=self._config.camera.worker_join_timeout,
            )
            self._worker.start()

        self._frames_read = 0
        self._last_sample = GazeSample.invalid()
        self._detection_fps.reset()
        self._running = True

        mode = "synchronous" if self._synchronous else "threaded"
        logger.info(f"Camera gaze source started ({mode})")
        return True

    def poll(self) -> GazeSample:
        if not self._running:
            return GazeSample.invalid()

        frame = self._camera.read_frame()
        if frame is None:
            self._read_log.warning("Camera returned no frame")
            return GazeSample.invalid(time.monotonic())

        self._frames_read += 1
        if (self._frames_read - 1) % self._config.camera.process_every_nth_frame != 0:
            return self._last_sample

        if self._worker is not None and self._worker.failed and not self._synchronous:
            logger.warning("Detection worker failed, switching to synchronous processing")
            self._last_error = f"Detection worker failed: {self._worker.error}"
            self._worker.stop()
            self._synchronous = True

        if self._synchronous:
            sample = self._pipeline.process(frame)
        else:
            self._worker.submit(frame)
            sample = self._worker.latest_result()

        if sample is not None and sample.frame_number != self._last_sample.frame_number:
            self._last_sample = sample
            self._detection_fps.tick(sample.timestamp)

        return self._last_sample

    def stop(self):
        try:
            if self._worker is not None:
                self._worker.stop()
        finally:
            self._worker = None
            if self._pipeline is not None:
                self._pipeline.close()
                self._pipeline = None
            self._camera.close()
            self._running = False
            logger.info("Camera gaze source stopped")

    def toggle_detection_mode(self) -> Optional[str]:
        if self._pipeline is None:
            return None
        strategy: PupilStrategy = self._pipeline.toggle_pupil_strategy()
        return strategy.value

    @property
    def synchronous(self) -> bool:
        return self._synchronous

    @property
    def detection_fps(self) -> float:
        return self._detection_fps.fps


class SyntheticGazeSource(GazeSource):
    """
    Scripted gaze for tests and development.

    Points queued with push() are returned one per poll; after that the
    point set with set_point() repeats. A None point yields invalid samples.
    """

    def __init__(
        self,
        screen_width: int,
        screen_height: int,
        noise_px: float = 0.0,
        seed: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        self._screen_width = screen_width
        self._screen_height = screen_height
        self._noise_px = noise_px
        self._rng = np.random.default_rng(seed)
        self._clock = clock

        self._point: Optional[Point] = (screen_width / 2.0, screen_height / 2.0)
        self._script: Deque[Optional[Point]] = deque()
        self._frame_number = 0

        logger.info(f"SyntheticGazeSource initialized: noise={noise_px:.1f}px")

    def start(self) -> bool:
        self._running = True
        return True

    def stop(self):
        self._running = False

    def set_point(self, point: Optional[Point]):
        self._point = point

    def push(self, points: Iterable[Optional[Point]]):
        self._script.extend(points)

    def poll(self) -> GazeSample:
        now = self._clock()
        if not self._running:
            return GazeSample.invalid(now)

        self._frame_number += 1
        point = self._script.popleft() if self._script else self._point
        if point is None:
            return GazeSample.invalid(now, self._frame_number)

        x, y = float(point[0]), float(point[1])
        if self._noise_px > 0:
            dx, dy = self._rng.normal(0.0, self._noise_px, size=2)
            x += float(dx)
            y += float(dy)

        return GazeSample(
            raw=(x, y),
            normalized=(x / self._screen_width, y / self._screen_height),
            valid=True,
            confidence=1.0,
            timestamp=now,
            frame_number=self._frame_number,
        )


def create_gaze_source(config: AppConfig, screen_width: int, screen_height: int) -> GazeSource:
    """
    Build the gaze source selected by ``config.source.kind``.

    Raises:
        ValueError: For an unknown source kind
    """
    kind = config.source.kind
    if kind == "camera":
        return CameraGazeSource(config, screen_width, screen_height)
    if kind == "synthetic":
        return SyntheticGazeSource(
            screen_width,
            screen_height,
            noise_px=config.source.synthetic_noise_px,
            seed=config.source.synthetic_seed,
        )
    if kind == "pointer":
        from petgaze.vision.pointer_source import PointerGazeSource

        return PointerGazeSource(screen_width, screen_height)

    raise ValueError(f"Unknown gaze source: {kind}")
