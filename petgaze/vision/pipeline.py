"""
Per-frame detection pipeline: regions, pupils, raw gaze.

Nothing raised while processing a frame escapes process(); failures come
back as invalid samples and are logged at a throttled rate.
"""

from dataclasses import replace

import cv2

from petgaze.core.config import AppConfig
from petgaze.vision.camera import Frame
from petgaze.vision.gaze_estimator import GazeEstimator, GazeSample
from petgaze.vision.pupil_locator import PupilLocator, PupilStrategy
from petgaze.vision.region_detector import RegionDetector, to_gray
from petgaze.utils.logger import ThrottledLogger, get_logger
from petgaze.utils.timing import Timer

logger = get_logger(__name__)


class DetectionPipeline:
    """Turns one camera frame into one GazeSample."""

    def __init__(
        self,
        config: AppConfig,
        screen_width: int,
        screen_height: int,
        region_detector: RegionDetector = None,
    ):
        """
        Args:
            config: Application configuration
            screen_width: Screen width in pixels
            screen_height: Screen height in pixels
            region_detector: Prebuilt detector (built from config when None)

        Raises:
            DetectorLoadError: If the face model cannot be loaded
        """
        self._config = config
        self._regions = region_detector or RegionDetector(config.detection)
        self._pupils = PupilLocator(config.pupil)
        self._estimator = GazeEstimator(
            screen_width,
            screen_height,
            flip_horizontal=config.gaze.flip_horizontal,
            flip_vertical=config.gaze.flip_vertical,
        )
        self._error_log = ThrottledLogger(logger)
        self._miss_log = ThrottledLogger(logger, interval_sec=10.0)

        self._processed = 0
        self._failures = 0

    @property
    def pupil_strategy(self) -> PupilStrategy:
        return self._pupils.strategy

    def toggle_pupil_strategy(self) -> PupilStrategy:
        return self._pupils.toggle_strategy()

    @property
    def processed_count(self) -> int:
        return self._processed

    @property
    def failure_count(self) -> int:
        return self._failures

    def process(self, frame: Frame) -> GazeSample:
        """
        Run detection on one frame.

        Returns:
            Valid sample when a face and two eye regions were found,
            otherwise an invalid sample carrying the frame's timestamp
        """
        self._processed += 1
        try:
            return self._process(frame)
        except (cv2.error, ValueError, IndexError) as e:
            self._failures += 1
            self._error_log.error(f"Frame {frame.frame_number} processing failed: {e}")
            return GazeSample.invalid(frame.timestamp, frame.frame_number)
        except Exception as e:
            self._failures += 1
            self._error_log.error(f"Unexpected error in detection pipeline: {type(e).__name__}: {e}")
            return GazeSample.invalid(frame.timestamp, frame.frame_number)

    def _process(self, frame: Frame) -> GazeSample:
        with Timer("regions") as region_timer:
            regions = self._regions.detect(frame.image)

        if not regions.face_found:
            self._miss_log.warning("No face detected")
            return GazeSample.invalid(frame.timestamp, frame.frame_number)

        if not regions.eyes_found:
            self._miss_log.warning("Face found but no eyes detected")
            return GazeSample.invalid(frame.timestamp, frame.frame_number)

        gray = to_gray(frame.image)
        with Timer("pupils") as pupil_timer:
            left = self._pupils.locate(gray, regions.left_eye)
            right = self._pupils.locate(gray, regions.right_eye)

        sample = self._estimator.estimate(
            left,
            right,
            frame.width,
            frame.height,
            timestamp=frame.timestamp,
            frame_number=frame.frame_number,
        )

        if sample.valid and regions.used_fallback:
            sample = replace(
                sample,
                confidence=sample.confidence * self._config.detection.fallback_confidence_scale,
                used_fallback=True,
            )

        logger.debug(f"Frame {frame.frame_number}: {region_timer}, {pupil_timer}")
        return sample

    def close(self):
        self._regions.close()
