"""
Gaze engine orchestrating the tracking pipeline.

One explicit context object owned by the host application; nothing in
the engine is global.
"""

import time
from typing import Callable, Optional, Tuple

from petgaze.core.config import AppConfig
from petgaze.core.events import CalibrationCompleted, EventBus
from petgaze.core.state import CalibrationState, ErrorInfo, GazeSnapshot, GazeState
from petgaze.storage.calibration_store import CalibrationStore, CalibrationStoreError
from petgaze.vision.calibrator import CalibrationEngine, QualityCheck
from petgaze.vision.fixation import FixationDetector
from petgaze.vision.mapper import CoordinateMapper
from petgaze.vision.smoothing import TemporalStabilizer
from petgaze.vision.sources import GazeSource, create_gaze_source
from petgaze.utils.timing import FPSCounter
from petgaze.utils.logger import get_logger

logger = get_logger(__name__)


class GazeEngine:
    """
    Central engine for PetGaze.

    Per tick:
    gaze source → temporal stabilizer → calibration protocol → coordinate
    mapping → fixation detection → gaze state

    The host calls tick() from its main loop and reacts to events; control
    methods may be called between ticks from the same thread.
    """

    def __init__(
        self,
        config: AppConfig,
        screen_width: int,
        screen_height: int,
        source: Optional[GazeSource] = None,
        store: Optional[CalibrationStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize engine.

        Args:
            config: Application configuration
            screen_width: Screen width in pixels
            screen_height: Screen height in pixels
            source: Gaze source (built from config.source when None)
            store: Calibration profile store (built from config.storage when None)
            clock: Time source used when tick() is called without a time
        """
        self._config = config
        self._screen_width = screen_width
        self._screen_height = screen_height
        self._source = source
        self._store = store
        self._clock = clock

        self._events = EventBus()
        self._gaze_state = GazeState()
        self._fps_counter = FPSCounter()
        self._error: Optional[ErrorInfo] = None

        # Components (initialized lazily)
        self._stabilizer: Optional[TemporalStabilizer] = None
        self._calibration: Optional[CalibrationEngine] = None
        self._mapper: Optional[CoordinateMapper] = None
        self._fixation: Optional[FixationDetector] = None
        self._quality_check: Optional[QualityCheck] = None

        self._initialized = False
        self._last_frame_number = -1

        logger.info(f"GazeEngine initialized for {screen_width}x{screen_height}")

    def initialize(self) -> bool:
        """
        Build all components and load the saved calibration profile.

        Returns:
            True if successful
        """
        if self._initialized:
            return True

        try:
            self._stabilizer = TemporalStabilizer(self._config.stabilizer)
            self._calibration = CalibrationEngine(
                self._config.calibration,
                self._screen_width,
                self._screen_height,
                self._stabilizer,
                self._events,
            )
            self._mapper = CoordinateMapper(self._config.mapping, self._screen_width, self._screen_height)
            if self._config.fixation.enabled:
                self._fixation = FixationDetector(self._config.fixation)
            self._quality_check = QualityCheck(
                self._screen_width,
                self._screen_height,
                duration=self._config.calibration.quality_check_duration,
                events=self._events,
            )

            if self._source is None:
                self._source = create_gaze_source(self._config, self._screen_width, self._screen_height)
            if self._store is None:
                self._store = CalibrationStore(self._config.storage)

        except (ValueError, ImportError, CalibrationStoreError) as e:
            error_msg = f"Initialization failed: {e}"
            logger.error(error_msg)
            self._error = ErrorInfo(
                error_type="InitializationError",
                message=error_msg,
                recoverable=False,
            )
            return False

        self._events.subscribe(self._on_calibration_completed, CalibrationCompleted)
        self._load_calibration()

        self._initialized = True
        logger.info("All components initialized successfully")
        return True

    def start(self) -> bool:
        """
        Start the gaze source.

        Returns:
            True if the source is running
        """
        if not self._initialized and not self.initialize():
            return False

        if self._source.start():
            self._error = None
            logger.info("Gaze engine started")
            return True

        self._error = ErrorInfo(
            error_type="SourceError",
            message=self._source.last_error or "Gaze source failed to start",
            recoverable=True,
        )
        logger.error(f"Gaze engine failed to start: {self._error.message}")
        return False

    def restart(self) -> bool:
        """Stop and start the gaze source again (e.g. after a camera failure)."""
        if self._source is not None:
            self._source.stop()
        if self._stabilizer is not None:
            self._stabilizer.reset()
        self._last_frame_number = -1
        return self.start()

    def tick(self, now: Optional[float] = None) -> GazeSnapshot:
        """
        Run one main-loop iteration.

        Args:
            now: Current time in seconds (engine clock when None)

        Returns:
            Snapshot of the gaze state after this tick
        """
        now = self._clock() if now is None else now

        if not self._initialized or self._source is None:
            return self._gaze_state.invalidate(now)

        self._fps_counter.tick(now)

        sample = self._source.poll()

        # Repeated samples (frames skipped by the source) are not fed twice
        if sample.valid and sample.frame_number != self._last_frame_number:
            self._last_frame_number = sample.frame_number
            self._stabilizer.add(sample.raw, now)

        if self._calibration.is_active:
            self._calibration.update(now, sample.valid)

        if not sample.valid or self._stabilizer.current is None:
            if self._fixation is not None:
                self._fixation.update(None, now)
            if self._quality_check.is_running:
                self._quality_check.update(None, now)
            return self._gaze_state.invalidate(now)

        stabilized = self._stabilizer.current
        model = self._calibration.model
        screen_point = self._mapper.map(stabilized, model)

        if self._quality_check.is_running:
            self._quality_check.update(screen_point, now)

        if self._fixation is not None and not self._calibration.is_active:
            fixation = self._fixation.update(screen_point, now)
            if fixation is not None:
                self._events.publish(fixation)

        return self._gaze_state.update(
            raw_point=sample.raw,
            stabilized_point=stabilized,
            screen_point=screen_point,
            is_valid=True,
            is_calibrated=model is not None,
            timestamp=now,
        )

    # ------------------------------------------------------------------
    # Control signals

    def start_calibration(self) -> bool:
        if not self._initialized or not self._source.is_running:
            logger.warning("Cannot start calibration: gaze source not running")
            return False

        now = self._clock()
        self._quality_check.cancel()
        if self._fixation is not None:
            self._fixation.reset()
        self._calibration.start(now)
        return True

    def record_calibration_point(self) -> bool:
        if not self._initialized:
            return False
        return self._calibration.record_point(self._clock())

    def cancel_calibration(self) -> bool:
        if not self._initialized:
            return False
        return self._calibration.cancel(self._clock())

    def reset_calibration(self) -> bool:
        """Drop the calibration model and the stored profile."""
        if not self._initialized:
            return False

        self._calibration.reset(self._clock())
        try:
            self._store.delete()
        except CalibrationStoreError as e:
            logger.error(f"Failed to delete calibration: {e}")
            return False
        return True

    def toggle_detection_mode(self) -> Optional[str]:
        """
        Switch between basic and precise pupil detection.

        Returns:
            New mode name, or None if the source has no detection modes
        """
        if self._source is None:
            return None
        mode = self._source.toggle_detection_mode()
        if mode is not None:
            logger.info(f"Detection mode: {mode}")
        return mode

    def start_quality_check(self) -> bool:
        if not self._initialized or self._calibration.model is None:
            logger.warning("Quality check needs a calibration")
            return False
        if self._calibration.is_active:
            return False
        self._quality_check.start(self._clock())
        return True

    # ------------------------------------------------------------------
    # Calibration persistence

    def _on_calibration_completed(self, event: CalibrationCompleted):
        model = self._calibration.model
        if model is None:
            return

        try:
            self._store.save(model)
            logger.info("Calibration completed and saved successfully")
        except CalibrationStoreError as e:
            self._error = ErrorInfo(
                error_type="StorageError",
                message=f"Failed to save calibration: {e}",
                recoverable=True,
            )

    def _load_calibration(self) -> bool:
        try:
            model = self._store.load()

            if model is None:
                logger.info("No saved calibration found")
                return False

            if not model.is_compatible_with_screen(self._screen_width, self._screen_height):
                logger.warning(
                    f"Calibration screen size mismatch: "
                    f"calibrated for {model.screen_width}x{model.screen_height}, "
                    f"current {self._screen_width}x{self._screen_height}"
                )
                return False

            self._calibration.install(model)
            logger.info("Calibration loaded successfully")
            return True

        except (CalibrationStoreError, ValueError) as e:
            logger.error(f"Failed to load calibration: {e}")
            return False

    def shutdown(self):
        """Clean shutdown of all components."""
        logger.info("Shutting down gaze engine")

        try:
            if self._calibration is not None and self._calibration.is_active:
                self._calibration.cancel(self._clock())
        finally:
            if self._source is not None:
                self._source.stop()
            self._initialized = False

    # Properties
    @property
    def state(self) -> GazeState:
        return self._gaze_state

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def error(self) -> Optional[ErrorInfo]:
        return self._error

    @property
    def fps(self) -> float:
        """Main-loop ticks per second."""
        return self._fps_counter.fps

    @property
    def calibration(self) -> Optional[CalibrationEngine]:
        """Calibration protocol (for hosts drawing targets)."""
        return self._calibration

    @property
    def calibration_state(self) -> CalibrationState:
        if self._calibration is None:
            return CalibrationState.IDLE
        return self._calibration.state

    @property
    def is_calibrated(self) -> bool:
        return self._calibration is not None and self._calibration.is_calibrated

    @property
    def stabilizer(self) -> Optional[TemporalStabilizer]:
        return self._stabilizer

    @property
    def source(self) -> Optional[GazeSource]:
        return self._source

    @property
    def fixation(self) -> Optional[FixationDetector]:
        return self._fixation

    @property
    def quality_check(self) -> Optional[QualityCheck]:
        return self._quality_check

    @property
    def screen_size(self) -> Tuple[int, int]:
        return (self._screen_width, self._screen_height)
