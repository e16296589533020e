"""
Nine-point calibration protocol.

Drives the user through nine fixation targets, collects stabilized raw
gaze for each, fits the global affine layer of the calibration model and
grades the result.
"""

import math
import numpy as np
from typing import List, Optional, Sequence, Tuple
from dataclasses import dataclass
from enum import Enum
from scipy.spatial.distance import cdist

from petgaze.core.config import CalibrationConfig
from petgaze.core.events import (
    CalibrationCancelled,
    CalibrationCompleted,
    CalibrationStarted,
    EventBus,
    PointRecorded,
    QualityCheckCompleted,
)
from petgaze.core.state import CalibrationState, CalibrationStateMachine
from petgaze.storage.schema import CALIBRATION_POINT_COUNT, CalibrationModel, CalibrationObservation
from petgaze.vision.smoothing import TemporalStabilizer
from petgaze.utils.logger import get_logger

logger = get_logger(__name__)

Point = Tuple[float, float]


@dataclass(frozen=True)
class CalibrationTarget:
    """Single calibration target on screen."""

    index: int  # 0-8, row-major from the top-left
    x: float
    y: float

    @property
    def point(self) -> Point:
        return (self.x, self.y)


def build_targets(screen_width: int, screen_height: int, margin: float) -> List[CalibrationTarget]:
    """
    3x3 grid: columns at margin, center, width - margin; rows likewise.

    Args:
        screen_width: Screen width in pixels
        screen_height: Screen height in pixels
        margin: Distance of the outer targets from the edges

    Returns:
        Nine targets in row-major order
    """
    xs = (margin, screen_width / 2.0, screen_width - margin)
    ys = (margin, screen_height / 2.0, screen_height - margin)
    return [
        CalibrationTarget(index=row * 3 + col, x=float(x), y=float(y))
        for row, y in enumerate(ys)
        for col, x in enumerate(xs)
    ]


def robust_average(points: Sequence[Point], keep_fraction: float = 0.7) -> Point:
    """
    Mean of the samples closest to the rough mean.

    Three samples or fewer: plain mean. Otherwise the ceil(keep_fraction * n)
    samples nearest the plain mean are kept and re-averaged.

    Raises:
        ValueError: If no points are given
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(pts) == 0:
        raise ValueError("Cannot average an empty sample set")

    rough = pts.mean(axis=0)
    if len(pts) <= 3:
        return (float(rough[0]), float(rough[1]))

    distances = cdist(pts, rough[np.newaxis, :]).ravel()
    keep = max(1, int(math.ceil(keep_fraction * len(pts))))
    kept = pts[np.argsort(distances, kind="stable")[:keep]]

    mean = kept.mean(axis=0)
    return (float(mean[0]), float(mean[1]))


def mean_distance(points: Sequence[Point], center: Point) -> float:
    """Mean Euclidean distance of points from center."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(pts) == 0:
        return 0.0
    return float(cdist(pts, np.asarray([center], dtype=np.float64)).mean())


def _fit_axis(observed: np.ndarray, target: np.ndarray, weights: np.ndarray, config: CalibrationConfig) -> Tuple[float, float]:
    """
    Scale and offset for one normalized axis.

    The scale is the weighted average of the per-point ratios
    (target - target centroid) / (observed - observed centroid), each ratio
    weighted by confidence times its squared lever arm, which is the
    weighted least-squares slope.
    """
    mean_g = float(np.average(observed, weights=weights))
    mean_t = float(np.average(target, weights=weights))
    dg = observed - mean_g
    dt = target - mean_t

    denom = float(np.sum(weights * dg * dg))
    if denom < 1e-12:
        scale = 1.0
    else:
        scale = float(np.sum(weights * dg * dt)) / denom
        if not np.isfinite(scale):
            scale = 1.0

    scale = float(np.clip(scale, config.scale_min, config.scale_max))
    offset = mean_t - scale * mean_g
    return scale, offset


def fit_model(
    observations: List[CalibrationObservation],
    screen_width: int,
    screen_height: int,
    config: CalibrationConfig,
) -> CalibrationModel:
    """
    Fit the global affine layer.

    Raises:
        ValueError: If the observation set is incomplete
    """
    if len(observations) != CALIBRATION_POINT_COUNT:
        raise ValueError(
            f"Need {CALIBRATION_POINT_COUNT} observations to fit, got {len(observations)}"
        )

    size = np.array([screen_width, screen_height], dtype=np.float64)
    observed = np.array([o.observed for o in observations], dtype=np.float64) / size
    target = np.array([o.target for o in observations], dtype=np.float64) / size

    if config.use_confidence_weights:
        weights = np.array([max(o.confidence, 0.0) for o in observations], dtype=np.float64)
        if weights.sum() <= 0:
            weights = np.ones(len(observations))
    else:
        weights = np.ones(len(observations))

    scale_x, offset_x = _fit_axis(observed[:, 0], target[:, 0], weights, config)
    scale_y, offset_y = _fit_axis(observed[:, 1], target[:, 1], weights, config)

    logger.info(
        f"Calibration fit: scale=({scale_x:.3f}, {scale_y:.3f}), "
        f"offset=({offset_x:.3f}, {offset_y:.3f})"
    )

    return CalibrationModel(
        screen_width=screen_width,
        screen_height=screen_height,
        offset_x=offset_x,
        offset_y=offset_y,
        scale_x=scale_x,
        scale_y=scale_y,
        observations=list(observations),
    )


class QualityGrade(Enum):
    EXCELLENT = "excellent"
    ACCEPTABLE = "acceptable"
    POOR = "poor"


@dataclass(frozen=True)
class QualityReport:
    """Advisory grading of a fitted model (affine layer only)."""

    mean_error: float
    max_error: float
    accuracy: float  # Share of points under the good-point error
    grade: QualityGrade
    point_errors: Tuple[float, ...] = ()
    low_confidence_points: Tuple[int, ...] = ()

    @property
    def recommend_recalibration(self) -> bool:
        return self.grade == QualityGrade.POOR


def evaluate_quality(model: CalibrationModel, config: CalibrationConfig) -> QualityReport:
    """
    Grade a model by the residuals of its affine layer at the nine targets.

    The local correction layer is excluded; it reproduces the targets
    almost exactly.
    """
    errors = []
    for obs in model.observations:
        mx, my = model.apply_affine(obs.observed)
        errors.append(float(math.hypot(mx - obs.target_x, my - obs.target_y)))

    if not errors:
        return QualityReport(math.inf, math.inf, 0.0, QualityGrade.POOR)

    mean_error = float(np.mean(errors))
    max_error = float(np.max(errors))
    accuracy = sum(1 for e in errors if e < config.good_point_error) / len(errors)

    if mean_error < config.excellent_error and accuracy > config.excellent_accuracy:
        grade = QualityGrade.EXCELLENT
    elif mean_error < config.acceptable_error and accuracy > config.acceptable_accuracy:
        grade = QualityGrade.ACCEPTABLE
    else:
        grade = QualityGrade.POOR

    return QualityReport(
        mean_error=mean_error,
        max_error=max_error,
        accuracy=accuracy,
        grade=grade,
        point_errors=tuple(errors),
        low_confidence_points=tuple(o.index for o in model.observations if o.low_confidence),
    )


class CalibrationEngine:
    """
    Calibration protocol driven by the main loop.

    Process per target:
    1. WAITING_FOR_STABILITY: let the eyes settle, then wait for stable gaze
       (or a manual record, or the stability timeout)
    2. COLLECTING_SAMPLES: sample the stabilized gaze at a fixed interval,
       rejecting samples inconsistent with those already accepted
    3. POINT_COMPLETE: short pause, then the next target
    After the ninth target the model is fitted (FITTING) and the engine
    settles in CALIBRATED.

    All timing comes from the ``now`` arguments, so the protocol runs the
    same on real and synthetic clocks.
    """

    def __init__(
        self,
        config: CalibrationConfig,
        screen_width: int,
        screen_height: int,
        stabilizer: TemporalStabilizer,
        events: Optional[EventBus] = None,
    ):
        """
        Initialize calibration engine.

        Args:
            config: Calibration configuration
            screen_width: Screen width in pixels
            screen_height: Screen height in pixels
            stabilizer: Stabilizer fed by the main loop with raw gaze
            events: Bus for protocol events
        """
        self._config = config
        self._screen_width = screen_width
        self._screen_height = screen_height
        self._stabilizer = stabilizer
        self._events = events or EventBus()

        self._machine = CalibrationStateMachine()
        self._targets = build_targets(screen_width, screen_height, config.margin)
        self._index = 0
        self._observations: List[CalibrationObservation] = []

        self._model: Optional[CalibrationModel] = None
        self._last_report: Optional[QualityReport] = None

        # Per-target bookkeeping
        self._point_start = 0.0
        self._settled = False
        self._samples: List[Point] = []
        self._next_sample_time = 0.0
        self._pause_until = 0.0
        self._last_point: Optional[Point] = None
        self._gaze_valid = False
        self._record_requested = False
        self._rejected = 0

        self._sample_interval = config.collection_window / config.samples_per_point
        self._consistency_radius = config.consistency_factor * stabilizer.stability_threshold

        logger.info(f"CalibrationEngine initialized for {screen_width}x{screen_height}")

    # ------------------------------------------------------------------
    # Control

    def start(self, now: float):
        """Start (or restart) the protocol from the first target."""
        if self._machine.is_active:
            logger.warning("Calibration restarted while in progress")
            self._transition(CalibrationState.CANCELLED)
            self._transition(CalibrationState.IDLE)

        self._observations = []
        self._index = 0
        self._last_point = None

        self._events.publish(CalibrationStarted(target_count=len(self._targets), timestamp=now))
        logger.info(f"Calibration started: {len(self._targets)} targets")

        self._begin_point(now)

    def record_point(self, now: float) -> bool:
        """
        Manual trigger: skip the stability wait for the current target.

        A record during the settle time is held until the target has
        settled, so no gaze from the previous target is sampled.

        Returns:
            True if the record was accepted
        """
        if self._machine.current_state != CalibrationState.WAITING_FOR_STABILITY:
            return False
        if not self._gaze_valid:
            logger.warning(f"Target {self._index}: manual record ignored, no valid gaze")
            return False

        logger.info(f"Target {self._index}: manual record")
        if self._settled:
            self._begin_collecting(now)
        else:
            self._record_requested = True
        return True

    def cancel(self, now: float = 0.0) -> bool:
        """
        Abort a run in progress. The previously fitted model is kept.

        Returns:
            True if a run was cancelled
        """
        if not self._machine.is_active:
            return False

        completed = len(self._observations)
        self._transition(CalibrationState.CANCELLED)
        self._observations = []
        self._samples = []
        self._transition(CalibrationState.IDLE)

        self._events.publish(CalibrationCancelled(completed_points=completed, timestamp=now))
        logger.info(f"Calibration cancelled after {completed} points")
        return True

    def reset(self, now: float = 0.0):
        """Drop the model and any run in progress."""
        if self._machine.is_active:
            completed = len(self._observations)
            self._events.publish(CalibrationCancelled(completed_points=completed, timestamp=now))
            logger.info(f"Calibration run interrupted by reset after {completed} points")

        self._machine.reset()
        self._record_requested = False
        self._model = None
        self._last_report = None
        self._observations = []
        self._samples = []
        self._index = 0
        logger.info("Calibration reset")

    def install(self, model: CalibrationModel):
        """
        Use a previously saved model.

        Raises:
            ValueError: If the model is invalid
        """
        model.validate()
        self._model = model
        self._last_report = evaluate_quality(model, self._config)
        if self._machine.current_state == CalibrationState.IDLE:
            self._transition(CalibrationState.CALIBRATED)
        logger.info(f"Calibration model installed ({self._last_report.grade.value})")

    # ------------------------------------------------------------------
    # Main loop

    def update(self, now: float, gaze_valid: bool):
        """
        Advance the protocol. Call once per main-loop tick, after the
        stabilizer has been fed.

        Args:
            now: Current time in seconds
            gaze_valid: Whether the latest gaze sample was valid
        """
        self._gaze_valid = gaze_valid
        if gaze_valid:
            point = self._stabilizer.stabilized_point()
            if point is not None:
                self._last_point = point

        state = self._machine.current_state
        if state == CalibrationState.WAITING_FOR_STABILITY:
            self._update_waiting(now, gaze_valid)
        elif state == CalibrationState.COLLECTING_SAMPLES:
            self._update_collecting(now, gaze_valid)
        elif state == CalibrationState.POINT_COMPLETE:
            self._update_point_complete(now)

    def _update_waiting(self, now: float, gaze_valid: bool):
        elapsed = now - self._point_start

        if not self._settled:
            if elapsed < self._config.target_settle_time:
                return
            # Samples from the previous target would read as instability
            self._stabilizer.clear_history()
            self._settled = True
            if self._record_requested:
                self._begin_collecting(now)
                return

        if gaze_valid and self._stabilizer.is_stable(now):
            logger.debug(f"Target {self._index}: gaze stable after {elapsed:.2f}s")
            self._begin_collecting(now)
        elif elapsed >= self._config.stability_timeout:
            logger.warning(
                f"Target {self._index}: gaze not stable after {elapsed:.1f}s, collecting anyway"
            )
            self._begin_collecting(now)

    def _update_collecting(self, now: float, gaze_valid: bool):
        if gaze_valid and now >= self._next_sample_time:
            point = self._stabilizer.stabilized_point()
            if point is not None:
                self._add_sample(point)
            self._next_sample_time = now + self._sample_interval

        if len(self._samples) >= self._config.samples_per_point:
            self._complete_point(now, degraded=False)
            return

        if now - self._point_start >= self._config.point_timeout:
            if len(self._samples) >= self._config.min_samples:
                logger.warning(
                    f"Target {self._index}: timed out with {len(self._samples)} samples, using them"
                )
                self._complete_point(now, degraded=False)
            else:
                self._complete_point(now, degraded=True)

    def _update_point_complete(self, now: float):
        if now < self._pause_until:
            return

        if self._index + 1 < len(self._targets):
            self._index += 1
            self._begin_point(now)
        else:
            self._fit(now)

    # ------------------------------------------------------------------
    # Protocol steps

    def _transition(self, state: CalibrationState) -> bool:
        if not self._machine.transition_to(state):
            logger.warning(
                f"Invalid calibration transition: {self._machine.current_state.name} -> {state.name}"
            )
            return False
        return True

    def _begin_point(self, now: float):
        self._transition(CalibrationState.WAITING_FOR_STABILITY)
        self._point_start = now
        self._settled = False
        self._record_requested = False
        self._samples = []
        self._rejected = 0
        logger.debug(f"Target {self._index} shown at {self._targets[self._index].point}")

    def _begin_collecting(self, now: float):
        self._transition(CalibrationState.COLLECTING_SAMPLES)
        self._record_requested = False
        self._samples = []
        self._next_sample_time = now

    def _add_sample(self, point: Point) -> bool:
        if self._samples:
            mean = np.mean(np.asarray(self._samples, dtype=np.float64), axis=0)
            if math.hypot(point[0] - mean[0], point[1] - mean[1]) > self._consistency_radius:
                self._rejected += 1
                return False
        self._samples.append((float(point[0]), float(point[1])))
        return True

    def _complete_point(self, now: float, degraded: bool):
        target = self._targets[self._index]

        if degraded:
            observed = self._last_point if self._last_point is not None else target.point
            observation = CalibrationObservation(
                index=target.index,
                target_x=target.x,
                target_y=target.y,
                observed_x=float(observed[0]),
                observed_y=float(observed[1]),
                confidence=self._config.degraded_confidence,
                low_confidence=True,
                samples=list(self._samples),
            )
            logger.warning(
                f"Target {target.index}: only {len(self._samples)} samples before timeout, "
                f"recorded as low confidence"
            )
        else:
            observed = robust_average(self._samples, self._config.keep_fraction)
            variance = mean_distance(self._samples, observed)
            confidence = 1.0 / (1.0 + variance / self._stabilizer.stability_threshold)
            high_variance = variance > self._config.high_variance_px
            observation = CalibrationObservation(
                index=target.index,
                target_x=target.x,
                target_y=target.y,
                observed_x=observed[0],
                observed_y=observed[1],
                variance=variance,
                confidence=confidence,
                low_confidence=high_variance,
                samples=list(self._samples),
            )
            if high_variance:
                logger.warning(f"Target {target.index}: high sample variance ({variance:.1f}px)")

        self._observations.append(observation)
        self._transition(CalibrationState.POINT_COMPLETE)
        self._pause_until = now + self._config.point_pause

        logger.info(
            f"Target {target.index} completed: {observation.sample_count} samples, "
            f"{self._rejected} rejected, error {observation.raw_error:.1f}px"
        )
        self._events.publish(
            PointRecorded(
                index=target.index,
                observed_point=observation.observed,
                target_point=target.point,
                residual=observation.raw_error,
                low_confidence=observation.low_confidence,
                timestamp=now,
            )
        )

    def _fit(self, now: float):
        self._transition(CalibrationState.FITTING)
        try:
            model = fit_model(self._observations, self._screen_width, self._screen_height, self._config)
            model.validate()
        except ValueError as e:
            logger.error(f"Calibration fit failed: {e}")
            self._transition(CalibrationState.IDLE)
            return

        self._model = model
        self._last_report = evaluate_quality(model, self._config)
        self._transition(CalibrationState.CALIBRATED)

        report = self._last_report
        logger.info(
            f"Calibration complete: {report.grade.value}, mean error {report.mean_error:.1f}px, "
            f"accuracy {report.accuracy:.0%}"
        )
        if report.recommend_recalibration:
            logger.warning("Calibration quality is poor, recalibration recommended")

        self._events.publish(CalibrationCompleted(report=report, timestamp=now))

    # ------------------------------------------------------------------
    # Accessors

    @property
    def state(self) -> CalibrationState:
        return self._machine.current_state

    @property
    def is_active(self) -> bool:
        return self._machine.is_active

    @property
    def is_calibrated(self) -> bool:
        return self._model is not None

    @property
    def current_index(self) -> int:
        return self._index

    @property
    def current_target(self) -> Optional[CalibrationTarget]:
        """Target on screen while a run is in progress."""
        if not self._machine.is_active or self.state == CalibrationState.FITTING:
            return None
        return self._targets[self._index]

    @property
    def targets(self) -> List[CalibrationTarget]:
        return list(self._targets)

    @property
    def model(self) -> Optional[CalibrationModel]:
        return self._model

    @property
    def observations(self) -> List[CalibrationObservation]:
        return list(self._observations)

    @property
    def last_report(self) -> Optional[QualityReport]:
        return self._last_report

    @property
    def progress(self) -> Tuple[int, int]:
        """(completed targets, total targets)"""
        return (len(self._observations), len(self._targets))


class CheckGrade(Enum):
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


@dataclass(frozen=True)
class QualityCheckResult:
    """Outcome of a centre-fixation check."""

    center_error: float  # Distance of the mean mapped gaze from the center
    jitter: float  # Mean distance of mapped gaze from its own mean
    sample_count: int
    grade: CheckGrade


# (max center error, max jitter) per grade, checked in order
_CHECK_THRESHOLDS = (
    (CheckGrade.GOOD, 100.0, 30.0),
    (CheckGrade.FAIR, 200.0, 60.0),
)


class QualityCheck:
    """
    Post-calibration check: the user looks at the screen center for a few
    seconds while mapped gaze is collected.
    """

    def __init__(
        self,
        screen_width: int,
        screen_height: int,
        duration: float = 5.0,
        events: Optional[EventBus] = None,
    ):
        self.screen_width = screen_width
        self.screen_height = screen_height
        self.duration = duration
        self.events = events
        self._start_time: Optional[float] = None
        self._points: List[Point] = []

    @property
    def center(self) -> Point:
        return (self.screen_width / 2.0, self.screen_height / 2.0)

    @property
    def is_running(self) -> bool:
        return self._start_time is not None

    def start(self, now: float):
        self._start_time = now
        self._points = []
        logger.info(f"Quality check started: look at the screen center for {self.duration:.0f}s")

    def cancel(self):
        self._start_time = None
        self._points = []

    def update(self, point: Optional[Point], now: float) -> Optional[QualityCheckResult]:
        """
        Add one mapped gaze point (None when gaze is invalid).

        Returns:
            The result once the duration has elapsed, None before that
        """
        if self._start_time is None:
            return None

        if point is not None:
            self._points.append((float(point[0]), float(point[1])))

        if now - self._start_time < self.duration:
            return None

        result = self._evaluate()
        self._start_time = None
        logger.info(
            f"Quality check: {result.grade.value}, center error {result.center_error:.1f}px, "
            f"jitter {result.jitter:.1f}px"
        )
        if self.events is not None:
            self.events.publish(QualityCheckCompleted(result=result, timestamp=now))
        return result

    def _evaluate(self) -> QualityCheckResult:
        if not self._points:
            return QualityCheckResult(math.inf, math.inf, 0, CheckGrade.POOR)

        pts = np.asarray(self._points, dtype=np.float64)
        mean = pts.mean(axis=0)
        cx, cy = self.center
        center_error = float(math.hypot(mean[0] - cx, mean[1] - cy))
        jitter = mean_distance(self._points, (float(mean[0]), float(mean[1])))

        grade = CheckGrade.POOR
        for candidate, max_error, max_jitter in _CHECK_THRESHOLDS:
            if center_error < max_error and jitter < max_jitter:
                grade = candidate
                break

        return QualityCheckResult(center_error, jitter, len(self._points), grade)
