"""
Tests for the nine-point calibration protocol.

Time is simulated: every test drives the engine with explicit timestamps
at 30 ticks per second.
"""

import math

import pytest

from petgaze.core.config import CalibrationConfig, MappingConfig, StabilizerConfig
from petgaze.core.events import (
    CalibrationCancelled,
    CalibrationCompleted,
    CalibrationStarted,
    EventBus,
    PointRecorded,
)
from petgaze.core.state import CalibrationState
from petgaze.storage.schema import CalibrationModel, CalibrationObservation
from petgaze.vision.calibrator import (
    CalibrationEngine,
    CheckGrade,
    QualityCheck,
    QualityGrade,
    build_targets,
    evaluate_quality,
    robust_average,
)
from petgaze.vision.mapper import CoordinateMapper
from petgaze.vision.smoothing import TemporalStabilizer

SCREEN_W, SCREEN_H = 1920, 1080
DT = 1.0 / 30.0


def compressed(point):
    """Raw gaze an uncalibrated tracker reports while looking at `point`."""
    return (
        SCREEN_W / 2 + 0.6 * (point[0] - SCREEN_W / 2) + 40,
        SCREEN_H / 2 + 0.6 * (point[1] - SCREEN_H / 2) - 25,
    )


def look_at_target(target, now):
    if target is None:
        return compressed((SCREEN_W / 2, SCREEN_H / 2))
    return compressed(target.point)


def restless(target, now):
    """Gaze flicking between two spots 600px apart; never stable."""
    base = look_at_target(target, now)
    offset = 300.0 if round(now / DT) % 2 else -300.0
    return (base[0] + offset, base[1])


def no_gaze(target, now):
    return None


class Rig:
    """Calibration engine wired to a stabilizer and a scripted gaze."""

    def __init__(self, gaze_fn, config=None):
        self.config = config or CalibrationConfig()
        self.stabilizer = TemporalStabilizer(StabilizerConfig())
        self.events = EventBus()
        self.received = []
        self.events.subscribe(self.received.append)
        self.engine = CalibrationEngine(self.config, SCREEN_W, SCREEN_H, self.stabilizer, self.events)
        self.gaze_fn = gaze_fn
        self.now = 0.0

    def step(self):
        self.now += DT
        point = self.gaze_fn(self.engine.current_target, self.now)
        if point is not None:
            self.stabilizer.add(point, self.now)
        self.engine.update(self.now, point is not None)

    def run_until(self, predicate, limit=400.0):
        while not predicate() and self.now < limit:
            self.step()
        return predicate()

    def run_for(self, seconds):
        end = self.now + seconds
        while self.now < end:
            self.step()

    def of_type(self, event_type):
        return [e for e in self.received if isinstance(e, event_type)]


class TestTargets:
    """Tests for the calibration target layout."""

    def test_nine_point_grid(self):
        targets = build_targets(1920, 1080, 150)

        assert [t.point for t in targets] == [
            (150.0, 150.0), (960.0, 150.0), (1770.0, 150.0),
            (150.0, 540.0), (960.0, 540.0), (1770.0, 540.0),
            (150.0, 930.0), (960.0, 930.0), (1770.0, 930.0),
        ]
        assert [t.index for t in targets] == list(range(9))


class TestRobustAverage:
    """Tests for robust_average."""

    def test_small_sets_use_plain_mean(self):
        assert robust_average([(0.0, 0.0), (30.0, 0.0), (0.0, 30.0)]) == pytest.approx((10.0, 10.0))

    def test_outliers_are_dropped(self):
        inliers = [(500.0 + i % 3, 500.0 - i % 2) for i in range(7)]
        outliers = [(900.0, 500.0)] * 3

        x, y = robust_average(inliers + outliers, keep_fraction=0.7)

        assert x == pytest.approx(sum(p[0] for p in inliers) / 7)
        assert y == pytest.approx(sum(p[1] for p in inliers) / 7)

    def test_never_further_than_plain_mean(self):
        """The robust estimate is at least as close to the inliers as the plain mean."""
        points = [(100.0 + i, 100.0) for i in range(8)] + [(400.0, 380.0), (20.0, 600.0)]
        inlier_mean = (103.5, 100.0)

        plain = (sum(p[0] for p in points) / 10, sum(p[1] for p in points) / 10)
        robust = robust_average(points)

        assert math.dist(robust, inlier_mean) <= math.dist(plain, inlier_mean)

    def test_empty_raises(self):
        with pytest.raises(ValueError):
            robust_average([])


class TestCalibrationProtocol:
    """End-to-end runs of the protocol."""

    def test_full_calibration(self):
        rig = Rig(look_at_target)
        rig.engine.start(rig.now)

        assert rig.engine.state == CalibrationState.WAITING_FOR_STABILITY
        assert rig.run_until(lambda: rig.engine.state == CalibrationState.CALIBRATED)

        recorded = rig.of_type(PointRecorded)
        assert [e.index for e in recorded] == list(range(9))
        assert len(rig.of_type(CalibrationStarted)) == 1
        assert len(rig.of_type(CalibrationCompleted)) == 1

        for event, target in zip(recorded, build_targets(SCREEN_W, SCREEN_H, 150)):
            assert event.target_point == target.point
            expected = compressed(target.point)
            assert event.observed_point[0] == pytest.approx(expected[0], abs=3.0)
            assert event.observed_point[1] == pytest.approx(expected[1], abs=3.0)
            assert not event.low_confidence

        model = rig.engine.model
        assert model.validate() is True
        assert model.scale_x == pytest.approx(1 / 0.6, rel=0.01)
        assert model.scale_y == pytest.approx(1 / 0.6, rel=0.01)
        assert rig.engine.last_report.grade == QualityGrade.EXCELLENT
        assert rig.engine.progress == (9, 9)

    def test_observations_hold_accepted_samples(self):
        rig = Rig(look_at_target)
        rig.engine.start(rig.now)
        rig.run_until(lambda: rig.engine.state == CalibrationState.CALIBRATED)

        for obs in rig.engine.model.observations:
            assert obs.sample_count == rig.config.samples_per_point
            assert obs.confidence > 0.9

    def test_sample_spacing(self):
        """Samples are taken every collection_window / samples_per_point seconds."""
        rig = Rig(look_at_target)
        rig.engine.start(rig.now)

        rig.run_until(lambda: rig.engine.state == CalibrationState.COLLECTING_SAMPLES)
        start = rig.now
        rig.run_until(lambda: rig.engine.state == CalibrationState.POINT_COMPLETE)

        # First sample on the next tick, then nine intervals of about 0.2s
        assert 1.8 <= rig.now - start <= 2.2

    def test_waits_for_settle_time(self):
        rig = Rig(look_at_target)
        rig.engine.start(rig.now)

        rig.run_for(0.45)

        assert rig.engine.state == CalibrationState.WAITING_FOR_STABILITY

    def test_manual_record_skips_stability(self):
        rig = Rig(restless)
        rig.engine.start(rig.now)
        rig.run_for(1.0)
        assert rig.engine.state == CalibrationState.WAITING_FOR_STABILITY

        assert rig.engine.record_point(rig.now) is True
        assert rig.engine.state == CalibrationState.COLLECTING_SAMPLES

    def test_manual_record_at_every_target(self):
        """Recording as soon as each target appears still yields a clean model."""
        rig = Rig(look_at_target)
        rig.engine.start(rig.now)
        durations = []

        for index in range(9):
            assert rig.run_until(
                lambda: rig.engine.state == CalibrationState.WAITING_FOR_STABILITY
                and rig.engine.current_index == index
            )
            shown = rig.now
            rig.step()
            assert rig.engine.record_point(rig.now) is True
            assert rig.run_until(lambda: rig.engine.progress[0] == index + 1)
            durations.append(rig.now - shown)

        assert rig.run_until(lambda: rig.engine.state == CalibrationState.CALIBRATED)
        assert rig.engine.is_calibrated
        assert all(d < 5.0 for d in durations), durations

        observations = rig.engine.model.observations
        assert len(observations) == 9
        for obs in observations:
            assert not obs.low_confidence
            assert obs.sample_count == rig.config.samples_per_point

        mapper = CoordinateMapper(MappingConfig(), SCREEN_W, SCREEN_H)
        for target in build_targets(SCREEN_W, SCREEN_H, 150):
            x, y = mapper.map(compressed(target.point), rig.engine.model)
            assert x == pytest.approx(target.x, abs=5.0)
            assert y == pytest.approx(target.y, abs=5.0)

    def test_manual_record_waits_for_settle_time(self):
        rig = Rig(look_at_target)
        rig.engine.start(rig.now)
        rig.step()

        assert rig.engine.record_point(rig.now) is True
        assert rig.engine.state == CalibrationState.WAITING_FOR_STABILITY

        # Past the settle time but before the gaze could count as stable
        rig.run_for(0.6)
        assert rig.engine.state == CalibrationState.COLLECTING_SAMPLES

    def test_manual_record_needs_valid_gaze(self):
        rig = Rig(no_gaze)
        rig.engine.start(rig.now)
        rig.run_for(1.0)

        assert rig.engine.record_point(rig.now) is False
        assert rig.engine.state == CalibrationState.WAITING_FOR_STABILITY

    def test_record_point_outside_waiting_is_ignored(self):
        rig = Rig(look_at_target)

        assert rig.engine.record_point(rig.now) is False
        assert rig.engine.state == CalibrationState.IDLE

    def test_stability_timeout_advances(self):
        rig = Rig(restless)
        rig.engine.start(rig.now)

        rig.run_for(9.5)
        assert rig.engine.state == CalibrationState.WAITING_FOR_STABILITY

        rig.run_for(0.6)
        assert rig.engine.state == CalibrationState.COLLECTING_SAMPLES

    def test_lost_gaze_still_yields_nine_observations(self):
        """Every point times out; the protocol degrades instead of failing."""
        rig = Rig(no_gaze)
        rig.engine.start(rig.now)

        assert rig.run_until(lambda: rig.engine.state == CalibrationState.CALIBRATED)

        observations = rig.engine.model.observations
        assert len(observations) == 9
        assert all(o.low_confidence for o in observations)
        assert all(o.confidence == pytest.approx(rig.config.degraded_confidence) for o in observations)
        # Without any gaze the observed point falls back to the target itself
        assert all(o.observed == o.target for o in observations)
        assert rig.engine.last_report.low_confidence_points == tuple(range(9))

    def test_point_timeout_measured_from_point_start(self):
        rig = Rig(no_gaze)
        rig.engine.start(rig.now)

        rig.run_for(14.8)
        assert rig.engine.progress == (0, 9)

        rig.run_for(0.4)
        assert rig.engine.progress == (1, 9)

    def test_cancel_keeps_existing_model(self):
        rig = Rig(look_at_target)
        rig.engine.start(rig.now)
        rig.run_until(lambda: rig.engine.state == CalibrationState.CALIBRATED)
        model = rig.engine.model

        rig.engine.start(rig.now)
        rig.run_until(lambda: rig.engine.progress[0] == 3)

        assert rig.engine.cancel(rig.now) is True
        assert rig.engine.state == CalibrationState.IDLE
        assert rig.engine.model is model
        assert rig.engine.is_calibrated

        cancelled = rig.of_type(CalibrationCancelled)
        assert len(cancelled) == 1
        assert cancelled[0].completed_points == 3

    def test_cancel_when_idle(self):
        rig = Rig(look_at_target)

        assert rig.engine.cancel(rig.now) is False
        assert rig.of_type(CalibrationCancelled) == []

    def test_restart_mid_protocol(self):
        rig = Rig(look_at_target)
        rig.engine.start(rig.now)
        rig.run_until(lambda: rig.engine.progress[0] == 2)

        rig.engine.start(rig.now)

        assert rig.engine.current_index == 0
        assert rig.engine.progress == (0, 9)
        assert rig.engine.state == CalibrationState.WAITING_FOR_STABILITY

    def test_reset_drops_model(self):
        rig = Rig(look_at_target)
        rig.engine.start(rig.now)
        rig.run_until(lambda: rig.engine.state == CalibrationState.CALIBRATED)

        rig.engine.reset()

        assert rig.engine.model is None
        assert rig.engine.state == CalibrationState.IDLE

    def test_reset_interrupting_a_run_reports_cancel(self):
        rig = Rig(look_at_target)
        rig.engine.start(rig.now)
        rig.run_until(lambda: rig.engine.progress[0] == 2)

        rig.engine.reset(rig.now)

        assert rig.engine.state == CalibrationState.IDLE
        assert rig.engine.model is None
        cancelled = rig.of_type(CalibrationCancelled)
        assert len(cancelled) == 1
        assert cancelled[0].completed_points == 2
        assert cancelled[0].timestamp == rig.now

    def test_reset_when_idle_is_silent(self):
        rig = Rig(look_at_target)

        rig.engine.reset(rig.now)

        assert rig.of_type(CalibrationCancelled) == []

    def test_install_saved_model(self):
        rig = Rig(look_at_target)
        rig.engine.start(rig.now)
        rig.run_until(lambda: rig.engine.state == CalibrationState.CALIBRATED)
        saved = CalibrationModel.from_dict(rig.engine.model.to_dict())

        other = Rig(look_at_target)
        other.engine.install(saved)

        assert other.engine.state == CalibrationState.CALIBRATED
        assert other.engine.model is saved
        assert other.engine.last_report is not None


def make_model(offsets):
    observations = []
    for target, (dx, dy) in zip(build_targets(SCREEN_W, SCREEN_H, 150), offsets):
        observations.append(
            CalibrationObservation(
                index=target.index,
                target_x=target.x,
                target_y=target.y,
                observed_x=target.x + dx,
                observed_y=target.y + dy,
            )
        )
    return CalibrationModel(screen_width=SCREEN_W, screen_height=SCREEN_H, observations=observations)


class TestQualityReport:
    """Tests for evaluate_quality."""

    def test_perfect_fit_is_excellent(self):
        report = evaluate_quality(make_model([(0.0, 0.0)] * 9), CalibrationConfig())

        assert report.grade == QualityGrade.EXCELLENT
        assert report.mean_error == pytest.approx(0.0)
        assert report.accuracy == 1.0
        assert not report.recommend_recalibration

    def test_moderate_error_is_acceptable(self):
        offsets = [(130.0, 0.0)] * 3 + [(60.0, 0.0)] * 6
        report = evaluate_quality(make_model(offsets), CalibrationConfig())

        assert report.grade == QualityGrade.ACCEPTABLE
        assert report.mean_error == pytest.approx(750.0 / 9)
        assert report.max_error == pytest.approx(130.0)
        assert report.accuracy == pytest.approx(6 / 9)

    def test_large_error_is_poor(self):
        report = evaluate_quality(make_model([(200.0, 0.0)] * 9), CalibrationConfig())

        assert report.grade == QualityGrade.POOR
        assert report.recommend_recalibration
        assert report.accuracy == 0.0


class TestQualityCheck:
    """Tests for the centre-fixation quality check."""

    def run_check(self, points_fn, duration=5.0):
        received = []
        events = EventBus()
        events.subscribe(received.append)
        check = QualityCheck(SCREEN_W, SCREEN_H, duration=duration, events=events)
        check.start(0.0)

        now = 0.0
        result = None
        while result is None and now < duration + 1.0:
            now += DT
            result = check.update(points_fn(now), now)
        return result, received, check

    def test_steady_center_gaze_is_good(self):
        result, received, check = self.run_check(
            lambda t: (960.0 + 5 * math.sin(t * 7), 540.0 + 5 * math.cos(t * 5))
        )

        assert result.grade == CheckGrade.GOOD
        assert result.center_error < 10
        assert not check.is_running
        assert len(received) == 1

    def test_offset_gaze_is_fair(self):
        result, _, _ = self.run_check(lambda t: (1110.0, 540.0))

        assert result.grade == CheckGrade.FAIR
        assert result.center_error == pytest.approx(150.0)

    def test_no_gaze_is_poor(self):
        result, _, _ = self.run_check(lambda t: None)

        assert result.grade == CheckGrade.POOR
        assert result.sample_count == 0

    def test_result_only_after_duration(self):
        check = QualityCheck(SCREEN_W, SCREEN_H, duration=5.0)
        check.start(10.0)

        assert check.update((960.0, 540.0), 14.9) is None
        assert check.update((960.0, 540.0), 15.0) is not None
