"""
Tests for configuration validation and the logging/timing utilities.
"""

import logging

import pytest

from petgaze.core.config import (
    AppConfig,
    CalibrationConfig,
    CameraConfig,
    DetectionConfig,
    MappingConfig,
    PupilConfig,
    SourceConfig,
    StorageConfig,
)
from petgaze.utils.logger import ThrottledLogger, setup_logger
from petgaze.utils.timing import FPSCounter, Timer


@pytest.fixture
def storage(tmp_path):
    return StorageConfig(data_dir=tmp_path / "data")


class TestAppConfig:
    """Tests for AppConfig validation."""

    def test_defaults_are_valid(self, storage):
        config = AppConfig(source=SourceConfig(kind="camera"), storage=storage)

        assert config.calibration.samples_per_point == 10
        assert config.mapping.local_blend == 0.7
        assert config.stabilizer.smoothing_factor == 8.0

    def test_storage_creates_data_dir(self, storage):
        assert storage.data_dir.is_dir()
        assert storage.calibration_path.parent == storage.data_dir

    def test_source_kind_from_environment(self, monkeypatch, storage):
        monkeypatch.setenv("PETGAZE_SOURCE", "synthetic")

        assert AppConfig(storage=storage).source.kind == "synthetic"

    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"camera": CameraConfig(target_fps=0)}, "target_fps"),
            ({"camera": CameraConfig(process_every_nth_frame=0)}, "process_every_nth_frame"),
            ({"source": SourceConfig(kind="telepathy")}, "source kind"),
            ({"detection": DetectionConfig(face_backend="dlib")}, "face_backend"),
            ({"detection": DetectionConfig(face_scale_factor=1.0)}, "scale factors"),
            ({"pupil": PupilConfig(strategy="magic")}, "pupil strategy"),
            ({"pupil": PupilConfig(threshold_method="manual")}, "threshold_method"),
            ({"calibration": CalibrationConfig(samples_per_point=3)}, "samples_per_point"),
            ({"calibration": CalibrationConfig(keep_fraction=0.0)}, "keep_fraction"),
            ({"calibration": CalibrationConfig(scale_max=8.0)}, "scale range"),
            ({"mapping": MappingConfig(local_blend=1.5)}, "local_blend"),
            ({"mapping": MappingConfig(falloff_radius=0.0)}, "falloff_radius"),
        ],
    )
    def test_invalid_values(self, storage, overrides, message):
        kwargs = {"source": SourceConfig(kind="camera"), "storage": storage}
        kwargs.update(overrides)

        with pytest.raises(ValueError, match=message):
            AppConfig(**kwargs)


class TestThrottledLogger:
    def test_repeats_are_suppressed_and_counted(self, caplog):
        throttled = ThrottledLogger(logging.getLogger("petgaze.test.throttle"), interval_sec=60.0)

        with caplog.at_level(logging.WARNING, logger="petgaze.test.throttle"):
            assert throttled.warning("no face") is True
            assert throttled.warning("no face") is False
            assert throttled.warning("no face") is False

        assert len(caplog.records) == 1
        assert throttled.suppressed == 2

    def test_percent_signs_are_literal(self, caplog):
        throttled = ThrottledLogger(logging.getLogger("petgaze.test.percent"))

        with caplog.at_level(logging.ERROR, logger="petgaze.test.percent"):
            throttled.error("accuracy 50% of 100%")

        assert "accuracy 50% of 100%" in caplog.records[0].getMessage()


class TestSetupLogger:
    def test_no_duplicate_handlers(self):
        first = setup_logger("petgaze.test.setup", level="INFO")
        second = setup_logger("petgaze.test.setup", level="DEBUG")

        assert first is second
        assert len(second.handlers) == 1
        assert second.level == logging.DEBUG

    def test_file_logging_is_opt_in(self, tmp_path):
        log_file = tmp_path / "petgaze.log"

        logger = setup_logger("petgaze.test.nofile", log_file=log_file)

        assert not any(isinstance(h, logging.FileHandler) for h in logger.handlers)


class TestTiming:
    def test_fps_from_timestamps(self):
        counter = FPSCounter()
        for i in range(11):
            counter.tick(i * 0.05)

        assert counter.fps == pytest.approx(20.0)

    def test_fps_needs_two_frames(self):
        counter = FPSCounter()
        counter.tick(1.0)

        assert counter.fps == 0.0

    def test_timer(self):
        with Timer("stage") as timer:
            sum(range(1000))

        assert timer.elapsed >= 0.0
        assert str(timer).startswith("stage: ")
