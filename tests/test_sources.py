"""
Tests for gaze sources.
"""

import time

import numpy as np
import pytest

from petgaze.core.config import AppConfig, CameraConfig, SourceConfig, StorageConfig
from petgaze.vision.camera import CameraError, Frame
from petgaze.vision.gaze_estimator import GazeSample
from petgaze.vision.pupil_locator import PupilStrategy
from petgaze.vision.region_detector import DetectorLoadError
from petgaze.vision.sources import CameraGazeSource, SyntheticGazeSource, create_gaze_source


class FakeCamera:
    """Camera stand-in producing numbered blank frames."""

    def __init__(self, fail=False):
        self.fail = fail
        self.is_open = False
        self.open_calls = 0
        self.close_calls = 0
        self.count = 0

    def open(self):
        self.open_calls += 1
        if self.fail:
            raise CameraError("no camera")
        self.is_open = True
        return True

    def read_frame(self):
        if not self.is_open:
            return None
        self.count += 1
        image = np.zeros((48, 64, 3), dtype=np.uint8)
        return Frame.from_array(image, float(self.count), self.count)

    def close(self):
        self.close_calls += 1
        self.is_open = False


class FakePipeline:
    """Returns a valid sample tagged with the frame number."""

    def __init__(self, fail_first=False):
        self.fail_first = fail_first
        self.processed = []
        self.closed = False
        self.toggles = 0

    def process(self, frame):
        if self.fail_first:
            self.fail_first = False
            raise RuntimeError("pipeline bug")
        self.processed.append(frame.frame_number)
        return GazeSample(
            raw=(float(frame.frame_number), 0.0),
            valid=True,
            confidence=1.0,
            timestamp=frame.timestamp,
            frame_number=frame.frame_number,
        )

    def toggle_pupil_strategy(self):
        self.toggles += 1
        return PupilStrategy.BASIC

    def close(self):
        self.closed = True


def make_config(tmp_path, threaded=False, nth=1):
    return AppConfig(
        camera=CameraConfig(use_threading=threaded, process_every_nth_frame=nth),
        source=SourceConfig(kind="camera"),
        storage=StorageConfig(data_dir=tmp_path),
    )


def wait_for(predicate, poll, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        poll()
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class TestCameraGazeSource:
    """Tests for CameraGazeSource with fake camera and pipeline."""

    def test_synchronous_processing(self, tmp_path):
        pipeline = FakePipeline()
        source = CameraGazeSource(make_config(tmp_path), 1920, 1080, FakeCamera(), lambda: pipeline)

        assert source.start()
        samples = [source.poll() for _ in range(3)]
        source.stop()

        assert [s.frame_number for s in samples] == [1, 2, 3]
        assert pipeline.processed == [1, 2, 3]

    def test_every_nth_frame(self, tmp_path):
        pipeline = FakePipeline()
        source = CameraGazeSource(make_config(tmp_path, nth=2), 1920, 1080, FakeCamera(), lambda: pipeline)
        source.start()

        samples = [source.poll() for _ in range(5)]

        assert pipeline.processed == [1, 3, 5]
        # Skipped frames repeat the last detection
        assert [s.frame_number for s in samples] == [1, 1, 3, 3, 5]

    def test_threaded_processing(self, tmp_path):
        pipeline = FakePipeline()
        source = CameraGazeSource(make_config(tmp_path, threaded=True), 1920, 1080, FakeCamera(), lambda: pipeline)
        source.start()
        try:
            assert not source.synchronous
            assert wait_for(lambda: source.poll().valid, lambda: None)
        finally:
            source.stop()

    def test_worker_failure_switches_to_synchronous(self, tmp_path):
        pipeline = FakePipeline(fail_first=True)
        source = CameraGazeSource(make_config(tmp_path, threaded=True), 1920, 1080, FakeCamera(), lambda: pipeline)
        source.start()
        try:
            assert wait_for(lambda: source.synchronous, source.poll)
            assert "Detection worker failed" in source.last_error
        finally:
            source.stop()

    def test_camera_failure(self, tmp_path):
        camera = FakeCamera(fail=True)
        source = CameraGazeSource(make_config(tmp_path), 1920, 1080, camera, FakePipeline)

        assert source.start() is False
        assert "no camera" in source.last_error
        assert not source.is_running
        assert camera.close_calls == 1
        assert not source.poll().valid

    def test_detector_failure(self, tmp_path):
        def broken_pipeline():
            raise DetectorLoadError("cascade missing")

        camera = FakeCamera()
        source = CameraGazeSource(make_config(tmp_path), 1920, 1080, camera, broken_pipeline)

        assert source.start() is False
        assert not camera.is_open

    def test_stop_releases_everything(self, tmp_path):
        camera = FakeCamera()
        pipeline = FakePipeline()
        source = CameraGazeSource(make_config(tmp_path, threaded=True), 1920, 1080, camera, lambda: pipeline)
        source.start()

        source.stop()

        assert not camera.is_open
        assert pipeline.closed
        assert not source.is_running

    def test_restart_after_stop(self, tmp_path):
        camera = FakeCamera()
        source = CameraGazeSource(make_config(tmp_path), 1920, 1080, camera, FakePipeline)
        source.start()
        source.stop()

        assert source.start()
        assert camera.open_calls == 2
        assert source.poll().valid

    def test_toggle_detection_mode(self, tmp_path):
        pipeline = FakePipeline()
        source = CameraGazeSource(make_config(tmp_path), 1920, 1080, FakeCamera(), lambda: pipeline)

        assert source.toggle_detection_mode() is None
        source.start()
        assert source.toggle_detection_mode() == "basic"


class TestSyntheticGazeSource:
    """Tests for SyntheticGazeSource."""

    def test_returns_scripted_points_then_repeats(self):
        source = SyntheticGazeSource(1920, 1080, clock=lambda: 5.0)
        source.start()
        source.set_point((100.0, 200.0))
        source.push([(1.0, 2.0), None])

        first, second, third, fourth = (source.poll() for _ in range(4))

        assert first.raw == (1.0, 2.0)
        assert not second.valid
        assert third.raw == (100.0, 200.0)
        assert fourth.raw == (100.0, 200.0)
        assert [s.frame_number for s in (first, second, third, fourth)] == [1, 2, 3, 4]
        assert first.timestamp == 5.0

    def test_noise_is_seeded(self):
        a = SyntheticGazeSource(1920, 1080, noise_px=5.0, seed=3)
        b = SyntheticGazeSource(1920, 1080, noise_px=5.0, seed=3)
        a.start()
        b.start()

        assert [a.poll().raw for _ in range(5)] == [b.poll().raw for _ in range(5)]

    def test_not_started(self):
        source = SyntheticGazeSource(1920, 1080)

        assert not source.poll().valid


class TestCreateGazeSource:
    def test_synthetic(self, tmp_path):
        config = AppConfig(
            source=SourceConfig(kind="synthetic", synthetic_noise_px=2.0),
            storage=StorageConfig(data_dir=tmp_path),
        )

        assert isinstance(create_gaze_source(config, 1920, 1080), SyntheticGazeSource)

    def test_unknown_kind(self, tmp_path):
        config = AppConfig(source=SourceConfig(kind="synthetic"), storage=StorageConfig(data_dir=tmp_path))
        config.source.kind = "telepathy"

        with pytest.raises(ValueError, match="Unknown gaze source"):
            create_gaze_source(config, 1920, 1080)
