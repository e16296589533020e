"""
Configuration management for PetGaze.

All gaze engine configuration with sensible defaults.
Uses dataclasses for type safety and validation. The detection thresholds
and blend ratios are empirically tuned values; they live here as defaults
so hosts can adjust them without touching the pipeline.
"""

from dataclasses import dataclass, field
from typing import Optional, Union
import os
from pathlib import Path


SOURCE_KINDS = ("camera", "synthetic", "pointer")
FACE_BACKENDS = ("cascade", "mediapipe")
PUPIL_STRATEGIES = ("basic", "precise")
THRESHOLD_METHODS = ("otsu", "adaptive")

# Hard limits a fitted scale may never leave, whatever the configured clamp.
SCALE_HARD_LIMITS = (0.2, 5.0)


@dataclass
class CameraConfig:
    """Camera capture configuration."""

    device: Union[int, str] = 0  # Index, or device name/path
    frame_width: int = 640
    frame_height: int = 480
    target_fps: int = 30
    warmup_frames: int = 10  # Frames to skip after camera init

    # Run detection on every Nth captured frame only
    process_every_nth_frame: int = 2

    # Run detection on a background worker thread
    use_threading: bool = True
    worker_join_timeout: float = 1.0


@dataclass
class SourceConfig:
    """Which gaze source implementation the engine uses."""

    kind: str = field(default_factory=lambda: os.getenv("PETGAZE_SOURCE", "camera"))

    # Synthetic source jitter (pixels, standard deviation)
    synthetic_noise_px: float = 0.0
    synthetic_seed: Optional[int] = None


@dataclass
class DetectionConfig:
    """Face and eye region detection."""

    face_backend: str = "cascade"
    cascade_dir: Optional[Path] = None  # Defaults to cv2.data.haarcascades
    face_cascade_file: str = "haarcascade_frontalface_default.xml"
    eye_cascade_file: str = "haarcascade_eye.xml"

    face_scale_factor: float = 1.2
    face_min_neighbors: int = 3
    min_face_size: int = 60
    min_face_confidence: float = 0.6  # Learned backends only

    eye_scale_factor: float = 1.1
    eye_min_neighbors: int = 5
    min_eye_size: int = 20

    # Eyes are searched in the upper part of the face box only
    eye_region_fraction: float = 0.6

    # Synthesize eye boxes from the face box when eye detection fails
    use_face_center_fallback: bool = True
    fallback_eye_dx: float = 0.2  # Horizontal offset from face center (x face width)
    fallback_eye_dy: float = -0.15  # Vertical offset from face center (x face height)
    fallback_eye_width: float = 0.25
    fallback_eye_height: float = 0.18
    fallback_confidence_scale: float = 0.5


@dataclass
class PupilConfig:
    """Pupil localization inside an eye region."""

    strategy: str = "precise"
    upscale: int = 2
    blur_kernel: int = 5
    bilateral_diameter: int = 9
    bilateral_sigma: float = 75.0
    threshold_method: str = "otsu"
    adaptive_block_size: int = 11
    adaptive_c: float = 2.0
    morph_kernel_size: int = 3

    min_circularity: float = 0.6
    min_area_fraction: float = 0.005  # Of the (upscaled) eye box area
    max_area_fraction: float = 0.5
    ideal_area_fraction: float = 0.08

    circularity_weight: float = 0.5
    darkness_weight: float = 0.3
    size_weight: float = 0.2

    refine_radius: int = 3
    max_refine_shift: float = 2.0

    basic_confidence: float = 0.3


@dataclass
class GazeConfig:
    """Raw gaze estimation from pupil positions."""

    # Mirror the camera image so looking left moves gaze left on screen
    flip_horizontal: bool = True
    flip_vertical: bool = False


@dataclass
class StabilizerConfig:
    """Temporal smoothing and stability detection."""

    history_size: int = 20
    smoothing_factor: float = 8.0  # Interpolation rate per second
    stability_threshold: float = 30.0  # Mean deviation (pixels)
    min_stable_duration: float = 0.5  # Seconds
    min_samples: int = 3
    outlier_distance: float = 60.0  # Pixels from the rough mean


@dataclass
class CalibrationConfig:
    """Nine-point calibration protocol."""

    margin: float = 150.0  # Distance of outer targets from screen edges (pixels)

    target_settle_time: float = 0.5  # Ignore stability right after a target appears
    stability_timeout: float = 10.0
    samples_per_point: int = 10
    collection_window: float = 2.0
    point_timeout: float = 15.0
    min_samples: int = 5
    consistency_factor: float = 1.5  # x stability_threshold
    keep_fraction: float = 0.7  # Robust average keeps the closest 70%
    point_pause: float = 0.3

    use_confidence_weights: bool = True
    scale_min: float = 0.5
    scale_max: float = 2.5

    degraded_confidence: float = 0.1
    high_variance_px: float = 50.0

    # Quality grading (advisory)
    good_point_error: float = 100.0
    excellent_error: float = 80.0
    excellent_accuracy: float = 0.8
    acceptable_error: float = 150.0
    acceptable_accuracy: float = 0.6

    quality_check_duration: float = 5.0


@dataclass
class MappingConfig:
    """Raw-to-screen coordinate mapping."""

    local_blend: float = 0.7  # Share of the local correction in the final point
    idw_epsilon: float = 1.0  # Added to squared distances (pixels^2)
    falloff_radius: float = 300.0  # Beyond this, local correction fades out


@dataclass
class FixationConfig:
    """Dwell-based click emulation."""

    enabled: bool = True
    radius: float = 30.0
    dwell_time: float = 1.5


@dataclass
class StorageConfig:
    """Data storage configuration."""

    data_dir: Path = field(default_factory=lambda: Path.home() / ".petgaze")
    calibration_filename: str = "calibration_profile.json"
    log_filename: str = "petgaze.log"

    # Enable file logging (OFF by default for privacy)
    enable_file_logging: bool = False

    def __post_init__(self):
        """Ensure data directory exists and is secure."""
        self.data_dir = Path(self.data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

        try:
            self.data_dir.resolve(strict=True)
        except (RuntimeError, OSError) as e:
            raise ValueError(f"Invalid data directory path: {e}")

    @property
    def calibration_path(self) -> Path:
        return self.data_dir / self.calibration_filename

    @property
    def log_path(self) -> Path:
        return self.data_dir / self.log_filename


@dataclass
class UIConfig:
    """Overlay host configuration."""

    window_title: str = "PetGaze"
    tick_interval_ms: int = 33
    target_size: int = 25
    gaze_dot_radius: int = 12
    show_debug_overlay: bool = False
    headless_fps: int = 30


@dataclass
class AppConfig:
    """Main application configuration."""

    camera: CameraConfig = field(default_factory=CameraConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    pupil: PupilConfig = field(default_factory=PupilConfig)
    gaze: GazeConfig = field(default_factory=GazeConfig)
    stabilizer: StabilizerConfig = field(default_factory=StabilizerConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    mapping: MappingConfig = field(default_factory=MappingConfig)
    fixation: FixationConfig = field(default_factory=FixationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    ui: UIConfig = field(default_factory=UIConfig)

    version: str = "0.1.0"

    log_level: str = field(
        default_factory=lambda: os.getenv("PETGAZE_LOG_LEVEL", "WARNING")
    )

    def __post_init__(self):
        """Validate configuration after initialization."""
        self._validate()

    def _validate(self):
        """Validate configuration parameters."""
        if self.camera.target_fps < 1 or self.camera.target_fps > 60:
            raise ValueError("target_fps must be between 1 and 60")

        if self.camera.process_every_nth_frame < 1:
            raise ValueError("process_every_nth_frame must be at least 1")

        if self.source.kind not in SOURCE_KINDS:
            raise ValueError(f"source kind must be one of {SOURCE_KINDS}")

        if self.detection.face_backend not in FACE_BACKENDS:
            raise ValueError(f"face_backend must be one of {FACE_BACKENDS}")

        if self.detection.face_scale_factor <= 1.0 or self.detection.eye_scale_factor <= 1.0:
            raise ValueError("detector scale factors must be greater than 1.0")

        if not 0.2 <= self.detection.eye_region_fraction <= 1.0:
            raise ValueError("eye_region_fraction must be between 0.2 and 1.0")

        if self.pupil.strategy not in PUPIL_STRATEGIES:
            raise ValueError(f"pupil strategy must be one of {PUPIL_STRATEGIES}")

        if self.pupil.threshold_method not in THRESHOLD_METHODS:
            raise ValueError(f"threshold_method must be one of {THRESHOLD_METHODS}")

        if not 0.0 <= self.pupil.min_circularity <= 1.0:
            raise ValueError("min_circularity must be between 0.0 and 1.0")

        if self.stabilizer.history_size < 2:
            raise ValueError("history_size must be at least 2")

        if self.stabilizer.stability_threshold <= 0:
            raise ValueError("stability_threshold must be positive")

        cal = self.calibration
        if cal.samples_per_point < cal.min_samples:
            raise ValueError("samples_per_point must be at least min_samples")

        if not 0.0 < cal.keep_fraction <= 1.0:
            raise ValueError("keep_fraction must be in (0, 1]")

        low, high = SCALE_HARD_LIMITS
        if not low <= cal.scale_min < cal.scale_max <= high:
            raise ValueError(f"scale range must lie within [{low}, {high}]")

        if not 0.0 <= self.mapping.local_blend <= 1.0:
            raise ValueError("local_blend must be between 0.0 and 1.0")

        if self.mapping.idw_epsilon <= 0 or self.mapping.falloff_radius <= 0:
            raise ValueError("idw_epsilon and falloff_radius must be positive")


def get_default_config() -> AppConfig:
    """
    Get default application configuration.

    Returns:
        AppConfig instance with default values
    """
    return AppConfig()
