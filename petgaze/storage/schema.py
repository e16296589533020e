"""
Calibration profile schema and validation.

Privacy: Only stores numeric calibration parameters,
no images, no facial data, no personal information.
"""

from dataclasses import dataclass, field
from typing import List, Dict, Any, Tuple
import numpy as np
from datetime import datetime

from petgaze.core.config import SCALE_HARD_LIMITS
from petgaze.utils.logger import get_logger

logger = get_logger(__name__)

CALIBRATION_POINT_COUNT = 9
SCHEMA_VERSION = "2.0"


@dataclass
class CalibrationObservation:
    """
    What the tracker reported while the user fixated one calibration target.

    Privacy: Contains only screen-space coordinates.
    """

    index: int

    # Target position on screen (pixels)
    target_x: float
    target_y: float

    # Robust-averaged raw gaze for this target (pixels, pre-calibration)
    observed_x: float
    observed_y: float

    # Mean distance of the kept samples from the observed point (pixels)
    variance: float = 0.0

    # 0-1, used to weight the affine fit
    confidence: float = 1.0

    # Set when the point timed out without enough consistent samples
    low_confidence: bool = False

    # Accepted raw samples for this target
    samples: List[Tuple[float, float]] = field(default_factory=list)

    @property
    def target(self) -> Tuple[float, float]:
        return (self.target_x, self.target_y)

    @property
    def observed(self) -> Tuple[float, float]:
        return (self.observed_x, self.observed_y)

    @property
    def sample_count(self) -> int:
        return len(self.samples)

    @property
    def raw_error(self) -> float:
        """Distance between what was observed and where the target was."""
        return float(np.hypot(self.target_x - self.observed_x, self.target_y - self.observed_y))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "target_x": self.target_x,
            "target_y": self.target_y,
            "observed_x": self.observed_x,
            "observed_y": self.observed_y,
            "variance": self.variance,
            "confidence": self.confidence,
            "low_confidence": self.low_confidence,
            "samples": [[x, y] for x, y in self.samples],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalibrationObservation":
        return cls(
            index=int(data["index"]),
            target_x=float(data["target_x"]),
            target_y=float(data["target_y"]),
            observed_x=float(data["observed_x"]),
            observed_y=float(data["observed_y"]),
            variance=float(data.get("variance", 0.0)),
            confidence=float(data.get("confidence", 1.0)),
            low_confidence=bool(data.get("low_confidence", False)),
            samples=[(float(x), float(y)) for x, y in data.get("samples", [])],
        )

    def validate(self) -> bool:
        """
        Validate observation data.

        Returns:
            True if valid, raises ValueError if invalid
        """
        if not 0 <= self.index < CALIBRATION_POINT_COUNT:
            raise ValueError("Observation index out of range")

        if self.target_x < 0 or self.target_y < 0:
            raise ValueError("Target coordinates must be non-negative")

        values = (self.observed_x, self.observed_y, self.variance, self.confidence)
        if not all(np.isfinite(v) for v in values):
            raise ValueError("Observation values must be finite")

        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError("Confidence must be between 0 and 1")

        return True


@dataclass
class CalibrationModel:
    """
    Fitted mapping from raw gaze space to screen space.

    Global affine layer (per-axis scale and offset in normalized screen
    units) plus the nine observations that drive the local correction.
    Treated as immutable once fitted; re-calibration replaces it.
    """

    screen_width: int
    screen_height: int
    offset_x: float = 0.0
    offset_y: float = 0.0
    scale_x: float = 1.0
    scale_y: float = 1.0
    observations: List[CalibrationObservation] = field(default_factory=list)

    version: str = SCHEMA_VERSION
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now().isoformat()

    @property
    def offset(self) -> Tuple[float, float]:
        return (self.offset_x, self.offset_y)

    @property
    def scale(self) -> Tuple[float, float]:
        return (self.scale_x, self.scale_y)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "version": self.version,
            "timestamp": self.timestamp,
            "screen_width": self.screen_width,
            "screen_height": self.screen_height,
            "offset": [self.offset_x, self.offset_y],
            "scale": [self.scale_x, self.scale_y],
            "observations": [obs.to_dict() for obs in self.observations],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalibrationModel":
        """Create from dictionary."""
        offset = data.get("offset", [0.0, 0.0])
        scale = data.get("scale", [1.0, 1.0])
        observations = [
            CalibrationObservation.from_dict(o) for o in data.get("observations", [])
        ]

        return cls(
            screen_width=int(data.get("screen_width", 0)),
            screen_height=int(data.get("screen_height", 0)),
            offset_x=float(offset[0]),
            offset_y=float(offset[1]),
            scale_x=float(scale[0]),
            scale_y=float(scale[1]),
            observations=observations,
            version=data.get("version", SCHEMA_VERSION),
            timestamp=data.get("timestamp", ""),
        )

    def validate(self) -> bool:
        """
        Validate the model.

        Returns:
            True if valid, raises ValueError if invalid
        """
        if not self.version:
            raise ValueError("Missing version")

        if self.screen_width <= 0 or self.screen_height <= 0:
            raise ValueError("Invalid screen dimensions")

        if len(self.observations) != CALIBRATION_POINT_COUNT:
            raise ValueError(
                f"Need exactly {CALIBRATION_POINT_COUNT} calibration observations"
            )

        low, high = SCALE_HARD_LIMITS
        if not (low <= self.scale_x <= high and low <= self.scale_y <= high):
            raise ValueError("Scale out of allowed range")

        if not (np.isfinite(self.offset_x) and np.isfinite(self.offset_y)):
            raise ValueError("Offset must be finite")

        for i, obs in enumerate(self.observations):
            try:
                obs.validate()
            except ValueError as e:
                raise ValueError(f"Invalid calibration observation {i}: {e}")

        try:
            datetime.fromisoformat(self.timestamp)
        except ValueError:
            raise ValueError("Invalid timestamp format")

        logger.debug(f"Calibration model validated: {len(self.observations)} observations")
        return True

    def is_compatible_with_screen(self, width: int, height: int) -> bool:
        """True if the model was fitted on a screen of this resolution."""
        return self.screen_width == width and self.screen_height == height

    def apply_affine(self, point: Tuple[float, float]) -> Tuple[float, float]:
        """
        Global affine layer only.

        Scale and offset act on screen-normalized coordinates:
        n' = n * scale + offset.
        """
        nx = point[0] / self.screen_width
        ny = point[1] / self.screen_height
        return (
            (nx * self.scale_x + self.offset_x) * self.screen_width,
            (ny * self.scale_y + self.offset_y) * self.screen_height,
        )

    def get_observed_array(self) -> np.ndarray:
        """Observed raw points, shape (N, 2)."""
        return np.array(
            [[o.observed_x, o.observed_y] for o in self.observations],
            dtype=np.float64,
        )

    def get_target_array(self) -> np.ndarray:
        """Target screen points, shape (N, 2)."""
        return np.array(
            [[o.target_x, o.target_y] for o in self.observations],
            dtype=np.float64,
        )
