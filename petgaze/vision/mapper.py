"""
Raw gaze to screen coordinate mapping.

Two layers on top of the calibration model:
1. Global affine: per-axis scale and offset
2. Local correction: inverse-distance weighted blend of the residuals the
   affine layer leaves at the nine calibration anchors
"""

import numpy as np
from typing import Optional, Tuple
from scipy.spatial.distance import cdist

from petgaze.core.config import MappingConfig
from petgaze.storage.schema import CalibrationModel
from petgaze.utils.logger import get_logger

logger = get_logger(__name__)

Point = Tuple[float, float]


class CoordinateMapper:
    """
    Map raw gaze to screen coordinates.

    Without a model the raw point passes through unchanged (and unclamped),
    so the uncalibrated stream stays inspectable.
    """

    def __init__(self, config: MappingConfig, screen_width: int, screen_height: int):
        """
        Initialize mapper.

        Args:
            config: Mapping configuration
            screen_width: Screen width in pixels
            screen_height: Screen height in pixels
        """
        self._config = config
        self._screen_width = screen_width
        self._screen_height = screen_height

        # Anchor cache, keyed by model identity
        self._cached_model: Optional[CalibrationModel] = None
        self._anchors: Optional[np.ndarray] = None
        self._corrections: Optional[np.ndarray] = None

        logger.info(
            f"CoordinateMapper initialized: blend={config.local_blend:.2f}, "
            f"falloff={config.falloff_radius:.0f}px"
        )

    def map(self, raw_point: Point, model: Optional[CalibrationModel]) -> Point:
        """
        Map one raw gaze point.

        Args:
            raw_point: Raw gaze (screen pixels, pre-calibration)
            model: Calibration model, or None

        Returns:
            Screen point clamped to [0, W] x [0, H] when a model is given
        """
        if model is None:
            return (float(raw_point[0]), float(raw_point[1]))

        ax, ay = self.affine(raw_point, model)
        cx, cy = self.local_correction(raw_point, model)

        blend = self._config.local_blend
        x = float(np.clip(ax + blend * cx, 0.0, self._screen_width))
        y = float(np.clip(ay + blend * cy, 0.0, self._screen_height))
        return (x, y)

    def affine(self, raw_point: Point, model: CalibrationModel) -> Point:
        """Global layer only, unclamped."""
        x, y = model.apply_affine(raw_point)
        return (float(x), float(y))

    def local_correction(self, raw_point: Point, model: CalibrationModel) -> Point:
        """
        Inverse-distance weighted residual at raw_point.

        Weights are 1 / (d^2 + epsilon) with d measured in raw space to each
        anchor's observed point. A zero-correction term of weight
        1 / falloff_radius^2 pulls the result toward zero far from all anchors.
        """
        anchors, corrections = self._anchor_data(model)
        if len(anchors) == 0:
            return (0.0, 0.0)

        point = np.asarray([raw_point], dtype=np.float64)
        sq_dist = cdist(point, anchors, metric="sqeuclidean").ravel()
        weights = 1.0 / (sq_dist + self._config.idw_epsilon)

        falloff = 1.0 / (self._config.falloff_radius ** 2)
        correction = (weights[:, np.newaxis] * corrections).sum(axis=0) / (weights.sum() + falloff)
        return (float(correction[0]), float(correction[1]))

    def _anchor_data(self, model: CalibrationModel) -> Tuple[np.ndarray, np.ndarray]:
        if model is not self._cached_model:
            anchors = model.get_observed_array()
            targets = model.get_target_array()
            fitted = np.array([model.apply_affine(tuple(a)) for a in anchors], dtype=np.float64).reshape(-1, 2)

            self._anchors = anchors
            self._corrections = targets - fitted
            self._cached_model = model
        return self._anchors, self._corrections

    @property
    def screen_size(self) -> Tuple[int, int]:
        return (self._screen_width, self._screen_height)
