"""
Pupil localization inside an eye region.

Two strategies:
- BASIC: blur and take the darkest pixel
- PRECISE: upscale, denoise, threshold, score contour candidates by
  circularity, darkness and size, then refine the centroid sub-pixel

PRECISE falls back to BASIC whenever no contour qualifies.
"""

import math
from enum import Enum
from typing import Optional, Tuple
from dataclasses import dataclass

import cv2
import numpy as np

from petgaze.core.config import PupilConfig
from petgaze.vision.region_detector import Rect
from petgaze.utils.logger import get_logger

logger = get_logger(__name__)


class PupilStrategy(Enum):
    BASIC = "basic"
    PRECISE = "precise"


@dataclass(frozen=True)
class PupilPosition:
    """Pupil center in frame pixel space."""

    x: float
    y: float
    confidence: float  # 0-1
    circularity: float = 0.0
    method: str = "center"  # "precise", "basic" or "center"

    @property
    def point(self) -> Tuple[float, float]:
        return (self.x, self.y)


def circularity(area: float, perimeter: float) -> float:
    """4*pi*A/P^2: 1.0 for a perfect circle, lower for anything else."""
    if perimeter <= 0:
        return 0.0
    return float(4.0 * math.pi * area / (perimeter * perimeter))


class PupilLocator:
    """Finds the pupil center in a grayscale eye region."""

    def __init__(self, config: PupilConfig):
        self._config = config
        self._strategy = PupilStrategy(config.strategy)
        self._morph_kernel = cv2.getStructuringElement(
            cv2.MORPH_ELLIPSE, (config.morph_kernel_size, config.morph_kernel_size)
        )

    @property
    def strategy(self) -> PupilStrategy:
        return self._strategy

    @strategy.setter
    def strategy(self, value: PupilStrategy):
        self._strategy = PupilStrategy(value)
        logger.info(f"Pupil strategy set to {self._strategy.value}")

    def toggle_strategy(self) -> PupilStrategy:
        if self._strategy == PupilStrategy.PRECISE:
            self.strategy = PupilStrategy.BASIC
        else:
            self.strategy = PupilStrategy.PRECISE
        return self._strategy

    def locate(self, gray: np.ndarray, region: Rect) -> PupilPosition:
        """
        Locate the pupil center.

        Args:
            gray: Full grayscale frame
            region: Eye box in frame coordinates

        Returns:
            PupilPosition in frame coordinates. A region that is empty after
            clipping to the frame yields its own center with confidence 0.
        """
        cx, cy = region.center
        frame_h, frame_w = gray.shape[:2]
        clipped = region.clip(frame_w, frame_h)

        if clipped.width < 2 or clipped.height < 2:
            return PupilPosition(cx, cy, 0.0)

        roi = gray[clipped.y:clipped.y + clipped.height, clipped.x:clipped.x + clipped.width]

        result = None
        if self._strategy == PupilStrategy.PRECISE:
            result = self._locate_precise(roi)
        if result is None:
            result = self._locate_basic(roi)

        return PupilPosition(
            x=clipped.x + result.x,
            y=clipped.y + result.y,
            confidence=result.confidence,
            circularity=result.circularity,
            method=result.method,
        )

    def _locate_basic(self, roi: np.ndarray) -> PupilPosition:
        k = self._config.blur_kernel
        h, w = roi.shape[:2]
        if h >= k and w >= k:
            blurred = cv2.GaussianBlur(roi, (k, k), 0)
        else:
            blurred = roi
        _, _, min_loc, _ = cv2.minMaxLoc(blurred)
        # Pixel centers sit at +0.5
        return PupilPosition(
            x=min_loc[0] + 0.5,
            y=min_loc[1] + 0.5,
            confidence=self._config.basic_confidence,
            method="basic",
        )

    def _locate_precise(self, roi: np.ndarray) -> Optional[PupilPosition]:
        cfg = self._config
        scale = max(1, cfg.upscale)

        big = cv2.resize(roi, None, fx=scale, fy=scale, interpolation=cv2.INTER_CUBIC)
        denoised = cv2.bilateralFilter(big, cfg.bilateral_diameter, cfg.bilateral_sigma, cfg.bilateral_sigma)

        if cfg.threshold_method == "adaptive":
            block = cfg.adaptive_block_size | 1
            mask = cv2.adaptiveThreshold(
                denoised, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C, cv2.THRESH_BINARY_INV, block, cfg.adaptive_c
            )
        else:
            _, mask = cv2.threshold(denoised, 0, 255, cv2.THRESH_BINARY_INV | cv2.THRESH_OTSU)

        mask = cv2.morphologyEx(mask, cv2.MORPH_CLOSE, self._morph_kernel)
        mask = cv2.morphologyEx(mask, cv2.MORPH_OPEN, self._morph_kernel)

        contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        if not contours:
            return None

        region_area = float(big.shape[0] * big.shape[1])
        best = None
        best_score = -1.0

        for contour in contours:
            area = cv2.contourArea(contour)
            fraction = area / region_area
            if fraction < cfg.min_area_fraction or fraction > cfg.max_area_fraction:
                continue

            circ = circularity(area, cv2.arcLength(contour, True))
            if circ < cfg.min_circularity:
                continue

            moments = cv2.moments(contour)
            if moments["m00"] == 0:
                continue
            mx = moments["m10"] / moments["m00"]
            my = moments["m01"] / moments["m00"]

            darkness = self._darkness_near(denoised, mx, my)
            size_score = self._size_plausibility(fraction)

            score = (
                cfg.circularity_weight * min(circ, 1.0)
                + cfg.darkness_weight * darkness
                + cfg.size_weight * size_score
            )
            if score > best_score:
                best_score = score
                best = (mx, my, circ)

        if best is None:
            return None

        mx, my, circ = best
        # Contour coordinates are pixel indices of the upscaled image
        x, y = self._refine(roi, (mx + 0.5) / scale, (my + 0.5) / scale)

        total_weight = cfg.circularity_weight + cfg.darkness_weight + cfg.size_weight
        confidence = float(np.clip(best_score / total_weight, 0.0, 1.0)) if total_weight > 0 else 0.0

        return PupilPosition(x=x, y=y, confidence=confidence, circularity=min(circ, 1.0), method="precise")

    @staticmethod
    def _darkness_near(image: np.ndarray, x: float, y: float, radius: int = 3) -> float:
        h, w = image.shape[:2]
        xi, yi = int(round(x)), int(round(y))
        patch = image[max(0, yi - radius):min(h, yi + radius + 1), max(0, xi - radius):min(w, xi + radius + 1)]
        if patch.size == 0:
            return 0.0
        return 1.0 - float(patch.mean()) / 255.0

    def _size_plausibility(self, fraction: float) -> float:
        ideal = self._config.ideal_area_fraction
        # 1 at the ideal size, decaying with the log ratio
        return float(math.exp(-abs(math.log(fraction / ideal))))

    def _refine(self, roi: np.ndarray, x: float, y: float) -> Tuple[float, float]:
        """
        Darkness-weighted centroid in a small window around (x, y).

        Coordinates are continuous, pixel (i, j) covers [i, i+1) x [j, j+1).
        """
        cfg = self._config
        r = cfg.refine_radius
        h, w = roi.shape[:2]

        xi, yi = int(x), int(y)
        x0, x1 = max(0, xi - r), min(w, xi + r + 1)
        y0, y1 = max(0, yi - r), min(h, yi + r + 1)
        if x1 <= x0 or y1 <= y0:
            return x, y

        window = 255.0 - roi[y0:y1, x0:x1].astype(np.float64)
        total = window.sum()
        if total <= 0:
            return x, y

        ys, xs = np.mgrid[y0:y1, x0:x1]
        rx = float((window * (xs + 0.5)).sum() / total)
        ry = float((window * (ys + 0.5)).sum() / total)

        dx = float(np.clip(rx - x, -cfg.max_refine_shift, cfg.max_refine_shift))
        dy = float(np.clip(ry - y, -cfg.max_refine_shift, cfg.max_refine_shift))
        return x + dx, y + dy
