"""
Face and eye region detection.

Finds the face box, then eye boxes inside its upper part. When the eye
detector comes up short, eye boxes can be synthesized at fixed offsets
from the face center so gaze estimation keeps running at lower confidence.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Tuple
from dataclasses import dataclass

import cv2
import numpy as np

from petgaze.core.config import DetectionConfig
from petgaze.utils.logger import get_logger

logger = get_logger(__name__)


class DetectorLoadError(Exception):
    """A detection model could not be loaded."""

    pass


@dataclass(frozen=True)
class Rect:
    """Axis-aligned box in frame pixel space."""

    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width / 2.0, self.y + self.height / 2.0)

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def offset(self, dx: int, dy: int) -> "Rect":
        return Rect(self.x + dx, self.y + dy, self.width, self.height)

    def clip(self, frame_width: int, frame_height: int) -> "Rect":
        """Intersection with the frame; may come back empty."""
        x0 = max(0, self.x)
        y0 = max(0, self.y)
        x1 = min(frame_width, self.x + self.width)
        y1 = min(frame_height, self.y + self.height)
        return Rect(x0, y0, max(0, x1 - x0), max(0, y1 - y0))


@dataclass
class RegionResult:
    """Face and eye boxes found in one frame."""

    face: Optional[Rect] = None
    left_eye: Optional[Rect] = None
    right_eye: Optional[Rect] = None
    face_found: bool = False
    eyes_found: bool = False
    used_fallback: bool = False

    @classmethod
    def empty(cls) -> "RegionResult":
        return cls()


def to_gray(image: np.ndarray) -> np.ndarray:
    """Grayscale view of an RGB, RGBA or already-gray image."""
    if image.ndim == 2:
        return image
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_RGBA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)


def _rects_from_array(detections) -> List[Rect]:
    return [Rect(int(x), int(y), int(w), int(h)) for (x, y, w, h) in detections]


class FaceDetectorBackend(ABC):
    """Anything that returns face rectangles for an image."""

    #: Whether detect() wants the color image instead of grayscale
    needs_color: bool = False

    @abstractmethod
    def detect(self, image: np.ndarray) -> List[Rect]:
        raise NotImplementedError

    def close(self):
        pass


class EyeDetectorBackend(ABC):
    """Returns eye rectangles relative to the grayscale region it is given."""

    @abstractmethod
    def detect(self, gray_region: np.ndarray) -> List[Rect]:
        raise NotImplementedError


def _load_cascade(config: DetectionConfig, filename: str) -> cv2.CascadeClassifier:
    base = Path(config.cascade_dir) if config.cascade_dir else Path(cv2.data.haarcascades)
    path = base / filename
    cascade = cv2.CascadeClassifier(str(path))
    if cascade.empty():
        raise DetectorLoadError(f"Could not load cascade model: {path}")
    return cascade


class CascadeFaceDetector(FaceDetectorBackend):
    """OpenCV Haar cascade face detector."""

    def __init__(self, config: DetectionConfig):
        self._config = config
        self._cascade = _load_cascade(config, config.face_cascade_file)
        logger.info(f"Face cascade loaded: {config.face_cascade_file}")

    def detect(self, image: np.ndarray) -> List[Rect]:
        detections = self._cascade.detectMultiScale(
            image,
            scaleFactor=self._config.face_scale_factor,
            minNeighbors=self._config.face_min_neighbors,
            minSize=(self._config.min_face_size, self._config.min_face_size),
        )
        return _rects_from_array(detections)


class CascadeEyeDetector(EyeDetectorBackend):
    """OpenCV Haar cascade eye detector."""

    def __init__(self, config: DetectionConfig):
        self._config = config
        self._cascade = _load_cascade(config, config.eye_cascade_file)
        logger.info(f"Eye cascade loaded: {config.eye_cascade_file}")

    def detect(self, gray_region: np.ndarray) -> List[Rect]:
        detections = self._cascade.detectMultiScale(
            gray_region,
            scaleFactor=self._config.eye_scale_factor,
            minNeighbors=self._config.eye_min_neighbors,
            minSize=(self._config.min_eye_size, self._config.min_eye_size),
        )
        return _rects_from_array(detections)


def create_face_detector(config: DetectionConfig) -> FaceDetectorBackend:
    """
    Build the configured face detector.

    Raises:
        DetectorLoadError: If the model is missing or the backend is unavailable
    """
    if config.face_backend == "mediapipe":
        from petgaze.vision.mediapipe_detector import MediaPipeFaceDetector

        return MediaPipeFaceDetector(config)
    return CascadeFaceDetector(config)


class RegionDetector:
    """
    Face-then-eyes region finder.

    Face detector absence is fatal (raised from the constructor); eye
    detector absence only disables eye search, leaving the face-center
    fallback.
    """

    def __init__(
        self,
        config: DetectionConfig,
        face_detector: Optional[FaceDetectorBackend] = None,
        eye_detector: Optional[EyeDetectorBackend] = None,
        load_eye_detector: bool = True,
    ):
        """
        Args:
            config: Detection configuration
            face_detector: Face backend (built from config when None)
            eye_detector: Eye backend (cascade loaded when None)
            load_eye_detector: Try to load the eye cascade when none is given
        """
        self._config = config
        self._face_detector = face_detector or create_face_detector(config)

        self._eye_detector = eye_detector
        if self._eye_detector is None and load_eye_detector:
            try:
                self._eye_detector = CascadeEyeDetector(config)
            except DetectorLoadError as e:
                logger.warning(f"Eye detector unavailable, using face-center fallback: {e}")

        if self._eye_detector is None and not config.use_face_center_fallback:
            logger.warning("No eye detector and fallback disabled: eyes will never be found")

    @property
    def has_eye_detector(self) -> bool:
        return self._eye_detector is not None

    def detect(self, image: np.ndarray) -> RegionResult:
        """
        Find face and eye regions in one frame.

        Args:
            image: RGB or grayscale frame

        Returns:
            RegionResult in frame pixel coordinates
        """
        gray = to_gray(image)
        frame_h, frame_w = gray.shape[:2]

        faces = self._face_detector.detect(image if self._face_detector.needs_color else gray)
        faces = [f.clip(frame_w, frame_h) for f in faces]
        faces = [f for f in faces if not f.is_empty]
        if not faces:
            return RegionResult.empty()

        face = max(faces, key=lambda r: r.area)
        result = RegionResult(face=face, face_found=True)

        eyes = self._detect_eyes(gray, face) if self._eye_detector is not None else []

        if len(eyes) >= 2:
            # Two largest candidates, ordered left to right in the image
            pair = sorted(eyes, key=lambda r: r.area, reverse=True)[:2]
            pair.sort(key=lambda r: r.x)
            result.left_eye, result.right_eye = pair
            result.eyes_found = True
        elif self._config.use_face_center_fallback:
            result.left_eye, result.right_eye = self.fallback_eyes(face)
            result.eyes_found = True
            result.used_fallback = True
            logger.debug(f"Eye detection found {len(eyes)} candidates, using face-center fallback")

        return result

    def _detect_eyes(self, gray: np.ndarray, face: Rect) -> List[Rect]:
        search_height = max(1, int(face.height * self._config.eye_region_fraction))
        roi = gray[face.y:face.y + search_height, face.x:face.x + face.width]
        if roi.size == 0:
            return []
        return [eye.offset(face.x, face.y) for eye in self._eye_detector.detect(roi)]

    def fallback_eyes(self, face: Rect) -> Tuple[Rect, Rect]:
        """Eye boxes at fixed offsets from the face center."""
        cfg = self._config
        cx, cy = face.center
        eye_w = max(1, int(face.width * cfg.fallback_eye_width))
        eye_h = max(1, int(face.height * cfg.fallback_eye_height))
        eye_cy = cy + face.height * cfg.fallback_eye_dy

        boxes = []
        for direction in (-1, 1):
            eye_cx = cx + direction * face.width * cfg.fallback_eye_dx
            boxes.append(
                Rect(int(round(eye_cx - eye_w / 2)), int(round(eye_cy - eye_h / 2)), eye_w, eye_h)
            )
        return boxes[0], boxes[1]

    def close(self):
        self._face_detector.close()
