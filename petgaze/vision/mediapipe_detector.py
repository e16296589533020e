"""
Face detection backend using MediaPipe Face Mesh.

Only the bounding box of the landmark cloud is used; eyes are still
searched by the region detector. Install with the ``mediapipe`` extra.

Privacy: No facial recognition, no biometric templates stored.
"""

from typing import List

import numpy as np
import mediapipe as mp

from petgaze.core.config import DetectionConfig
from petgaze.vision.region_detector import DetectorLoadError, FaceDetectorBackend, Rect
from petgaze.utils.logger import get_logger

logger = get_logger(__name__)


class MediaPipeFaceDetector(FaceDetectorBackend):
    """Face boxes from MediaPipe Face Mesh landmarks."""

    needs_color = True

    def __init__(self, config: DetectionConfig, max_num_faces: int = 1):
        try:
            self._face_mesh = mp.solutions.face_mesh.FaceMesh(
                max_num_faces=max_num_faces,
                refine_landmarks=False,
                min_detection_confidence=config.min_face_confidence,
                min_tracking_confidence=config.min_face_confidence,
            )
        except (RuntimeError, AttributeError) as e:
            raise DetectorLoadError(f"MediaPipe Face Mesh unavailable: {e}") from e

        logger.info("Face detector initialized with MediaPipe Face Mesh")

    def detect(self, image: np.ndarray) -> List[Rect]:
        if image.ndim != 3:
            return []

        h, w = image.shape[:2]
        results = self._face_mesh.process(image)
        if not results.multi_face_landmarks:
            return []

        faces = []
        for face_landmarks in results.multi_face_landmarks:
            points = np.array([(lm.x, lm.y) for lm in face_landmarks.landmark], dtype=np.float32)
            x_min, y_min = points.min(axis=0)
            x_max, y_max = points.max(axis=0)
            x0 = int(max(0.0, x_min) * w)
            y0 = int(max(0.0, y_min) * h)
            x1 = int(min(1.0, x_max) * w)
            y1 = int(min(1.0, y_max) * h)
            if x1 > x0 and y1 > y0:
                faces.append(Rect(x0, y0, x1 - x0, y1 - y0))
        return faces

    def close(self):
        if self._face_mesh is not None:
            self._face_mesh.close()
            self._face_mesh = None
            logger.info("MediaPipe face detector closed")
