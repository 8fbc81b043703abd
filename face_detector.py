"""
Face region detectors.

A detector returns candidate face rectangles for an image, highest
priority first. The tracker only ever uses the first candidate.

License: MIT
"""

import numpy as np
from typing import Iterable, List, Optional, Sequence, Tuple
from abc import ABC, abstractmethod
from pathlib import Path
import logging
import cv2

from landmark_geometry import Rect

logger = logging.getLogger(__name__)


class DetectorLoadError(IOError):
    """Raised when a face detector resource cannot be loaded."""


def order_by_area(faces) -> List[Rect]:
    """Rectangles from (x, y, w, h) rows, largest area first."""
    rects = [Rect.from_xywh(f) for f in faces]
    rects.sort(key=lambda r: r.area, reverse=True)
    return rects


class FaceDetector(ABC):
    """Abstract face region detector."""

    @abstractmethod
    def detect_faces(self, image: np.ndarray) -> List[Rect]:
        """
        Detect faces in an image.

        Args:
            image: BGR or grayscale frame (not modified)

        Returns:
            Candidate rectangles ordered by priority, possibly empty
        """
        pass


class HaarCascadeFaceDetector(FaceDetector):
    """
    OpenCV Viola-Jones cascade detector.

    Candidates are ordered by area, largest first, since OpenCV returns
    them in no particular order.
    """

    def __init__(
        self,
        cascade_path: str,
        scale_factor: float = 1.2,
        min_neighbors: int = 2,
        min_size: Tuple[int, int] = (50, 50)
    ):
        cascade_path = Path(cascade_path)
        if not cascade_path.is_file():
            raise DetectorLoadError(f"Face detector not found: {cascade_path}")

        self.cascade = cv2.CascadeClassifier()
        try:
            loaded = self.cascade.load(str(cascade_path))
        except cv2.error as e:
            raise DetectorLoadError(f"Error loading the face detector {cascade_path}: {e}") from e
        if not loaded:
            raise DetectorLoadError(f"Error loading the face detector {cascade_path}")

        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.min_size = tuple(min_size)
        logger.info(f"Loaded face detector {cascade_path}")

    def detect_faces(self, image: np.ndarray) -> List[Rect]:
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if image.ndim == 3 else image
        faces = self.cascade.detectMultiScale(
            gray,
            scaleFactor=self.scale_factor,
            minNeighbors=self.min_neighbors,
            minSize=self.min_size
        )
        return order_by_area(faces)


class ScriptedFaceDetector(FaceDetector):
    """
    Replays a fixed list of detections, one entry per call.

    Once the script is exhausted every call returns no faces. Used for the
    synthetic demo and in tests.
    """

    def __init__(self, script: Iterable[Sequence[Rect]],
                 default: Optional[Sequence[Rect]] = None):
        self.script = [list(rects) for rects in script]
        self.default = list(default) if default is not None else []
        self.calls = 0

    def detect_faces(self, image: np.ndarray) -> List[Rect]:
        idx = self.calls
        self.calls += 1
        if idx < len(self.script):
            return list(self.script[idx])
        return list(self.default)
