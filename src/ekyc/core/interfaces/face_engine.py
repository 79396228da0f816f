"""
Contract: Face Engine

Black-box face detection and descriptor extraction (YuNet/SFace,
face-api, InsightFace, ...).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np

from ekyc.core.entities.document import CapturedImage


class FaceModelUnavailableError(RuntimeError):
    """Raised when detection/recognition models cannot be loaded."""


@dataclass(frozen=True)
class FaceDetection:
    """The single most prominent face in an image."""
    box: tuple[int, int, int, int]    # x, y, w, h in pixels
    confidence: float                 # detector score, 0.0 to 1.0
    image_width: int
    image_height: int
    landmarks: tuple[float, ...] = ()  # 5 (x, y) points when the detector provides them

    @property
    def area_ratio(self) -> float:
        image_area = self.image_width * self.image_height
        if image_area <= 0:
            return 0.0
        _, _, w, h = self.box
        return max(0, w) * max(0, h) / image_area

    @property
    def center_offset(self) -> tuple[float, float]:
        """Offset of the face centre from the image centre, relative to image size."""
        if self.image_width <= 0 or self.image_height <= 0:
            return 1.0, 1.0
        x, y, w, h = self.box
        dx = abs(x + w / 2 - self.image_width / 2) / self.image_width
        dy = abs(y + h / 2 - self.image_height / 2) / self.image_height
        return dx, dy


class IFaceEngine(ABC):
    """
    Port: Face Engine

    Both calls are blocking and may raise FaceModelUnavailableError.
    """

    @abstractmethod
    def detect(self, image: CapturedImage) -> FaceDetection | None:
        """Return the most prominent face, or None if there is none."""
        ...

    @abstractmethod
    def embed(self, image: CapturedImage, detection: FaceDetection) -> np.ndarray:
        """Return the descriptor vector of the detected face."""
        ...
