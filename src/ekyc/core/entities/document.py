"""
Entity: Document

Identity-document types, image roles and the immutable captured image.
Pure model — no framework or storage dependency.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import numpy as np


class DocumentType(str, Enum):
    ID_CARD = "id_card"
    PASSPORT = "passport"
    DRIVER_LICENSE = "driver_license"
    QR_CODE = "qr_code"

    @property
    def requires_back(self) -> bool:
        """Two-sided documents need a back capture before extraction."""
        return self is DocumentType.ID_CARD

    @property
    def requires_face(self) -> bool:
        """QR sessions skip liveness and matching entirely."""
        return self is not DocumentType.QR_CODE


class ImageRole(str, Enum):
    DOCUMENT_FRONT = "document_front"
    DOCUMENT_BACK = "document_back"
    FACE = "face"

    @property
    def is_document(self) -> bool:
        return self is not ImageRole.FACE


@dataclass(frozen=True)
class CapturedImage:
    """
    Raw BGR pixel buffer plus its logical role.

    The array is made read-only on construction; a retake produces a new
    CapturedImage instead of touching this one.
    """
    pixels: np.ndarray
    role: ImageRole
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        pixels = np.asarray(self.pixels)
        if pixels.flags.writeable:
            pixels = pixels.copy()
            pixels.setflags(write=False)
        object.__setattr__(self, "pixels", pixels)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1]) if self.pixels.ndim >= 2 else 0

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0]) if self.pixels.ndim >= 2 else 0

    @property
    def is_empty(self) -> bool:
        return self.pixels.size == 0 or self.width == 0 or self.height == 0

    def with_role(self, role: ImageRole) -> "CapturedImage":
        """Same buffer under a different logical role."""
        return CapturedImage(pixels=self.pixels, role=role, captured_at=self.captured_at)
