"""
Image encoding for persisted sessions.

Compressed mode stores a size-reduced JPEG (fits in 800x600, quality 70);
otherwise a lossless PNG. Either way the bytes travel base64-encoded inside
the session JSON.
"""

import base64
from datetime import datetime, timezone

import cv2
import numpy as np

from ekyc.core.entities.document import CapturedImage, ImageRole

REDACTED = "[IMAGE_DATA]"


def fit_within(img: np.ndarray, max_width: int = 800, max_height: int = 600) -> np.ndarray:
    """Downscale (never upscale) keeping the aspect ratio."""
    h, w = img.shape[:2]
    scale = min(max_width / w, max_height / h, 1.0)
    if scale >= 1.0:
        return img
    size = (max(1, int(w * scale)), max(1, int(h * scale)))
    return cv2.resize(img, size, interpolation=cv2.INTER_AREA)


class ImageCodec:

    def __init__(self, compress: bool = True, max_width: int = 800, max_height: int = 600, jpeg_quality: int = 70):
        self.compress = compress
        self.max_width = max_width
        self.max_height = max_height
        self.jpeg_quality = jpeg_quality

    def encode(self, image: CapturedImage) -> dict:
        img = np.ascontiguousarray(image.pixels)
        if self.compress:
            img = fit_within(img, self.max_width, self.max_height)
            ok, buf = cv2.imencode(".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
            fmt = "jpeg"
        else:
            ok, buf = cv2.imencode(".png", img)
            fmt = "png"
        if not ok:
            raise ValueError(f"Could not encode {image.role.value} image")
        return {
            "role": image.role.value,
            "width": int(img.shape[1]),
            "height": int(img.shape[0]),
            "captured_at": image.captured_at.isoformat(),
            "format": fmt,
            "data": base64.b64encode(buf.tobytes()).decode("ascii"),
        }

    @staticmethod
    def decode(payload: dict) -> CapturedImage:
        """Raises ValueError for redacted or corrupt image data."""
        data = payload.get("data")
        if not data or data == REDACTED:
            raise ValueError("Image data is missing or redacted")
        raw = base64.b64decode(data, validate=True)
        img = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
        if img is None:
            raise ValueError("Image data could not be decoded")
        captured_at = datetime.fromisoformat(payload["captured_at"])
        if captured_at.tzinfo is None:
            captured_at = captured_at.replace(tzinfo=timezone.utc)
        return CapturedImage(pixels=img, role=ImageRole(payload["role"]), captured_at=captured_at)
