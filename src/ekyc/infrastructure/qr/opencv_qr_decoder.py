"""
OpenCV QR Decoder.

cv2.QRCodeDetector on the raw capture first, then on a grayscale,
binarized copy (helps with glare on laminated cards).
"""

import logging

import cv2
import numpy as np

from ekyc.core.entities.document import CapturedImage
from ekyc.core.interfaces.qr_decoder import IQRDecoder

logger = logging.getLogger(__name__)


class OpenCVQRDecoder(IQRDecoder):

    def __init__(self):
        self._detector = cv2.QRCodeDetector()

    def decode(self, image: CapturedImage) -> str | None:
        if image.is_empty:
            return None
        img = np.ascontiguousarray(image.pixels)
        for candidate in (img, self._binarize(img)):
            try:
                data, points, _ = self._detector.detectAndDecode(candidate)
            except cv2.error as e:
                logger.warning(f"QR decode failed: {e}")
                continue
            if data:
                logger.info(f"QR decoded ({len(data)} chars)")
                return data
        return None

    @staticmethod
    def _binarize(img: np.ndarray) -> np.ndarray:
        gray = img if img.ndim == 2 else cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
        return binary
