"""
Pre-recorded frames: uploaded images, files on disk or test fixtures.
"""

import cv2
import numpy as np

from ekyc.core.entities.document import CapturedImage, ImageRole
from ekyc.core.entities.errors import ErrorKind, VerificationError
from ekyc.core.interfaces.capture_source import CaptureDeviceError, ICaptureSource


def decode_image(data: bytes, role: ImageRole) -> CapturedImage:
    """
    Decode PNG/JPEG bytes into a CapturedImage.

    Raises:
        VerificationError(INPUT): the bytes are not a decodable image.
    """
    arr = np.frombuffer(data or b"", dtype=np.uint8)
    img = cv2.imdecode(arr, cv2.IMREAD_COLOR) if arr.size else None
    if img is None:
        raise VerificationError(
            ErrorKind.INPUT,
            "Could not decode image. Upload a valid PNG/JPG.",
            recommendations=["RETAKE"],
        )
    return CapturedImage(pixels=img, role=ImageRole(role))


class FrameSequenceSource(ICaptureSource):
    """Yields the given frames in order; running out is a device error."""

    realtime = False

    def __init__(self, frames: list[np.ndarray | CapturedImage]):
        self._frames = list(frames)
        self._position = 0
        self.released = False

    @classmethod
    def from_bytes(cls, blobs: list[bytes]) -> "FrameSequenceSource":
        return cls([decode_image(b, ImageRole.FACE) for b in blobs])

    async def capture(self, role: ImageRole = ImageRole.FACE) -> CapturedImage:
        if self.released:
            raise CaptureDeviceError("Frame source already released")
        if self._position >= len(self._frames):
            raise CaptureDeviceError("No more frames")
        frame = self._frames[self._position]
        self._position += 1
        if isinstance(frame, CapturedImage):
            return frame.with_role(role)
        return CapturedImage(pixels=frame, role=role)

    def release(self) -> None:
        self.released = True
