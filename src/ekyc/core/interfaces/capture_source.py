"""
Contract: Capture Source

Yields raw frames from a camera, a video stream or uploaded files.
"""

from abc import ABC, abstractmethod

from ekyc.core.entities.document import CapturedImage, ImageRole


class CaptureDeviceError(RuntimeError):
    """Camera missing, busy, or permission denied."""


class ICaptureSource(ABC):
    """
    Port: Capture Source

    Holds a device/stream until release() is called.
    """

    # False for pre-recorded frames: challenges are not held in real time.
    realtime: bool = True

    @abstractmethod
    async def capture(self, role: ImageRole = ImageRole.FACE) -> CapturedImage:
        """
        Grab one frame.

        Raises:
            CaptureDeviceError: device or permission failure.
        """
        ...

    @abstractmethod
    def release(self) -> None:
        """Release the underlying device/stream. Safe to call twice."""
        ...
