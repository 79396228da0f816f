"""
OpenCV Camera Source — live frames from a local webcam.
"""

import asyncio
import logging
import threading

import cv2

from ekyc.core.entities.document import CapturedImage, ImageRole
from ekyc.core.interfaces.capture_source import CaptureDeviceError, ICaptureSource

logger = logging.getLogger(__name__)


class OpenCVCameraSource(ICaptureSource):
    """
    cv2.VideoCapture wrapper. The device is opened on first capture and
    held until release().
    """

    realtime = True

    def __init__(self, device_index: int = 0, width: int = 1280, height: int = 720):
        self._index = device_index
        self._width = width
        self._height = height
        self._capture = None
        self._lock = threading.Lock()

    def _open(self):
        if self._capture is None:
            cap = cv2.VideoCapture(self._index)
            if not cap.isOpened():
                cap.release()
                raise CaptureDeviceError(f"Camera {self._index} unavailable or permission denied")
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self._width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self._height)
            logger.info(f"Opened camera {self._index}")
            self._capture = cap
        return self._capture

    def _read(self, role: ImageRole) -> CapturedImage:
        with self._lock:
            cap = self._open()
            ok, frame = cap.read()
        if not ok or frame is None:
            raise CaptureDeviceError(f"Camera {self._index} returned no frame")
        return CapturedImage(pixels=frame, role=role)

    async def capture(self, role: ImageRole = ImageRole.FACE) -> CapturedImage:
        return await asyncio.to_thread(self._read, role)

    def release(self) -> None:
        with self._lock:
            if self._capture is not None:
                self._capture.release()
                self._capture = None
                logger.info(f"Released camera {self._index}")
