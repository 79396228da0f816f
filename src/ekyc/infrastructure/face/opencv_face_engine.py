"""
OpenCV Face Engine — YuNet detection + SFace descriptors (opencv_zoo ONNX).

Models are loaded lazily from a local directory (see
scripts/download_models.py). Missing files or an OpenCV build without
FaceDetectorYN raise FaceModelUnavailableError, which callers turn into
their degraded paths.
"""

import logging
import threading
from pathlib import Path

import cv2
import numpy as np

from ekyc.core.entities.document import CapturedImage
from ekyc.core.interfaces.face_engine import FaceDetection, FaceModelUnavailableError, IFaceEngine

logger = logging.getLogger(__name__)

YUNET_URL = "https://media.githubusercontent.com/media/opencv/opencv_zoo/main/models/face_detection_yunet/face_detection_yunet_2023mar.onnx"
SFACE_URL = "https://media.githubusercontent.com/media/opencv/opencv_zoo/main/models/face_recognition_sface/face_recognition_sface_2021dec.onnx"


def _resize(img: np.ndarray, scale: float) -> np.ndarray:
    if scale == 1.0:
        return img
    h, w = img.shape[:2]
    nw = max(1, int(round(w * scale)))
    nh = max(1, int(round(h * scale)))
    return cv2.resize(img, (nw, nh), interpolation=cv2.INTER_CUBIC if scale > 1 else cv2.INTER_AREA)


class OpenCVFaceEngine(IFaceEngine):
    """
    YuNet + SFace.

    Document portraits are small, so detection retries on upscaled copies
    and lower score thresholds before giving up; boxes are always returned
    in the coordinates of the original image.
    """

    SCALES = (1.0, 2.0, 3.0)
    SCORE_THRESHOLDS = (0.6, 0.5)

    def __init__(
        self,
        models_dir: str | Path = "models/face",
        detector_model: str = "face_detection_yunet_2023mar.onnx",
        recognizer_model: str = "face_recognition_sface_2021dec.onnx",
        nms_threshold: float = 0.3,
    ):
        self._detector_path = Path(models_dir) / detector_model
        self._recognizer_path = Path(models_dir) / recognizer_model
        self._nms_threshold = nms_threshold
        self._recognizer = None
        self._lock = threading.Lock()

    # ─── Model loading ──────────────────────────────────────

    def _check_models(self) -> None:
        if not hasattr(cv2, "FaceDetectorYN") or not hasattr(cv2, "FaceRecognizerSF"):
            raise FaceModelUnavailableError("OpenCV build lacks FaceDetectorYN/FaceRecognizerSF")
        for path in (self._detector_path, self._recognizer_path):
            if not path.exists():
                raise FaceModelUnavailableError(f"Face model not found: {path}")
            # Git LFS pointer instead of the ONNX binary
            if path.read_bytes()[:80].startswith(b"version https://git-lfs"):
                raise FaceModelUnavailableError(f"Face model is a Git LFS pointer: {path}")

    def _create_detector(self, size: tuple[int, int], score_threshold: float):
        self._check_models()
        try:
            return cv2.FaceDetectorYN.create(
                str(self._detector_path),
                "",
                size,
                score_threshold=float(score_threshold),
                nms_threshold=float(self._nms_threshold),
                top_k=5000,
            )
        except cv2.error as e:
            raise FaceModelUnavailableError(f"Cannot load YuNet: {e}") from e

    def _get_recognizer(self):
        with self._lock:
            if self._recognizer is None:
                self._check_models()
                try:
                    self._recognizer = cv2.FaceRecognizerSF.create(str(self._recognizer_path), "")
                except cv2.error as e:
                    raise FaceModelUnavailableError(f"Cannot load SFace: {e}") from e
                logger.info(f"Loaded SFace recognizer from {self._recognizer_path}")
            return self._recognizer

    # ─── IFaceEngine ────────────────────────────────────────

    def detect(self, image: CapturedImage) -> FaceDetection | None:
        if image.is_empty:
            return None
        img = np.ascontiguousarray(image.pixels)
        h, w = img.shape[:2]

        for scale in self.SCALES:
            scaled = _resize(img, scale)
            sh, sw = scaled.shape[:2]
            for threshold in self.SCORE_THRESHOLDS:
                detector = self._create_detector((sw, sh), threshold)
                _, faces = detector.detect(scaled)
                if faces is None or len(faces) == 0:
                    continue
                # Most prominent face: largest area weighted by score
                row = max(faces, key=lambda f: float(f[2] * f[3] * f[14]))
                # rows: x, y, w, h, 5 landmark (x, y) pairs, score
                coords = row[:14].astype(np.float64) / scale
                x, y, bw, bh = (int(round(v)) for v in coords[:4])
                return FaceDetection(
                    box=(x, y, bw, bh),
                    confidence=float(row[14]),
                    image_width=w,
                    image_height=h,
                    landmarks=tuple(float(v) for v in coords[4:14]),
                )
        return None

    def embed(self, image: CapturedImage, detection: FaceDetection) -> np.ndarray:
        recognizer = self._get_recognizer()
        img = np.ascontiguousarray(image.pixels)
        x, y, w, h = detection.box
        landmarks = list(detection.landmarks) or [0.0] * 10
        face_row = np.array([x, y, w, h, *landmarks, detection.confidence], dtype=np.float32)
        aligned = recognizer.alignCrop(img, face_row)
        feature = recognizer.feature(aligned)
        return np.asarray(feature, dtype=np.float32).flatten()
