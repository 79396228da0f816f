"""
Adapter: OpenCV Quality Gate.

Scores captures with classic CV metrics:
  1. Brightness → mean luma
  2. Contrast   → luma range (max - min)
  3. Blur       → Laplacian variance, normalized
  4. Resolution → minimum width/height (documents)
  5. Framing    → face size, confidence and centring (faces)

Every failing check subtracts a fixed penalty from 100.
"""

import logging
from dataclasses import dataclass

import cv2
import numpy as np

from ekyc.core.entities.document import CapturedImage, ImageRole
from ekyc.core.interfaces.face_engine import FaceModelUnavailableError, IFaceEngine
from ekyc.core.interfaces.quality_gate import (
    IQualityGate,
    IssueCode,
    QualityReport,
    RecommendationCode,
)

logger = logging.getLogger(__name__)

PENALTIES = {
    IssueCode.TOO_DARK: 30,
    IssueCode.TOO_BRIGHT: 25,
    IssueCode.LOW_CONTRAST: 20,
    IssueCode.LOW_RESOLUTION: 25,
    IssueCode.BLURRY: 20,
    IssueCode.FACE_NOT_FOUND: 40,
    IssueCode.FACE_TOO_SMALL: 30,
    IssueCode.FACE_TOO_LARGE: 20,
    IssueCode.LOW_FACE_CONFIDENCE: 25,
    IssueCode.FACE_OFF_CENTER: 15,
}

RECOMMENDATIONS = {
    IssueCode.TOO_DARK: RecommendationCode.IMPROVE_LIGHTING,
    IssueCode.TOO_BRIGHT: RecommendationCode.AVOID_DIRECT_LIGHT,
    IssueCode.LOW_CONTRAST: RecommendationCode.USE_CONTRASTING_BACKGROUND,
    IssueCode.LOW_RESOLUTION: RecommendationCode.USE_HIGHER_RESOLUTION,
    IssueCode.BLURRY: RecommendationCode.HOLD_STEADY,
    IssueCode.FACE_NOT_FOUND: RecommendationCode.FACE_THE_CAMERA,
    IssueCode.FACE_TOO_SMALL: RecommendationCode.MOVE_CLOSER,
    IssueCode.FACE_TOO_LARGE: RecommendationCode.MOVE_FARTHER,
    IssueCode.LOW_FACE_CONFIDENCE: RecommendationCode.KEEP_FACE_STRAIGHT,
    IssueCode.FACE_OFF_CENTER: RecommendationCode.CENTER_FACE,
}


@dataclass(frozen=True)
class DocumentThresholds:
    min_width: int = 800
    min_height: int = 600
    brightness_min: float = 30.0
    brightness_max: float = 220.0
    min_contrast: float = 50.0
    blur_min: float = 0.2


@dataclass(frozen=True)
class FaceThresholds:
    brightness_min: float = 50.0
    brightness_max: float = 200.0
    min_contrast: float = 50.0
    blur_min: float = 0.2
    min_ratio: float = 0.15
    max_ratio: float = 0.8
    min_confidence: float = 0.7
    max_center_offset: float = 0.2


class OpenCVQualityGate(IQualityGate):
    """
    Quality Gate in plain OpenCV: fast, deterministic, auditable.

    The face engine is optional; without it face captures are scored on
    photometric checks only.
    """

    def __init__(
        self,
        document: DocumentThresholds | None = None,
        face: FaceThresholds | None = None,
        face_engine: IFaceEngine | None = None,
    ):
        self._doc = document or DocumentThresholds()
        self._face = face or FaceThresholds()
        self._face_engine = face_engine

    def assess(self, image: CapturedImage, role: ImageRole) -> QualityReport:
        img = self._as_bgr(image)
        if img is None:
            return QualityReport(
                score=0,
                issues=frozenset({IssueCode.UNREADABLE}),
                recommendations=(RecommendationCode.RETAKE,),
                metrics={"error": "empty or undecodable image"},
            )

        issues: list[IssueCode] = []
        metrics: dict = {}

        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        brightness = float(gray.mean())
        contrast = float(int(gray.max()) - int(gray.min()))
        blur = self._check_blur(gray)
        h, w = gray.shape[:2]
        metrics["brightness"] = round(brightness, 2)
        metrics["contrast"] = round(contrast, 2)
        metrics["blur"] = round(blur, 3)
        metrics["resolution"] = f"{w}x{h}"

        t = self._face if role is ImageRole.FACE else self._doc

        # --- 1. Brightness ---
        if brightness < t.brightness_min:
            issues.append(IssueCode.TOO_DARK)
        elif brightness > t.brightness_max:
            issues.append(IssueCode.TOO_BRIGHT)

        # --- 2. Contrast ---
        if contrast < t.min_contrast:
            issues.append(IssueCode.LOW_CONTRAST)

        # --- 3. Blur ---
        if blur < t.blur_min:
            issues.append(IssueCode.BLURRY)

        # --- 4/5. Resolution (documents) or face framing ---
        if role is ImageRole.FACE:
            issues.extend(self._check_face(image, metrics))
        elif w < self._doc.min_width or h < self._doc.min_height:
            issues.append(IssueCode.LOW_RESOLUTION)

        score = max(0, 100 - sum(PENALTIES[i] for i in issues))
        return QualityReport(
            score=score,
            issues=frozenset(issues),
            recommendations=tuple(RECOMMENDATIONS[i] for i in issues),
            metrics=metrics,
        )

    # ─── Internal checks ────────────────────────────────────

    @staticmethod
    def _as_bgr(image: CapturedImage) -> np.ndarray | None:
        if image is None or image.is_empty:
            return None
        img = image.pixels
        if img.dtype != np.uint8:
            return None
        if img.ndim == 2:
            return cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
        if img.ndim == 3 and img.shape[2] == 4:
            return cv2.cvtColor(img, cv2.COLOR_BGRA2BGR)
        if img.ndim == 3 and img.shape[2] == 3:
            return img
        return None

    @staticmethod
    def _check_blur(gray: np.ndarray) -> float:
        """
        Laplacian variance scaled to 0-1 (500 and above counts as sharp).
        """
        laplacian = cv2.Laplacian(gray, cv2.CV_64F)
        return min(float(laplacian.var()) / 500.0, 1.0)

    def _check_face(self, image: CapturedImage, metrics: dict) -> list[IssueCode]:
        if self._face_engine is None:
            metrics["face_check"] = "skipped"
            return []
        try:
            detection = self._face_engine.detect(image)
        except FaceModelUnavailableError as e:
            logger.warning(f"Face engine unavailable, skipping face framing checks: {e}")
            metrics["face_check"] = "skipped"
            return []
        except cv2.error as e:
            logger.warning(f"Face detection failed, skipping face framing checks: {e}")
            metrics["face_check"] = "error"
            return []

        if detection is None:
            return [IssueCode.FACE_NOT_FOUND]

        t = self._face
        ratio = detection.area_ratio
        dx, dy = detection.center_offset
        metrics["face_ratio"] = round(ratio, 3)
        metrics["face_confidence"] = round(detection.confidence, 3)
        metrics["face_offset"] = round(max(dx, dy), 3)

        issues = []
        if ratio < t.min_ratio:
            issues.append(IssueCode.FACE_TOO_SMALL)
        elif ratio > t.max_ratio:
            issues.append(IssueCode.FACE_TOO_LARGE)
        if detection.confidence < t.min_confidence:
            issues.append(IssueCode.LOW_FACE_CONFIDENCE)
        if max(dx, dy) > t.max_center_offset:
            issues.append(IssueCode.FACE_OFF_CENTER)
        return issues
