"""
Contract: Quality Gate

Decides whether a captured image is good enough to go through the
expensive stages (OCR, face matching). Any implementation (OpenCV, ML
model, external service) must respect this contract.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from ekyc.core.entities.document import CapturedImage, ImageRole


class IssueCode(str, Enum):
    UNREADABLE = "UNREADABLE"
    TOO_DARK = "TOO_DARK"
    TOO_BRIGHT = "TOO_BRIGHT"
    LOW_CONTRAST = "LOW_CONTRAST"
    BLURRY = "BLURRY"
    LOW_RESOLUTION = "LOW_RESOLUTION"
    FACE_NOT_FOUND = "FACE_NOT_FOUND"
    FACE_TOO_SMALL = "FACE_TOO_SMALL"
    FACE_TOO_LARGE = "FACE_TOO_LARGE"
    LOW_FACE_CONFIDENCE = "LOW_FACE_CONFIDENCE"
    FACE_OFF_CENTER = "FACE_OFF_CENTER"


class RecommendationCode(str, Enum):
    RETAKE = "RETAKE"
    IMPROVE_LIGHTING = "IMPROVE_LIGHTING"
    AVOID_DIRECT_LIGHT = "AVOID_DIRECT_LIGHT"
    USE_CONTRASTING_BACKGROUND = "USE_CONTRASTING_BACKGROUND"
    HOLD_STEADY = "HOLD_STEADY"
    USE_HIGHER_RESOLUTION = "USE_HIGHER_RESOLUTION"
    FACE_THE_CAMERA = "FACE_THE_CAMERA"
    MOVE_CLOSER = "MOVE_CLOSER"
    MOVE_FARTHER = "MOVE_FARTHER"
    KEEP_FACE_STRAIGHT = "KEEP_FACE_STRAIGHT"
    CENTER_FACE = "CENTER_FACE"


@dataclass(frozen=True)
class QualityReport:
    """Quality assessment of one captured image."""
    score: int                                   # 0 (unusable) to 100 (perfect)
    issues: frozenset[IssueCode] = frozenset()
    recommendations: tuple[RecommendationCode, ...] = ()
    metrics: dict = field(default_factory=dict, compare=False, hash=False)

    def passed(self, min_score: int) -> bool:
        return self.score >= min_score

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "issues": sorted(i.value for i in self.issues),
            "recommendations": [r.value for r in self.recommendations],
            "metrics": dict(self.metrics),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QualityReport":
        return cls(
            score=int(data["score"]),
            issues=frozenset(IssueCode(i) for i in data.get("issues", [])),
            recommendations=tuple(RecommendationCode(r) for r in data.get("recommendations", [])),
            metrics=dict(data.get("metrics") or {}),
        )


class IQualityGate(ABC):
    """
    Port: Quality Gate

    Scores one image against role-specific thresholds. Must be pure and
    deterministic, and must never raise.
    """

    @abstractmethod
    def assess(self, image: CapturedImage, role: ImageRole) -> QualityReport:
        """
        Assess image quality.

        Args:
            image: Captured image.
            role: Logical role (document side or face); selects thresholds.

        Returns:
            QualityReport with score, issue codes and ordered recommendations.
        """
        ...
