"""
Contract: Face Matcher

Compares the face on the identity document with the live capture.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from ekyc.core.entities.document import CapturedImage


@dataclass
class FaceMatchResult:
    """
    Similarity between document face and live face.

    is_match depends on similarity only; confidence says whether the
    decision should be trusted downstream.
    """
    similarity: float                 # 0.0 to 1.0
    confidence: float                 # 0.0 to 1.0
    is_match: bool
    degraded: bool = False            # fallback estimate, face models unavailable
    reason: str = ""                  # e.g. "no_face", "models_unavailable"
    warnings: list[str] = field(default_factory=list)

    def trusted(self, min_confidence: float) -> bool:
        return not self.degraded and self.confidence >= min_confidence

    def to_dict(self) -> dict:
        return {
            "similarity": self.similarity,
            "confidence": self.confidence,
            "is_match": self.is_match,
            "degraded": self.degraded,
            "reason": self.reason,
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FaceMatchResult":
        return cls(
            similarity=float(data["similarity"]),
            confidence=float(data["confidence"]),
            is_match=bool(data["is_match"]),
            degraded=bool(data.get("degraded", False)),
            reason=data.get("reason", ""),
            warnings=list(data.get("warnings") or []),
        )


class IFaceMatcher(ABC):
    """Port: Face Matcher (blocking)."""

    @abstractmethod
    def match(self, document_image: CapturedImage, face_image: CapturedImage) -> FaceMatchResult:
        """
        Compare two faces.

        Args:
            document_image: Document front (the portrait is located inside it).
            face_image: Live face capture.

        Returns:
            FaceMatchResult.
        """
        ...
