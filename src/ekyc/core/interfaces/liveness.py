"""
Contract: Liveness Evaluator

Runs a fixed challenge/response sequence against a live feed and decides
whether the face belongs to a live person.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from ekyc.core.entities.document import CapturedImage
from ekyc.core.interfaces.capture_source import ICaptureSource


class Challenge(str, Enum):
    LOOK_STRAIGHT = "look_straight"
    SMILE = "smile"
    TURN_RIGHT = "turn_right"
    TURN_LEFT = "turn_left"


CHALLENGE_SEQUENCE: tuple[Challenge, ...] = (
    Challenge.LOOK_STRAIGHT,
    Challenge.SMILE,
    Challenge.TURN_RIGHT,
    Challenge.TURN_LEFT,
)


@dataclass
class LivenessResult:
    """Liveness outcome over the challenge sequence."""
    is_live: bool
    confidence: float                               # fraction of passed checks
    checks: dict[Challenge, bool] = field(default_factory=dict)
    issues: list[str] = field(default_factory=list)
    degraded: bool = False                          # face engine unavailable, heuristic used

    def to_dict(self) -> dict:
        return {
            "is_live": self.is_live,
            "confidence": self.confidence,
            "checks": {c.value: ok for c, ok in self.checks.items()},
            "issues": list(self.issues),
            "degraded": self.degraded,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LivenessResult":
        return cls(
            is_live=bool(data["is_live"]),
            confidence=float(data["confidence"]),
            checks={Challenge(c): bool(ok) for c, ok in (data.get("checks") or {}).items()},
            issues=list(data.get("issues") or []),
            degraded=bool(data.get("degraded", False)),
        )


@dataclass
class LivenessOutcome:
    """Result plus the frontal frame captured for face matching."""
    result: LivenessResult
    face_image: CapturedImage | None


ChallengeListener = Callable[[Challenge, int], None]


class ILivenessEvaluator(ABC):
    """Port: Liveness Evaluator"""

    @abstractmethod
    async def evaluate(
        self,
        source: ICaptureSource,
        on_challenge: ChallengeListener | None = None,
    ) -> LivenessOutcome:
        """
        Run the challenge sequence against a live source.

        Args:
            source: Live capture source, sampled once per challenge.
            on_challenge: Optional listener (challenge, index) for UI prompts.

        Returns:
            LivenessOutcome with the result and the captured face image.
        """
        ...
