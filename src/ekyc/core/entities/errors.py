"""
Entity: Verification errors

Every failure surfaced to callers carries a kind, the affected stage and
optional human-actionable recommendations. Never a raw traceback.
"""

from enum import Enum


class ErrorKind(str, Enum):
    INPUT = "input"
    QUALITY = "quality"
    EXTRACTION = "extraction"
    VALIDATION = "validation"
    LIVENESS = "liveness"
    FACE_MATCH = "face_match"
    PERSISTENCE = "persistence"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"


# Kinds the caller can recover from by retrying/retaking within the same session.
RETRYABLE_KINDS = {
    ErrorKind.INPUT,
    ErrorKind.QUALITY,
    ErrorKind.EXTRACTION,
    ErrorKind.VALIDATION,
    ErrorKind.TIMEOUT,
}


class VerificationError(RuntimeError):
    """Error reported by a pipeline stage."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        stage: str | None = None,
        recommendations: list[str] | None = None,
        retryable: bool | None = None,
    ):
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.message = message
        self.stage = stage
        self.recommendations = list(recommendations or [])
        self._retryable = retryable

    @property
    def retryable(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "stage": self.stage,
            "message": self.message,
            "recommendations": self.recommendations,
            "retryable": self.retryable,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VerificationError":
        return cls(
            kind=ErrorKind(data["kind"]),
            message=data.get("message", ""),
            stage=data.get("stage"),
            recommendations=data.get("recommendations") or [],
            retryable=data.get("retryable"),
        )

    def __repr__(self):
        return f"<{type(self).__name__} {self.kind.value} stage={self.stage}: {self.message}>"


class SessionNotFoundError(VerificationError):
    def __init__(self, session_id: str):
        super().__init__(
            ErrorKind.NOT_FOUND,
            f"Session {session_id} not found or expired",
            recommendations=["START_NEW_SESSION"],
        )
        self.session_id = session_id


class InvalidTransitionError(VerificationError):
    def __init__(self, message: str, stage: str | None = None):
        super().__init__(ErrorKind.INVALID_TRANSITION, message, stage=stage)


class StaleCompletionError(InvalidTransitionError):
    """A completion arrived for a stage the session has already left."""
