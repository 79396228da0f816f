"""
Pydantic schemas — request/response models for the API.
"""

from pydantic import BaseModel

from ekyc.core.entities.document import DocumentType, ImageRole
from ekyc.core.entities.session import Session


class StartSessionRequest(BaseModel):
    document_type: DocumentType


class RetakeRequest(BaseModel):
    role: ImageRole


class ErrorResponse(BaseModel):
    kind: str
    stage: str | None = None
    message: str
    recommendations: list[str] = []
    retryable: bool = False


class ImageResponse(BaseModel):
    role: str
    width: int
    height: int
    captured_at: str


class QualityResponse(BaseModel):
    score: int
    issues: list[str]
    recommendations: list[str]
    metrics: dict = {}


class FieldsResponse(BaseModel):
    document_type: str
    values: dict[str, str]
    confidence: float
    raw_text: str = ""


class RuleViolationResponse(BaseModel):
    rule_id: str
    severity: str
    detail: str


class ValidationResponse(BaseModel):
    is_valid: bool
    errors: list[str]
    warnings: list[str]
    violations: list[RuleViolationResponse]
    rules_version: str


class LivenessResponse(BaseModel):
    is_live: bool
    confidence: float
    checks: dict[str, bool]
    issues: list[str] = []
    degraded: bool = False


class FaceMatchResponse(BaseModel):
    similarity: float
    confidence: float
    is_match: bool
    degraded: bool = False
    reason: str = ""
    warnings: list[str] = []


class SessionResponse(BaseModel):
    id: str
    document_type: str
    stage: str
    status: str
    images: dict[str, ImageResponse] = {}
    quality_reports: dict[str, QualityResponse] = {}
    extracted_fields: FieldsResponse | None = None
    validation_result: ValidationResponse | None = None
    liveness_result: LivenessResponse | None = None
    face_match_result: FaceMatchResponse | None = None
    failure_reason: str | None = None
    last_error: ErrorResponse | None = None
    generation: int = 0
    created_at: str
    last_activity_at: str

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        # Redacted serialization: image metadata only, never pixels
        return cls.model_validate(session.to_dict())


class CompleteResponse(BaseModel):
    completed: bool
    blockers: list[str]
    session: SessionResponse


class SessionListResponse(BaseModel):
    sessions: list[SessionResponse]
    total: int


class StatsResponse(BaseModel):
    total: int
    in_progress: int
    completed: int
    failed: int
    expired: int
    storage_bytes: int
    oldest: str | None = None
    newest: str | None = None


class ImportResponse(BaseModel):
    id: str
