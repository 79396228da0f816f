"""
Entity: Verification Session

Aggregate root of one verification attempt. Every other entity (images,
quality reports, extracted fields, results) is owned by exactly one
session and is persisted only as part of it.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

from ekyc.core.entities.document import CapturedImage, DocumentType, ImageRole
from ekyc.core.entities.errors import VerificationError
from ekyc.core.entities.extracted_fields import ExtractedFields, fields_from_dict
from ekyc.core.interfaces.face_matcher import FaceMatchResult
from ekyc.core.interfaces.liveness import LivenessResult
from ekyc.core.interfaces.quality_gate import QualityReport
from ekyc.core.interfaces.rules_engine import ValidationResult


class Stage(str, Enum):
    SELECTING_DOCUMENT = "selecting_document"
    CAPTURING_FRONT = "capturing_front"
    CAPTURING_BACK = "capturing_back"
    EXTRACTING = "extracting"
    VALIDATING = "validating"
    LIVENESS = "liveness"
    MATCHING = "matching"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STAGES = {Stage.COMPLETED, Stage.FAILED, Stage.EXPIRED}


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    return f"ekyc_{uuid.uuid4().hex}"


ImageEncoder = Callable[[CapturedImage], dict]
ImageDecoder = Callable[[dict], CapturedImage]


@dataclass
class Session:
    """One end-to-end verification attempt."""
    id: str
    document_type: DocumentType
    stage: Stage = Stage.SELECTING_DOCUMENT
    status: SessionStatus = SessionStatus.IN_PROGRESS
    images: dict[ImageRole, CapturedImage] = field(default_factory=dict)
    quality_reports: dict[ImageRole, QualityReport] = field(default_factory=dict)
    extracted_fields: ExtractedFields | None = None
    validation_result: ValidationResult | None = None
    liveness_result: LivenessResult | None = None
    face_match_result: FaceMatchResult | None = None
    failure_reason: str | None = None
    last_error: VerificationError | None = None
    generation: int = 0                     # bumped on retake/cancel; stale completions carry an old value
    created_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)

    @classmethod
    def start(cls, document_type: DocumentType, now: datetime | None = None) -> "Session":
        ts = now or utcnow()
        return cls(
            id=new_session_id(),
            document_type=DocumentType(document_type),
            created_at=ts,
            last_activity_at=ts,
        )

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    @property
    def qr_payload(self) -> str | None:
        if self.document_type is DocumentType.QR_CODE and self.extracted_fields is not None:
            return self.extracted_fields.raw_text
        return None

    def is_expired(self, now: datetime, timeout: timedelta) -> bool:
        return now - self.last_activity_at > timeout

    def touch(self, now: datetime | None = None) -> None:
        self.last_activity_at = now or utcnow()

    # ─── Serialization ──────────────────────────────────────

    def to_dict(self, encode_image: ImageEncoder | None = None) -> dict:
        """
        Serialize the session.

        Images go through encode_image; without an encoder only their
        metadata is kept (used for redacted exports).
        """
        images = {}
        for role, image in self.images.items():
            if encode_image is not None:
                images[role.value] = encode_image(image)
            else:
                images[role.value] = {
                    "role": role.value,
                    "width": image.width,
                    "height": image.height,
                    "captured_at": image.captured_at.isoformat(),
                    "data": "[IMAGE_DATA]",
                }

        return {
            "id": self.id,
            "document_type": self.document_type.value,
            "stage": self.stage.value,
            "status": self.status.value,
            "images": images,
            "quality_reports": {r.value: q.to_dict() for r, q in self.quality_reports.items()},
            "extracted_fields": self.extracted_fields.to_dict() if self.extracted_fields else None,
            "validation_result": self.validation_result.to_dict() if self.validation_result else None,
            "liveness_result": self.liveness_result.to_dict() if self.liveness_result else None,
            "face_match_result": self.face_match_result.to_dict() if self.face_match_result else None,
            "failure_reason": self.failure_reason,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "generation": self.generation,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict, decode_image: ImageDecoder | None = None) -> "Session":
        """Inverse of to_dict. Raises KeyError/ValueError on malformed input."""
        images: dict[ImageRole, CapturedImage] = {}
        if decode_image is not None:
            for role, payload in (data.get("images") or {}).items():
                images[ImageRole(role)] = decode_image(payload)

        def _opt(key, loader):
            value = data.get(key)
            return loader(value) if value else None

        return cls(
            id=data["id"],
            document_type=DocumentType(data["document_type"]),
            stage=Stage(data["stage"]),
            status=SessionStatus(data["status"]),
            images=images,
            quality_reports={
                ImageRole(r): QualityReport.from_dict(q)
                for r, q in (data.get("quality_reports") or {}).items()
            },
            extracted_fields=_opt("extracted_fields", fields_from_dict),
            validation_result=_opt("validation_result", ValidationResult.from_dict),
            liveness_result=_opt("liveness_result", LivenessResult.from_dict),
            face_match_result=_opt("face_match_result", FaceMatchResult.from_dict),
            failure_reason=data.get("failure_reason"),
            last_error=_opt("last_error", VerificationError.from_dict),
            generation=int(data.get("generation", 0)),
            created_at=_parse_ts(data["created_at"]),
            last_activity_at=_parse_ts(data["last_activity_at"]),
        )


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts
