"""
Session State Machine.

Owns every stage transition of a Session:

  selecting_document → capturing_front → capturing_back (id_card only)
  → extracting → validating → liveness → matching → reviewing → completed

with failed/expired reachable from any non-terminal stage. QR sessions
jump from capturing_front straight to reviewing.

Transitions are pure mutations of the in-hand Session; persisting is the
caller's job. A trigger arriving while the session is not in the stage that
expects it, or tagged with an outdated generation, raises
StaleCompletionError and leaves the session untouched.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable

from ekyc.core.entities.document import CapturedImage, DocumentType, ImageRole
from ekyc.core.entities.errors import (
    InvalidTransitionError,
    StaleCompletionError,
    VerificationError,
)
from ekyc.core.entities.extracted_fields import ExtractedFields, QRPayload
from ekyc.core.entities.session import Session, SessionStatus, Stage, utcnow
from ekyc.core.interfaces.face_matcher import FaceMatchResult
from ekyc.core.interfaces.liveness import LivenessResult
from ekyc.core.interfaces.quality_gate import QualityReport
from ekyc.core.interfaces.rules_engine import ValidationResult

logger = logging.getLogger(__name__)

STAGE_ORDER = [
    Stage.SELECTING_DOCUMENT,
    Stage.CAPTURING_FRONT,
    Stage.CAPTURING_BACK,
    Stage.EXTRACTING,
    Stage.VALIDATING,
    Stage.LIVENESS,
    Stage.MATCHING,
    Stage.REVIEWING,
]

CAPTURE_STAGE = {
    ImageRole.DOCUMENT_FRONT: Stage.CAPTURING_FRONT,
    ImageRole.DOCUMENT_BACK: Stage.CAPTURING_BACK,
    ImageRole.FACE: Stage.LIVENESS,
}

FAILURE_LIVENESS = "liveness"
FAILURE_FACE_MATCH = "face_match"
FAILURE_CANCELLED = "cancelled"


class SessionStateMachine:
    """Transition rules for one verification session."""

    def __init__(
        self,
        session_timeout: timedelta = timedelta(minutes=30),
        accept_degraded_match: bool = False,
        face_min_confidence: float = 0.5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._timeout = session_timeout
        self._accept_degraded = accept_degraded_match
        self._min_match_confidence = face_min_confidence
        self._clock = clock

    # ─── Guards ─────────────────────────────────────────────

    def _expect(self, session: Session, *stages: Stage, generation: int | None = None) -> None:
        if session.is_terminal:
            raise InvalidTransitionError(
                f"Session {session.id} is {session.stage.value}", stage=session.stage.value
            )
        if generation is not None and generation != session.generation:
            raise StaleCompletionError(
                f"Discarding completion from generation {generation} "
                f"(session {session.id} is at generation {session.generation})",
                stage=session.stage.value,
            )
        if session.stage not in stages:
            expected = ", ".join(s.value for s in stages)
            raise StaleCompletionError(
                f"Session {session.id} is in {session.stage.value}, expected {expected}",
                stage=session.stage.value,
            )

    def _advance(self, session: Session, stage: Stage) -> Stage:
        logger.info(f"Session {session.id}: {session.stage.value} → {stage.value}")
        session.stage = stage
        session.touch(self._clock())
        return stage

    def check_expiry(self, session: Session) -> bool:
        """Lazily mark an idle session as expired. Returns True if it is."""
        if session.stage is Stage.EXPIRED:
            return True
        if session.is_terminal:
            return False
        if not session.is_expired(self._clock(), self._timeout):
            return False
        logger.info(f"Session {session.id} expired in stage {session.stage.value}")
        session.stage = Stage.EXPIRED
        session.status = SessionStatus.EXPIRED
        return True

    # ─── Capture ────────────────────────────────────────────

    def select_document(self, session: Session, document_type: DocumentType) -> Stage:
        self._expect(session, Stage.SELECTING_DOCUMENT)
        session.document_type = DocumentType(document_type)
        return self._advance(session, Stage.CAPTURING_FRONT)

    def record_capture(self, session: Session, image: CapturedImage, quality: QualityReport) -> Stage:
        """Store a document side and move on (back capture or extraction)."""
        if image.role is ImageRole.DOCUMENT_FRONT:
            self._expect(session, Stage.CAPTURING_FRONT)
            if session.document_type is DocumentType.QR_CODE:
                raise InvalidTransitionError(
                    "QR sessions record their capture through record_qr", stage=session.stage.value
                )
        elif image.role is ImageRole.DOCUMENT_BACK:
            self._expect(session, Stage.CAPTURING_BACK)
        else:
            raise InvalidTransitionError(
                "Face images are captured by the liveness stage", stage=session.stage.value
            )

        session.images[image.role] = image
        session.quality_reports[image.role] = quality
        session.last_error = None

        needs_back = (
            session.document_type.requires_back
            and ImageRole.DOCUMENT_BACK not in session.images
        )
        return self._advance(session, Stage.CAPTURING_BACK if needs_back else Stage.EXTRACTING)

    def record_qr(
        self,
        session: Session,
        image: CapturedImage,
        quality: QualityReport,
        payload: QRPayload,
        validation: ValidationResult,
    ) -> Stage:
        self._expect(session, Stage.CAPTURING_FRONT)
        if session.document_type is not DocumentType.QR_CODE:
            raise InvalidTransitionError("Not a QR session", stage=session.stage.value)
        session.images[ImageRole.DOCUMENT_FRONT] = image
        session.quality_reports[ImageRole.DOCUMENT_FRONT] = quality
        session.extracted_fields = payload
        session.validation_result = validation
        session.last_error = None
        return self._advance(session, Stage.REVIEWING)

    # ─── Stage completions ──────────────────────────────────

    def complete_extraction(self, session: Session, fields: ExtractedFields, generation: int) -> Stage:
        self._expect(session, Stage.EXTRACTING, generation=generation)
        session.extracted_fields = fields
        session.last_error = None
        return self._advance(session, Stage.VALIDATING)

    def fail_extraction(self, session: Session, error: VerificationError, generation: int) -> None:
        """Record a retryable extraction failure; the stage does not change."""
        self._expect(session, Stage.EXTRACTING, generation=generation)
        session.last_error = error
        session.touch(self._clock())

    def complete_validation(self, session: Session, result: ValidationResult, generation: int) -> Stage:
        self._expect(session, Stage.VALIDATING, generation=generation)
        session.validation_result = result
        # Validation errors never block liveness; completion is gated in review.
        return self._advance(session, Stage.LIVENESS)

    def complete_liveness(
        self,
        session: Session,
        result: LivenessResult,
        face_image: CapturedImage | None,
        generation: int,
        face_quality: QualityReport | None = None,
    ) -> Stage:
        self._expect(session, Stage.LIVENESS, generation=generation)
        session.liveness_result = result
        session.last_error = None
        if face_image is not None:
            session.images[ImageRole.FACE] = face_image
            if face_quality is not None:
                session.quality_reports[ImageRole.FACE] = face_quality
        if not result.is_live:
            return self.fail(session, FAILURE_LIVENESS)
        if face_image is None:
            return self.fail(session, FAILURE_FACE_MATCH)
        return self._advance(session, Stage.MATCHING)

    def complete_matching(self, session: Session, result: FaceMatchResult, generation: int) -> Stage:
        self._expect(session, Stage.MATCHING, generation=generation)
        session.face_match_result = result
        if not result.is_match:
            return self.fail(session, FAILURE_FACE_MATCH)
        return self._advance(session, Stage.REVIEWING)

    def fail_matching(self, session: Session, error: VerificationError, generation: int) -> Stage:
        """Record a matcher failure and send the session back to liveness for a new face."""
        self._expect(session, Stage.MATCHING, generation=generation)
        session.images.pop(ImageRole.FACE, None)
        session.quality_reports.pop(ImageRole.FACE, None)
        session.liveness_result = None
        session.face_match_result = None
        session.last_error = error
        return self._advance(session, Stage.LIVENESS)

    def review_blockers(self, session: Session) -> list[str]:
        """Reasons preventing completion; empty when the session can complete."""
        blockers: list[str] = []
        validation = session.validation_result
        if validation is None:
            blockers.append("validation: not performed")
        elif not validation.is_valid:
            blockers.extend(f"validation: {e}" for e in validation.errors)

        if session.document_type.requires_face:
            match = session.face_match_result
            if match is None:
                blockers.append("face_match: not performed")
            elif not match.is_match:
                blockers.append("face_match: faces do not match")
            elif match.degraded:
                if not self._accept_degraded:
                    blockers.append("face_match: degraded estimate not accepted")
            elif not match.trusted(self._min_match_confidence):
                blockers.append("face_match: low confidence")
        return blockers

    def finalize(self, session: Session) -> list[str]:
        """Complete the session if nothing blocks it; otherwise stay in review."""
        self._expect(session, Stage.REVIEWING)
        blockers = self.review_blockers(session)
        if blockers:
            logger.info(f"Session {session.id} stays in review: {blockers}")
            session.touch(self._clock())
            return blockers
        session.status = SessionStatus.COMPLETED
        self._advance(session, Stage.COMPLETED)
        return []

    # ─── Retake / failure ───────────────────────────────────

    def retake(self, session: Session, role: ImageRole) -> Stage:
        """
        Re-enter the capture stage of a role, clearing only what depends on it.

        Document sides clear fields, validation, liveness and matching (and
        the face capture, which belongs to liveness). The face clears
        liveness and matching only.
        """
        if session.is_terminal:
            raise InvalidTransitionError(
                f"Session {session.id} is {session.stage.value}", stage=session.stage.value
            )
        target = CAPTURE_STAGE[role]
        if role is ImageRole.DOCUMENT_BACK and not session.document_type.requires_back:
            raise InvalidTransitionError(
                f"{session.document_type.value} has no back side", stage=session.stage.value
            )
        if role is ImageRole.FACE and not session.document_type.requires_face:
            raise InvalidTransitionError("QR sessions have no face stage", stage=session.stage.value)
        if STAGE_ORDER.index(session.stage) < STAGE_ORDER.index(target):
            raise InvalidTransitionError(
                f"Cannot retake {role.value} before it was captured", stage=session.stage.value
            )

        session.generation += 1
        session.images.pop(role, None)
        session.quality_reports.pop(role, None)
        if role.is_document:
            session.extracted_fields = None
            session.validation_result = None
            session.images.pop(ImageRole.FACE, None)
            session.quality_reports.pop(ImageRole.FACE, None)
        session.liveness_result = None
        session.face_match_result = None
        session.last_error = None
        return self._advance(session, target)

    def fail(self, session: Session, reason: str, error: VerificationError | None = None) -> Stage:
        if session.is_terminal:
            raise InvalidTransitionError(
                f"Session {session.id} is {session.stage.value}", stage=session.stage.value
            )
        logger.warning(f"Session {session.id} failed in {session.stage.value}: {reason}")
        session.status = SessionStatus.FAILED
        session.failure_reason = reason
        if error is not None:
            session.last_error = error
        return self._advance(session, Stage.FAILED)

    def cancel(self, session: Session) -> Stage:
        session.generation += 1
        return self.fail(session, FAILURE_CANCELLED)
