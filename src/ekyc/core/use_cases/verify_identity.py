"""
Use Case: Verify Identity.

Orchestrates one session: Quality Gate → OCR → Field Extraction → Rules
→ Liveness → Face Matching → Review.

Long operations (OCR, liveness capture, embeddings) run off the event loop
as cancellable tasks; the state machine advances only when they complete,
and completions from an older generation are discarded.
"""

import asyncio
import logging
import time
from typing import Callable

from ekyc.core.entities.document import CapturedImage, DocumentType, ImageRole
from ekyc.core.entities.errors import (
    ErrorKind,
    InvalidTransitionError,
    SessionNotFoundError,
    StaleCompletionError,
    VerificationError,
)
from ekyc.core.entities.extracted_fields import QRPayload
from ekyc.core.entities.session import Session, Stage
from ekyc.core.interfaces.capture_source import CaptureDeviceError, ICaptureSource
from ekyc.core.interfaces.face_matcher import IFaceMatcher
from ekyc.core.interfaces.field_extractor import IFieldExtractor
from ekyc.core.interfaces.liveness import ChallengeListener, ILivenessEvaluator
from ekyc.core.interfaces.ocr_engine import IOCREngine, OCRProgress
from ekyc.core.interfaces.qr_decoder import IQRDecoder
from ekyc.core.interfaces.quality_gate import IQualityGate, IssueCode, RecommendationCode
from ekyc.core.interfaces.rules_engine import IRulesEngine
from ekyc.core.interfaces.session_store import ISessionStore
from ekyc.core.use_cases.session_state_machine import SessionStateMachine

logger = logging.getLogger(__name__)

CAPTURE_ROLE_FOR_STAGE = {
    Stage.CAPTURING_FRONT: ImageRole.DOCUMENT_FRONT,
    Stage.CAPTURING_BACK: ImageRole.DOCUMENT_BACK,
}


def _elapsed_ms(t0: float) -> float:
    return round((time.perf_counter() - t0) * 1000, 2)


class VerifyIdentityUseCase:
    """
    Use Case: drives a verification session from document selection to review.

    Dependency Injection: every collaborator comes through the constructor.
    The QR decoder is optional; without it qr_code sessions are rejected.
    """

    def __init__(
        self,
        store: ISessionStore,
        quality_gate: IQualityGate,
        ocr_engine: IOCREngine,
        field_extractor: IFieldExtractor,
        rules_engine: IRulesEngine,
        liveness_evaluator: ILivenessEvaluator,
        face_matcher: IFaceMatcher,
        qr_decoder: IQRDecoder | None = None,
        state_machine: SessionStateMachine | None = None,
        quality_min_score: int = 70,
        ocr_languages: list[str] | None = None,
    ):
        self._store = store
        self._quality = quality_gate
        self._ocr = ocr_engine
        self._extractor = field_extractor
        self._rules = rules_engine
        self._liveness = liveness_evaluator
        self._matcher = face_matcher
        self._qr = qr_decoder
        self._machine = state_machine or SessionStateMachine()
        self._min_score = quality_min_score
        self._languages = list(ocr_languages or ["vi", "en"])

        self._tasks: dict[str, set[asyncio.Task]] = {}
        self._sources: dict[str, set[ICaptureSource]] = {}
        # Captures as submitted; the stored copies may be downsized for persistence.
        self._working: dict[str, dict[ImageRole, CapturedImage]] = {}

    # ─── Helpers ────────────────────────────────────────────

    def _apply(self, session_id: str, event: Callable[[Session], object]) -> Session:
        """Run one state-machine event under the store's per-id lock and persist it."""
        expired = False

        def fn(session: Session) -> None:
            nonlocal expired
            if self._machine.check_expiry(session):
                expired = True
                return
            event(session)

        session = self._store.mutate(session_id, fn)
        if session is None or expired:
            self._working.pop(session_id, None)
            raise SessionNotFoundError(session_id)
        self._sync_working(session)
        return session

    def _sync_working(self, session: Session) -> None:
        """Drop working images the session no longer holds (retake, terminal stage)."""
        working = self._working.get(session.id)
        if working is None:
            return
        if session.is_terminal:
            self._working.pop(session.id, None)
            return
        for role in [r for r in working if r not in session.images]:
            del working[role]

    def _keep_working(self, session: Session, image: CapturedImage | None) -> None:
        if image is None or session.is_terminal or image.role not in session.images:
            return
        self._working.setdefault(session.id, {})[image.role] = image

    def _working_image(self, session: Session, role: ImageRole) -> CapturedImage | None:
        """The image as captured; after a restart only the stored copy is left."""
        image = self._working.get(session.id, {}).get(role)
        if image is None:
            image = session.images.get(role)
        return image

    def _spawn(self, session_id: str, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        tasks = self._tasks.setdefault(session_id, set())
        tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            tasks.discard(t)
            if not tasks:
                self._tasks.pop(session_id, None)

        task.add_done_callback(_done)
        return task

    def _cancel_tasks(self, session_id: str) -> None:
        for task in list(self._tasks.get(session_id, ())):
            task.cancel()

    def _release_sources(self, session_id: str) -> None:
        for source in self._sources.pop(session_id, set()):
            source.release()

    # ─── Session lifecycle ──────────────────────────────────

    def get(self, session_id: str) -> Session:
        session = self._store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def start(self, document_type: DocumentType) -> Session:
        """Open a session and select its document type."""
        document_type = DocumentType(document_type)
        if document_type is DocumentType.QR_CODE and self._qr is None:
            raise VerificationError(
                ErrorKind.INPUT, "QR code verification is not available", stage=Stage.SELECTING_DOCUMENT.value
            )
        session_id = self._store.create(document_type)
        logger.info(f"Session {session_id} started for {document_type.value}")
        return self.select_document(session_id, document_type)

    def select_document(self, session_id: str, document_type: DocumentType) -> Session:
        return self._apply(session_id, lambda s: self._machine.select_document(s, document_type))

    async def submit_capture(self, session_id: str, image: CapturedImage, force: bool = False) -> Session:
        """
        Quality-gate a document capture and record it.

        Args:
            session_id: Target session.
            image: Captured document side; its role must match the stage.
            force: Accept a low score (the image must still be readable).

        Raises:
            VerificationError(QUALITY): score below minimum; session unchanged.
            VerificationError(INPUT): wrong role, or no QR code found.
        """
        session = self.get(session_id)
        expected = CAPTURE_ROLE_FOR_STAGE.get(session.stage)
        if expected is None:
            raise InvalidTransitionError(
                f"Session {session_id} is not capturing a document (stage {session.stage.value})",
                stage=session.stage.value,
            )
        if image.role is not expected:
            raise VerificationError(
                ErrorKind.INPUT,
                f"Expected a {expected.value} image, got {image.role.value}",
                stage=session.stage.value,
            )

        # ── 1. Quality Gate ────────────────────────────────
        t0 = time.perf_counter()
        report = await asyncio.to_thread(self._quality.assess, image, image.role)
        logger.info(
            f"Session {session_id}: {image.role.value} quality {report.score} "
            f"issues={sorted(i.value for i in report.issues)} ({_elapsed_ms(t0)}ms)"
        )
        unreadable = IssueCode.UNREADABLE in report.issues
        if unreadable or (not report.passed(self._min_score) and not force):
            raise VerificationError(
                ErrorKind.QUALITY,
                f"Image quality {report.score} is below the minimum of {self._min_score}",
                stage=session.stage.value,
                recommendations=[r.value for r in report.recommendations] or [RecommendationCode.RETAKE.value],
            )

        # ── 2a. QR decode (qr_code sessions) ───────────────
        if session.document_type is DocumentType.QR_CODE:
            return await self._record_qr(session, image, report)

        # ── 2b. Document side ──────────────────────────────
        session = self._apply(session_id, lambda s: self._machine.record_capture(s, image, report))
        self._keep_working(session, image)
        if session.stage is Stage.EXTRACTING:
            self._spawn(session_id, self._run_extraction(session_id, session.generation))
        return session

    async def _record_qr(self, session: Session, image: CapturedImage, report) -> Session:
        payload = await asyncio.to_thread(self._qr.decode, image)
        if payload is None:
            raise VerificationError(
                ErrorKind.INPUT,
                "No QR code found in the image",
                stage=session.stage.value,
                recommendations=[RecommendationCode.RETAKE.value],
            )
        fields = QRPayload(raw_text=payload, confidence=1.0)
        validation = self._rules.validate(fields, DocumentType.QR_CODE)
        return self._apply(
            session.id, lambda s: self._machine.record_qr(s, image, report, fields, validation)
        )

    # ─── Extraction → Validation ────────────────────────────

    def _ocr_progress(self, session_id: str) -> Callable[[OCRProgress], None]:
        def listener(event: OCRProgress) -> None:
            logger.debug(f"Session {session_id}: OCR {event.stage} {event.fraction:.0%}")
        return listener

    async def _run_extraction(self, session_id: str, generation: int) -> None:
        session = self._store.get(session_id)
        if session is None or session.generation != generation:
            return
        stage_latencies: dict[str, float] = {}

        # ── 3. OCR ─────────────────────────────────────────
        t0 = time.perf_counter()
        error: VerificationError | None = None
        try:
            texts, confidences = [], []
            for role in (ImageRole.DOCUMENT_FRONT, ImageRole.DOCUMENT_BACK):
                image = self._working_image(session, role)
                if image is None:
                    continue
                ocr = await asyncio.to_thread(
                    self._ocr.recognize, image, self._languages, self._ocr_progress(session_id)
                )
                if ocr.text.strip():
                    texts.append(ocr.text)
                    confidences.append(ocr.confidence)
            if not texts:
                raise VerificationError(
                    ErrorKind.EXTRACTION,
                    "No text recognized on the document",
                    stage=Stage.EXTRACTING.value,
                    recommendations=[RecommendationCode.RETAKE.value],
                )
            confidence = sum(confidences) / len(confidences)
            fields = self._extractor.extract("\n".join(texts), session.document_type, confidence)
        except VerificationError as e:
            error = e
        except Exception as e:
            logger.exception(f"Session {session_id}: OCR failed")
            error = VerificationError(
                ErrorKind.EXTRACTION,
                f"Text recognition failed: {e}",
                stage=Stage.EXTRACTING.value,
                recommendations=["RETRY"],
            )
        if error is not None:
            logger.warning(f"Session {session_id}: extraction failed, awaiting retry ({error.message})")
            self._complete(session_id, lambda s: self._machine.fail_extraction(s, error, generation))
            return
        stage_latencies["ocr_ms"] = _elapsed_ms(t0)

        if not self._complete(
            session_id, lambda s: self._machine.complete_extraction(s, fields, generation)
        ):
            return

        # ── 4. Rules ───────────────────────────────────────
        t0 = time.perf_counter()
        result = self._rules.validate(fields, session.document_type)
        stage_latencies["rules_ms"] = _elapsed_ms(t0)
        if self._complete(session_id, lambda s: self._machine.complete_validation(s, result, generation)):
            logger.info(
                f"Session {session_id}: extracted {sorted(fields.values)} "
                f"valid={result.is_valid} latencies={stage_latencies}"
            )

    def _complete(self, session_id: str, event: Callable[[Session], object]) -> bool:
        """Apply a background completion; stale or vanished sessions are dropped."""
        try:
            self._apply(session_id, event)
        except StaleCompletionError as e:
            logger.warning(f"Session {session_id}: {e.message}")
            return False
        except VerificationError as e:
            logger.warning(f"Session {session_id}: completion dropped ({e.kind.value}: {e.message})")
            return False
        return True

    async def retry_extraction(self, session_id: str) -> Session:
        """Re-run OCR after a recorded extraction failure."""
        session = self.get(session_id)
        if session.stage is not Stage.EXTRACTING:
            raise InvalidTransitionError(
                f"Session {session_id} is not extracting", stage=session.stage.value
            )
        if self._tasks.get(session_id):
            return session
        self._spawn(session_id, self._run_extraction(session_id, session.generation))
        return session

    # ─── Liveness → Matching ────────────────────────────────

    async def run_liveness(
        self,
        session_id: str,
        source: ICaptureSource,
        on_challenge: ChallengeListener | None = None,
    ) -> Session:
        """
        Run the challenge sequence, then face matching on success.

        The source is released when this returns. Capture timeouts and device
        errors are retryable and leave the session in the liveness stage.
        """
        session = self.get(session_id)
        if session.stage is not Stage.LIVENESS:
            source.release()
            raise InvalidTransitionError(
                f"Session {session_id} is not awaiting liveness", stage=session.stage.value
            )
        generation = session.generation
        self._sources.setdefault(session_id, set()).add(source)

        # ── 5. Liveness ────────────────────────────────────
        t0 = time.perf_counter()
        task = self._spawn(session_id, self._liveness.evaluate(source, on_challenge))
        try:
            outcome = await self._await_stage(session_id, task, generation)
        except asyncio.TimeoutError:
            raise VerificationError(
                ErrorKind.TIMEOUT,
                "Timed out waiting for a camera frame",
                stage=Stage.LIVENESS.value,
                recommendations=["RETRY"],
            )
        except CaptureDeviceError as e:
            raise VerificationError(
                ErrorKind.INPUT,
                f"Camera unavailable: {e}",
                stage=Stage.LIVENESS.value,
                recommendations=["CHECK_CAMERA_PERMISSION"],
            )
        except VerificationError:
            raise
        except Exception as e:
            logger.exception(f"Session {session_id}: liveness check crashed")
            raise VerificationError(
                ErrorKind.LIVENESS,
                f"Liveness check failed: {e}",
                stage=Stage.LIVENESS.value,
                recommendations=["RETRY"],
                retryable=True,
            )
        finally:
            sources = self._sources.get(session_id)
            if sources is not None:
                sources.discard(source)
                if not sources:
                    self._sources.pop(session_id, None)
            source.release()
        logger.info(
            f"Session {session_id}: liveness live={outcome.result.is_live} "
            f"confidence={outcome.result.confidence:.2f} ({_elapsed_ms(t0)}ms)"
        )

        face_quality = None
        if outcome.face_image is not None:
            face_quality = await asyncio.to_thread(self._quality.assess, outcome.face_image, ImageRole.FACE)

        session = self._apply(
            session_id,
            lambda s: self._machine.complete_liveness(
                s, outcome.result, outcome.face_image, generation, face_quality
            ),
        )
        self._keep_working(session, outcome.face_image)
        if session.stage is not Stage.MATCHING:
            return session
        return await self._run_matching(session, generation)

    async def _await_stage(self, session_id: str, task: asyncio.Task, generation: int):
        """Await a stage task; a retake/cancel that interrupts it surfaces as stale."""
        try:
            return await task
        except asyncio.CancelledError:
            current = self._store.get(session_id)
            if current is not None and current.generation != generation:
                raise StaleCompletionError(
                    f"Session {session_id} was retaken or cancelled", stage=current.stage.value
                )
            raise

    async def _run_matching(self, session: Session, generation: int) -> Session:
        # ── 6. Face Matching ───────────────────────────────
        t0 = time.perf_counter()
        document = self._working_image(session, ImageRole.DOCUMENT_FRONT)
        face = self._working_image(session, ImageRole.FACE)
        task = self._spawn(session.id, asyncio.to_thread(self._matcher.match, document, face))
        try:
            result = await self._await_stage(session.id, task, generation)
        except VerificationError:
            raise
        except Exception as e:
            logger.exception(f"Session {session.id}: face matching crashed")
            error = VerificationError(
                ErrorKind.FACE_MATCH,
                f"Face matching failed: {e}",
                stage=Stage.MATCHING.value,
                recommendations=["RETRY_LIVENESS"],
                retryable=True,
            )
            self._complete(session.id, lambda s: self._machine.fail_matching(s, error, generation))
            raise error
        grading = self._rules.validate_face_match(result)
        result.warnings = grading.warnings
        logger.info(
            f"Session {session.id}: face match similarity={result.similarity:.3f} "
            f"match={result.is_match} degraded={result.degraded} ({_elapsed_ms(t0)}ms)"
        )
        return self._apply(session.id, lambda s: self._machine.complete_matching(s, result, generation))

    # ─── Review / retake / cancel ───────────────────────────

    def finalize(self, session_id: str) -> tuple[Session, list[str]]:
        """Try to complete a session under review. Returns it with any blockers."""
        blockers: list[str] = []

        def event(session: Session) -> None:
            blockers.extend(self._machine.finalize(session))

        session = self._apply(session_id, event)
        return session, blockers

    def retake(self, session_id: str, role: ImageRole) -> Session:
        """Discard a capture and everything downstream of it."""
        self._cancel_tasks(session_id)
        self._release_sources(session_id)
        return self._apply(session_id, lambda s: self._machine.retake(s, ImageRole(role)))

    def cancel(self, session_id: str) -> Session:
        """Abandon a session: stop its work, release its devices, mark it failed."""
        self._cancel_tasks(session_id)
        self._release_sources(session_id)
        return self._apply(session_id, self._machine.cancel)

    def delete(self, session_id: str) -> bool:
        self._cancel_tasks(session_id)
        self._release_sources(session_id)
        self._working.pop(session_id, None)
        return self._store.delete(session_id)

    async def wait_for_idle(self, session_id: str | None = None) -> None:
        """Wait until background work (of one session, or all) has settled."""
        while True:
            if session_id is None:
                pending = {t for tasks in self._tasks.values() for t in tasks}
            else:
                pending = set(self._tasks.get(session_id, ()))
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        for session_id in list(self._tasks):
            self._cancel_tasks(session_id)
        for session_id in list(self._sources):
            self._release_sources(session_id)
        self._working.clear()
        await self.wait_for_idle()
