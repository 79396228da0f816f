import asyncio
from datetime import timedelta

import numpy as np
import pytest

from conftest import (
    BACK_TEXT,
    FRONT_TEXT,
    FakeMatcher,
    FakeOCR,
    FakeQR,
    black_frame,
    checkerboard,
    document_image,
    face_frame,
)
from ekyc.core.entities.document import CapturedImage, DocumentType, ImageRole
from ekyc.core.entities.errors import (
    ErrorKind,
    InvalidTransitionError,
    SessionNotFoundError,
    VerificationError,
)
from ekyc.core.entities.session import SessionStatus, Stage
from ekyc.core.interfaces.capture_source import ICaptureSource
from ekyc.infrastructure.capture.frame_source import FrameSequenceSource
from ekyc.infrastructure.db.session_store import SQLAlchemySessionStore

QR_PAYLOAD = "079203001238|123456789|NGUYEN VAN AN|01011990|Nam|Ha Noi|15082021"


def _live_frames():
    return FrameSequenceSource([face_frame() for _ in range(4)])


async def _capture_id_card(uc, session_id):
    await uc.submit_capture(session_id, document_image(ImageRole.DOCUMENT_FRONT))
    return await _capture_id_card_back(uc, session_id)


async def _capture_id_card_back(uc, session_id):
    await uc.submit_capture(session_id, document_image(ImageRole.DOCUMENT_BACK))
    await uc.wait_for_idle(session_id)
    return uc.get(session_id)


def test_id_card_end_to_end(make_use_case):
    uc = make_use_case()

    async def scenario():
        session = uc.start(DocumentType.ID_CARD)
        assert session.stage is Stage.CAPTURING_FRONT

        front = await uc.submit_capture(session.id, document_image(ImageRole.DOCUMENT_FRONT))
        assert front.stage is Stage.CAPTURING_BACK
        assert front.quality_reports[ImageRole.DOCUMENT_FRONT].score == 100

        session = await _capture_id_card_back(uc, session.id)
        assert session.stage is Stage.LIVENESS
        assert session.extracted_fields.get("id_number") == "079203001238"
        assert session.extracted_fields.get("full_name") == "NGUYỄN VĂN AN"
        assert session.validation_result.is_valid

        session = await uc.run_liveness(session.id, _live_frames())
        assert session.stage is Stage.REVIEWING
        assert session.liveness_result.is_live
        assert session.face_match_result.similarity == 0.82
        assert ImageRole.FACE in session.images

        session, blockers = uc.finalize(session.id)
        assert blockers == []
        return session

    session = asyncio.run(scenario())
    assert session.status is SessionStatus.COMPLETED
    assert uc.get(session.id).stage is Stage.COMPLETED


def test_liveness_failure_fails_the_session(make_use_case):
    uc = make_use_case()

    async def scenario():
        session = uc.start(DocumentType.ID_CARD)
        await _capture_id_card(uc, session.id)
        source = FrameSequenceSource([face_frame(), black_frame(), black_frame(), black_frame()])
        session = await uc.run_liveness(session.id, source)
        assert source.released
        return session

    session = asyncio.run(scenario())
    assert session.stage is Stage.FAILED
    assert session.failure_reason == "liveness"
    assert session.liveness_result.confidence == 0.25
    assert session.face_match_result is None


def test_face_mismatch_fails_the_session(make_use_case):
    uc = make_use_case(matcher=FakeMatcher(similarity=0.3))

    async def scenario():
        session = uc.start(DocumentType.PASSPORT)
        await uc.submit_capture(session.id, document_image())
        await uc.wait_for_idle(session.id)
        return await uc.run_liveness(session.id, _live_frames())

    session = asyncio.run(scenario())
    assert session.failure_reason == "face_match"
    assert not session.face_match_result.is_match


def test_low_quality_capture_is_rejected_unless_forced(make_use_case):
    uc = make_use_case()
    flat = CapturedImage(pixels=np.full((600, 800, 3), 128, dtype=np.uint8), role=ImageRole.DOCUMENT_FRONT)

    async def scenario():
        session = uc.start(DocumentType.ID_CARD)
        with pytest.raises(VerificationError) as exc_info:
            await uc.submit_capture(session.id, flat)
        assert exc_info.value.kind is ErrorKind.QUALITY
        assert exc_info.value.recommendations == ["USE_CONTRASTING_BACKGROUND", "HOLD_STEADY"]
        assert uc.get(session.id).stage is Stage.CAPTURING_FRONT

        return await uc.submit_capture(session.id, flat, force=True)

    session = asyncio.run(scenario())
    assert session.stage is Stage.CAPTURING_BACK
    assert session.quality_reports[ImageRole.DOCUMENT_FRONT].score == 60


def test_unreadable_capture_cannot_be_forced(make_use_case):
    uc = make_use_case()
    empty = CapturedImage(pixels=np.zeros((0, 0, 3), dtype=np.uint8), role=ImageRole.DOCUMENT_FRONT)

    async def scenario():
        session = uc.start(DocumentType.PASSPORT)
        await uc.submit_capture(session.id, empty, force=True)

    with pytest.raises(VerificationError) as exc_info:
        asyncio.run(scenario())
    assert exc_info.value.kind is ErrorKind.QUALITY


def test_capture_role_must_match_stage(make_use_case):
    uc = make_use_case()

    async def scenario():
        session = uc.start(DocumentType.ID_CARD)
        await uc.submit_capture(session.id, document_image(ImageRole.DOCUMENT_BACK))

    with pytest.raises(VerificationError) as exc_info:
        asyncio.run(scenario())
    assert exc_info.value.kind is ErrorKind.INPUT


def test_ocr_failure_is_recorded_and_retryable(make_use_case):
    ocr = FakeOCR({ImageRole.DOCUMENT_FRONT: FRONT_TEXT, ImageRole.DOCUMENT_BACK: BACK_TEXT}, failures=1)
    uc = make_use_case(ocr=ocr)

    async def scenario():
        session = uc.start(DocumentType.ID_CARD)
        failed = await _capture_id_card(uc, session.id)
        assert failed.stage is Stage.EXTRACTING
        assert failed.last_error.kind is ErrorKind.EXTRACTION
        assert failed.last_error.retryable

        await uc.retry_extraction(session.id)
        await uc.wait_for_idle(session.id)
        return uc.get(session.id)

    session = asyncio.run(scenario())
    assert session.stage is Stage.LIVENESS
    assert session.last_error is None
    assert ocr.calls == 3


def test_blank_document_is_an_extraction_error(make_use_case):
    uc = make_use_case(ocr=FakeOCR({}))

    async def scenario():
        session = uc.start(DocumentType.PASSPORT)
        await uc.submit_capture(session.id, document_image())
        await uc.wait_for_idle(session.id)
        return uc.get(session.id)

    session = asyncio.run(scenario())
    assert session.stage is Stage.EXTRACTING
    assert session.last_error.message == "No text recognized on the document"


def test_retry_extraction_outside_extraction_stage(make_use_case):
    uc = make_use_case()

    async def scenario():
        session = uc.start(DocumentType.ID_CARD)
        await uc.retry_extraction(session.id)

    with pytest.raises(InvalidTransitionError):
        asyncio.run(scenario())


def test_qr_session(make_use_case):
    uc = make_use_case(qr=FakeQR(QR_PAYLOAD))

    async def scenario():
        session = uc.start(DocumentType.QR_CODE)
        return await uc.submit_capture(session.id, document_image())

    session = asyncio.run(scenario())
    assert session.stage is Stage.REVIEWING
    assert session.qr_payload == QR_PAYLOAD
    assert session.validation_result.is_valid

    session, blockers = uc.finalize(session.id)
    assert blockers == []
    assert session.status is SessionStatus.COMPLETED


def test_qr_without_code_or_decoder(make_use_case):
    with pytest.raises(VerificationError) as exc_info:
        make_use_case().start(DocumentType.QR_CODE)
    assert exc_info.value.kind is ErrorKind.INPUT

    uc = make_use_case(qr=FakeQR(None))

    async def scenario():
        session = uc.start(DocumentType.QR_CODE)
        await uc.submit_capture(session.id, document_image())

    with pytest.raises(VerificationError) as exc_info:
        asyncio.run(scenario())
    assert exc_info.value.message == "No QR code found in the image"


def test_degraded_match_needs_acceptance(make_use_case):
    async def reach_review(uc):
        session = uc.start(DocumentType.ID_CARD)
        await _capture_id_card(uc, session.id)
        return await uc.run_liveness(session.id, _live_frames())

    degraded = FakeMatcher(similarity=0.85, confidence=0.85, degraded=True)

    strict = make_use_case(matcher=degraded)
    session = asyncio.run(reach_review(strict))
    _, blockers = strict.finalize(session.id)
    assert blockers == ["face_match: degraded estimate not accepted"]

    lenient = make_use_case(matcher=degraded, accept_degraded_match=True)
    session = asyncio.run(reach_review(lenient))
    session, blockers = lenient.finalize(session.id)
    assert blockers == []
    assert session.status is SessionStatus.COMPLETED


def test_face_retake_reruns_liveness(make_use_case):
    uc = make_use_case()

    async def scenario():
        session = uc.start(DocumentType.PASSPORT)
        await uc.submit_capture(session.id, document_image())
        await uc.wait_for_idle(session.id)
        await uc.run_liveness(session.id, _live_frames())

        retaken = uc.retake(session.id, ImageRole.FACE)
        assert retaken.stage is Stage.LIVENESS
        assert retaken.face_match_result is None
        assert retaken.extracted_fields is not None
        return await uc.run_liveness(session.id, _live_frames())

    session = asyncio.run(scenario())
    assert session.stage is Stage.REVIEWING
    assert session.generation == 1


def test_cancel_during_extraction(make_use_case):
    uc = make_use_case()

    async def scenario():
        session = uc.start(DocumentType.PASSPORT)
        await uc.submit_capture(session.id, document_image())
        cancelled = uc.cancel(session.id)
        await uc.wait_for_idle(session.id)
        return cancelled

    session = asyncio.run(scenario())
    assert session.stage is Stage.FAILED
    assert session.failure_reason == "cancelled"

    stored = uc.get(session.id)
    assert stored.stage is Stage.FAILED
    assert stored.extracted_fields is None

    with pytest.raises(InvalidTransitionError):
        asyncio.run(uc.submit_capture(session.id, document_image()))


def test_liveness_requires_liveness_stage(make_use_case):
    uc = make_use_case()
    session = uc.start(DocumentType.PASSPORT)
    source = _live_frames()

    with pytest.raises(InvalidTransitionError):
        asyncio.run(uc.run_liveness(session.id, source))
    assert source.released


def test_liveness_timeout_is_retryable(make_use_case):
    class StalledSource(ICaptureSource):
        realtime = False

        async def capture(self, role=ImageRole.FACE):
            await asyncio.sleep(5)

        def release(self):
            pass

    uc = make_use_case()

    async def scenario():
        session = uc.start(DocumentType.PASSPORT)
        await uc.submit_capture(session.id, document_image())
        await uc.wait_for_idle(session.id)
        with pytest.raises(VerificationError) as exc_info:
            await uc.run_liveness(session.id, StalledSource())
        assert exc_info.value.kind is ErrorKind.TIMEOUT
        assert exc_info.value.retryable
        return uc.get(session.id)

    assert asyncio.run(scenario()).stage is Stage.LIVENESS


def test_expired_session_is_not_found(make_use_case, clock):
    uc = make_use_case()
    session = uc.start(DocumentType.ID_CARD)
    clock.advance(minutes=31)

    with pytest.raises(SessionNotFoundError) as exc_info:
        asyncio.run(uc.submit_capture(session.id, document_image()))
    assert exc_info.value.kind is ErrorKind.NOT_FOUND


def test_stages_read_the_captures_not_the_stored_copies(make_use_case, session_factory, clock):
    compressing = SQLAlchemySessionStore(session_factory=session_factory, clock=clock)
    ocr = FakeOCR({ImageRole.DOCUMENT_FRONT: FRONT_TEXT, ImageRole.DOCUMENT_BACK: BACK_TEXT})
    matcher = FakeMatcher()
    uc = make_use_case(ocr=ocr, matcher=matcher, session_store=compressing)
    front = CapturedImage(pixels=checkerboard(1600, 1200), role=ImageRole.DOCUMENT_FRONT)
    back = CapturedImage(pixels=checkerboard(1600, 1200), role=ImageRole.DOCUMENT_BACK)

    async def scenario():
        session = uc.start(DocumentType.ID_CARD)
        await uc.submit_capture(session.id, front)
        await uc.submit_capture(session.id, back)
        await uc.wait_for_idle(session.id)
        stored = uc.get(session.id)
        assert stored.images[ImageRole.DOCUMENT_FRONT].pixels.shape == (600, 800, 3)
        return await uc.run_liveness(session.id, _live_frames())

    session = asyncio.run(scenario())
    assert session.stage is Stage.REVIEWING
    assert [image.pixels.shape for image in ocr.seen] == [(1200, 1600, 3), (1200, 1600, 3)]
    assert ocr.seen[0] is front
    assert ocr.seen[1] is back

    document, face = matcher.seen[0]
    assert document is front
    assert np.array_equal(face.pixels, face_frame())


def test_low_confidence_match_blocks_completion(make_use_case):
    uc = make_use_case(matcher=FakeMatcher(similarity=0.82, confidence=0.1))

    async def scenario():
        session = uc.start(DocumentType.ID_CARD)
        await _capture_id_card(uc, session.id)
        return await uc.run_liveness(session.id, _live_frames())

    session = asyncio.run(scenario())
    assert session.face_match_result.is_match

    session, blockers = uc.finalize(session.id)
    assert blockers == ["face_match: low confidence"]
    assert session.stage is Stage.REVIEWING
    assert session.status is SessionStatus.IN_PROGRESS


def test_matcher_crash_sends_session_back_to_liveness(make_use_case):
    class FlakyMatcher(FakeMatcher):
        def __init__(self):
            super().__init__()
            self.crashes = 1

        def match(self, document_image, face_image):
            if self.crashes:
                self.crashes -= 1
                raise RuntimeError("alignCrop failed")
            return super().match(document_image, face_image)

    uc = make_use_case(matcher=FlakyMatcher())

    async def scenario():
        session = uc.start(DocumentType.PASSPORT)
        await uc.submit_capture(session.id, document_image())
        await uc.wait_for_idle(session.id)
        with pytest.raises(VerificationError) as exc_info:
            await uc.run_liveness(session.id, _live_frames())
        assert exc_info.value.kind is ErrorKind.FACE_MATCH
        assert exc_info.value.retryable

        stuck = uc.get(session.id)
        assert stuck.stage is Stage.LIVENESS
        assert stuck.last_error.kind is ErrorKind.FACE_MATCH
        assert stuck.last_error.retryable
        assert ImageRole.FACE not in stuck.images
        assert stuck.liveness_result is None

        return await uc.run_liveness(session.id, _live_frames())

    session = asyncio.run(scenario())
    assert session.stage is Stage.REVIEWING
    assert session.last_error is None


def test_liveness_crash_is_retryable(make_use_case):
    class BrokenSource(ICaptureSource):
        realtime = False
        released = False

        async def capture(self, role=ImageRole.FACE):
            raise RuntimeError("frame buffer corrupted")

        def release(self):
            self.released = True

    uc = make_use_case()
    source = BrokenSource()

    async def scenario():
        session = uc.start(DocumentType.PASSPORT)
        await uc.submit_capture(session.id, document_image())
        await uc.wait_for_idle(session.id)
        with pytest.raises(VerificationError) as exc_info:
            await uc.run_liveness(session.id, source)
        assert exc_info.value.kind is ErrorKind.LIVENESS
        assert exc_info.value.retryable
        return uc.get(session.id)

    assert asyncio.run(scenario()).stage is Stage.LIVENESS
    assert source.released


def test_expiry_found_on_write_removes_the_session(make_use_case, store, clock):
    uc = make_use_case(session_timeout=timedelta(minutes=5))
    session = uc.start(DocumentType.ID_CARD)
    clock.advance(minutes=10)

    with pytest.raises(SessionNotFoundError):
        uc.cancel(session.id)
    assert store.get(session.id) is None
