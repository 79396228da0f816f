from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import numpy as np
import pytest

from ekyc.core.entities.document import CapturedImage, ImageRole
from ekyc.core.interfaces.face_engine import FaceDetection, IFaceEngine
from ekyc.core.interfaces.face_matcher import FaceMatchResult, IFaceMatcher
from ekyc.core.interfaces.ocr_engine import IOCREngine, OCRProgress, OCRResult
from ekyc.core.interfaces.qr_decoder import IQRDecoder
from ekyc.core.use_cases.session_state_machine import SessionStateMachine
from ekyc.core.use_cases.verify_identity import VerifyIdentityUseCase
from ekyc.infrastructure.db.database import create_db_engine, init_db, make_session_factory
from ekyc.infrastructure.db.session_store import SQLAlchemySessionStore
from ekyc.infrastructure.extraction.pattern_field_extractor import PatternFieldExtractor
from ekyc.infrastructure.face.liveness_evaluator import ChallengeLivenessEvaluator
from ekyc.infrastructure.quality.opencv_quality_gate import OpenCVQualityGate
from ekyc.infrastructure.rules.document_rules import DocumentRulesEngine

TODAY = date(2026, 10, 19)

FRONT_TEXT = (
    "CỘNG HÒA XÃ HỘI CHỦ NGHĨA VIỆT NAM\n"
    "CĂN CƯỚC CÔNG DÂN\n"
    "Số định danh cá nhân / Personal identification number: 079203001238\n"
    "Họ và tên / Full name: NGUYỄN VĂN AN\n"
    "Ngày sinh / Date of birth: 01/01/1990\n"
    "Nơi thường trú / Place of residence: 12 Lê Lợi, Quận 1, TP. Hồ Chí Minh\n"
)
BACK_TEXT = (
    "Ngày cấp / Date of issue: 15/08/2021\n"
    "Có giá trị đến / Date of expiry: 01/01/2050\n"
)


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeOCR(IOCREngine):
    """Returns canned text per document side; optionally fails first."""

    def __init__(self, texts: dict[ImageRole, str], confidence: float = 0.9, failures: int = 0):
        self.texts = texts
        self.confidence = confidence
        self.failures = failures
        self.calls = 0
        self.progress: list[OCRProgress] = []
        self.seen: list[CapturedImage] = []

    def recognize(self, image, language_hints=None, on_progress=None):
        self.calls += 1
        self.seen.append(image)
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("recognizer crashed")
        event = OCRProgress(stage="recognizing", fraction=1.0)
        self.progress.append(event)
        if on_progress is not None:
            on_progress(event)
        return OCRResult(text=self.texts.get(image.role, ""), confidence=self.confidence, ocr_engine="fake")


class FakeFaceEngine(IFaceEngine):
    """
    A face is "present" when the frame is not black. Descriptors are the
    mean BGR colour, so frames of the same colour match exactly.
    """

    def __init__(self, confidence: float = 0.95):
        self.confidence = confidence

    def detect(self, image):
        if image.pixels.mean() < 5:
            return None
        h, w = image.pixels.shape[:2]
        return FaceDetection(
            box=(int(w * 0.2), int(h * 0.2), int(w * 0.6), int(h * 0.6)),
            confidence=self.confidence,
            image_width=w,
            image_height=h,
        )

    def embed(self, image, detection):
        return image.pixels.reshape(-1, image.pixels.shape[-1]).mean(axis=0).astype(np.float32)


class FakeMatcher(IFaceMatcher):
    def __init__(self, similarity: float = 0.82, confidence: float = 0.9, threshold: float = 0.6, degraded: bool = False):
        self.result = dict(similarity=similarity, confidence=confidence, degraded=degraded)
        self.threshold = threshold
        self.seen: list[tuple[CapturedImage, CapturedImage]] = []

    def match(self, document_image, face_image):
        self.seen.append((document_image, face_image))
        return FaceMatchResult(is_match=self.result["similarity"] >= self.threshold, **self.result)


class FakeQR(IQRDecoder):
    def __init__(self, payload: str | None):
        self.payload = payload

    def decode(self, image):
        return self.payload


def checkerboard(width: int = 800, height: int = 600, square: int = 20, low: int = 80, high: int = 160) -> np.ndarray:
    """Sharp test pattern: mean brightness 120, contrast 80."""
    ys, xs = np.indices((height, width))
    board = np.where(((ys // square) + (xs // square)) % 2 == 0, low, high).astype(np.uint8)
    return np.stack([board] * 3, axis=-1)


def document_image(role: ImageRole = ImageRole.DOCUMENT_FRONT) -> CapturedImage:
    return CapturedImage(pixels=checkerboard(), role=role)


def face_frame(color=(120, 150, 200)) -> np.ndarray:
    frame = checkerboard(640, 480, square=16)
    frame[96:384, 128:512] = color
    return frame


def black_frame() -> np.ndarray:
    return np.zeros((480, 640, 3), dtype=np.uint8)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory, clock):
    return SQLAlchemySessionStore(session_factory=session_factory, clock=clock, compress_images=False)


@pytest.fixture
def make_use_case(store, clock):
    def _make(
        ocr=None,
        matcher=None,
        qr=None,
        face_engine=None,
        accept_degraded_match=False,
        session_store=None,
        session_timeout=timedelta(minutes=30),
    ):
        face_engine = face_engine or FakeFaceEngine()
        return VerifyIdentityUseCase(
            store=session_store or store,
            quality_gate=OpenCVQualityGate(face_engine=face_engine),
            ocr_engine=ocr or FakeOCR({ImageRole.DOCUMENT_FRONT: FRONT_TEXT, ImageRole.DOCUMENT_BACK: BACK_TEXT}),
            field_extractor=PatternFieldExtractor(today=TODAY),
            rules_engine=DocumentRulesEngine(today=lambda: TODAY),
            liveness_evaluator=ChallengeLivenessEvaluator(face_engine=face_engine, capture_timeout=1.0),
            face_matcher=matcher or FakeMatcher(),
            qr_decoder=qr,
            state_machine=SessionStateMachine(
                session_timeout=session_timeout,
                accept_degraded_match=accept_degraded_match,
                clock=clock,
            ),
        )
    return _make
