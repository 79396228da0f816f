"""
Composition root — builds the use case with concrete adapters.

Adapters are lazy singletons; tests swap them through
app.dependency_overrides.
"""

import logging
from datetime import timedelta

from ekyc.config.settings import Settings, get_settings
from ekyc.core.use_cases.session_state_machine import SessionStateMachine
from ekyc.core.use_cases.verify_identity import VerifyIdentityUseCase
from ekyc.infrastructure.db.session_store import SQLAlchemySessionStore
from ekyc.infrastructure.extraction.pattern_field_extractor import PatternFieldExtractor
from ekyc.infrastructure.face.face_matcher import DescriptorFaceMatcher
from ekyc.infrastructure.face.liveness_evaluator import ChallengeLivenessEvaluator
from ekyc.infrastructure.face.opencv_face_engine import OpenCVFaceEngine
from ekyc.infrastructure.ocr.easyocr_engine import EasyOCREngine
from ekyc.infrastructure.qr.opencv_qr_decoder import OpenCVQRDecoder
from ekyc.infrastructure.quality.opencv_quality_gate import (
    DocumentThresholds,
    FaceThresholds,
    OpenCVQualityGate,
)
from ekyc.infrastructure.rules.document_rules import DocumentRulesEngine

logger = logging.getLogger(__name__)

# Lazy singletons
_store: SQLAlchemySessionStore | None = None
_use_case: VerifyIdentityUseCase | None = None


def build_store(settings: Settings) -> SQLAlchemySessionStore:
    return SQLAlchemySessionStore(
        max_sessions=settings.max_sessions,
        session_timeout=timedelta(seconds=settings.session_timeout_seconds),
        storage_quota_bytes=settings.storage_quota_bytes,
        compress_images=settings.compress_images,
    )


def build_use_case(settings: Settings, store: SQLAlchemySessionStore) -> VerifyIdentityUseCase:
    """Factory — wire every adapter from settings."""
    face_engine = OpenCVFaceEngine(
        models_dir=settings.face_models_dir,
        detector_model=settings.face_detector_model,
        recognizer_model=settings.face_recognizer_model,
    )
    quality_gate = OpenCVQualityGate(
        document=DocumentThresholds(
            min_width=settings.doc_min_width,
            min_height=settings.doc_min_height,
            brightness_min=settings.doc_brightness_min,
            brightness_max=settings.doc_brightness_max,
            min_contrast=settings.doc_min_contrast,
            blur_min=settings.blur_min,
        ),
        face=FaceThresholds(
            brightness_min=settings.face_brightness_min,
            brightness_max=settings.face_brightness_max,
            min_contrast=settings.face_min_contrast,
            blur_min=settings.blur_min,
            min_ratio=settings.face_min_ratio,
            max_ratio=settings.face_max_ratio,
            min_confidence=settings.face_min_detection_confidence,
            max_center_offset=settings.face_max_center_offset,
        ),
        face_engine=face_engine,
    )
    use_case = VerifyIdentityUseCase(
        store=store,
        quality_gate=quality_gate,
        ocr_engine=EasyOCREngine(
            languages=settings.ocr_languages,
            use_gpu=settings.ocr_use_gpu,
            model_dir=settings.ocr_models_dir,
        ),
        field_extractor=PatternFieldExtractor(),
        rules_engine=DocumentRulesEngine(
            min_ocr_confidence=settings.min_ocr_confidence,
            face_match_threshold=settings.face_match_threshold,
            face_min_confidence=settings.face_min_confidence,
        ),
        liveness_evaluator=ChallengeLivenessEvaluator(
            face_engine=face_engine,
            challenge_duration=settings.challenge_duration_seconds,
            capture_timeout=settings.capture_timeout_seconds,
            min_face_ratio=settings.liveness_min_face_ratio,
            max_face_ratio=settings.liveness_max_face_ratio,
            min_confidence=settings.liveness_min_confidence,
            pass_ratio=settings.liveness_pass_ratio,
        ),
        face_matcher=DescriptorFaceMatcher(
            face_engine,
            threshold=settings.face_match_threshold,
            fallback_similarity=settings.face_fallback_similarity,
        ),
        qr_decoder=OpenCVQRDecoder(),
        state_machine=SessionStateMachine(
            session_timeout=timedelta(seconds=settings.session_timeout_seconds),
            accept_degraded_match=settings.accept_degraded_match,
            face_min_confidence=settings.face_min_confidence,
        ),
        quality_min_score=settings.quality_min_score,
        ocr_languages=settings.ocr_languages,
    )
    logger.info(
        f"Pipeline wired: ocr={settings.ocr_languages} match_threshold={settings.face_match_threshold} "
        f"max_sessions={settings.max_sessions}"
    )
    return use_case


def get_store() -> SQLAlchemySessionStore:
    global _store
    if _store is None:
        _store = build_store(get_settings())
    return _store


def get_use_case() -> VerifyIdentityUseCase:
    global _use_case
    if _use_case is None:
        _use_case = build_use_case(get_settings(), get_store())
    return _use_case


async def shutdown() -> None:
    global _use_case
    if _use_case is not None:
        await _use_case.close()
        _use_case = None
