import csv
import io
import json

import numpy as np
import pytest

from conftest import face_frame, checkerboard
from ekyc.core.entities.document import CapturedImage, DocumentType, ImageRole
from ekyc.core.entities.errors import ErrorKind, VerificationError
from ekyc.core.entities.extracted_fields import IdCardFields
from ekyc.core.entities.session import Session, SessionStatus, Stage
from ekyc.core.interfaces.face_matcher import FaceMatchResult
from ekyc.core.interfaces.liveness import CHALLENGE_SEQUENCE, LivenessResult
from ekyc.core.interfaces.quality_gate import IssueCode, QualityReport, RecommendationCode
from ekyc.core.interfaces.rules_engine import WARNING, RuleViolation, ValidationResult
from ekyc.infrastructure.db.database import get_db
from ekyc.infrastructure.db.models import SessionRecord
from ekyc.infrastructure.db.session_store import CSV_HEADERS, SQLAlchemySessionStore


def _complete(session: Session) -> None:
    session.stage = Stage.COMPLETED
    session.status = SessionStatus.COMPLETED
    session.images = {
        ImageRole.DOCUMENT_FRONT: CapturedImage(pixels=checkerboard(), role=ImageRole.DOCUMENT_FRONT),
        ImageRole.FACE: CapturedImage(pixels=face_frame(), role=ImageRole.FACE),
    }
    session.quality_reports = {
        ImageRole.DOCUMENT_FRONT: QualityReport(score=100),
        ImageRole.FACE: QualityReport(
            score=85,
            issues=frozenset({IssueCode.FACE_OFF_CENTER}),
            recommendations=(RecommendationCode.CENTER_FACE,),
        ),
    }
    session.extracted_fields = IdCardFields(
        values={"id_number": "079203001238", "full_name": "NGUYỄN VĂN AN", "date_of_birth": "01/01/1990"},
        confidence=0.9,
        raw_text="...",
    )
    session.validation_result = ValidationResult(
        violations=[RuleViolation("DOCUMENT_EXPIRED", WARNING, "Document has expired")],
        rules_version="1.0.0",
    )
    session.liveness_result = LivenessResult(is_live=True, confidence=1.0, checks={c: True for c in CHALLENGE_SEQUENCE})
    session.face_match_result = FaceMatchResult(similarity=0.8123, confidence=0.9, is_match=True)


def test_create_and_get(store, clock):
    session_id = store.create(DocumentType.ID_CARD)
    session = store.get(session_id)
    assert session.id == session_id
    assert session.document_type is DocumentType.ID_CARD
    assert session.stage is Stage.SELECTING_DOCUMENT
    assert session.status is SessionStatus.IN_PROGRESS
    assert session.created_at == clock()
    assert store.get("ekyc_missing") is None


def test_round_trip_of_a_completed_session(store):
    session_id = store.create(DocumentType.ID_CARD)
    original = store.mutate(session_id, _complete)

    loaded = store.get(session_id)
    assert loaded.stage is Stage.COMPLETED
    assert loaded.extracted_fields == original.extracted_fields
    assert loaded.validation_result == original.validation_result
    assert loaded.liveness_result == original.liveness_result
    assert loaded.face_match_result == original.face_match_result
    assert loaded.quality_reports == original.quality_reports
    for role in (ImageRole.DOCUMENT_FRONT, ImageRole.FACE):
        assert np.array_equal(loaded.images[role].pixels, original.images[role].pixels)
        assert loaded.images[role].captured_at == original.images[role].captured_at
    assert store.list_completed()[0].id == session_id


def test_compressed_images_fit_within_bounds(session_factory, clock):
    store = SQLAlchemySessionStore(session_factory=session_factory, clock=clock)
    session_id = store.create(DocumentType.PASSPORT)

    def capture(session):
        session.images[ImageRole.DOCUMENT_FRONT] = CapturedImage(
            pixels=checkerboard(1600, 1200), role=ImageRole.DOCUMENT_FRONT
        )

    store.mutate(session_id, capture)
    image = store.get(session_id).images[ImageRole.DOCUMENT_FRONT]
    assert (image.width, image.height) == (800, 600)


def test_capacity_evicts_oldest(session_factory, clock):
    store = SQLAlchemySessionStore(session_factory=session_factory, max_sessions=2, clock=clock)
    ids = []
    for _ in range(3):
        ids.append(store.create(DocumentType.PASSPORT))
        clock.advance(seconds=1)

    assert [s.id for s in store.list_active()] == ids[1:]
    assert store.get(ids[0]) is None


def test_lazy_expiry(store, clock):
    session_id = store.create(DocumentType.ID_CARD)
    clock.advance(minutes=30)
    assert store.get(session_id) is not None

    clock.advance(minutes=31)
    assert store.get(session_id) is None
    assert store.stats()["total"] == 0


def test_activity_extends_lifetime(store, clock):
    session_id = store.create(DocumentType.ID_CARD)
    clock.advance(minutes=20)
    assert store.update(session_id, {"failure_reason": None})
    clock.advance(minutes=20)
    assert store.get(session_id) is not None


def test_session_expired_during_mutate_is_deleted(store, clock):
    session_id = store.create(DocumentType.ID_CARD)

    def expire(session: Session) -> None:
        session.stage = Stage.EXPIRED
        session.status = SessionStatus.EXPIRED

    expired = store.mutate(session_id, expire)
    assert expired.stage is Stage.EXPIRED
    assert store.get(session_id) is None
    assert store.stats()["total"] == 0


def test_purge_expired(store, clock):
    store.create(DocumentType.ID_CARD)
    clock.advance(minutes=10)
    keep = store.create(DocumentType.PASSPORT)
    clock.advance(minutes=25)
    assert store.purge_expired() == 1
    assert [s.id for s in store.list_active()] == [keep]


def test_corrupt_record_reads_as_missing(store, session_factory, clock):
    with get_db(session_factory) as db:
        db.add(SessionRecord(
            id="ekyc_corrupt",
            document_type="id_card",
            stage="capturing_front",
            status="in_progress",
            created_at=clock().timestamp(),
            last_activity_at=clock().timestamp(),
            payload="{not json",
            payload_size=9,
        ))
    good = store.create(DocumentType.ID_CARD)

    assert store.get("ekyc_corrupt") is None
    assert [s.id for s in store.list_active()] == [good]


def test_update_variants(store):
    session_id = store.create(DocumentType.ID_CARD)

    assert store.update(session_id, {"stage": Stage.CAPTURING_FRONT})
    assert store.get(session_id).stage is Stage.CAPTURING_FRONT

    assert store.update(session_id, lambda s: setattr(s, "generation", 3))
    assert store.get(session_id).generation == 3

    replacement = store.get(session_id)
    replacement.failure_reason = "manual"
    assert store.update(session_id, replacement)
    assert store.get(session_id).failure_reason == "manual"

    with pytest.raises(ValueError):
        store.update(session_id, {"nickname": "x"})
    with pytest.raises(ValueError):
        store.update(session_id, {"id": "ekyc_other"})
    with pytest.raises(ValueError):
        store.update("ekyc_other", replacement)

    assert store.update("ekyc_missing", {"stage": Stage.FAILED}) is False


def test_delete_and_clear(store):
    first = store.create(DocumentType.ID_CARD)
    store.create(DocumentType.PASSPORT)

    assert store.delete(first)
    assert not store.delete(first)
    assert store.clear() == 1
    assert store.list_active() == []


def test_quota_evicts_oldest_half(session_factory, clock):
    store = SQLAlchemySessionStore(session_factory=session_factory, clock=clock, compress_images=False)
    ids = []
    for _ in range(3):
        ids.append(store.create(DocumentType.PASSPORT))
        clock.advance(seconds=1)
    per_session = store.stats()["storage_bytes"] // 3

    limited = SQLAlchemySessionStore(
        session_factory=session_factory,
        clock=clock,
        storage_quota_bytes=3 * per_session + per_session // 2,
    )
    newest = limited.create(DocumentType.PASSPORT)

    assert [s.id for s in limited.list_active()] == [ids[2], newest]


def test_quota_too_small_is_a_persistence_error(session_factory, clock):
    store = SQLAlchemySessionStore(session_factory=session_factory, clock=clock, storage_quota_bytes=10)
    with pytest.raises(VerificationError) as exc_info:
        store.create(DocumentType.ID_CARD)
    assert exc_info.value.kind is ErrorKind.PERSISTENCE
    assert not exc_info.value.retryable


def test_stats(store, clock):
    first = store.create(DocumentType.ID_CARD)
    clock.advance(seconds=5)
    store.create(DocumentType.PASSPORT)
    store.update(first, {"stage": Stage.COMPLETED, "status": SessionStatus.COMPLETED})

    stats = store.stats()
    assert stats["total"] == 2
    assert stats["in_progress"] == 1
    assert stats["completed"] == 1
    assert stats["failed"] == 0
    assert stats["storage_bytes"] > 0
    assert stats["oldest"] == "2026-10-19T09:00:00+00:00"
    assert stats["newest"] == "2026-10-19T09:00:05+00:00"


def test_export_json_redacts_images(store):
    session_id = store.create(DocumentType.ID_CARD)
    store.mutate(session_id, _complete)

    exported = json.loads(store.export_session(session_id, "json"))
    assert exported["id"] == session_id
    assert exported["images"]["document_front"]["data"] == "[IMAGE_DATA]"
    assert exported["images"]["document_front"]["width"] == 800
    assert exported["extracted_fields"]["values"]["full_name"] == "NGUYỄN VĂN AN"


def test_export_csv(store):
    session_id = store.create(DocumentType.ID_CARD)
    store.mutate(session_id, _complete)

    rows = list(csv.reader(io.StringIO(store.export_session(session_id, "csv"))))
    assert rows[0] == CSV_HEADERS
    row = dict(zip(rows[0], rows[1]))
    assert row["Session ID"] == session_id
    assert row["Status"] == "completed"
    assert row["ID Number"] == "079203001238"
    assert row["Face Match Similarity"] == "0.8123"


def test_export_edge_cases(store):
    assert store.export_session("ekyc_missing") is None
    with pytest.raises(ValueError):
        store.export_session(store.create(DocumentType.ID_CARD), "xml")


def test_import_assigns_fresh_id(store, clock):
    session_id = store.create(DocumentType.ID_CARD)
    store.mutate(session_id, _complete)
    exported = store.export_session(session_id)

    clock.advance(minutes=5)
    imported_id = store.import_session(exported)
    imported = store.get(imported_id)

    assert imported_id != session_id
    assert imported.stage is Stage.COMPLETED
    assert imported.images == {}
    assert imported.extracted_fields.get("id_number") == "079203001238"
    assert imported.created_at == clock()


def test_import_rejects_garbage(store):
    with pytest.raises(VerificationError) as exc_info:
        store.import_session("{not json")
    assert exc_info.value.kind is ErrorKind.INPUT

    with pytest.raises(VerificationError):
        store.import_session({"document_type": "id_card"})


def test_max_sessions_must_be_positive(session_factory):
    with pytest.raises(ValueError):
        SQLAlchemySessionStore(session_factory=session_factory, max_sessions=0)
