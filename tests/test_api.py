import cv2
import numpy as np
import pytest
from fastapi.testclient import TestClient

from conftest import FakeMatcher, checkerboard, face_frame
from ekyc.api.main import create_app

API = "/api/v1"


def _png(pixels) -> bytes:
    ok, buf = cv2.imencode(".png", pixels)
    assert ok
    return buf.tobytes()


DOCUMENT_PNG = _png(checkerboard())
FACE_PNG = _png(face_frame())


@pytest.fixture
def client(make_use_case, store):
    app = create_app(use_case=make_use_case(), store=store, init_database=False)
    with TestClient(app) as client:
        yield client


def _start(client, document_type="id_card") -> str:
    response = client.post(f"{API}/sessions", json={"document_type": document_type})
    assert response.status_code == 201
    return response.json()["id"]


def _upload(client, session_id, role, png=DOCUMENT_PNG, **data):
    return client.post(
        f"{API}/sessions/{session_id}/images",
        data={"role": role, **data},
        files={"file": (f"{role}.png", png, "image/png")},
    )


def _liveness(client, session_id, count=4):
    files = [("frames", (f"frame{i}.png", FACE_PNG, "image/png")) for i in range(count)]
    return client.post(f"{API}/sessions/{session_id}/liveness", files=files)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_full_verification_over_http(client):
    session_id = _start(client)

    front = _upload(client, session_id, "document_front")
    assert front.status_code == 200
    assert front.json()["stage"] == "capturing_back"
    assert front.json()["images"]["document_front"]["width"] == 800

    back = _upload(client, session_id, "document_back")
    body = back.json()
    assert body["stage"] == "liveness"
    assert body["extracted_fields"]["values"]["id_number"] == "079203001238"
    assert body["validation_result"]["is_valid"] is True

    live = _liveness(client, session_id)
    assert live.status_code == 200
    assert live.json()["stage"] == "reviewing"
    assert live.json()["liveness_result"]["checks"]["turn_left"] is True

    done = client.post(f"{API}/sessions/{session_id}/complete")
    assert done.json()["completed"] is True
    assert done.json()["blockers"] == []
    assert done.json()["session"]["status"] == "completed"

    completed = client.get(f"{API}/sessions", params={"status": "completed"}).json()
    assert completed["total"] == 1


def test_unknown_session_is_404(client):
    response = client.get(f"{API}/sessions/ekyc_nope")
    assert response.status_code == 404
    assert response.json()["kind"] == "not_found"


def test_invalid_document_type(client):
    response = client.post(f"{API}/sessions", json={"document_type": "library_card"})
    assert response.status_code == 422


def test_low_quality_upload(client):
    session_id = _start(client)
    flat = _png(np.full((600, 800, 3), 128, dtype=np.uint8))

    response = _upload(client, session_id, "document_front", png=flat)
    assert response.status_code == 422
    body = response.json()
    assert body["kind"] == "quality"
    assert body["retryable"] is True
    assert "HOLD_STEADY" in body["recommendations"]

    forced = _upload(client, session_id, "document_front", png=flat, force="true")
    assert forced.status_code == 200
    assert forced.json()["stage"] == "capturing_back"


def test_undecodable_upload(client):
    session_id = _start(client)
    response = _upload(client, session_id, "document_front", png=b"not an image")
    assert response.status_code == 422
    assert response.json()["kind"] == "input"


def test_face_role_is_not_a_document_upload(client):
    session_id = _start(client)
    response = _upload(client, session_id, "face", png=FACE_PNG)
    assert response.status_code == 400


def test_liveness_needs_four_frames(client):
    session_id = _start(client, "passport")
    _upload(client, session_id, "document_front")

    response = _liveness(client, session_id, count=2)
    assert response.status_code == 422
    assert response.json()["kind"] == "input"


def test_cancel_then_complete_is_a_conflict(client):
    session_id = _start(client)
    cancelled = client.post(f"{API}/sessions/{session_id}/cancel")
    assert cancelled.json()["failure_reason"] == "cancelled"

    response = client.post(f"{API}/sessions/{session_id}/complete")
    assert response.status_code == 409
    assert response.json()["kind"] == "invalid_transition"


def test_retake_face(client):
    session_id = _start(client)
    _upload(client, session_id, "document_front")
    _upload(client, session_id, "document_back")
    _liveness(client, session_id)

    response = client.post(f"{API}/sessions/{session_id}/retake", json={"role": "face"})
    assert response.status_code == 200
    assert response.json()["stage"] == "liveness"
    assert response.json()["generation"] == 1


def test_export_import_and_delete(client):
    session_id = _start(client)
    _upload(client, session_id, "document_front")

    csv_export = client.get(f"{API}/sessions/{session_id}/export", params={"format": "csv"})
    assert csv_export.status_code == 200
    assert csv_export.headers["content-type"].startswith("text/csv")
    assert csv_export.text.startswith("Session ID,Document Type,Status")

    json_export = client.get(f"{API}/sessions/{session_id}/export")
    assert json_export.json()["images"]["document_front"]["data"] == "[IMAGE_DATA]"

    imported = client.post(f"{API}/sessions/import", content=json_export.text)
    assert imported.status_code == 201
    imported_id = imported.json()["id"]
    assert client.get(f"{API}/sessions/{imported_id}").json()["stage"] == "capturing_back"

    stats = client.get(f"{API}/sessions/stats").json()
    assert stats["total"] == 2
    assert stats["in_progress"] == 2

    assert client.delete(f"{API}/sessions/{session_id}").status_code == 204
    assert client.get(f"{API}/sessions/{session_id}").status_code == 404
    assert client.delete(f"{API}/sessions/{session_id}").status_code == 404


def test_import_rejects_garbage(client):
    response = client.post(f"{API}/sessions/import", content="{not json")
    assert response.status_code == 422
    assert response.json()["kind"] == "input"


def test_matcher_crash_is_a_retryable_error(make_use_case, store):
    class CrashingMatcher(FakeMatcher):
        def match(self, document_image, face_image):
            raise RuntimeError("alignCrop failed")

    app = create_app(use_case=make_use_case(matcher=CrashingMatcher()), store=store, init_database=False)
    with TestClient(app) as client:
        session_id = _start(client, "passport")
        _upload(client, session_id, "document_front")

        response = _liveness(client, session_id)
        assert response.status_code == 422
        assert response.json()["kind"] == "face_match"
        assert response.json()["retryable"] is True
        assert client.get(f"{API}/sessions/{session_id}").json()["stage"] == "liveness"
