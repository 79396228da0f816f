"""
Routes: /sessions — drive a verification session over HTTP.

Flow:
  POST   /sessions                      start (document type)
  POST   /sessions/{id}/images          document front/back capture (multipart)
  POST   /sessions/{id}/extraction/retry
  POST   /sessions/{id}/liveness        challenge frames (multipart, in order)
  POST   /sessions/{id}/complete        review → completed
  POST   /sessions/{id}/retake | /cancel
"""

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import PlainTextResponse, Response

from ekyc.api.dependencies import get_store, get_use_case
from ekyc.api.schemas.responses import (
    CompleteResponse,
    ImportResponse,
    RetakeRequest,
    SessionListResponse,
    SessionResponse,
    StartSessionRequest,
    StatsResponse,
)
from ekyc.core.entities.document import ImageRole
from ekyc.core.entities.errors import ErrorKind, SessionNotFoundError, VerificationError
from ekyc.core.entities.session import Stage
from ekyc.core.interfaces.liveness import CHALLENGE_SEQUENCE
from ekyc.core.use_cases.verify_identity import VerifyIdentityUseCase
from ekyc.infrastructure.capture.frame_source import FrameSequenceSource, decode_image
from ekyc.infrastructure.db.session_store import SQLAlchemySessionStore

router = APIRouter()


async def _read_image(file: UploadFile) -> bytes:
    if file.content_type and not file.content_type.startswith("image/"):
        raise VerificationError(ErrorKind.INPUT, "File must be an image (JPEG/PNG)")
    data = await file.read()
    if not data:
        raise VerificationError(ErrorKind.INPUT, "Empty file", recommendations=["RETAKE"])
    return data


# ── Session lifecycle ──

@router.post("/sessions", response_model=SessionResponse, status_code=201)
async def start_session(req: StartSessionRequest, use_case: VerifyIdentityUseCase = Depends(get_use_case)):
    return SessionResponse.from_session(use_case.start(req.document_type))


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(
    status: str = Query("in_progress", pattern="^(in_progress|completed)$"),
    store: SQLAlchemySessionStore = Depends(get_store),
):
    """List non-expired sessions, oldest first."""
    sessions = store.list_active() if status == "in_progress" else store.list_completed()
    return SessionListResponse(
        sessions=[SessionResponse.from_session(s) for s in sessions],
        total=len(sessions),
    )


@router.get("/sessions/stats", response_model=StatsResponse)
async def session_stats(store: SQLAlchemySessionStore = Depends(get_store)):
    return store.stats()


@router.post("/sessions/import", response_model=ImportResponse, status_code=201)
async def import_session(request: Request, store: SQLAlchemySessionStore = Depends(get_store)):
    """Import a JSON export under a fresh id."""
    body = await request.body()
    return ImportResponse(id=store.import_session(body.decode("utf-8")))


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, use_case: VerifyIdentityUseCase = Depends(get_use_case)):
    return SessionResponse.from_session(use_case.get(session_id))


@router.delete("/sessions/{session_id}", status_code=204)
async def delete_session(session_id: str, use_case: VerifyIdentityUseCase = Depends(get_use_case)):
    if not use_case.delete(session_id):
        raise SessionNotFoundError(session_id)
    return Response(status_code=204)


@router.get("/sessions/{session_id}/export")
async def export_session(
    session_id: str,
    format: str = Query("json", pattern="^(json|csv)$"),
    store: SQLAlchemySessionStore = Depends(get_store),
):
    """Export with image data redacted."""
    content = store.export_session(session_id, fmt=format)
    if content is None:
        raise SessionNotFoundError(session_id)
    media_type = "text/csv" if format == "csv" else "application/json"
    return PlainTextResponse(
        content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{session_id}.{format}"'},
    )


# ── Capture & extraction ──

@router.post("/sessions/{session_id}/images", response_model=SessionResponse)
async def upload_document_image(
    session_id: str,
    role: ImageRole = Form(...),
    file: UploadFile = File(...),
    force: bool = Form(False),
    wait: bool = Query(True, description="Wait for extraction and validation to finish"),
    use_case: VerifyIdentityUseCase = Depends(get_use_case),
):
    """
    Upload one document side.

    Quality below the minimum is rejected with recommendations unless
    `force` is set. Once every side is in, extraction starts; with
    `wait` the response reflects its outcome.
    """
    if not role.is_document:
        raise HTTPException(status_code=400, detail="Use /liveness for face frames")
    image = decode_image(await _read_image(file), role)
    session = await use_case.submit_capture(session_id, image, force=force)
    if wait and session.stage is Stage.EXTRACTING:
        await use_case.wait_for_idle(session_id)
        session = use_case.get(session_id)
    return SessionResponse.from_session(session)


@router.post("/sessions/{session_id}/extraction/retry", response_model=SessionResponse)
async def retry_extraction(
    session_id: str,
    wait: bool = Query(True),
    use_case: VerifyIdentityUseCase = Depends(get_use_case),
):
    session = await use_case.retry_extraction(session_id)
    if wait:
        await use_case.wait_for_idle(session_id)
        session = use_case.get(session_id)
    return SessionResponse.from_session(session)


# ── Liveness & matching ──

@router.post("/sessions/{session_id}/liveness", response_model=SessionResponse)
async def submit_liveness(
    session_id: str,
    frames: list[UploadFile] = File(...),
    use_case: VerifyIdentityUseCase = Depends(get_use_case),
):
    """
    Submit one frame per challenge, in order:
    look_straight, smile, turn_right, turn_left.
    """
    if len(frames) != len(CHALLENGE_SEQUENCE):
        raise VerificationError(
            ErrorKind.INPUT,
            f"Expected {len(CHALLENGE_SEQUENCE)} frames "
            f"({', '.join(c.value for c in CHALLENGE_SEQUENCE)}), got {len(frames)}",
            stage=Stage.LIVENESS.value,
        )
    blobs = [await _read_image(f) for f in frames]
    source = FrameSequenceSource.from_bytes(blobs)
    session = await use_case.run_liveness(session_id, source)
    return SessionResponse.from_session(session)


# ── Review ──

@router.post("/sessions/{session_id}/complete", response_model=CompleteResponse)
async def complete_session(session_id: str, use_case: VerifyIdentityUseCase = Depends(get_use_case)):
    session, blockers = use_case.finalize(session_id)
    return CompleteResponse(
        completed=session.stage is Stage.COMPLETED,
        blockers=blockers,
        session=SessionResponse.from_session(session),
    )


@router.post("/sessions/{session_id}/retake", response_model=SessionResponse)
async def retake(session_id: str, req: RetakeRequest, use_case: VerifyIdentityUseCase = Depends(get_use_case)):
    return SessionResponse.from_session(use_case.retake(session_id, req.role))


@router.post("/sessions/{session_id}/cancel", response_model=SessionResponse)
async def cancel(session_id: str, use_case: VerifyIdentityUseCase = Depends(get_use_case)):
    return SessionResponse.from_session(use_case.cancel(session_id))
