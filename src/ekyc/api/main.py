"""
FastAPI Application — eKYC verification pipeline.

Architecture:
  - SQLite (default) session store via SQLAlchemy
  - OpenCV quality gate, YuNet/SFace face models, QR decoding
  - EasyOCR text recognition + pattern-based field extraction
"""

import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ekyc.api import dependencies
from ekyc.api.routes.sessions import router as sessions_router
from ekyc.config.settings import get_settings
from ekyc.core.entities.errors import ErrorKind, VerificationError
from ekyc.infrastructure.db.database import init_db

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.INPUT: 422,
    ErrorKind.QUALITY: 422,
    ErrorKind.EXTRACTION: 422,
    ErrorKind.VALIDATION: 422,
    ErrorKind.LIVENESS: 422,
    ErrorKind.FACE_MATCH: 422,
    ErrorKind.TIMEOUT: 408,
    ErrorKind.PERSISTENCE: 507,
}


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(use_case=None, store=None, init_database: bool = True) -> FastAPI:
    """
    Build the app. A prebuilt use case and store (tests, embedding) replace
    the settings-wired singletons.
    """
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="eKYC Pipeline",
        description="Identity verification: document capture, OCR, rules validation, liveness and face matching.",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Startup / shutdown ──
    @app.on_event("startup")
    async def startup():
        if init_database:
            init_db()
        logger.info("eKYC Pipeline started")

    @app.on_event("shutdown")
    async def shutdown():
        if use_case is not None:
            await use_case.close()
        else:
            await dependencies.shutdown()
        logger.info("eKYC Pipeline stopped")

    # ── Errors ──
    @app.exception_handler(VerificationError)
    async def verification_error_handler(request: Request, exc: VerificationError):
        status = STATUS_BY_KIND.get(exc.kind, 400)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc!r}")
        else:
            logger.info(f"{request.method} {request.url.path}: {exc.kind.value} ({exc.message})")
        return JSONResponse(status_code=status, content=exc.to_dict())

    app.include_router(sessions_router, prefix="/api/v1", tags=["Sessions"])
    if use_case is not None:
        app.dependency_overrides[dependencies.get_use_case] = lambda: use_case
    if store is not None:
        app.dependency_overrides[dependencies.get_store] = lambda: store

    # ── Health ──
    @app.get("/health")
    async def health():
        db_url = settings.database_url
        return {
            "status": "ok",
            "version": "1.0.0",
            "database": "SQLite" if db_url.startswith("sqlite") else db_url.split(":", 1)[0],
            "face_models_dir": settings.face_models_dir,
            "face_models_present": all(
                os.path.exists(os.path.join(settings.face_models_dir, name))
                for name in (settings.face_detector_model, settings.face_recognizer_model)
            ),
        }

    return app


app = create_app()
