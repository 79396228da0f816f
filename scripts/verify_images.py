"""
Offline verification — run one session end to end over image files.

  Document front/back → Quality Gate → OCR → Fields → Rules
  Four challenge frames → Liveness → Face Match → Review

Usage:
    python scripts/verify_images.py --type id_card --front front.jpg --back back.jpg \
        --frames straight.jpg smile.jpg right.jpg left.jpg [--force] [--output report.json]
    python scripts/verify_images.py --type passport --front passport.jpg --camera 0
"""
import argparse
import asyncio
import json
import sys
import time
from datetime import timedelta
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from ekyc.api.dependencies import build_use_case
from ekyc.config.settings import get_settings
from ekyc.core.entities.document import DocumentType, ImageRole
from ekyc.core.entities.errors import VerificationError
from ekyc.core.interfaces.liveness import Challenge
from ekyc.core.entities.session import Stage
from ekyc.infrastructure.capture.frame_source import FrameSequenceSource, decode_image
from ekyc.infrastructure.capture.opencv_camera import OpenCVCameraSource
from ekyc.infrastructure.db.database import create_db_engine, init_db, make_session_factory
from ekyc.infrastructure.db.session_store import SQLAlchemySessionStore


def prompt(challenge: Challenge, index: int) -> None:
    print(f"  [{index + 1}/4] {challenge.value.replace('_', ' ')}")


async def run(args) -> dict:
    settings = get_settings()
    engine = create_db_engine("sqlite://")
    init_db(engine)
    store = SQLAlchemySessionStore(
        session_factory=make_session_factory(engine),
        session_timeout=timedelta(seconds=settings.session_timeout_seconds),
    )
    use_case = build_use_case(settings, store)
    timings = {}

    try:
        t0 = time.perf_counter()
        session = use_case.start(DocumentType(args.type))
        sides = [(ImageRole.DOCUMENT_FRONT, args.front)]
        if args.back:
            sides.append((ImageRole.DOCUMENT_BACK, args.back))
        for role, path in sides:
            image = decode_image(Path(path).read_bytes(), role)
            session = await use_case.submit_capture(session.id, image, force=args.force)
        await use_case.wait_for_idle(session.id)
        session = use_case.get(session.id)
        timings["document_ms"] = round((time.perf_counter() - t0) * 1000, 1)
        print(f"  → Document stage: {session.stage.value}")

        if session.stage is Stage.LIVENESS and (args.frames or args.camera is not None):
            t0 = time.perf_counter()
            if args.camera is not None:
                source = OpenCVCameraSource(device_index=args.camera)
            else:
                source = FrameSequenceSource.from_bytes([Path(p).read_bytes() for p in args.frames])
            session = await use_case.run_liveness(session.id, source, on_challenge=prompt)
            timings["face_ms"] = round((time.perf_counter() - t0) * 1000, 1)
            print(f"  → Face stage: {session.stage.value}")

        blockers = []
        if session.stage is Stage.REVIEWING:
            session, blockers = use_case.finalize(session.id)

        report = session.to_dict()
        report["blockers"] = blockers
        report["timings"] = timings
        return report
    finally:
        await use_case.close()


def main():
    parser = argparse.ArgumentParser(description="Verify an identity from image files")
    parser.add_argument("--type", default="id_card", choices=[t.value for t in DocumentType])
    parser.add_argument("--front", required=True, help="Document front (or QR code) image")
    parser.add_argument("--back", help="Document back image")
    parser.add_argument("--frames", nargs="*", default=[], help="Challenge frames, in order")
    parser.add_argument("--camera", type=int, help="Run liveness on this webcam instead of --frames")
    parser.add_argument("--force", action="store_true", help="Accept low-quality captures")
    parser.add_argument("--output", help="Write the JSON report here")
    args = parser.parse_args()

    print(f"{'='*60}")
    print(f"  eKYC — Offline Verification ({args.type})")
    print(f"{'='*60}")

    try:
        report = asyncio.run(run(args))
    except VerificationError as e:
        print(f"\n✗ {e.kind.value} at {e.stage}: {e.message}")
        if e.recommendations:
            print(f"  Recommendations: {', '.join(e.recommendations)}")
        sys.exit(1)

    text = json.dumps(report, indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(text, encoding="utf-8")
        print(f"\nReport saved to {args.output}")
    else:
        print(text)
    print(f"\nStatus: {report['status']} (stage {report['stage']})")


if __name__ == "__main__":
    main()
