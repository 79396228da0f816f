"""
Session Store — SQLAlchemy implementation.

One row per session; the aggregate travels as a JSON document with images
base64-encoded. Capacity and TTL are enforced here:
  - create() purges expired rows, then evicts the oldest by creation time
  - get() expires lazily: an idle session reads as missing and is deleted
  - a write that exhausts the storage quota evicts the oldest half, then
    retries once
"""

import csv
import io
import json
import logging
import math
import threading
from dataclasses import fields as dataclass_fields
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from ekyc.core.entities.document import DocumentType
from ekyc.core.entities.errors import ErrorKind, VerificationError
from ekyc.core.entities.extracted_fields import DATE_OF_BIRTH, FULL_NAME, ID_NUMBER
from ekyc.core.entities.session import Session, SessionStatus, new_session_id, utcnow
from ekyc.core.interfaces.session_store import ISessionStore, SessionPatch
from ekyc.infrastructure.db.database import get_db, get_session_factory
from ekyc.infrastructure.db.image_codec import REDACTED, ImageCodec
from ekyc.infrastructure.db.models import SessionRecord

logger = logging.getLogger(__name__)

CSV_HEADERS = [
    "Session ID",
    "Document Type",
    "Status",
    "Current Step",
    "Start Time",
    "Last Activity",
    "ID Number",
    "Name",
    "Date of Birth",
    "Face Match Similarity",
    "Face Match Confidence",
]


class StorageQuotaExceeded(Exception):
    pass


def _epoch(ts: datetime) -> float:
    return ts.timestamp()


def _from_epoch(value: float | None) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


class SQLAlchemySessionStore(ISessionStore):
    """
    Durable session store.

    Args:
        session_factory: SQLAlchemy sessionmaker; the global one by default.
        max_sessions: Capacity bound across all stored sessions.
        session_timeout: Idle time after which a session expires.
        storage_quota_bytes: Total payload budget; None means only the
            database itself can run out of space.
        compress_images: Store downsized JPEGs instead of lossless PNGs.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        max_sessions: int = 10,
        session_timeout: timedelta = timedelta(minutes=30),
        storage_quota_bytes: int | None = None,
        compress_images: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self._factory = session_factory or get_session_factory()
        self._max_sessions = max_sessions
        self._timeout = session_timeout
        self._quota = storage_quota_bytes
        self._codec = ImageCodec(compress=compress_images)
        self._clock = clock

        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._create_lock = threading.Lock()

    # ─── Helpers ────────────────────────────────────────────

    def _lock(self, session_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.RLock()
            return lock

    def _cutoff(self) -> float:
        """Rows with last activity before this epoch are expired."""
        return _epoch(self._clock() - self._timeout)

    def _deserialize(self, record: SessionRecord) -> Session | None:
        try:
            return Session.from_dict(json.loads(record.payload), self._codec.decode)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Unreadable session record {record.id}: {e}")
            return None

    def _write(self, session: Session, payload: str, insert: bool) -> bool:
        size = len(payload.encode("utf-8"))
        try:
            with get_db(self._factory) as db:
                record = db.get(SessionRecord, session.id)
                if record is None and not insert:
                    return False
                if self._quota is not None:
                    used = (
                        db.query(func.coalesce(func.sum(SessionRecord.payload_size), 0))
                        .filter(SessionRecord.id != session.id)
                        .scalar()
                    )
                    if used + size > self._quota:
                        raise StorageQuotaExceeded(
                            f"{used + size} bytes needed, quota is {self._quota}"
                        )
                if record is None:
                    record = SessionRecord(id=session.id)
                    db.add(record)
                record.document_type = session.document_type.value
                record.stage = session.stage.value
                record.status = session.status.value
                record.created_at = _epoch(session.created_at)
                record.last_activity_at = _epoch(session.last_activity_at)
                record.payload = payload
                record.payload_size = size
        except OperationalError as e:
            if "full" in str(e).lower():
                raise StorageQuotaExceeded(str(e)) from e
            raise
        return True

    def _persist(self, session: Session, insert: bool = False) -> bool:
        """Write a session, evicting the oldest half once if storage runs out."""
        payload = json.dumps(session.to_dict(self._codec.encode))
        try:
            return self._write(session, payload, insert)
        except StorageQuotaExceeded as e:
            logger.warning(f"Storage quota exceeded writing {session.id} ({e}), evicting oldest sessions")
            self._evict_oldest_half(exclude=session.id)
        try:
            return self._write(session, payload, insert)
        except StorageQuotaExceeded as e:
            raise VerificationError(
                ErrorKind.PERSISTENCE,
                f"Session {session.id} does not fit in storage",
                stage=session.stage.value,
            ) from e

    def _evict_oldest_half(self, exclude: str) -> int:
        with get_db(self._factory) as db:
            ids = [
                row.id
                for row in db.query(SessionRecord.id)
                .filter(SessionRecord.id != exclude)
                .order_by(SessionRecord.created_at.asc())
                .all()
            ]
            victims = ids[: math.ceil(len(ids) / 2)]
            if victims:
                db.query(SessionRecord).filter(SessionRecord.id.in_(victims)).delete(
                    synchronize_session=False
                )
        self._forget(*victims)
        logger.info(f"Evicted {len(victims)} of {len(ids)} sessions")
        return len(victims)

    def _enforce_capacity(self) -> None:
        """Make room for one more session by evicting the oldest."""
        with get_db(self._factory) as db:
            count = db.query(func.count(SessionRecord.id)).scalar()
            excess = count - self._max_sessions + 1
            if excess <= 0:
                return
            victims = [
                row.id
                for row in db.query(SessionRecord.id)
                .order_by(SessionRecord.created_at.asc())
                .limit(excess)
                .all()
            ]
            db.query(SessionRecord).filter(SessionRecord.id.in_(victims)).delete(
                synchronize_session=False
            )
        self._forget(*victims)
        logger.info(f"Capacity {self._max_sessions} reached, evicted {victims}")

    def _forget(self, *session_ids: str) -> None:
        with self._locks_guard:
            for session_id in session_ids:
                self._locks.pop(session_id, None)

    def _load(self, session_id: str) -> Session | None:
        with get_db(self._factory) as db:
            record = db.get(SessionRecord, session_id)
            if record is None:
                return None
            if record.last_activity_at < self._cutoff():
                logger.info(f"Session {session_id} expired, purging")
                db.delete(record)
                return None
            return self._deserialize(record)

    def _insert(self, session: Session) -> str:
        self.purge_expired()
        with self._create_lock:
            self._enforce_capacity()
            self._persist(session, insert=True)
        return session.id

    # ─── ISessionStore ──────────────────────────────────────

    def create(self, document_type: DocumentType) -> str:
        session = Session.start(DocumentType(document_type), now=self._clock())
        self._insert(session)
        logger.info(f"Created session {session.id} ({session.document_type.value})")
        return session.id

    def get(self, session_id: str) -> Session | None:
        with self._lock(session_id):
            return self._load(session_id)

    def mutate(self, session_id: str, fn: Callable[[Session], None]) -> Session | None:
        with self._lock(session_id):
            session = self._load(session_id)
            if session is None:
                return None
            fn(session)
            if session.status is SessionStatus.EXPIRED:
                # Expired sessions are never written back
                self.delete(session_id)
                return session
            session.touch(self._clock())
            if not self._persist(session):
                return None
            return session

    def update(self, session_id: str, patch: SessionPatch) -> bool:
        if isinstance(patch, Session):
            if patch.id != session_id:
                raise ValueError(f"Cannot store session {patch.id} under {session_id}")

            def fn(session: Session) -> None:
                for f in dataclass_fields(Session):
                    setattr(session, f.name, getattr(patch, f.name))

        elif isinstance(patch, dict):
            allowed = {f.name for f in dataclass_fields(Session)} - {"id", "created_at"}
            unknown = set(patch) - allowed
            if unknown:
                raise ValueError(f"Unknown session attributes: {', '.join(sorted(unknown))}")

            def fn(session: Session) -> None:
                for key, value in patch.items():
                    setattr(session, key, value)

        else:
            fn = patch
        return self.mutate(session_id, fn) is not None

    def delete(self, session_id: str) -> bool:
        with self._lock(session_id):
            with get_db(self._factory) as db:
                record = db.get(SessionRecord, session_id)
                if record is None:
                    return False
                db.delete(record)
        self._forget(session_id)
        logger.info(f"Deleted session {session_id}")
        return True

    def _list(self, status: SessionStatus) -> list[Session]:
        with get_db(self._factory) as db:
            records = (
                db.query(SessionRecord)
                .filter(SessionRecord.status == status.value)
                .filter(SessionRecord.last_activity_at >= self._cutoff())
                .order_by(SessionRecord.created_at.asc())
                .all()
            )
            sessions = [self._deserialize(r) for r in records]
        return [s for s in sessions if s is not None]

    def list_active(self) -> list[Session]:
        return self._list(SessionStatus.IN_PROGRESS)

    def list_completed(self) -> list[Session]:
        return self._list(SessionStatus.COMPLETED)

    def purge_expired(self) -> int:
        with get_db(self._factory) as db:
            expired = [
                row.id
                for row in db.query(SessionRecord.id)
                .filter(SessionRecord.last_activity_at < self._cutoff())
                .all()
            ]
            if expired:
                db.query(SessionRecord).filter(SessionRecord.id.in_(expired)).delete(
                    synchronize_session=False
                )
        if expired:
            self._forget(*expired)
            logger.info(f"Purged {len(expired)} expired sessions")
        return len(expired)

    # ─── Maintenance ────────────────────────────────────────

    def stats(self) -> dict:
        """Counts per status, storage used and the creation time range."""
        cutoff = self._cutoff()
        with get_db(self._factory) as db:
            total = db.query(func.count(SessionRecord.id)).scalar()
            expired = (
                db.query(func.count(SessionRecord.id))
                .filter(SessionRecord.last_activity_at < cutoff)
                .scalar()
            )
            by_status = dict(
                db.query(SessionRecord.status, func.count(SessionRecord.id))
                .filter(SessionRecord.last_activity_at >= cutoff)
                .group_by(SessionRecord.status)
                .all()
            )
            storage = db.query(func.coalesce(func.sum(SessionRecord.payload_size), 0)).scalar()
            oldest, newest = db.query(
                func.min(SessionRecord.created_at), func.max(SessionRecord.created_at)
            ).one()

        return {
            "total": total,
            "in_progress": by_status.get(SessionStatus.IN_PROGRESS.value, 0),
            "completed": by_status.get(SessionStatus.COMPLETED.value, 0),
            "failed": by_status.get(SessionStatus.FAILED.value, 0),
            "expired": expired + by_status.get(SessionStatus.EXPIRED.value, 0),
            "storage_bytes": storage,
            "oldest": _from_epoch(oldest),
            "newest": _from_epoch(newest),
        }

    def clear(self) -> int:
        with get_db(self._factory) as db:
            removed = db.query(SessionRecord).delete(synchronize_session=False)
        with self._locks_guard:
            self._locks.clear()
        logger.info(f"Cleared {removed} sessions")
        return removed

    def export_session(self, session_id: str, fmt: str = "json") -> str | None:
        """
        Export one session with image data redacted.

        Args:
            session_id: Session to export.
            fmt: "json" (full aggregate) or "csv" (one summary row).

        Returns:
            The export text, or None if the session does not exist.
        """
        if fmt not in ("json", "csv"):
            raise ValueError(f"Unsupported export format: {fmt}")
        session = self.get(session_id)
        if session is None:
            return None
        if fmt == "json":
            return json.dumps(session.to_dict(), indent=2, ensure_ascii=False)

        fields = session.extracted_fields
        match = session.face_match_result
        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(CSV_HEADERS)
        writer.writerow([
            session.id,
            session.document_type.value,
            session.status.value,
            session.stage.value,
            session.created_at.isoformat(),
            session.last_activity_at.isoformat(),
            (fields.get(ID_NUMBER) if fields else None) or "",
            (fields.get(FULL_NAME) if fields else None) or "",
            (fields.get(DATE_OF_BIRTH) if fields else None) or "",
            f"{match.similarity:.4f}" if match else "",
            f"{match.confidence:.4f}" if match else "",
        ])
        return buf.getvalue()

    def import_session(self, payload: str | dict) -> str:
        """
        Store an exported session under a fresh id, active from now.

        Redacted images are dropped; the session keeps its stage and results.

        Raises:
            VerificationError(INPUT): the payload is not a session export.
        """
        try:
            data = json.loads(payload) if isinstance(payload, str) else dict(payload)
            data["images"] = {
                role: image
                for role, image in (data.get("images") or {}).items()
                if image.get("data") not in (None, "", REDACTED)
            }
            now = self._clock()
            data["id"] = new_session_id()
            data["created_at"] = now.isoformat()
            data["last_activity_at"] = now.isoformat()
            session = Session.from_dict(data, self._codec.decode)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise VerificationError(ErrorKind.INPUT, f"Invalid session export: {e}") from e

        self._insert(session)
        logger.info(f"Imported session {session.id} ({session.stage.value})")
        return session.id
