"""
Database connection management.

Supports:
  - SQLite file (default, zero setup, survives restarts)
  - SQLite in memory (tests)
  - any other SQLAlchemy URL for a shared local store

Connection string comes from Settings.database_url (EKYC_DATABASE_URL).
"""

import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ekyc.config.settings import get_settings
from ekyc.infrastructure.db.models import Base

logger = logging.getLogger(__name__)


def get_database_url() -> str:
    return get_settings().database_url


def create_db_engine(url: str | None = None):
    """Create SQLAlchemy engine."""
    db_url = url or get_database_url()

    if db_url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every session sees an empty database
        return create_engine(
            db_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    if db_url.startswith("sqlite"):
        return create_engine(
            db_url,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    return create_engine(db_url, pool_pre_ping=True, echo=False)


def make_session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


# ── Global engine & session factory ──
_engine = None
_SessionFactory = None


def get_engine():
    """Get or create the global engine."""
    global _engine
    if _engine is None:
        _engine = create_db_engine()
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory."""
    global _SessionFactory
    if _SessionFactory is None:
        _SessionFactory = make_session_factory(get_engine())
    return _SessionFactory


def init_db(engine=None):
    """Create all tables. Safe to call multiple times."""
    engine = engine or get_engine()
    Base.metadata.create_all(engine)
    url = str(engine.url)
    logger.info(f"Database initialized: {url.split('@')[-1] if '@' in url else url}")


@contextmanager
def get_db(factory: sessionmaker | None = None) -> Session:
    """Context manager for database sessions."""
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
