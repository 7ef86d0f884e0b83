"""Engine, session factory and session scopes for requests and background jobs."""
from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from gametrust.config import get_settings
from gametrust.models.base import Base

engine: Engine | None = None
SessionLocal: sessionmaker[Session] | None = None


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _engine_kwargs(url: str) -> dict[str, object]:
    settings = get_settings()
    if _is_sqlite(url):
        # API workers and the timer sweep write the same order rows; wait for the file lock.
        return {"connect_args": {"check_same_thread": False, "timeout": settings.DB_BUSY_TIMEOUT_SECONDS}}
    return {"pool_pre_ping": True, "pool_recycle": settings.DB_POOL_RECYCLE_SECONDS}


def init_engine() -> Engine:
    """Create the engine and session factory on first use."""

    global engine, SessionLocal
    if engine is None:
        url = get_settings().database_url
        engine = create_engine(url, future=True, echo=False, **_engine_kwargs(url))
        # Versioned rows are re-read explicitly, so objects survive commits.
        SessionLocal = sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
            future=True,
        )
    return engine


def get_engine() -> Engine:
    if engine is None:
        return init_engine()
    return engine


def get_sessionmaker() -> sessionmaker[Session]:
    if SessionLocal is None:
        init_engine()
    assert SessionLocal is not None  # for type-checkers
    return SessionLocal


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record) -> None:  # pragma: no cover - driver specific
    """Enforce foreign keys so ledger rows cannot outlive their order."""

    if type(dbapi_connection).__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_all() -> None:
    """Create tables from metadata; only for throwaway dev databases."""

    Base.metadata.create_all(bind=get_engine())


def close_engine() -> None:
    global engine, SessionLocal
    if engine is not None:
        engine.dispose()
        engine = None
        SessionLocal = None


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    """Session for scheduler jobs and scripts.

    Services commit their own units of work; anything left open when the job
    fails is rolled back before the session is closed.
    """

    session = (factory or get_sessionmaker())()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Generator[Session, None, None]:
    """Provide a database session for FastAPI dependencies."""

    with session_scope() as session:
        yield session


__all__ = [
    "Base",
    "SessionLocal",
    "engine",
    "create_all",
    "get_db",
    "get_engine",
    "get_sessionmaker",
    "init_engine",
    "close_engine",
    "session_scope",
]
