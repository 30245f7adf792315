"""Engine and session handling for the payment core."""
from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from alivehome.config import get_settings
from alivehome.models.base import Base

engine: Engine | None = None
SessionLocal: sessionmaker[Session] | None = None


def _engine_kwargs(database_url: str) -> dict[str, object]:
    if database_url.startswith("sqlite"):
        # Billing workers and the threadpool share the file across threads.
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


def init_engine(database_url: str | None = None) -> Engine:
    """Create the engine and session factory once per process.

    ``database_url`` overrides the configured URL; it is only honoured on the
    first call.
    """

    global engine, SessionLocal
    if engine is None:
        url = database_url or get_settings().database_url
        engine = create_engine(url, future=True, echo=False, **_engine_kwargs(url))
        # Services keep using loaded rows after commit (ledger -> orchestrator -> response).
        SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    return engine


def get_engine() -> Engine:
    return engine if engine is not None else init_engine()


def get_sessionmaker() -> sessionmaker[Session]:
    if SessionLocal is None:
        init_engine()
    assert SessionLocal is not None
    return SessionLocal


@contextmanager
def open_session() -> Iterator[Session]:
    """Yield a session that is rolled back on error and always closed.

    Services commit their own units of work; this only guarantees that a
    failed unit does not leak a half-open transaction back to the pool.
    """

    session = get_sessionmaker()()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record) -> None:
    """Make SQLite enforce the ledger's foreign keys (payments -> transactions)."""

    if type(dbapi_connection).__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_all() -> None:
    """Create the schema from model metadata (dev and tests; production uses Alembic)."""

    Base.metadata.create_all(bind=get_engine())


def close_engine() -> None:
    global engine, SessionLocal
    if engine is not None:
        engine.dispose()
    engine = None
    SessionLocal = None


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request."""

    with open_session() as session:
        yield session


__all__ = [
    "Base",
    "close_engine",
    "create_all",
    "get_db",
    "get_engine",
    "get_sessionmaker",
    "init_engine",
    "open_session",
]
