"""
Centralized SQLAlchemy/SQLModel engine and session factory.

All store modules import `get_engine` from here.  The database URL comes
from ``settings.database.url`` (config/vita_config.json, overridable with
VITA_DATABASE_URL); tests swap in an in-memory SQLite engine through
`configure_engine`.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Generator

from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

_engine: Engine | None = None


def _make_absolute_sqlite_url(url: str) -> str:
    """
    Resolve relative sqlite:/// paths against the project root so the DB
    always lands in <project_root>/data/ regardless of cwd.
    """
    if not url.startswith("sqlite:///"):
        return url
    rel_path = url[len("sqlite:///"):]
    if os.path.isabs(rel_path):
        return url
    root = Path(__file__).resolve().parents[2]
    abs_path = (root / rel_path).resolve()
    abs_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{abs_path}"


def _build_engine(db_url: str) -> Engine:
    is_sqlite = db_url.startswith("sqlite")
    in_memory = db_url in ("sqlite://", "sqlite:///:memory:")
    kwargs: dict = {"echo": False}
    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    if in_memory:
        # one shared connection, otherwise every session sees an empty DB
        kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True

    engine = create_engine(db_url, **kwargs)

    if is_sqlite and not in_memory:
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragmas(dbapi_conn, _connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

    return engine


def get_engine() -> Engine:
    """Return the singleton engine, creating it on first call."""
    global _engine
    if _engine is None:
        from config.settings import settings
        _engine = _build_engine(_make_absolute_sqlite_url(settings.database.url))
    return _engine


def configure_engine(db_url: str) -> Engine:
    """Replace the singleton engine (tests, scripts with --db)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = _build_engine(_make_absolute_sqlite_url(db_url))
    return _engine


def get_session() -> Generator[Session, None, None]:
    """FastAPI-style dependency that yields a SQLModel session."""
    with Session(get_engine()) as session:
        yield session


def init_db() -> None:
    """Create all tables that are not yet present."""
    from vitachat.db import models as _models  # noqa: F401  registers tables
    SQLModel.metadata.create_all(get_engine())


def ping() -> bool:
    """Cheap connectivity probe for /health."""
    with get_engine().connect() as conn:
        conn.execute(text("SELECT 1"))
    return True
