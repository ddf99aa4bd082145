"""Engine and session factory construction."""

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mtglog.db.models import Base


def make_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine for DATABASE_URL.

    SQLite engines are shared across threads (FastAPI runs sync work in a
    threadpool); an in-memory SQLite URL uses a single static connection
    so every session sees the same database.
    """
    kwargs = {"echo": echo, "future": True}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True
        if "supabase" in database_url.lower():
            kwargs["connect_args"] = {"sslmode": "require"}
    return create_engine(database_url, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    # Rows are handed to callers after the session closes
    return sessionmaker(
        bind=engine, autoflush=False, expire_on_commit=False, future=True
    )


def init_db(engine: Engine) -> None:
    """Create any missing tables."""
    Base.metadata.create_all(engine)
