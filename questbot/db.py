# questbot/db.py
from __future__ import annotations
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .config import Settings, get_settings

# ──────────────────────────────────────────────────────────────────────────────
# SQLAlchemy engine/session
# ──────────────────────────────────────────────────────────────────────────────
# The engine is bound once at process start by configure(); SessionLocal is
# importable before that so modules can hold a reference to it.
engine: Optional[Engine] = None
SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def _engine_for_url(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}, "future": True}
        # in-memory databases must share one connection across sessions
        if url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True, future=True)


def configure(settings: Optional[Settings] = None, database_url: Optional[str] = None) -> Engine:
    """Create the engine from injected settings (or an explicit URL) and bind SessionLocal."""
    global engine
    url = database_url or (settings or get_settings()).DATABASE_URL
    if engine is not None:
        engine.dispose()
    engine = _engine_for_url(url)
    SessionLocal.configure(bind=engine)
    return engine


def get_engine() -> Engine:
    if engine is None:
        return configure()
    return engine



def init_db(reset: bool = False) -> None:
    """
    One-shot initializer to call at app startup: optionally drop, then create tables.
    """
    # Import here to avoid circular import at module import time
    from .models import Base

    eng = get_engine()
    if reset:
        Base.metadata.drop_all(bind=eng)
    Base.metadata.create_all(bind=eng)
