"""Database engine and session factories."""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.settings import get_settings

_sync_engine = None


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine for *url*.

    In-memory SQLite gets a single shared connection so every session
    sees the same database.
    """
    if url.startswith("sqlite") and (url == "sqlite://" or ":memory:" in url):
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    return create_engine(url, echo=echo, pool_pre_ping=True)


def get_sync_engine() -> Engine:
    """Get or create the engine configured by settings."""
    global _sync_engine
    if _sync_engine is None:
        settings = get_settings()
        _sync_engine = create_db_engine(settings.database_url, echo=settings.database_echo)
    return _sync_engine


def get_session_factory(engine: Optional[Engine] = None) -> sessionmaker:
    return sessionmaker(bind=engine or get_sync_engine(), expire_on_commit=False)


def reset_engine() -> None:
    """Dispose the cached engine (for testing)."""
    global _sync_engine
    if _sync_engine is not None:
        _sync_engine.dispose()
    _sync_engine = None
