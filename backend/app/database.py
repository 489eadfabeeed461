from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import get_settings
from .models import Base


_engine: Optional[Engine] = None
_SessionFactory: Optional[sessionmaker] = None
_database_url: Optional[str] = None


def _create_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


def configure_engine(url: str) -> Engine:
    global _engine, _SessionFactory, _database_url
    _database_url = url

    if _engine is not None:
        _engine.dispose()
    _engine = _create_engine(url)
    _SessionFactory = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        url = _database_url or get_settings().sqlalchemy_database_uri
        if not url:
            raise RuntimeError("Database URL is not configured. Please configure it via settings before use.")
        configure_engine(url)
    return _engine


def init_schema(engine: Optional[Engine] = None) -> Engine:
    engine = engine or get_engine()
    Base.metadata.create_all(engine)
    return engine


@contextmanager
def session_scope() -> Iterator[Session]:
    if _SessionFactory is None:
        get_engine()

    if _SessionFactory is None:
        raise RuntimeError("Session factory not initialised")

    session = _SessionFactory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
