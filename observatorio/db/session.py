"""
Database Session Management
===========================

Engine/session handling for the sql store backend. Engines are cached per
URL so tests can point at a fresh SQLite file without restarting.
"""

import os
from contextlib import contextmanager
from typing import Dict, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

from .models import Base

_engines: Dict[str, Engine] = {}


def _create_engine_for_url(database_url: str) -> Engine:
    echo = os.environ.get("SQL_ECHO", "false").lower() == "true"

    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=echo,
        )

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        echo=echo,
    )


def get_engine(database_url: str) -> Engine:
    """Get (or create) the engine for a URL"""
    engine = _engines.get(database_url)
    if engine is None:
        engine = _create_engine_for_url(database_url)
        _engines[database_url] = engine
    return engine


def reset_engine() -> None:
    """Dispose every cached engine (primarily for tests)."""
    for engine in _engines.values():
        engine.dispose()
    _engines.clear()


def init_db(database_url: str) -> Engine:
    """Create tables if missing"""
    engine = get_engine(database_url)
    Base.metadata.create_all(bind=engine)
    return engine


@contextmanager
def get_db_session(database_url: str) -> Generator[Session, None, None]:
    """
    Context manager for database session.

    Usage:
        with get_db_session(url) as db:
            db.get(StoredEntry, "casos")
    """
    factory = sessionmaker(bind=get_engine(database_url), autocommit=False, autoflush=False)
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
