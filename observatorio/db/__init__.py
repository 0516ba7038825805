"""
Database Package - SQLAlchemy key/value persistence
===================================================
"""

from .models import Base, StoredEntry
from .session import get_db_session, init_db, get_engine, reset_engine

__all__ = [
    "Base", "StoredEntry",
    "get_db_session", "init_db", "get_engine", "reset_engine",
]
