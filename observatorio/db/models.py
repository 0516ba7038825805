"""
SQLAlchemy Models for Local State
=================================

Local persistence is a flat key/value table: each persisted key
(currentUser, users, casos, ...) holds one JSON document. Values are stored
as text exactly as the storage layer serialized them.

Supports both PostgreSQL and SQLite via SQLAlchemy.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


class StoredEntry(Base):
    """One persisted key"""
    __tablename__ = "stored_entries"

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<StoredEntry {self.key}>"
