"""
Session Persistence
===================

Owns the live session record (persisted under `currentUser`).

A session is valid iff it was established with remember=True, or less than
the session timeout (24h) has passed since login_time. Corrupt or invalid
persisted sessions are cleared and reported as "no session".
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from .schemas import Identity, utcnow
from .storage import KeyValueStore, KEY_CURRENT_USER

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TIMEOUT = timedelta(hours=24)


def _aware(value: datetime) -> datetime:
    # Legacy records may carry naive timestamps; they were written in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SessionStore:
    """Persist / restore / validate the authenticated identity"""

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], datetime] = utcnow,
        timeout: timedelta = DEFAULT_SESSION_TIMEOUT,
    ):
        self.store = store
        self.clock = clock
        self.timeout = timeout

    def restore(self) -> Optional[Identity]:
        """Load the persisted session, or None (clearing whatever was there)."""
        raw = self.store.load(KEY_CURRENT_USER)
        if raw is None:
            return None

        try:
            identity = Identity.model_validate(raw)
        except PydanticValidationError as e:
            logger.warning(f"Discarding corrupt session record: {e.error_count()} error(s)")
            self.clear()
            return None

        if not self.is_valid(identity):
            logger.info(f"Session for {identity.email} expired, clearing")
            self.clear()
            return None

        return identity

    def establish(self, identity: Identity, remember: bool = False) -> Identity:
        """Stamp login_time/remember/session_id, persist, return the stored record"""
        session = identity.model_copy(update={
            "login_time": self.clock(),
            "remember": remember,
            "session_id": secrets.token_urlsafe(16),
        })
        self._persist(session)
        return session

    def refresh(self, identity: Identity) -> Identity:
        """Re-stamp login_time on an existing session"""
        session = identity.model_copy(update={"login_time": self.clock()})
        self._persist(session)
        return session

    def save(self, identity: Identity) -> None:
        """Persist profile changes without touching the session stamps"""
        self._persist(identity)

    def is_valid(self, identity: Optional[Identity]) -> bool:
        if identity is None:
            return False
        if identity.remember:
            return True
        if identity.login_time is None:
            return False
        return self.clock() - _aware(identity.login_time) < self.timeout

    def clear(self) -> None:
        self.store.delete(KEY_CURRENT_USER)

    def _persist(self, identity: Identity) -> None:
        self.store.save(KEY_CURRENT_USER, identity.model_dump(mode="json"))
