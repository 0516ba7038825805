"""
Local Persistence
=================

Key/value persistence for everything the client keeps between runs:
the current session, the account registry, the case snapshot and the
moderation collections.

Every value is written inside a versioned envelope:

    {"schema_version": 1, "data": <payload>}

Reads accept the envelope or a bare legacy payload. A value written by a newer
schema, or one that does not parse, is logged and treated as absent.

Backends:
- memory: process-local dict (tests, throwaway runs)
- sql: SQLAlchemy key/value table (default)
- redis: shared Redis instance
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .config import Settings
from .schemas import StoreBackend

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Persisted keys
KEY_CURRENT_USER = "currentUser"
KEY_USERS = "users"
KEY_CASOS = "casos"
KEY_COMENTARIOS = "comentarios"
KEY_SUGESTOES = "sugestoes"
KEY_SOLICITACOES = "solicitacoes"
NOTIFICATIONS_PREFIX = "notifications:"


def notifications_key(email: str) -> str:
    return f"{NOTIFICATIONS_PREFIX}{email.lower()}"


def encode_value(data: Any) -> str:
    """Wrap a JSON-compatible payload in the current envelope"""
    return json.dumps(
        {"schema_version": SCHEMA_VERSION, "data": data},
        ensure_ascii=False,
        sort_keys=True,
    )


class KeyValueStore(ABC):
    """Raw string storage plus envelope handling"""

    name: str = "base"

    @abstractmethod
    def get_raw(self, key: str) -> Optional[str]:
        """Return the stored text for a key, or None"""

    @abstractmethod
    def set_raw(self, key: str, value: str) -> None:
        """Store text under a key"""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key (no error when missing)"""

    @abstractmethod
    def keys(self) -> List[str]:
        """List stored keys"""

    def load(self, key: str, default: Any = None) -> Any:
        """
        Read and unwrap a value.

        Returns:
            The payload, or `default` when the key is missing, corrupt, or
            written by a newer schema version.
        """
        raw = self.get_raw(key)
        if raw is None:
            return default

        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"[{self.name}] corrupt value under '{key}', ignoring: {e}")
            return default

        if isinstance(parsed, dict) and "schema_version" in parsed and "data" in parsed:
            version = parsed.get("schema_version")
            if not isinstance(version, int) or version > SCHEMA_VERSION:
                logger.warning(
                    f"[{self.name}] '{key}' has schema_version={version!r}, "
                    f"newer than supported {SCHEMA_VERSION}; ignoring"
                )
                return default
            return parsed["data"]

        # Legacy value written without an envelope
        return parsed

    def save(self, key: str, data: Any) -> None:
        """Wrap and write a JSON-compatible payload"""
        self.set_raw(key, encode_value(data))

    def clear(self) -> None:
        for key in self.keys():
            self.delete(key)


class MemoryStore(KeyValueStore):
    """Process-local store"""

    name = "memory"

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get_raw(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_raw(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data.keys())


class SqlStore(KeyValueStore):
    """SQLAlchemy-backed store (one row per key)"""

    name = "sql"

    def __init__(self, database_url: str):
        from .db import init_db

        self.database_url = database_url
        init_db(database_url)

    def get_raw(self, key: str) -> Optional[str]:
        from .db import StoredEntry, get_db_session

        with get_db_session(self.database_url) as db:
            entry = db.get(StoredEntry, key)
            return entry.value if entry else None

    def set_raw(self, key: str, value: str) -> None:
        from .db import StoredEntry, get_db_session

        with get_db_session(self.database_url) as db:
            entry = db.get(StoredEntry, key)
            if entry is None:
                db.add(StoredEntry(key=key, value=value))
            else:
                entry.value = value

    def delete(self, key: str) -> None:
        from .db import StoredEntry, get_db_session

        with get_db_session(self.database_url) as db:
            entry = db.get(StoredEntry, key)
            if entry is not None:
                db.delete(entry)

    def keys(self) -> List[str]:
        from .db import StoredEntry, get_db_session

        with get_db_session(self.database_url) as db:
            return [row[0] for row in db.query(StoredEntry.key).all()]


class RedisStore(KeyValueStore):
    """Redis-backed store. Keys are namespaced with a prefix."""

    name = "redis"

    def __init__(self, client, prefix: str = "observatorio:"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "observatorio:") -> "RedisStore":
        from redis import Redis

        client = Redis.from_url(url, decode_responses=True)
        return cls(client, prefix=prefix)

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get_raw(self, key: str) -> Optional[str]:
        value = self.client.get(self._k(key))
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    def set_raw(self, key: str, value: str) -> None:
        self.client.set(self._k(key), value)

    def delete(self, key: str) -> None:
        self.client.delete(self._k(key))

    def keys(self) -> List[str]:
        found = []
        for key in self.client.scan_iter(match=f"{self.prefix}*"):
            if isinstance(key, bytes):
                key = key.decode("utf-8")
            found.append(key[len(self.prefix):])
        return found


def build_store(settings: Settings) -> KeyValueStore:
    """Create the key/value store selected by STORE_BACKEND"""
    backend = settings.store_backend

    if backend == StoreBackend.MEMORY:
        return MemoryStore()
    if backend == StoreBackend.REDIS:
        logger.info(f"Using Redis store at {settings.redis_url}")
        return RedisStore.from_url(settings.redis_url, prefix=settings.redis_prefix)

    logger.info(f"Using SQL store at {settings.database_url}")
    return SqlStore(settings.database_url)
