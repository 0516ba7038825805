"""
Store Factory
=============

Selects the backing stores once, from configuration.
"""

import logging
from typing import Callable, Optional

import httpx

from ..config import Settings
from ..schemas import Environment
from ..storage import KeyValueStore
from .base import CaseStore
from .local import LocalCaseStore
from .remote import RemoteCaseStore, RemoteModerationStore

logger = logging.getLogger(__name__)


def build_case_store(
    settings: Settings,
    kv: KeyValueStore,
    token_provider: Optional[Callable[[], Optional[str]]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> CaseStore:
    """
    Create the case store for the deployment environment.

    Args:
        settings: ENVIRONMENT=hosted selects the remote store, anything else local
        kv: Local persistence (used by the local store)
        token_provider: Bearer token source for the remote store
        transport: Optional httpx transport for the remote store
    """
    if settings.environment == Environment.HOSTED:
        logger.info(f"Case store: remote ({settings.api_base_url})")
        return RemoteCaseStore(settings, token_provider=token_provider, transport=transport)

    logger.info("Case store: local")
    return LocalCaseStore(kv)


def build_moderation_store(case_store: CaseStore) -> Optional[RemoteModerationStore]:
    """
    Remote comment/access-request client matching the case store in use.

    Returns None for a local case store (moderation stays on local
    persistence), including after a remote-to-local fallback.
    """
    if not isinstance(case_store, RemoteCaseStore):
        return None
    logger.info(f"Moderation store: remote ({case_store.base_url})")
    return RemoteModerationStore(
        case_store.settings,
        token_provider=case_store.token_provider,
        transport=case_store.transport,
    )
