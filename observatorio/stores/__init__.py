"""
Stores
======

Backing stores for CaseRepository and ModerationQueue: local snapshot or
remote HTTP API.
"""

from .base import CaseStore, matches_filters, next_caso_id
from .local import LocalCaseStore, load_default_dataset
from .remote import HostedApiClient, RemoteCaseStore, RemoteModerationStore
from .factory import build_case_store, build_moderation_store

__all__ = [
    "CaseStore", "matches_filters", "next_caso_id",
    "LocalCaseStore", "load_default_dataset",
    "HostedApiClient", "RemoteCaseStore", "RemoteModerationStore",
    "build_case_store", "build_moderation_store",
]
