"""
Case Store Base Types
=====================

Backing-store interface behind CaseRepository. Operations are per-record so a
remote backend can apply each change atomically on the server.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..schemas import Caso, SearchFilters


def matches_filters(caso: Caso, filters: Optional[SearchFilters]) -> bool:
    """Exact-match filters shared by every backend"""
    if filters is None:
        return True
    if filters.aprovado is not None and caso.aprovado != filters.aprovado:
        return False
    if filters.categoria and caso.categoria != filters.categoria:
        return False
    if filters.regiao and caso.regiao != filters.regiao:
        return False
    if filters.status and caso.status != filters.status:
        return False
    return True


def next_caso_id(casos: List[Caso]) -> int:
    """max(existing ids) + 1, or 1 on an empty collection"""
    ids = [c.id for c in casos if c.id is not None]
    return max(ids) + 1 if ids else 1


class CaseStore(ABC):
    """
    Abstract case store.

    All methods are coroutines; callers must not assume state read before
    an await is still current after it.
    """

    name: str = "base"

    @abstractmethod
    async def list(self, filters: Optional[SearchFilters] = None) -> List[Caso]:
        """Return the cases matching the filters"""

    @abstractmethod
    async def get(self, caso_id: int) -> Optional[Caso]:
        """Return one case, or None"""

    @abstractmethod
    async def create(self, caso: Caso) -> Caso:
        """Persist a new case; the store assigns the id"""

    @abstractmethod
    async def update(self, caso_id: int, changes: Dict[str, Any]) -> Caso:
        """Apply field changes to one case. Raises NotFound."""

    @abstractmethod
    async def delete(self, caso_id: int) -> Caso:
        """Remove one case and return it. Raises NotFound."""

    async def reset(self) -> List[Caso]:
        """Restore the default dataset (local backends only)"""
        raise NotImplementedError(f"{self.name} store does not support reset")

    async def close(self) -> None:
        """Release resources"""
        return None
