"""
Local Case Store
================

Cases persisted as one snapshot under the `casos` key. Every write is a
synchronous read-modify-write of the whole snapshot (no await between the
read and the write), which is only safe with a single writer per store.

On first use (key absent, or unreadable) the snapshot is seeded from the
bundled dataset in observatorio/data/casos.json. Listing and writes persist
the seed; a plain `get` reads the defaults without writing.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from ..errors import NotFound, ValidationError
from ..schemas import Caso, SearchFilters, utcnow
from ..storage import KEY_CASOS, KeyValueStore
from .base import CaseStore, matches_filters, next_caso_id

logger = logging.getLogger(__name__)

DEFAULT_DATASET = Path(__file__).resolve().parent.parent / "data" / "casos.json"

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def normalize_legacy_record(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert records written by older clients (camelCase keys, negative or
    missing beneficiary counts) to the current field names.
    """
    record = {_CAMEL.sub("_", key).lower(): value for key, value in raw.items()}
    beneficiarios = record.get("beneficiarios")
    if isinstance(beneficiarios, bool) or not isinstance(beneficiarios, (int, float)):
        beneficiarios = 0
    record["beneficiarios"] = max(0, int(beneficiarios))
    if record.get("id") is not None:
        record["id"] = int(record["id"])
    return record


def load_default_dataset(path: Path = DEFAULT_DATASET) -> List[Caso]:
    with open(path, "r", encoding="utf-8") as f:
        return [Caso.model_validate(normalize_legacy_record(item)) for item in json.load(f)]


class LocalCaseStore(CaseStore):
    """Whole-snapshot case store on a KeyValueStore"""

    name = "local"

    def __init__(self, kv: KeyValueStore, dataset_path: Path = DEFAULT_DATASET):
        self.kv = kv
        self.dataset_path = dataset_path

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def load_snapshot(self, persist_seed: bool = True) -> List[Caso]:
        raw = self.kv.load(KEY_CASOS)
        if raw is None:
            return self._seed(persist_seed)
        if not isinstance(raw, list):
            logger.warning("Case snapshot is not a list, reseeding defaults")
            return self._seed(persist_seed)

        casos = []
        for item in raw:
            try:
                casos.append(Caso.model_validate(normalize_legacy_record(item)))
            except (PydanticValidationError, AttributeError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable case record: {e}")
        return casos

    def save_snapshot(self, casos: List[Caso]) -> None:
        self.kv.save(KEY_CASOS, [c.model_dump(mode="json") for c in casos])

    def _seed(self, persist: bool = True) -> List[Caso]:
        casos = load_default_dataset(self.dataset_path)
        if not persist:
            return casos
        self.save_snapshot(casos)
        logger.info(f"Seeded {len(casos)} default cases")
        return casos

    @staticmethod
    def _index_of(casos: List[Caso], caso_id: int) -> int:
        for i, caso in enumerate(casos):
            if caso.id == caso_id:
                return i
        raise NotFound(f"Caso não encontrado: {caso_id}")

    # -------------------------------------------------------------------------
    # CaseStore
    # -------------------------------------------------------------------------

    async def list(self, filters: Optional[SearchFilters] = None) -> List[Caso]:
        return [c for c in self.load_snapshot() if matches_filters(c, filters)]

    async def get(self, caso_id: int) -> Optional[Caso]:
        for caso in self.load_snapshot(persist_seed=False):
            if caso.id == caso_id:
                return caso
        return None

    async def create(self, caso: Caso) -> Caso:
        casos = self.load_snapshot()
        created = caso.model_copy(update={
            "id": next_caso_id(casos),
            "data_cadastro": caso.data_cadastro or utcnow(),
        })
        casos.append(created)
        self.save_snapshot(casos)
        return created

    async def update(self, caso_id: int, changes: Dict[str, Any]) -> Caso:
        casos = self.load_snapshot()
        index = self._index_of(casos, caso_id)
        merged = {**casos[index].model_dump(), **changes, "id": caso_id, "updated_at": utcnow()}
        try:
            updated = Caso.model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError(str(e))
        casos[index] = updated
        self.save_snapshot(casos)
        return updated

    async def delete(self, caso_id: int) -> Caso:
        casos = self.load_snapshot()
        removed = casos.pop(self._index_of(casos, caso_id))
        self.save_snapshot(casos)
        return removed

    async def reset(self) -> List[Caso]:
        self.kv.delete(KEY_CASOS)
        return self._seed()
