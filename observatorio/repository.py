"""
Case Repository
===============

Facade over the case store selected at startup:
- local: snapshot persisted under `casos`, seeded from the bundled dataset
- hosted: per-record calls to the case API, with silent fallback to local if
  the API is unreachable during initialize()

Keeps an in-memory mirror of the snapshot (get_casos() never blocks) with a
5-minute freshness window. Mutators check permissions, apply, persist and
notify. In demo mode mutators change only the in-memory mirror and raise
DemoModeBlocked.
"""

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, ValidationError as PydanticValidationError

from .auth import AuthCoordinator
from .config import Settings
from .errors import DemoModeBlocked, NotFound, PermissionDenied, RemoteUnavailable, ValidationError
from .notifier import ChangeEvent, ChangeNotifier, Debouncer
from .permissions import has_permission, is_admin, require_admin, require_permission
from .schemas import (
    CASO_CONTENT_FIELDS,
    CaseStats,
    Capability,
    Caso,
    CasoBase,
    SearchFilters,
    utcnow,
)
from .storage import KeyValueStore
from .stores import CaseStore, LocalCaseStore, build_case_store, matches_filters, next_caso_id

logger = logging.getLogger(__name__)

CasoInput = Union[Dict[str, Any], BaseModel]


def validate_caso_content(data: CasoInput) -> Dict[str, Any]:
    """
    Keep only case content fields and validate them.

    Bookkeeping fields (id, aprovado, data_cadastro, ...) in the input are
    dropped, never trusted.
    """
    if isinstance(data, BaseModel):
        data = data.model_dump()
    if not isinstance(data, dict):
        raise ValidationError("Dados do caso inválidos")

    content = {k: v for k, v in data.items() if k in CASO_CONTENT_FIELDS}
    try:
        return CasoBase.model_validate(content).model_dump()
    except PydanticValidationError as e:
        raise ValidationError(str(e))


def matches_query(caso: Caso, query: str) -> bool:
    """Case-insensitive substring match over the searchable fields"""
    term = (query or "").strip().lower()
    if not term:
        return True
    fields = (caso.titulo, caso.descricao_resumo, caso.categoria, caso.regiao, caso.organizacao)
    if any(term in (value or "").lower() for value in fields):
        return True
    return any(term in tag.lower() for tag in caso.tags)


def compute_stats(casos: List[Caso]) -> CaseStats:
    """
    Derive statistics from a snapshot.

    Totals and the approval rate cover every case; distinct counts, the
    beneficiary sum and the distributions cover approved cases only.
    """
    aprovados = [c for c in casos if c.aprovado]
    total = len(casos)
    beneficiarios = sum(max(0, c.beneficiarios or 0) for c in aprovados)

    por_categoria = Counter(c.categoria for c in aprovados)
    por_regiao = Counter(c.regiao for c in aprovados)

    return CaseStats(
        total_casos=total,
        casos_aprovados=len(aprovados),
        casos_pendentes=total - len(aprovados),
        categorias=len(por_categoria),
        regioes=len(por_regiao),
        organizacoes=len({c.organizacao for c in aprovados}),
        beneficiarios=beneficiarios,
        media_beneficiarios=round(beneficiarios / len(aprovados)) if aprovados else 0,
        taxa_aprovacao=round(len(aprovados) / total * 100) if total else 0,
        por_categoria=[{"categoria": k, "count": v} for k, v in por_categoria.most_common()],
        por_regiao=[{"regiao": k, "count": v} for k, v in por_regiao.most_common()],
    )


class CaseRepository:
    """
    Owner of the case collection.

    Args:
        auth: Source of the current identity (permissions, demo flag, bearer token)
        settings: Environment, cache TTL, debounce (default: auth.settings)
        store: Explicit CaseStore (default: chosen from settings.environment)
        kv: Local persistence (default: auth.store)
        notifier: ChangeNotifier for case events
        clock: Injected time source
        transport: Optional httpx transport for the remote store
    """

    def __init__(
        self,
        auth: AuthCoordinator,
        settings: Optional[Settings] = None,
        store: Optional[CaseStore] = None,
        kv: Optional[KeyValueStore] = None,
        notifier: Optional[ChangeNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.auth = auth
        self.settings = settings or auth.settings
        self.kv = kv or auth.store
        self.store = store or build_case_store(
            self.settings, self.kv, token_provider=self._bearer_token, transport=transport
        )
        self.notifier = notifier or ChangeNotifier("casos")
        self.clock = clock

        self._casos: List[Caso] = []
        self._last_update: Optional[datetime] = None
        self._fetch_task: Optional[asyncio.Task] = None
        self._fetch_generation = 0

    @property
    def mode(self) -> str:
        return self.store.name

    def _bearer_token(self) -> Optional[str]:
        if self.auth.current_user is None:
            return None
        return self.auth.access_token()

    # -------------------------------------------------------------------------
    # Loading / cache
    # -------------------------------------------------------------------------

    async def initialize(self) -> List[Caso]:
        """Load the first snapshot. An unreachable remote API falls back to local."""
        try:
            casos = await self.store.list()
        except RemoteUnavailable as e:
            if not isinstance(self.store, LocalCaseStore):
                logger.warning(f"Case API unavailable ({e}), falling back to local mode")
                await self.store.close()
                self.store = LocalCaseStore(self.kv)
                casos = await self.store.list()
            else:
                raise

        self._replace_cache(casos)
        self.notifier.notify(ChangeEvent.DATA_LOADED, self.get_casos())
        return self.get_casos()

    async def close(self) -> None:
        if self._fetch_task is not None and not self._fetch_task.done():
            self._fetch_task.cancel()
        await self.store.close()

    def _replace_cache(self, casos: List[Caso]) -> None:
        self._casos = list(casos)
        self._last_update = self.clock()

    def _upsert_cache(self, caso: Caso) -> None:
        for i, existing in enumerate(self._casos):
            if existing.id == caso.id:
                self._casos[i] = caso
                return
        self._casos.append(caso)

    def _drop_from_cache(self, caso_id: int) -> Optional[Caso]:
        for i, existing in enumerate(self._casos):
            if existing.id == caso_id:
                return self._casos.pop(i)
        return None

    def get_casos(self) -> List[Caso]:
        """Last known snapshot, possibly stale. Never blocks."""
        return list(self._casos)

    def get_caso_by_id(self, caso_id: int) -> Optional[Caso]:
        for caso in self._casos:
            if caso.id == int(caso_id):
                return caso
        return None

    async def get_caso_async(self, caso_id: int) -> Optional[Caso]:
        """Read one case from the store, bypassing the mirror"""
        return await self.store.get(int(caso_id))

    def is_cache_valid(self) -> bool:
        if self._last_update is None:
            return False
        ttl = timedelta(seconds=self.settings.cache_ttl_seconds)
        return self.clock() - self._last_update < ttl

    async def get_casos_async(self, filters: Optional[SearchFilters] = None) -> List[Caso]:
        """
        Query the store and replace the mirror.

        A newer call cancels and supersedes an in-flight one; a superseded
        call never writes its (stale) result and returns the current mirror.
        """
        self._fetch_generation += 1
        generation = self._fetch_generation

        if self._fetch_task is not None and not self._fetch_task.done():
            logger.debug("Superseding in-flight case fetch")
            self._fetch_task.cancel()

        task = asyncio.ensure_future(self.store.list(filters))
        self._fetch_task = task
        try:
            casos = await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled() and generation != self._fetch_generation:
                return self.get_casos()
            task.cancel()
            raise

        if generation != self._fetch_generation:
            logger.debug("Discarding stale case fetch result")
            return self.get_casos()

        self._replace_cache(casos)
        self.notifier.notify(ChangeEvent.DATA_LOADED, self.get_casos())
        return self.get_casos()

    # -------------------------------------------------------------------------
    # Mutators
    # -------------------------------------------------------------------------

    async def _require_existing(self, caso_id: int) -> Caso:
        caso = await self.store.get(caso_id)
        if caso is None:
            raise NotFound(f"Caso não encontrado: {caso_id}")
        return caso

    def _block_demo(self) -> None:
        logger.info(f"Demo mode: change kept in memory only ({self.auth.current_user.email})")
        raise DemoModeBlocked()

    async def add_caso(self, data: CasoInput) -> Caso:
        """
        Register a new case. The id is max+1 (or 1) and aprovado is always False.
        """
        user = self.auth.current_user
        require_permission(user, Capability.CREATE_CASE)
        content = validate_caso_content(data)
        if not content.get("responsavel_cadastro"):
            content["responsavel_cadastro"] = user.name

        caso = Caso(**content, aprovado=False, data_cadastro=self.clock(), user_id=user.id)

        if self.auth.is_demo():
            self._casos.append(caso.model_copy(update={"id": next_caso_id(self._casos)}))
            self._block_demo()

        created = await self.store.create(caso)
        self._upsert_cache(created)
        logger.info(f"Caso {created.id} added by {user.email}")
        self.notifier.notify(ChangeEvent.CASO_ADDED, created)
        return created

    async def update_caso(self, caso_id: int, changes: CasoInput) -> Caso:
        """
        Edit case content. Admins may edit any case; owners with
        edit_own_case may edit their own.
        """
        user = self.auth.current_user
        if user is None:
            raise PermissionDenied("Login necessário")

        if isinstance(changes, BaseModel):
            changes = changes.model_dump(exclude_unset=True)
        extra = set(changes) - CASO_CONTENT_FIELDS
        if extra:
            raise ValidationError(f"Campos não editáveis: {', '.join(sorted(extra))}")

        existing = await self._require_existing(caso_id)
        owner = existing.user_id is not None and existing.user_id == user.id
        if not is_admin(user) and not (owner and has_permission(user, Capability.EDIT_OWN_CASE)):
            raise PermissionDenied("Permissão negada: apenas o responsável ou um administrador pode editar")

        merged = {k: v for k, v in existing.model_dump().items() if k in CASO_CONTENT_FIELDS}
        merged.update(changes)
        content = validate_caso_content(merged)
        validated = {k: content[k] for k in changes}

        if self.auth.is_demo():
            self._upsert_cache(existing.model_copy(update=validated))
            self._block_demo()

        updated = await self.store.update(caso_id, validated)
        self._upsert_cache(updated)
        self.notifier.notify(ChangeEvent.CASO_UPDATED, updated)
        return updated

    async def delete_caso(self, caso_id: int) -> Caso:
        user = self.auth.current_user
        require_permission(user, Capability.DELETE_CASE)
        await self._require_existing(caso_id)

        if self.auth.is_demo():
            self._drop_from_cache(caso_id)
            self._block_demo()

        removed = await self.store.delete(caso_id)
        self._drop_from_cache(caso_id)
        logger.info(f"Caso {caso_id} deleted by {user.email}")
        self.notifier.notify(ChangeEvent.CASO_DELETED, removed)
        return removed

    async def _set_approval(self, caso_id: int, aprovado: bool, event: ChangeEvent) -> Caso:
        user = self.auth.current_user
        require_permission(user, Capability.APPROVE_CONTENT)
        existing = await self._require_existing(caso_id)

        if self.auth.is_demo():
            self._upsert_cache(existing.model_copy(update={"aprovado": aprovado}))
            self._block_demo()

        updated = await self.store.update(caso_id, {"aprovado": aprovado})
        self._upsert_cache(updated)
        logger.info(f"Caso {caso_id} {'approved' if aprovado else 'rejected'} by {user.email}")
        self.notifier.notify(event, updated)
        return updated

    async def approve_caso(self, caso_id: int) -> Caso:
        return await self._set_approval(caso_id, True, ChangeEvent.CASO_APPROVED)

    async def reject_caso(self, caso_id: int) -> Caso:
        """Unpublish a case (aprovado=False); the record is kept"""
        return await self._set_approval(caso_id, False, ChangeEvent.CASO_REJECTED)

    async def promote_caso(self, data: CasoInput, announce: bool = True) -> Caso:
        """
        Create an already-approved case (suggestion approval). Admin only.

        With announce=False the caller emits casoAdded/casoApproved through
        announce_promotion() once its own bookkeeping has been saved, or
        removes the case again with withdraw_caso().
        """
        user = self.auth.current_user
        require_permission(user, Capability.APPROVE_CONTENT)
        content = validate_caso_content(data)

        if self.auth.is_demo():
            self._block_demo()

        created = await self.store.create(
            Caso(**content, aprovado=True, data_cadastro=self.clock(), user_id=user.id)
        )

        self._upsert_cache(created)
        if announce:
            self.announce_promotion(created)
        return created

    def announce_promotion(self, caso: Caso) -> None:
        self.notifier.notify(ChangeEvent.CASO_ADDED, caso)
        self.notifier.notify(ChangeEvent.CASO_APPROVED, caso)

    async def withdraw_caso(self, caso_id: int) -> None:
        """Remove an unannounced promoted case. No event is emitted."""
        require_permission(self.auth.current_user, Capability.APPROVE_CONTENT)
        await self.store.delete(caso_id)
        self._drop_from_cache(caso_id)
        logger.info(f"Caso {caso_id} withdrawn")

    async def reset_data(self) -> List[Caso]:
        """Reseed the local snapshot with the bundled dataset. Admin only."""
        require_admin(self.auth.current_user)
        if self.auth.is_demo():
            self._block_demo()

        casos = await self.store.reset()
        self._replace_cache(casos)
        logger.info(f"Case data reset: {len(casos)} cases")
        self.notifier.notify(ChangeEvent.DATA_LOADED, self.get_casos())
        return self.get_casos()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def search_casos(self, query: str = "", filters: Optional[SearchFilters] = None) -> List[Caso]:
        """
        Search the mirror.

        Unapproved cases are excluded unless filters.include_unapproved is set,
        which requires view_all (or admin).
        """
        filters = filters or SearchFilters()
        if filters.include_unapproved:
            require_permission(self.auth.current_user, Capability.VIEW_ALL)

        results = []
        for caso in self._casos:
            if not caso.aprovado and not filters.include_unapproved:
                continue
            if not matches_filters(caso, filters):
                continue
            if matches_query(caso, query):
                results.append(caso)
        return results

    def debounced_search(
        self,
        callback: Callable[[List[Caso]], Any],
        wait: Optional[float] = None,
    ) -> Debouncer:
        """
        Search-as-you-type helper: rapid calls collapse into one search, whose
        results are passed to `callback`.
        """
        def run(query: str = "", filters: Optional[SearchFilters] = None):
            return callback(self.search_casos(query, filters))

        return Debouncer(run, wait=self.settings.search_debounce_seconds if wait is None else wait)

    def get_stats(self) -> CaseStats:
        """Recomputed from the current snapshot on every call"""
        return compute_stats(self._casos)
