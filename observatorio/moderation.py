"""
Moderation Queue
================

Owns the collections that wait on an admin decision:
- comentarios: comments on a case (created unapproved)
- sugestoes: visitor-proposed cases, promoted to real cases on approval
- solicitacoes: access requests; approval creates the account

While the case repository talks to the hosted functions, comments and access
requests go to /api/comentarios and /api/access-requests through a
RemoteModerationStore; otherwise they live on local persistence. Suggestions
are always local.

Suggestion promotion is all-or-nothing: the new case exists and the
suggestion is marked `aprovada` with its id, or neither. A suggestion is
promoted at most once; a second approval raises AlreadyProcessed.

Deleting a case removes its comments.
"""

import logging
import secrets
from datetime import datetime
from typing import Any, Callable, List, Optional, Set, Type, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError

from .auth import AuthCoordinator, get_password_hash
from .errors import (
    AlreadyProcessed,
    DemoModeBlocked,
    DuplicateEmail,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from .notifier import ChangeEvent, ChangeNotifier
from .permissions import has_permission, is_admin, require_admin, require_permission
from .repository import CaseRepository, CasoInput, validate_caso_content
from .schemas import (
    AccessRequest,
    AccessRequestStatus,
    Capability,
    Caso,
    Comentario,
    Role,
    Sugestao,
    SuggestionStatus,
    utcnow,
)
from .storage import KEY_COMENTARIOS, KEY_SOLICITACOES, KEY_SUGESTOES, KeyValueStore
from .stores import CaseStore, RemoteModerationStore, build_moderation_store

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6

T = TypeVar("T", bound=BaseModel)


class ModerationQueue:
    """Comments, suggestions and access requests"""

    def __init__(
        self,
        auth: AuthCoordinator,
        repository: CaseRepository,
        kv: Optional[KeyValueStore] = None,
        notifier: Optional[ChangeNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.auth = auth
        self.repository = repository
        self.kv = kv or auth.store
        self.notifier = notifier or ChangeNotifier("moderacao")
        self.clock = clock

        # Suggestion ids with a promotion suspended mid-flight
        self._promoting: Set[int] = set()
        self._remote: Optional[RemoteModerationStore] = None
        self._remote_source: Optional[CaseStore] = None
        self._subscription = repository.notifier.subscribe(
            self._on_caso_deleted, events=[ChangeEvent.CASO_DELETED]
        )

    def close(self) -> None:
        self._subscription.unsubscribe()

    async def aclose(self) -> None:
        """close() plus the remote HTTP client, if one was opened"""
        self.close()
        if self._remote is not None:
            await self._remote.close()
            self._remote = None

    def _hosted(self) -> Optional[RemoteModerationStore]:
        """Remote client while the repository runs against the case API"""
        store = self.repository.store
        if self._remote_source is not store:
            self._remote = build_moderation_store(store)
            self._remote_source = store
        return self._remote

    # -------------------------------------------------------------------------
    # Persistence helpers
    # -------------------------------------------------------------------------

    def _load(self, key: str, model: Type[T]) -> List[T]:
        raw = self.kv.load(key, [])
        if not isinstance(raw, list):
            logger.warning(f"'{key}' is not a list, ignoring")
            return []
        items = []
        for item in raw:
            try:
                items.append(model.model_validate(item))
            except PydanticValidationError as e:
                logger.warning(f"Skipping invalid {model.__name__} record: {e.error_count()} error(s)")
        return items

    def _save(self, key: str, items: List[BaseModel]) -> None:
        self.kv.save(key, [item.model_dump(mode="json") for item in items])

    @staticmethod
    def _next_id(items: List[Any]) -> int:
        ids = [i.id for i in items if i.id is not None]
        return max(ids) + 1 if ids else 1

    @staticmethod
    def _find(items: List[T], item_id: int, label: str) -> T:
        for item in items:
            if item.id == item_id:
                return item
        raise NotFound(f"{label} não encontrado: {item_id}")

    def _guard_demo(self) -> None:
        if self.auth.is_demo():
            raise DemoModeBlocked()

    # -------------------------------------------------------------------------
    # Comments
    # -------------------------------------------------------------------------

    async def get_comentarios(self, caso_id: int, aprovados_only: bool = True) -> List[Comentario]:
        """Comments of a case, oldest first. Unapproved ones are visible to admins only."""
        if not aprovados_only:
            require_permission(self.auth.current_user, Capability.APPROVE_CONTENT)

        remote = self._hosted()
        if remote is not None:
            return await remote.list_comentarios(caso_id, aprovados_only)

        comentarios = [c for c in self._load(KEY_COMENTARIOS, Comentario) if c.caso_id == caso_id]
        if aprovados_only:
            comentarios = [c for c in comentarios if c.aprovado]
        return comentarios

    async def get_comentario(self, comentario_id: int) -> Comentario:
        """
        One comment. Pending comments are visible to their author and to
        moderators only; to anyone else they do not exist.
        """
        remote = self._hosted()
        if remote is not None:
            comentario = await remote.get_comentario(comentario_id)
            if comentario is None:
                raise NotFound(f"Comentário não encontrado: {comentario_id}")
            return comentario

        comentario = self._find(self._load(KEY_COMENTARIOS, Comentario), comentario_id, "Comentário")
        user = self.auth.current_user
        author = user is not None and comentario.user_id == user.id
        if not comentario.aprovado and not author and not has_permission(user, Capability.APPROVE_CONTENT):
            raise NotFound(f"Comentário não encontrado: {comentario_id}")
        return comentario

    async def add_comentario(self, caso_id: int, texto: str) -> Comentario:
        user = self.auth.current_user
        require_permission(user, Capability.COMMENT)
        texto = (texto or "").strip()
        if not texto:
            raise ValidationError("Comentário vazio")

        if await self.repository.get_caso_async(caso_id) is None:
            raise NotFound(f"Caso não encontrado: {caso_id}")
        self._guard_demo()

        remote = self._hosted()
        if remote is not None:
            comentario = await remote.add_comentario(caso_id, texto)
        else:
            comentarios = self._load(KEY_COMENTARIOS, Comentario)
            comentario = Comentario(
                id=self._next_id(comentarios),
                caso_id=caso_id,
                user_id=user.id,
                autor=user.name,
                texto=texto,
                created_at=self.clock(),
                aprovado=False,
            )
            comentarios.append(comentario)
            self._save(KEY_COMENTARIOS, comentarios)

        self.notifier.notify(ChangeEvent.COMENTARIO_ADDED, comentario)
        return comentario

    async def aprovar_comentario(self, comentario_id: int) -> Comentario:
        require_permission(self.auth.current_user, Capability.APPROVE_CONTENT)
        self._guard_demo()

        remote = self._hosted()
        if remote is not None:
            comentario = await remote.approve_comentario(comentario_id)
        else:
            comentarios = self._load(KEY_COMENTARIOS, Comentario)
            comentario = self._find(comentarios, comentario_id, "Comentário")
            comentario.aprovado = True
            self._save(KEY_COMENTARIOS, comentarios)

        self.notifier.notify(ChangeEvent.COMENTARIO_APPROVED, comentario)
        return comentario

    async def delete_comentario(self, comentario_id: int) -> Comentario:
        require_permission(self.auth.current_user, Capability.APPROVE_CONTENT)
        self._guard_demo()

        remote = self._hosted()
        if remote is not None:
            comentario = await remote.delete_comentario(comentario_id)
        else:
            comentarios = self._load(KEY_COMENTARIOS, Comentario)
            comentario = self._find(comentarios, comentario_id, "Comentário")
            comentarios.remove(comentario)
            self._save(KEY_COMENTARIOS, comentarios)

        self.notifier.notify(ChangeEvent.COMENTARIO_DELETED, comentario)
        return comentario

    def _on_caso_deleted(self, event: ChangeEvent, caso: Caso) -> None:
        # The hosted functions cascade on their side
        if self._hosted() is not None:
            return

        comentarios = self._load(KEY_COMENTARIOS, Comentario)
        kept = [c for c in comentarios if c.caso_id != caso.id]
        if len(kept) == len(comentarios):
            return
        self._save(KEY_COMENTARIOS, kept)
        logger.info(f"Removed {len(comentarios) - len(kept)} comment(s) of deleted caso {caso.id}")
        for comentario in comentarios:
            if comentario.caso_id == caso.id:
                self.notifier.notify(ChangeEvent.COMENTARIO_DELETED, comentario)

    # -------------------------------------------------------------------------
    # Suggestions
    # -------------------------------------------------------------------------

    def get_sugestoes(self, status: Optional[SuggestionStatus] = None) -> List[Sugestao]:
        """Admins see every suggestion; other users see their own."""
        user = self.auth.current_user
        if user is None:
            raise PermissionDenied("Login necessário")

        sugestoes = self._load(KEY_SUGESTOES, Sugestao)
        if not is_admin(user):
            sugestoes = [s for s in sugestoes if s.user_id == user.id]
        if status is not None:
            sugestoes = [s for s in sugestoes if s.status == SuggestionStatus(status)]
        return sugestoes

    async def add_sugestao(self, data: CasoInput) -> Sugestao:
        user = self.auth.current_user
        require_permission(user, Capability.SUGGEST_CASE, Capability.CREATE_CASE)
        content = validate_caso_content(data)
        # Project status is set on the promoted case, not by the visitor
        content.pop("status", None)
        self._guard_demo()

        sugestoes = self._load(KEY_SUGESTOES, Sugestao)
        sugestao = Sugestao(
            **content,
            id=self._next_id(sugestoes),
            user_id=user.id,
            created_at=self.clock(),
            status=SuggestionStatus.PENDENTE,
        )
        sugestoes.append(sugestao)
        self._save(KEY_SUGESTOES, sugestoes)
        logger.info(f"Sugestão {sugestao.id} added by {user.email}")
        self.notifier.notify(ChangeEvent.SUGESTAO_ADDED, sugestao)
        return sugestao

    def _pending_sugestao(self, sugestoes: List[Sugestao], sugestao_id: int) -> Sugestao:
        sugestao = self._find(sugestoes, sugestao_id, "Sugestão")
        if sugestao.status != SuggestionStatus.PENDENTE:
            raise AlreadyProcessed(f"Sugestão {sugestao_id} já foi {sugestao.status.value}")
        return sugestao

    async def aprovar_sugestao(self, sugestao_id: int) -> Sugestao:
        """
        Promote a pending suggestion to an approved case.

        Case events are emitted only once the suggestion is saved; if saving
        fails the case is withdrawn without any event.

        Raises:
            AlreadyProcessed: Already approved/rejected, or approval in flight
            NotFound: Unknown suggestion id
        """
        user = self.auth.current_user
        require_permission(user, Capability.APPROVE_CONTENT)
        if sugestao_id in self._promoting:
            raise AlreadyProcessed(f"Sugestão {sugestao_id} já está sendo aprovada")

        sugestao = self._pending_sugestao(self._load(KEY_SUGESTOES, Sugestao), sugestao_id)
        self._guard_demo()

        # Reserved before the first await
        self._promoting.add(sugestao_id)
        try:
            caso = await self.repository.promote_caso(sugestao.model_dump(exclude={"status"}), announce=False)
            try:
                # Reload: the collection may have changed while suspended
                sugestoes = self._load(KEY_SUGESTOES, Sugestao)
                sugestao = self._pending_sugestao(sugestoes, sugestao_id)
                sugestao.status = SuggestionStatus.APROVADA
                sugestao.caso_id = caso.id
                sugestao.processed_at = self.clock()
                sugestao.processed_by = user.email
                self._save(KEY_SUGESTOES, sugestoes)
            except Exception as e:
                logger.error(f"Promotion of sugestão {sugestao_id} failed, removing caso {caso.id}: {e}")
                await self.repository.withdraw_caso(caso.id)
                raise
        finally:
            self._promoting.discard(sugestao_id)

        logger.info(f"Sugestão {sugestao_id} promoted to caso {caso.id} by {user.email}")
        self.repository.announce_promotion(caso)
        self.notifier.notify(ChangeEvent.SUGESTAO_APPROVED, sugestao)
        return sugestao

    async def rejeitar_sugestao(self, sugestao_id: int, motivo: str = "") -> Sugestao:
        user = self.auth.current_user
        require_permission(user, Capability.APPROVE_CONTENT)
        if sugestao_id in self._promoting:
            raise AlreadyProcessed(f"Sugestão {sugestao_id} já está sendo aprovada")
        self._guard_demo()

        sugestoes = self._load(KEY_SUGESTOES, Sugestao)
        sugestao = self._pending_sugestao(sugestoes, sugestao_id)
        sugestao.status = SuggestionStatus.REJEITADA
        sugestao.motivo_rejeicao = motivo or None
        sugestao.processed_at = self.clock()
        sugestao.processed_by = user.email
        self._save(KEY_SUGESTOES, sugestoes)
        self.notifier.notify(ChangeEvent.SUGESTAO_REJECTED, sugestao)
        return sugestao

    # -------------------------------------------------------------------------
    # Access requests
    # -------------------------------------------------------------------------

    async def request_access(
        self,
        name: str,
        email: str,
        role: Role,
        justification: str,
        password: Optional[str] = None,
    ) -> AccessRequest:
        """
        Public: anyone may ask for an account.

        Raises:
            ValidationError: Missing field, short password or unknown role
            DuplicateEmail: Pending request or existing account for this email
        """
        name = (name or "").strip()
        email = (email or "").strip().lower()
        justification = (justification or "").strip()
        if not name or not email or not justification:
            raise ValidationError("Todos os campos são obrigatórios")
        if "@" not in email:
            raise ValidationError("Email inválido")
        if password is not None and len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"A senha deve ter pelo menos {MIN_PASSWORD_LENGTH} caracteres")
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError(f"Perfil inválido: {role}")
        self._guard_demo()

        remote = self._hosted()
        if remote is not None:
            # The server hashes the password and checks duplicates
            request_id = await remote.create_access_request(name, email, role, justification, password=password)
            solicitacao = AccessRequest(
                id=request_id,
                name=name,
                email=email,
                role=role,
                justification=justification,
                requested_at=self.clock(),
            )
        else:
            solicitacoes = self._load(KEY_SOLICITACOES, AccessRequest)
            if any(s.email == email and s.status == AccessRequestStatus.PENDING for s in solicitacoes):
                raise DuplicateEmail("Já existe uma solicitação pendente para este email")
            if self.auth.get_user_by_email(email) is not None:
                raise DuplicateEmail("Já existe um usuário cadastrado com este email")

            solicitacao = AccessRequest(
                id=self._next_id(solicitacoes),
                name=name,
                email=email,
                role=role,
                justification=justification,
                password_hash=get_password_hash(password) if password else None,
                requested_at=self.clock(),
            )
            solicitacoes.append(solicitacao)
            self._save(KEY_SOLICITACOES, solicitacoes)

        logger.info(f"Access request {solicitacao.id} created for {email} ({role.value})")
        self.notifier.notify(ChangeEvent.SOLICITACAO_ADDED, solicitacao)
        return solicitacao

    async def list_access_requests(self, status: Optional[AccessRequestStatus] = None) -> List[AccessRequest]:
        """Newest first. Admin only."""
        require_admin(self.auth.current_user)

        remote = self._hosted()
        if remote is not None:
            solicitacoes = await remote.list_access_requests(status)
        else:
            solicitacoes = self._load(KEY_SOLICITACOES, AccessRequest)
            if status is not None:
                solicitacoes = [s for s in solicitacoes if s.status == AccessRequestStatus(status)]
        return sorted(
            solicitacoes,
            key=lambda s: s.requested_at.timestamp() if s.requested_at else 0.0,
            reverse=True,
        )

    async def process_access_request(
        self,
        request_id: int,
        approve: bool,
        reason: Optional[str] = None,
    ) -> AccessRequest:
        """
        Approve (creating the account through AuthCoordinator.add_user) or
        reject a pending request.
        """
        user = self.auth.current_user
        require_admin(user)
        self._guard_demo()

        remote = self._hosted()
        if remote is not None:
            solicitacao = await remote.decide_access_request(request_id, approve, reason)
            logger.info(f"Access request {request_id} {solicitacao.status.value} by {user.email}")
            self.notifier.notify(ChangeEvent.SOLICITACAO_UPDATED, solicitacao)
            return solicitacao

        solicitacoes = self._load(KEY_SOLICITACOES, AccessRequest)
        solicitacao = self._find(solicitacoes, request_id, "Solicitação")
        if solicitacao.status != AccessRequestStatus.PENDING:
            raise AlreadyProcessed()

        if approve:
            password_hash = solicitacao.password_hash
            if password_hash is None:
                # No password requested: the admin has to reset it before first login
                password_hash = get_password_hash(secrets.token_urlsafe(16))
            identity = self.auth.add_user(
                solicitacao.name,
                solicitacao.email,
                role=solicitacao.role,
                password_hash=password_hash,
            )
            solicitacao.status = AccessRequestStatus.APPROVED
            solicitacao.user_id = identity.id
        else:
            solicitacao.status = AccessRequestStatus.REJECTED
            solicitacao.rejection_reason = reason

        solicitacao.decided_at = self.clock()
        solicitacao.decided_by = user.email
        self._save(KEY_SOLICITACOES, solicitacoes)
        logger.info(f"Access request {request_id} {solicitacao.status.value} by {user.email}")
        self.notifier.notify(ChangeEvent.SOLICITACAO_UPDATED, solicitacao)
        return solicitacao
