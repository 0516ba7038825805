"""
Observatório Hosted Functions
=============================

FastAPI endpoints backing the remote case store.

Endpoints:
- GET    /health                     - Health check
- GET    /api/config                 - Public identity-provider parameters
- GET    /api/casos                  - List cases (?aprovado=&categoria=&regiao=&status=&search=)
- GET    /api/casos/stats            - Catalog statistics
- GET    /api/casos/{id}             - Get case
- POST   /api/casos                  - Create case (bearer)
- PUT    /api/casos/{id}             - Update / approve case (bearer)
- DELETE /api/casos/{id}             - Delete case (bearer, admin)
- GET    /api/comentarios            - List comments (?caso_id=&aprovados=)
- GET    /api/comentarios/{id}       - Get comment
- POST   /api/comentarios            - Add comment (bearer)
- PUT    /api/comentarios/{id}       - Approve comment (bearer, admin)
- DELETE /api/comentarios/{id}       - Delete comment (bearer, admin)
- POST   /api/access-requests        - Request access (public)
- GET    /api/access-requests        - List requests (bearer, admin)
- PUT    /api/access-requests/{id}   - Decide request (bearer, admin)

Each request runs the same service layer as the client (AuthCoordinator,
CaseRepository, ModerationQueue) with the identity carried by the bearer token.

Run with:
    uvicorn observatorio.api:app --host 0.0.0.0 --port 8888
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .auth import AuthCoordinator, decode_token
from .config import Settings, get_settings
from .errors import (
    AccountDisabled,
    AlreadyProcessed,
    DemoModeBlocked,
    DuplicateEmail,
    InvalidCredentials,
    NotFound,
    ObservatorioError,
    PermissionDenied,
    RemoteUnavailable,
    RootProtected,
    ValidationError,
)
from .moderation import ModerationQueue
from .permissions import has_permission, is_admin, require_permission
from .repository import CaseRepository, compute_stats, matches_query
from .schemas import (
    AccessRequestCreate,
    AccessRequestDecision,
    AccessRequestStatus,
    Capability,
    ComentarioCreate,
    ComentarioUpdate,
    Identity,
    SearchFilters,
)
from .storage import KeyValueStore, build_store
from .stores import LocalCaseStore

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    InvalidCredentials: 401,
    PermissionDenied: 403,
    AccountDisabled: 403,
    RootProtected: 403,
    DemoModeBlocked: 403,
    NotFound: 404,
    DuplicateEmail: 409,
    AlreadyProcessed: 409,
    ValidationError: 400,
    RemoteUnavailable: 503,
}


# =============================================================================
# State / dependencies
# =============================================================================

class ApiState:
    """Process-wide persistence shared by all requests"""

    def __init__(self, settings: Settings, kv: KeyValueStore):
        self.settings = settings
        self.kv = kv
        self.casos = LocalCaseStore(kv)


@dataclass
class Services:
    """Per-request service layer bound to the caller's identity"""
    auth: AuthCoordinator
    repository: CaseRepository
    moderation: ModerationQueue
    identity: Optional[Identity]


def get_state(request: Request) -> ApiState:
    state = getattr(request.app.state, "observatorio", None)
    if state is None:
        settings = get_settings()
        state = ApiState(settings, build_store(settings))
        request.app.state.observatorio = state
    return state


def get_optional_identity(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    state: ApiState = Depends(get_state),
) -> Optional[Identity]:
    """
    Identity from `Authorization: Bearer <jwt>`, or None when absent.

    The token only names the account; role and admin flags come from the
    registry, so a deactivated or demoted account loses access at once.
    """
    if not authorization:
        return None
    if not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    payload = decode_token(authorization.split(" ", 1)[1].strip(), state.settings)
    if not payload or not payload.get("sub") or not payload.get("email"):
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    identity = AuthCoordinator(state.kv, settings=state.settings).get_user(payload["sub"])
    if identity is None:
        raise HTTPException(status_code=401, detail="Account not found")
    if not identity.active:
        raise HTTPException(status_code=403, detail=AccountDisabled().message)

    if payload.get("demo"):
        identity.demo = True
    return identity


def get_identity(identity: Optional[Identity] = Depends(get_optional_identity)) -> Identity:
    if identity is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return identity


def _services(state: ApiState, identity: Optional[Identity]) -> Services:
    auth = AuthCoordinator(state.kv, settings=state.settings)
    auth.current_user = identity
    repository = CaseRepository(auth, settings=state.settings, store=state.casos, kv=state.kv)
    moderation = ModerationQueue(auth, repository, kv=state.kv)
    return Services(auth=auth, repository=repository, moderation=moderation, identity=identity)


def get_services(
    state: ApiState = Depends(get_state),
    identity: Optional[Identity] = Depends(get_optional_identity),
) -> Services:
    return _services(state, identity)


def get_authenticated_services(
    state: ApiState = Depends(get_state),
    identity: Identity = Depends(get_identity),
) -> Services:
    return _services(state, identity)


def _can_view_unapproved(identity: Optional[Identity]) -> bool:
    return has_permission(identity, Capability.VIEW_ALL)


# =============================================================================
# FastAPI App
# =============================================================================

def _parse_cors_origins(raw: str) -> List[str]:
    origins: List[str] = []
    for item in raw.split(","):
        origin = item.strip().strip('"').strip("'").rstrip("/")
        if origin:
            origins.append(origin)
    return origins


def create_app(settings: Optional[Settings] = None, kv: Optional[KeyValueStore] = None) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Defaults to get_settings()
        kv: Persistence; built from settings on first request when omitted
    """
    app = FastAPI(
        title="Observatório Functions",
        description="Case catalog, comments and access requests",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    if settings is not None or kv is not None:
        settings = settings or get_settings()
        app.state.observatorio = ApiState(settings, kv or build_store(settings))

    cors_raw = os.environ.get("CORS_ALLOW_ORIGINS", "http://localhost:8888,http://127.0.0.1:8888")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_parse_cors_origins(cors_raw),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(ObservatorioError)
    async def domain_error_handler(request: Request, exc: ObservatorioError):
        status = ERROR_STATUS.get(type(exc), 500)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status, content={"detail": exc.message})

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    @app.get("/health", tags=["Health"])
    async def health_check(state: ApiState = Depends(get_state)):
        """Health check endpoint"""
        return {
            "status": "healthy",
            "version": state.settings.service_version,
            "timestamp": datetime.now().isoformat(),
        }

    @app.get("/api/config", tags=["Config"])
    async def public_config(response: Response, state: ApiState = Depends(get_state)):
        """Non-secret identity-provider parameters"""
        response.headers["Cache-Control"] = "public, max-age=300"
        return {
            "AUTH0_DOMAIN": state.settings.auth0_domain,
            "AUTH0_CLIENT_ID": state.settings.auth0_client_id,
        }

    # -------------------------------------------------------------------------
    # Cases
    # -------------------------------------------------------------------------

    @app.get("/api/casos", tags=["Casos"])
    async def list_casos(
        aprovado: Optional[bool] = Query(None),
        categoria: Optional[str] = Query(None),
        regiao: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        search: Optional[str] = Query(None),
        state: ApiState = Depends(get_state),
        identity: Optional[Identity] = Depends(get_optional_identity),
    ):
        # Callers without view_all only ever see approved cases
        if not _can_view_unapproved(identity):
            aprovado = True
        filters = SearchFilters(aprovado=aprovado, categoria=categoria, regiao=regiao, status=status)
        casos = await state.casos.list(filters)
        if search:
            casos = [c for c in casos if matches_query(c, search)]
        return {"casos": [c.model_dump(mode="json") for c in casos]}

    @app.get("/api/casos/stats", tags=["Casos"])
    async def casos_stats(state: ApiState = Depends(get_state)):
        casos = await state.casos.list()
        return compute_stats(casos).model_dump()

    @app.get("/api/casos/{caso_id}", tags=["Casos"])
    async def get_caso(
        caso_id: int,
        state: ApiState = Depends(get_state),
        identity: Optional[Identity] = Depends(get_optional_identity),
    ):
        caso = await state.casos.get(caso_id)
        if caso is None:
            raise NotFound(f"Caso não encontrado: {caso_id}")
        owner = identity is not None and caso.user_id == identity.id
        if not caso.aprovado and not owner and not _can_view_unapproved(identity):
            raise NotFound(f"Caso não encontrado: {caso_id}")
        return caso.model_dump(mode="json")

    @app.post("/api/casos", status_code=201, tags=["Casos"])
    async def create_caso(
        payload: Dict[str, Any] = Body(...),
        services: Services = Depends(get_authenticated_services),
    ):
        # An admin posting an approved case is a suggestion promotion
        if payload.get("aprovado") is True and is_admin(services.identity):
            caso = await services.repository.promote_caso(payload)
        else:
            caso = await services.repository.add_caso(payload)
        return caso.model_dump(mode="json")

    @app.put("/api/casos/{caso_id}", tags=["Casos"])
    async def update_caso(
        caso_id: int,
        payload: Dict[str, Any] = Body(...),
        services: Services = Depends(get_authenticated_services),
    ):
        changes = dict(payload)
        aprovado = changes.pop("aprovado", None)
        changes.pop("id", None)
        # Approval rights are checked before any change is applied
        if aprovado is not None:
            require_permission(services.identity, Capability.APPROVE_CONTENT)

        caso = None
        if changes:
            caso = await services.repository.update_caso(caso_id, changes)
        if aprovado is True:
            caso = await services.repository.approve_caso(caso_id)
        elif aprovado is False:
            caso = await services.repository.reject_caso(caso_id)
        if caso is None:
            raise ValidationError("Nenhuma alteração informada")
        return caso.model_dump(mode="json")

    @app.delete("/api/casos/{caso_id}", status_code=204, tags=["Casos"])
    async def delete_caso(caso_id: int, services: Services = Depends(get_authenticated_services)):
        await services.repository.delete_caso(caso_id)
        return Response(status_code=204)

    # -------------------------------------------------------------------------
    # Comments
    # -------------------------------------------------------------------------

    @app.get("/api/comentarios", tags=["Comentarios"])
    async def list_comentarios(
        caso_id: int = Query(...),
        aprovados: bool = Query(True),
        services: Services = Depends(get_services),
    ):
        comentarios = await services.moderation.get_comentarios(caso_id, aprovados_only=aprovados)
        return {"comentarios": [c.model_dump(mode="json") for c in comentarios]}

    @app.get("/api/comentarios/{comentario_id}", tags=["Comentarios"])
    async def get_comentario(comentario_id: int, services: Services = Depends(get_services)):
        comentario = await services.moderation.get_comentario(comentario_id)
        return comentario.model_dump(mode="json")

    @app.post("/api/comentarios", status_code=201, tags=["Comentarios"])
    async def add_comentario(
        request: ComentarioCreate,
        services: Services = Depends(get_authenticated_services),
    ):
        comentario = await services.moderation.add_comentario(request.caso_id, request.texto)
        return comentario.model_dump(mode="json")

    @app.put("/api/comentarios/{comentario_id}", tags=["Comentarios"])
    async def update_comentario(
        comentario_id: int,
        request: ComentarioUpdate,
        services: Services = Depends(get_authenticated_services),
    ):
        if not request.aprovado:
            raise ValidationError("Use DELETE para remover um comentário")
        comentario = await services.moderation.aprovar_comentario(comentario_id)
        return comentario.model_dump(mode="json")

    @app.delete("/api/comentarios/{comentario_id}", status_code=204, tags=["Comentarios"])
    async def delete_comentario(
        comentario_id: int,
        services: Services = Depends(get_authenticated_services),
    ):
        await services.moderation.delete_comentario(comentario_id)
        return Response(status_code=204)

    # -------------------------------------------------------------------------
    # Access requests
    # -------------------------------------------------------------------------

    @app.post("/api/access-requests", status_code=201, tags=["Access Requests"])
    async def create_access_request(
        request: AccessRequestCreate,
        services: Services = Depends(get_services),
    ):
        solicitacao = await services.moderation.request_access(
            request.name,
            request.email,
            request.role,
            request.justification,
            password=request.password,
        )
        return {"message": "Solicitação criada com sucesso", "request_id": solicitacao.id}

    @app.get("/api/access-requests", tags=["Access Requests"])
    async def list_access_requests(
        status: Optional[str] = Query(None),
        services: Services = Depends(get_authenticated_services),
    ):
        try:
            wanted = AccessRequestStatus(status) if status else None
        except ValueError:
            raise ValidationError(f"Status inválido: {status}")
        solicitacoes = await services.moderation.list_access_requests(wanted)
        return [s.model_dump(mode="json", exclude={"password_hash"}) for s in solicitacoes]

    @app.put("/api/access-requests/{request_id}", tags=["Access Requests"])
    async def decide_access_request(
        request_id: int,
        decision: AccessRequestDecision,
        services: Services = Depends(get_authenticated_services),
    ):
        solicitacao = await services.moderation.process_access_request(
            request_id,
            approve=decision.action == "approve",
            reason=decision.reason,
        )
        return solicitacao.model_dump(mode="json", exclude={"password_hash"})


app = create_app()
