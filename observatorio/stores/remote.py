"""
Remote Stores
=============

Per-record HTTP clients for the hosted functions:
- RemoteCaseStore: /api/casos
- RemoteModerationStore: /api/comentarios and /api/access-requests

Status mapping:
- 401/403 -> PermissionDenied
- 404 -> NotFound
- 409 -> AlreadyProcessed on decisions, DuplicateEmail otherwise
- 400/422 -> ValidationError
- transport errors and 5xx -> RemoteUnavailable
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import TypeAdapter

from ..config import Settings, get_settings
from ..errors import (
    AlreadyProcessed,
    DuplicateEmail,
    NotFound,
    PermissionDenied,
    RemoteUnavailable,
    ValidationError,
)
from ..schemas import AccessRequest, AccessRequestStatus, Caso, Comentario, Role, SearchFilters
from .base import CaseStore

logger = logging.getLogger(__name__)

_CHANGES = TypeAdapter(Dict[str, Any])


def raise_for_status(response: httpx.Response, conflict: type = DuplicateEmail) -> None:
    """Translate an error response into the domain error taxonomy"""
    status = response.status_code
    if status < 400:
        return

    detail = None
    try:
        body = response.json()
        if isinstance(body, dict):
            detail = body.get("detail") or body.get("error")
    except ValueError:
        pass
    message = detail if isinstance(detail, str) else f"HTTP {status}"

    if status in (401, 403):
        raise PermissionDenied(message)
    if status == 404:
        raise NotFound(message)
    if status == 409:
        raise conflict(message)
    if status in (400, 422):
        raise ValidationError(message)
    raise RemoteUnavailable(message)


class HostedApiClient:
    """
    Shared httpx plumbing for the hosted functions.

    Args:
        settings: Provides api_base_url and remote_timeout_seconds
        token_provider: Returns the bearer token for the current identity (or None)
        transport: Optional httpx transport (tests mount the ASGI app here)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = self.settings.api_base_url.rstrip("/")
        self.token_provider = token_provider
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.settings.remote_timeout_seconds,
                transport=self.transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client"""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> Dict[str, str]:
        token = self.token_provider() if self.token_provider else None
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _request(self, method: str, path: str, conflict: type = DuplicateEmail, **kwargs) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"Hosted API {method} {path} failed: {e}")
            raise RemoteUnavailable(f"API indisponível: {e}")
        raise_for_status(response, conflict)
        return response


class RemoteCaseStore(HostedApiClient, CaseStore):
    """Async client for the hosted case API"""

    name = "remote"

    # -------------------------------------------------------------------------
    # CaseStore
    # -------------------------------------------------------------------------

    async def list(self, filters: Optional[SearchFilters] = None) -> List[Caso]:
        params: Dict[str, Any] = {}
        if filters is not None:
            if filters.aprovado is not None:
                params["aprovado"] = "true" if filters.aprovado else "false"
            for key in ("categoria", "regiao", "status"):
                value = getattr(filters, key)
                if value:
                    params[key] = value

        response = await self._request("GET", "/api/casos", params=params)
        data = response.json()
        return [Caso.model_validate(item) for item in data.get("casos", [])]

    async def get(self, caso_id: int) -> Optional[Caso]:
        try:
            response = await self._request("GET", f"/api/casos/{caso_id}")
        except NotFound:
            return None
        return Caso.model_validate(response.json())

    async def create(self, caso: Caso) -> Caso:
        payload = caso.model_dump(mode="json", exclude={"id"})
        response = await self._request("POST", "/api/casos", json=payload)
        return Caso.model_validate(response.json())

    async def update(self, caso_id: int, changes: Dict[str, Any]) -> Caso:
        payload = _CHANGES.dump_python(changes, mode="json")
        response = await self._request("PUT", f"/api/casos/{caso_id}", json=payload)
        return Caso.model_validate(response.json())

    async def delete(self, caso_id: int) -> Caso:
        existing = await self.get(caso_id)
        if existing is None:
            raise NotFound(f"Caso não encontrado: {caso_id}")
        await self._request("DELETE", f"/api/casos/{caso_id}")
        return existing


class RemoteModerationStore(HostedApiClient):
    """
    Comments and access requests on the hosted functions.

    Validation, permissions and event delivery stay with ModerationQueue;
    this client only moves records.
    """

    # -------------------------------------------------------------------------
    # Comments
    # -------------------------------------------------------------------------

    async def list_comentarios(self, caso_id: int, aprovados_only: bool = True) -> List[Comentario]:
        params = {"caso_id": caso_id, "aprovados": "true" if aprovados_only else "false"}
        response = await self._request("GET", "/api/comentarios", params=params)
        return [Comentario.model_validate(item) for item in response.json().get("comentarios", [])]

    async def add_comentario(self, caso_id: int, texto: str) -> Comentario:
        response = await self._request("POST", "/api/comentarios", json={"caso_id": caso_id, "texto": texto})
        return Comentario.model_validate(response.json())

    async def approve_comentario(self, comentario_id: int) -> Comentario:
        response = await self._request("PUT", f"/api/comentarios/{comentario_id}", json={"aprovado": True})
        return Comentario.model_validate(response.json())

    async def get_comentario(self, comentario_id: int) -> Optional[Comentario]:
        try:
            response = await self._request("GET", f"/api/comentarios/{comentario_id}")
        except NotFound:
            return None
        return Comentario.model_validate(response.json())

    async def delete_comentario(self, comentario_id: int) -> Comentario:
        existing = await self.get_comentario(comentario_id)
        if existing is None:
            raise NotFound(f"Comentário não encontrado: {comentario_id}")
        await self._request("DELETE", f"/api/comentarios/{comentario_id}")
        return existing

    # -------------------------------------------------------------------------
    # Access requests
    # -------------------------------------------------------------------------

    async def create_access_request(
        self,
        name: str,
        email: str,
        role: Role,
        justification: str,
        password: Optional[str] = None,
    ) -> int:
        """Returns the id assigned by the server"""
        payload = {
            "name": name,
            "email": email,
            "role": Role(role).value,
            "justification": justification,
            "password": password,
        }
        response = await self._request("POST", "/api/access-requests", json=payload)
        return int(response.json()["request_id"])

    async def list_access_requests(self, status: Optional[AccessRequestStatus] = None) -> List[AccessRequest]:
        params = {"status": AccessRequestStatus(status).value} if status is not None else {}
        response = await self._request("GET", "/api/access-requests", params=params)
        return [AccessRequest.model_validate(item) for item in response.json()]

    async def decide_access_request(
        self,
        request_id: int,
        approve: bool,
        reason: Optional[str] = None,
    ) -> AccessRequest:
        payload = {"action": "approve" if approve else "reject", "reason": reason}
        response = await self._request(
            "PUT", f"/api/access-requests/{request_id}", conflict=AlreadyProcessed, json=payload
        )
        return AccessRequest.model_validate(response.json())
