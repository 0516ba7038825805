"""
Identity Provider Client
========================

OIDC redirect-flow helpers for the hosted identity provider (Auth0):
- PKCE (S256) verifier/challenge generation
- authorize URL, including named social connections (google-oauth2, ...)
- authorization-code exchange and refresh-token renewal on /oauth/token
- sign-out URL
- id-token verification against the provider JWKS (PyJWT)
- public configuration fetch from the hosted functions (/api/config)

Token renewal is the only call retried automatically: one retry, then
RemoteUnavailable.
"""

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
import jwt

from .config import Settings, get_settings
from .errors import InvalidCredentials, RemoteUnavailable, ValidationError

logger = logging.getLogger(__name__)

RENEW_ATTEMPTS = 2


@dataclass
class PKCEPair:
    """Verifier kept client-side, challenge sent on authorize"""
    verifier: str
    challenge: str
    state: str


@dataclass
class TokenSet:
    """Token response from /oauth/token"""
    access_token: str
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: int = 0
    token_type: str = "Bearer"

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "TokenSet":
        if not data.get("access_token"):
            raise RemoteUnavailable("Resposta de token sem access_token")
        return cls(
            access_token=data["access_token"],
            id_token=data.get("id_token"),
            refresh_token=data.get("refresh_token"),
            expires_in=int(data.get("expires_in") or 0),
            token_type=data.get("token_type", "Bearer"),
        )


def create_pkce() -> PKCEPair:
    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return PKCEPair(verifier=verifier, challenge=challenge, state=secrets.token_urlsafe(16))


class IdentityProviderClient:
    """
    Async client for the identity provider.

    The domain and client id come from Settings and may be overridden at
    runtime by fetch_public_config().
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        jwks_client: Optional[jwt.PyJWKClient] = None,
    ):
        self.settings = settings or get_settings()
        self.domain = self.settings.auth0_domain
        self.client_id = self.settings.auth0_client_id
        self._transport = transport
        self._jwks_client = jwks_client
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def base_url(self) -> str:
        return f"https://{self.domain}"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.remote_timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client"""
        if self._client:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # Redirect flow
    # -------------------------------------------------------------------------

    def authorize_url(
        self,
        pkce: PKCEPair,
        connection: Optional[str] = None,
        login_hint: Optional[str] = None,
        screen_hint: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> str:
        """
        Build the /authorize URL.

        Args:
            pkce: Pair from create_pkce()
            connection: Social connection name (e.g. "google-oauth2")
            screen_hint: "signup" or "reset_password" for Universal Login screens
        """
        if not self.client_id:
            raise ValidationError("AUTH0_CLIENT_ID não configurado")

        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.settings.auth0_redirect_uri,
            "scope": self.settings.auth0_scope,
            "state": pkce.state,
            "code_challenge": pkce.challenge,
            "code_challenge_method": "S256",
        }
        if self.settings.auth0_audience:
            params["audience"] = self.settings.auth0_audience
        optional = {
            "connection": connection,
            "login_hint": login_hint,
            "screen_hint": screen_hint,
            "prompt": prompt,
        }
        params.update({k: v for k, v in optional.items() if v})
        return f"{self.base_url}/authorize?{urlencode(params)}"

    def logout_url(self, return_to: str) -> str:
        params = {"client_id": self.client_id or "", "returnTo": return_to}
        return f"{self.base_url}/v2/logout?{urlencode(params)}"

    async def exchange_code(self, code: str, verifier: str) -> TokenSet:
        """Trade the authorization code for tokens"""
        return await self._token_request({
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "code": code,
            "code_verifier": verifier,
            "redirect_uri": self.settings.auth0_redirect_uri,
        })

    async def renew(self, refresh_token: str) -> TokenSet:
        """
        Refresh the token pair. Retried once on RemoteUnavailable; a rejected
        refresh token (InvalidCredentials) is not retried.
        """
        payload = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "refresh_token": refresh_token,
        }
        last_error: Optional[RemoteUnavailable] = None
        for attempt in range(1, RENEW_ATTEMPTS + 1):
            try:
                return await self._token_request(payload)
            except RemoteUnavailable as e:
                last_error = e
                logger.warning(f"Token renewal attempt {attempt}/{RENEW_ATTEMPTS} failed: {e}")
        raise last_error

    async def _token_request(self, payload: Dict[str, Any]) -> TokenSet:
        client = await self._get_client()
        try:
            response = await client.post(f"{self.base_url}/oauth/token", json=payload)
        except httpx.HTTPError as e:
            raise RemoteUnavailable(f"Provedor de identidade indisponível: {e}")

        if response.status_code >= 500:
            raise RemoteUnavailable(f"Provedor de identidade respondeu {response.status_code}")
        if response.status_code >= 400:
            try:
                detail = response.json().get("error_description") or response.json().get("error")
            except ValueError:
                detail = response.text
            raise InvalidCredentials(detail or "Token rejeitado pelo provedor")

        return TokenSet.from_response(response.json())

    # -------------------------------------------------------------------------
    # Config / verification
    # -------------------------------------------------------------------------

    async def fetch_public_config(self, api_base_url: Optional[str] = None) -> Dict[str, str]:
        """Load AUTH0_DOMAIN / AUTH0_CLIENT_ID from the hosted functions"""
        url = f"{(api_base_url or self.settings.api_base_url).rstrip('/')}/api/config"
        client = await self._get_client()
        try:
            response = await client.get(url)
            response.raise_for_status()
            config = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise RemoteUnavailable(f"Configuração pública indisponível: {e}")

        self.domain = config.get("AUTH0_DOMAIN") or self.domain
        self.client_id = config.get("AUTH0_CLIENT_ID") or self.client_id
        return config

    def verify_id_token(self, id_token: str) -> Dict[str, Any]:
        """
        Verify an id token signature (RS256, provider JWKS), audience and issuer.

        Returns:
            The token claims

        Raises:
            InvalidCredentials: Invalid signature, audience, issuer or expiry
        """
        if self._jwks_client is None:
            self._jwks_client = jwt.PyJWKClient(f"{self.base_url}/.well-known/jwks.json")
        try:
            signing_key = self._jwks_client.get_signing_key_from_jwt(id_token)
            return jwt.decode(
                id_token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self.client_id,
                issuer=f"{self.base_url}/",
            )
        except jwt.PyJWKClientError as e:
            raise RemoteUnavailable(f"JWKS indisponível: {e}")
        except jwt.PyJWTError as e:
            raise InvalidCredentials(f"Token de identidade inválido: {e}")
