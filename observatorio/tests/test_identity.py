"""
Tests for Identity Provider Client
==================================

HTTP calls go through httpx.MockTransport; id tokens are signed with a
throwaway RSA key.
"""

import base64
import hashlib
import json
import time
from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from observatorio.auth import AuthCoordinator
from observatorio.errors import InvalidCredentials, PermissionDenied, RemoteUnavailable, ValidationError
from observatorio.identity import IdentityProviderClient, TokenSet, create_pkce
from observatorio.schemas import AuthState
from observatorio.storage import MemoryStore
from observatorio.tests.conftest import make_settings

DOMAIN = "observatorio.test.auth0.com"
CLIENT_ID = "client-123"


@pytest.fixture
def idp_settings():
    return make_settings(auth0_domain=DOMAIN, auth0_client_id=CLIENT_ID)


def _token_transport(responses, calls):
    """Serve the queued responses in order, recording each request"""
    def handler(request):
        calls.append(request)
        status, body = responses.pop(0)
        return httpx.Response(status, json=body)
    return httpx.MockTransport(handler)


class TestPKCE:
    def test_challenge_is_s256_of_verifier(self):
        pkce = create_pkce()
        digest = hashlib.sha256(pkce.verifier.encode("ascii")).digest()
        assert pkce.challenge == base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")

    def test_unique_state(self):
        assert create_pkce().state != create_pkce().state


class TestAuthorizeUrl:
    def test_social_connection(self, idp_settings):
        client = IdentityProviderClient(idp_settings)
        pkce = create_pkce()

        url = urlparse(client.authorize_url(pkce, connection="google-oauth2", screen_hint="signup"))
        params = parse_qs(url.query)

        assert url.netloc == DOMAIN
        assert url.path == "/authorize"
        assert params["connection"] == ["google-oauth2"]
        assert params["screen_hint"] == ["signup"]
        assert params["code_challenge_method"] == ["S256"]
        assert params["state"] == [pkce.state]
        assert "prompt" not in params

    def test_requires_client_id(self):
        client = IdentityProviderClient(make_settings(auth0_client_id=None))
        with pytest.raises(ValidationError):
            client.authorize_url(create_pkce())

    def test_logout_url(self, idp_settings):
        url = IdentityProviderClient(idp_settings).logout_url("http://localhost:8888/")
        assert url.startswith(f"https://{DOMAIN}/v2/logout?")
        assert "returnTo=http" in url


class TestTokenRequests:
    @pytest.mark.asyncio
    async def test_exchange_code(self, idp_settings):
        calls = []
        transport = _token_transport([(200, {"access_token": "at", "id_token": "it", "expires_in": 3600})], calls)
        client = IdentityProviderClient(idp_settings, transport=transport)

        tokens = await client.exchange_code("code-1", "verifier-1")
        await client.close()

        assert tokens.access_token == "at"
        assert tokens.expires_in == 3600
        assert str(calls[0].url) == f"https://{DOMAIN}/oauth/token"

    @pytest.mark.asyncio
    async def test_renew_retries_once(self, idp_settings):
        calls = []
        transport = _token_transport([(503, {}), (200, {"access_token": "novo"})], calls)
        client = IdentityProviderClient(idp_settings, transport=transport)

        tokens = await client.renew("rt")

        assert tokens.access_token == "novo"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_renew_gives_up_after_retry(self, idp_settings):
        calls = []
        transport = _token_transport([(502, {}), (500, {}), (200, {"access_token": "tarde"})], calls)
        client = IdentityProviderClient(idp_settings, transport=transport)

        with pytest.raises(RemoteUnavailable):
            await client.renew("rt")
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_rejected_refresh_token_not_retried(self, idp_settings):
        calls = []
        transport = _token_transport([(403, {"error": "invalid_grant", "error_description": "Unknown token"})], calls)
        client = IdentityProviderClient(idp_settings, transport=transport)

        with pytest.raises(InvalidCredentials) as exc:
            await client.renew("rt")
        assert exc.value.message == "Unknown token"
        assert len(calls) == 1

    def test_token_set_requires_access_token(self):
        with pytest.raises(RemoteUnavailable):
            TokenSet.from_response({"id_token": "x"})


class TestPublicConfig:
    @pytest.mark.asyncio
    async def test_overrides_domain_and_client(self, idp_settings):
        def handler(request):
            assert request.url.path == "/api/config"
            return httpx.Response(200, json={"AUTH0_DOMAIN": "outro.auth0.com", "AUTH0_CLIENT_ID": "c2"})

        client = IdentityProviderClient(idp_settings, transport=httpx.MockTransport(handler))
        await client.fetch_public_config("http://api.test")

        assert client.domain == "outro.auth0.com"
        assert client.client_id == "c2"

    @pytest.mark.asyncio
    async def test_unavailable(self, idp_settings):
        client = IdentityProviderClient(idp_settings, transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        with pytest.raises(RemoteUnavailable):
            await client.fetch_public_config("http://api.test")


# =============================================================================
# ID token verification
# =============================================================================

@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


class StaticJWKS:
    """Signing-key lookup that always answers with one public key"""

    def __init__(self, public_key):
        self.public_key = public_key

    def get_signing_key_from_jwt(self, token):
        return SimpleNamespace(key=self.public_key)


def _id_token(key, **overrides):
    claims = {
        "sub": "google-oauth2|42",
        "email": "vera@gmail.com",
        "aud": CLIENT_ID,
        "iss": f"https://{DOMAIN}/",
        "exp": int(time.time()) + 600,
    }
    claims.update(overrides)
    return jwt.encode(claims, key, algorithm="RS256")


class TestVerifyIdToken:
    def test_valid_token(self, idp_settings, rsa_key):
        client = IdentityProviderClient(idp_settings, jwks_client=StaticJWKS(rsa_key.public_key()))
        claims = client.verify_id_token(_id_token(rsa_key))
        assert claims["email"] == "vera@gmail.com"

    def test_wrong_audience(self, idp_settings, rsa_key):
        client = IdentityProviderClient(idp_settings, jwks_client=StaticJWKS(rsa_key.public_key()))
        with pytest.raises(InvalidCredentials):
            client.verify_id_token(_id_token(rsa_key, aud="outro-app"))

    def test_expired(self, idp_settings, rsa_key):
        client = IdentityProviderClient(idp_settings, jwks_client=StaticJWKS(rsa_key.public_key()))
        with pytest.raises(InvalidCredentials):
            client.verify_id_token(_id_token(rsa_key, exp=int(time.time()) - 60))

    def test_foreign_signature(self, idp_settings, rsa_key):
        other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        client = IdentityProviderClient(idp_settings, jwks_client=StaticJWKS(rsa_key.public_key()))
        with pytest.raises(InvalidCredentials):
            client.verify_id_token(_id_token(other))


# =============================================================================
# Redirect-flow login through the coordinator
# =============================================================================

def _coordinator(settings, key, responses, calls):
    provider = IdentityProviderClient(
        settings,
        transport=_token_transport(responses, calls),
        jwks_client=StaticJWKS(key.public_key()),
    )
    return AuthCoordinator(MemoryStore(), settings=settings, provider=provider)


def _login_response(key, **claims):
    return 200, {"access_token": "at", "id_token": _id_token(key, **claims), "refresh_token": "rt", "expires_in": 3600}


class TestProviderLogin:
    @pytest.mark.asyncio
    async def test_code_login_creates_account(self, idp_settings, rsa_key):
        calls = []
        auth = _coordinator(idp_settings, rsa_key, [_login_response(rsa_key, name="Vera Lúcia")], calls)

        session = await auth.complete_provider_login_from_code("code-1", "verifier-1")

        assert session.email == "vera@gmail.com"
        assert session.name == "Vera Lúcia"
        assert session.provider == "google-oauth2"
        assert auth.state == AuthState.AUTHENTICATED
        assert auth.get_user_by_email("vera@gmail.com").id == session.id
        body = json.loads(calls[0].content)
        assert body["grant_type"] == "authorization_code"
        assert body["code_verifier"] == "verifier-1"

    @pytest.mark.asyncio
    async def test_forged_id_token_leaves_anonymous(self, idp_settings, rsa_key):
        other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        auth = _coordinator(idp_settings, rsa_key, [_login_response(other)], [])

        with pytest.raises(InvalidCredentials):
            await auth.complete_provider_login_from_code("code-1", "verifier-1")

        assert auth.current_user is None
        assert auth.state == AuthState.ANONYMOUS
        assert auth.get_user_by_email("vera@gmail.com") is None

    @pytest.mark.asyncio
    async def test_response_without_id_token(self, idp_settings, rsa_key):
        auth = _coordinator(idp_settings, rsa_key, [(200, {"access_token": "at"})], [])
        with pytest.raises(InvalidCredentials):
            await auth.complete_provider_login_from_code("code-1", "verifier-1")
        assert auth.current_user is None

    @pytest.mark.asyncio
    async def test_renewal_retries_once(self, idp_settings, rsa_key):
        calls = []
        responses = [_login_response(rsa_key), (503, {}), (200, {"access_token": "novo"})]
        auth = _coordinator(idp_settings, rsa_key, responses, calls)
        await auth.complete_provider_login_from_code("code-1", "verifier-1")

        tokens = await auth.renew_provider_tokens()

        assert tokens.access_token == "novo"
        assert tokens.refresh_token == "rt"
        assert len(calls) == 3
        assert auth.current_user is not None

    @pytest.mark.asyncio
    async def test_rejected_refresh_token_ends_session(self, idp_settings, rsa_key):
        responses = [_login_response(rsa_key), (403, {"error": "invalid_grant"})]
        auth = _coordinator(idp_settings, rsa_key, responses, [])
        await auth.complete_provider_login_from_code("code-1", "verifier-1")

        with pytest.raises(InvalidCredentials):
            await auth.renew_provider_tokens()
        assert auth.current_user is None

    @pytest.mark.asyncio
    async def test_renewal_needs_provider_session(self, idp_settings, rsa_key):
        auth = _coordinator(idp_settings, rsa_key, [], [])
        auth.current_user = auth.bootstrap_root("root@observatorio.org", "Root", "root-secret")
        with pytest.raises(PermissionDenied):
            await auth.renew_provider_tokens()
