"""
Tests for Authentication Coordinator
====================================

Login/logout state machine, session expiry, redirect policy and the
account registry rules (root protection, duplicate emails, demo mode).
"""

import asyncio

import pytest

from observatorio.auth import (
    EXPIRED_MESSAGE,
    AuthCoordinator,
    decode_token,
    get_password_hash,
    verify_password,
)
from observatorio.errors import (
    AccountDisabled,
    DemoModeBlocked,
    DuplicateEmail,
    InvalidCredentials,
    PermissionDenied,
    RootProtected,
    ValidationError,
)
from observatorio.notifier import ChangeEvent
from observatorio.schemas import AuthState, Role
from observatorio.storage import KEY_USERS
from observatorio.tests.conftest import make_settings


def _events(auth):
    received = []
    auth.notifier.subscribe(lambda event, data: received.append((event, data, auth.state)))
    return received


# =============================================================================
# Passwords
# =============================================================================

class TestPasswords:
    def test_hash_and_verify(self):
        hashed = get_password_hash("senha123")
        assert hashed != "senha123"
        assert verify_password("senha123", hashed)
        assert not verify_password("outra", hashed)

    def test_over_72_bytes_rejected(self):
        with pytest.raises(ValidationError):
            get_password_hash("ç" * 40)
        assert not verify_password("x" * 80, get_password_hash("x" * 10))

    def test_empty_rejected(self):
        with pytest.raises(ValidationError):
            get_password_hash("")


# =============================================================================
# Login / logout
# =============================================================================

class TestLogin:
    """Credential checks and state transitions"""

    @pytest.mark.asyncio
    async def test_login_success(self, auth, users, clock):
        auth.current_user = None
        received = _events(auth)

        session = await auth.login("PAULA@observatorio.org", "senha123")

        assert session.email == "paula@observatorio.org"
        assert session.login_time == clock.now
        assert auth.state == AuthState.AUTHENTICATED
        assert auth.is_authenticated()
        assert received[0][0] == ChangeEvent.USER_LOGGED_IN

    @pytest.mark.asyncio
    async def test_wrong_password(self, auth, users):
        auth.current_user = None
        with pytest.raises(InvalidCredentials):
            await auth.login("paula@observatorio.org", "errada")
        assert auth.state == AuthState.ANONYMOUS
        assert auth.current_user is None

    @pytest.mark.asyncio
    async def test_unknown_email(self, auth, users):
        with pytest.raises(InvalidCredentials):
            await auth.login("ninguem@observatorio.org", "senha123")

    @pytest.mark.asyncio
    async def test_disabled_account(self, auth, users):
        auth.update_user(users["aluno"].id, active=False)
        auth.current_user = None
        with pytest.raises(AccountDisabled):
            await auth.login("artur@observatorio.org", "senha123")

    @pytest.mark.asyncio
    async def test_session_restored_by_new_coordinator(self, auth, users, kv, settings, clock):
        await auth.login("paula@observatorio.org", "senha123")

        restored = AuthCoordinator(kv, settings=settings, clock=clock).initialize()
        assert restored is not None
        assert restored.email == "paula@observatorio.org"

    @pytest.mark.asyncio
    async def test_demo_email_gets_demo_flag(self, auth, users):
        session = await auth.login("demo@observatorio.org", "senha123")
        assert session.demo is True
        assert auth.is_demo()


class TestLogout:
    """Events and redirect policy"""

    @pytest.mark.asyncio
    async def test_logout_emits_event(self, auth, users):
        await auth.login("vera@observatorio.org", "senha123")
        received = _events(auth)

        auth.logout()

        assert received[0][0] == ChangeEvent.USER_LOGGED_OUT
        assert received[0][1]["notify"] is True
        assert received[0][2] == AuthState.LOGGED_OUT
        assert auth.state == AuthState.ANONYMOUS
        assert not auth.is_authenticated()

    def test_logout_without_session_is_silent(self, auth):
        received = _events(auth)
        auth.logout()
        assert received == []

    @pytest.mark.parametrize("current, expected", [
        ("admin", ["login"]),
        ("cadastro", ["index"]),
        ("casos", []),
    ])
    def test_redirect_policy(self, auth, users, view, redirects, current, expected):
        view["name"] = current
        auth.logout()
        assert redirects == expected


class TestSessionExpiry:
    """24h sessions and the periodic check"""

    @pytest.mark.asyncio
    async def test_expires_after_24h(self, auth, users, clock, view, redirects):
        auth.current_user = None
        await auth.login("paula@observatorio.org", "senha123", remember=False)
        received = _events(auth)

        clock.advance(hours=24, seconds=1)
        assert not auth.is_authenticated()

        view["name"] = "admin"
        assert auth.check_session() is True
        assert redirects == ["login"]
        assert received[0][1]["message"] == EXPIRED_MESSAGE
        assert received[0][2] == AuthState.EXPIRED
        assert not auth.require_auth()

    @pytest.mark.asyncio
    async def test_still_valid_before_24h(self, auth, users, clock):
        await auth.login("paula@observatorio.org", "senha123")
        clock.advance(hours=24, seconds=-1)
        assert auth.is_authenticated()
        assert auth.check_session() is False

    @pytest.mark.asyncio
    async def test_remember_me_never_expires(self, auth, users, clock):
        await auth.login("paula@observatorio.org", "senha123", remember=True)
        clock.advance(days=90)
        assert auth.is_authenticated()

    @pytest.mark.asyncio
    async def test_session_monitor_logs_out(self, kv, clock):
        settings = make_settings(session_check_interval_seconds=0)
        auth = AuthCoordinator(kv, settings=settings, clock=clock)
        root = auth.bootstrap_root("root@observatorio.org", "Root", "root-secret")
        await auth.login(root.email, "root-secret")

        auth.start_session_monitor()
        clock.advance(hours=25)
        await asyncio.sleep(0.01)
        await auth.stop_session_monitor()

        assert auth.current_user is None


class TestGuards:
    @pytest.mark.asyncio
    async def test_require_role(self, auth, users, redirects):
        await auth.login("artur@observatorio.org", "senha123")
        assert auth.require_role(Role.ALUNO_EXTENSAO)
        assert not auth.require_role(Role.PESQUISADOR)
        assert redirects == ["index"]


# =============================================================================
# Account administration
# =============================================================================

class TestAccountAdministration:
    """Registry rules enforced by AuthCoordinator"""

    def test_new_accounts_must_change_password(self, users):
        assert users["pesquisador"].must_change_password is True

    def test_duplicate_email_case_insensitive(self, auth, users):
        with pytest.raises(DuplicateEmail):
            auth.add_user("Outra", "PAULA@observatorio.org", "senha123")

    def test_second_root_rejected(self, auth, users):
        with pytest.raises(RootProtected):
            auth.add_user("Root 2", "root2@observatorio.org", "senha123", is_root=True)

    def test_non_admin_cannot_add(self, auth, users):
        auth.current_user = users["pesquisador"]
        with pytest.raises(PermissionDenied):
            auth.add_user("X", "x@observatorio.org", "senha123")

    def test_invalid_role(self, auth, users):
        with pytest.raises(ValidationError):
            auth.add_user("X", "x@observatorio.org", "senha123", role="coordenador")

    @pytest.mark.parametrize("field", [
        {"id": "fixo"},
        {"active": False},
        {"must_change_password": False},
        {"created_at": None},
    ])
    def test_fixed_fields_not_accepted_as_profile(self, auth, users, field):
        with pytest.raises(ValidationError):
            auth.add_user("X", "x@observatorio.org", "senha123", **field)
        assert auth.get_user_by_email("x@observatorio.org") is None

    def test_profile_fields_stored(self, auth, users):
        auth.add_user("X", "x@observatorio.org", "senha123", institution="UFRJ", phone="21 5555")
        assert auth.get_user_by_email("x@observatorio.org").institution == "UFRJ"

    def test_root_cannot_be_deactivated(self, auth, users):
        with pytest.raises(RootProtected):
            auth.update_user(users["root"].id, active=False)
        with pytest.raises(RootProtected):
            auth.update_user(users["root"].id, is_admin=False)

    def test_root_cannot_be_removed(self, auth, users):
        auth.current_user = users["admin"]
        with pytest.raises(RootProtected):
            auth.remove_user(users["root"].id)

    def test_remove_user(self, auth, users):
        auth.remove_user(users["visitante"].id)
        assert auth.get_user_by_email("vera@observatorio.org") is None

    def test_update_user_email_must_stay_unique(self, auth, users):
        with pytest.raises(DuplicateEmail):
            auth.update_user(users["aluno"].id, email="paula@observatorio.org")

    def test_update_user_rejects_unknown_fields(self, auth, users):
        with pytest.raises(ValidationError):
            auth.update_user(users["aluno"].id, password_hash="x")

    def test_update_current_user_syncs_session(self, auth, users):
        auth.update_user(users["root"].id, name="Raiz")
        assert auth.current_user.name == "Raiz"

    def test_reset_password_forces_change(self, auth, users):
        auth.update_user(users["aluno"].id, must_change_password=False)
        identity = auth.reset_user_password(users["aluno"].id, "nova-senha")
        assert identity.must_change_password is True

    def test_bootstrap_root_is_idempotent(self, auth, users):
        again = auth.bootstrap_root("root@observatorio.org", "Root", "outra-senha")
        assert again.id == users["root"].id
        assert sum(1 for u in auth.list_users() if u.is_root) == 1

    def test_bootstrap_second_root_rejected(self, auth, users):
        with pytest.raises(RootProtected):
            auth.bootstrap_root("outro@observatorio.org", "Outro", "senha123")

    def test_list_users_requires_admin(self, auth, users):
        assert len(auth.list_users()) == 6
        auth.current_user = users["visitante"]
        with pytest.raises(PermissionDenied):
            auth.list_users()

    def test_added_event(self, auth, users):
        received = _events(auth)
        auth.add_user("Nova", "nova@observatorio.org", "senha123")
        assert received[0][0] == ChangeEvent.USER_UPDATED
        assert received[0][1]["action"] == "added"

    def test_demo_admin_cannot_add(self, auth, users, kv):
        before = kv.get_raw(KEY_USERS)
        auth.current_user = users["root"].model_copy(update={"demo": True})
        with pytest.raises(DemoModeBlocked):
            auth.add_user("X", "x@observatorio.org", "senha123")
        assert kv.get_raw(KEY_USERS) == before


# =============================================================================
# Self-service
# =============================================================================

class TestSelfService:
    @pytest.mark.asyncio
    async def test_change_password(self, auth, users):
        await auth.login("paula@observatorio.org", "senha123")
        identity = auth.change_password("senha123", "nova-senha")
        assert identity.must_change_password is False

        auth.logout()
        await auth.login("paula@observatorio.org", "nova-senha")

    @pytest.mark.asyncio
    async def test_change_password_wrong_old(self, auth, users):
        await auth.login("paula@observatorio.org", "senha123")
        with pytest.raises(InvalidCredentials):
            auth.change_password("errada", "nova-senha")

    def test_update_profile(self, auth, users):
        auth.current_user = users["visitante"]
        identity = auth.update_profile(institution="UFPR", bio="Extensionista")
        assert identity.institution == "UFPR"
        assert auth.get_user_by_email("vera@observatorio.org").institution == "UFPR"

    def test_update_profile_cannot_change_role(self, auth, users):
        auth.current_user = users["visitante"]
        with pytest.raises(ValidationError):
            auth.update_profile(role="pesquisador")

    def test_demo_profile_blocked_by_email(self, auth, users):
        auth.current_user = users["demo"].model_copy(update={"demo": False})
        with pytest.raises(DemoModeBlocked):
            auth.update_profile(name="Outro")

    def test_notification_settings(self, auth, users):
        auth.current_user = users["visitante"]
        assert auth.get_notification_settings()["newsletter"] is True

        auth.set_notification_setting("newsletter", False)
        assert auth.get_notification_settings()["newsletter"] is False
        with pytest.raises(ValidationError):
            auth.set_notification_setting("sms", True)


# =============================================================================
# Identity provider
# =============================================================================

class TestProviderLogin:
    def test_creates_visitor(self, auth, users):
        session = auth.complete_provider_login({
            "sub": "google-oauth2|123",
            "email": "novo@gmail.com",
            "name": "Novo",
        })
        assert session.role == "visitante"
        assert session.provider == "google-oauth2"
        assert session.remember is True
        assert auth.state == AuthState.AUTHENTICATED

    def test_links_existing_account_by_email(self, auth, users):
        session = auth.complete_provider_login({"sub": "auth0|9", "email": "Paula@observatorio.org"})
        assert session.id == users["pesquisador"].id

    def test_root_email_becomes_root(self, kv, clock):
        auth = AuthCoordinator(kv, settings=make_settings(root_email="chefe@observatorio.org"), clock=clock)
        session = auth.complete_provider_login({"sub": "auth0|1", "email": "chefe@observatorio.org"})
        assert session.is_root and session.is_admin
        assert session.role == "pesquisador"

    def test_disabled_account(self, auth, users):
        auth.update_user(users["aluno"].id, active=False)
        with pytest.raises(AccountDisabled):
            auth.complete_provider_login({"sub": "auth0|2", "email": "artur@observatorio.org"})

    def test_invalid_claims(self, auth):
        with pytest.raises(ValidationError):
            auth.complete_provider_login({"sub": "auth0|3"})


class TestAccessToken:
    def test_claims(self, auth, users, settings):
        auth.current_user = users["admin"]
        claims = decode_token(auth.access_token(), settings)

        assert claims["sub"] == users["admin"].id
        assert claims["is_admin"] is True
        assert claims["is_root"] is False
        assert claims["demo"] is False
        assert claims["type"] == "access"

    def test_requires_login(self, auth):
        with pytest.raises(PermissionDenied):
            auth.access_token()

    def test_tampered_token(self, settings):
        assert decode_token("not.a.token", settings) is None
