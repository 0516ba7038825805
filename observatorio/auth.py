"""
Authentication Coordinator
==========================

Login/logout state machine, periodic session check and the local account
registry.

State machine:
    ANONYMOUS -> AUTHENTICATING -> AUTHENTICATED -> (EXPIRED | LOGGED_OUT) -> ANONYMOUS

Account registry (persisted under `users`):
- passwords hashed with bcrypt (passlib)
- exactly one root; root can never be deactivated or removed
- accounts created by an admin must change their password on first login

Provider (social) login runs the redirect flow through IdentityProviderClient:
code exchange, id-token verification, then link-by-email or account creation.

Events (userLoggedIn, userLoggedOut, userUpdated) are published through a
ChangeNotifier.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import jwt
from passlib.context import CryptContext
from pydantic import ValidationError as PydanticValidationError

from .config import Settings, get_settings
from .errors import (
    AccountDisabled,
    DemoModeBlocked,
    DuplicateEmail,
    InvalidCredentials,
    NotFound,
    PermissionDenied,
    RootProtected,
    ValidationError,
)
from .identity import IdentityProviderClient, TokenSet
from .notifier import ChangeEvent, ChangeNotifier
from .permissions import require_admin
from .schemas import (
    AuthState,
    DEFAULT_NOTIFICATION_SETTINGS,
    Identity,
    Role,
    UserRecord,
    utcnow,
)
from .session import SessionStore
from .storage import KEY_USERS, KeyValueStore, notifications_key

logger = logging.getLogger(__name__)

LOGOUT_MESSAGE = "Logout realizado com sucesso!"
EXPIRED_MESSAGE = "Sessão expirada. Faça login novamente."

# Views that require a session, and where to send the user on logout
RESTRICTED_VIEWS = {
    "admin": "login",
    "cadastro": "index",
}


# =============================================================================
# PASSWORD HASHING
# =============================================================================

# bcrypt truncates passwords at 72 bytes; reject instead of silently truncating.
MAX_PASSWORD_BYTES = 72

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def is_password_too_long(password: str) -> bool:
    """Return True if password exceeds bcrypt 72-byte limit."""
    return len(password.encode("utf-8")) > MAX_PASSWORD_BYTES


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a hash"""
    if is_password_too_long(plain_password):
        logger.warning("Auth failed: password exceeds bcrypt 72-byte limit")
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError as e:
        logger.warning(f"Auth failed: invalid password format ({e})")
        return False


def get_password_hash(password: str) -> str:
    """Hash a password"""
    if not password:
        raise ValidationError("Senha obrigatória")
    if is_password_too_long(password):
        raise ValidationError("Senha excede o limite de 72 bytes")
    return pwd_context.hash(password)


# =============================================================================
# JWT TOKEN HANDLING
# =============================================================================

def create_access_token(
    data: dict,
    settings: Optional[Settings] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a bearer token for the hosted functions"""
    settings = settings or get_settings()
    to_encode = data.copy()
    expire = utcnow() + (expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes))
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Optional[Settings] = None) -> Optional[dict]:
    """Decode and validate a bearer token"""
    settings = settings or get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as e:
        logger.warning(f"Invalid JWT token: {e}")
        return None


# =============================================================================
# COORDINATOR
# =============================================================================

# Fields an admin may change through update_user
_ADMIN_EDITABLE = {
    "name", "email", "role", "is_admin", "active", "must_change_password", "demo",
    "phone", "institution", "department", "position", "bio",
}

# Fields a user may change on their own profile
_PROFILE_EDITABLE = {"name", "phone", "institution", "department", "position", "bio"}


class AuthCoordinator:
    """
    Orchestrates login/logout, session expiry and account administration.

    Args:
        store: Key/value persistence for the registry and preferences
        settings: Application settings (default: get_settings())
        sessions: SessionStore (default: built on `store` with the same clock)
        notifier: ChangeNotifier for auth events
        clock: Injected time source
        current_view: Returns the name of the view being shown (redirect policy)
        redirect: Called with the target view when the policy redirects
        provider: IdentityProviderClient for social/hosted login (default: built
            from settings on first use)
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Optional[Settings] = None,
        sessions: Optional[SessionStore] = None,
        notifier: Optional[ChangeNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
        current_view: Optional[Callable[[], Optional[str]]] = None,
        redirect: Optional[Callable[[str], None]] = None,
        provider: Optional[IdentityProviderClient] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.clock = clock
        self.sessions = sessions or SessionStore(
            store,
            clock=clock,
            timeout=timedelta(hours=self.settings.session_timeout_hours),
        )
        self.notifier = notifier or ChangeNotifier("auth")
        self.current_view = current_view
        self.redirect = redirect

        self.current_user: Optional[Identity] = None
        self.state = AuthState.ANONYMOUS
        self._monitor: Optional[asyncio.Task] = None
        self._provider = provider
        self._provider_tokens: Optional[TokenSet] = None

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    def initialize(self) -> Optional[Identity]:
        """Restore the persisted session (if still valid)"""
        identity = self.sessions.restore()
        if identity is None:
            self.current_user = None
            self.state = AuthState.ANONYMOUS
            return None

        self.current_user = identity
        self.state = AuthState.AUTHENTICATED
        logger.info(f"Session restored for {identity.email}")
        self.notifier.notify(ChangeEvent.USER_LOGGED_IN, identity)
        return identity

    async def login(self, email: str, password: str, remember: bool = False) -> Identity:
        """
        Validate credentials against the registry and establish a session.

        Raises:
            InvalidCredentials: Unknown email or wrong password
            AccountDisabled: Account exists but is inactive
        """
        previous_state = self.state
        self.state = AuthState.AUTHENTICATING
        try:
            await asyncio.sleep(self.settings.login_latency_seconds)

            # Registry is read after the suspension point
            users = self._load_users()
            record = self._find_by_email(users, email)
            if record is None or not record.password_hash:
                raise InvalidCredentials()
            if not verify_password(password, record.password_hash):
                raise InvalidCredentials()
            if not record.active:
                raise AccountDisabled()
        except Exception:
            self.state = previous_state if self.current_user else AuthState.ANONYMOUS
            logger.info(f"Login failed for {email}")
            raise

        record.last_login = self.clock()
        self._save_users(users)

        session = self.sessions.establish(self._identity_for(record), remember)
        self.current_user = session
        self.state = AuthState.AUTHENTICATED
        logger.info(f"User logged in: {session.email} (remember={remember})")
        self.notifier.notify(ChangeEvent.USER_LOGGED_IN, session)
        return session

    def logout(self, notify: bool = True, message: str = LOGOUT_MESSAGE, expired: bool = False) -> None:
        """
        Clear the session. userLoggedOut is emitted only if a session was
        active; the restricted-view redirect policy runs either way.
        """
        was_logged_in = self.current_user is not None
        email = self.current_user.email if self.current_user else None

        self.current_user = None
        self._provider_tokens = None
        self.sessions.clear()

        if was_logged_in:
            self.state = AuthState.EXPIRED if expired else AuthState.LOGGED_OUT
            logger.info(f"User logged out: {email} ({self.state.value})")
            self.notifier.notify(ChangeEvent.USER_LOGGED_OUT, {"notify": notify, "message": message})

        self._apply_redirect_policy()
        self.state = AuthState.ANONYMOUS

    def _apply_redirect_policy(self) -> None:
        if self.current_view is None or self.redirect is None:
            return
        target = RESTRICTED_VIEWS.get(self.current_view() or "")
        if target:
            self.redirect(target)

    def is_authenticated(self) -> bool:
        return self.current_user is not None and self.sessions.is_valid(self.current_user)

    def refresh_session(self) -> Optional[Identity]:
        if self.current_user is None:
            return None
        self.current_user = self.sessions.refresh(self.current_user)
        return self.current_user

    def check_session(self) -> bool:
        """
        One tick of the periodic check.

        Returns:
            True if the active session had expired and was logged out
        """
        if self.current_user is not None and not self.sessions.is_valid(self.current_user):
            self.logout(True, EXPIRED_MESSAGE, expired=True)
            return True
        return False

    def start_session_monitor(self) -> asyncio.Task:
        """Run check_session() every session_check_interval_seconds"""
        if self._monitor is None or self._monitor.done():
            self._monitor = asyncio.get_running_loop().create_task(self._monitor_loop())
        return self._monitor

    async def stop_session_monitor(self) -> None:
        if self._monitor is None:
            return
        self._monitor.cancel()
        try:
            await self._monitor
        except asyncio.CancelledError:
            pass
        self._monitor = None

    async def _monitor_loop(self) -> None:
        interval = self.settings.session_check_interval_seconds
        while True:
            await asyncio.sleep(interval)
            self.check_session()

    # -------------------------------------------------------------------------
    # Guards
    # -------------------------------------------------------------------------

    def is_demo(self) -> bool:
        user = self.current_user
        if user is None:
            return False
        demo_emails = {e.lower() for e in self.settings.demo_emails}
        return user.demo or user.email.lower() in demo_emails

    def require_auth(self, view: str = "login") -> bool:
        """Redirect to `view` unless authenticated"""
        if self.is_authenticated():
            return True
        if self.redirect is not None:
            self.redirect(view)
        return False

    def require_role(self, role: Role, view: str = "index") -> bool:
        """Redirect to `view` unless authenticated with exactly this role"""
        if self.is_authenticated() and self.current_user.role == Role(role).value:
            return True
        if self.redirect is not None:
            self.redirect(view)
        return False

    def _guard_demo(self) -> None:
        if self.is_demo():
            raise DemoModeBlocked()

    def _require_login(self) -> Identity:
        if self.current_user is None:
            raise PermissionDenied("Login necessário")
        return self.current_user

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    def _load_users(self) -> List[UserRecord]:
        raw = self.store.load(KEY_USERS, [])
        if not isinstance(raw, list):
            logger.warning("User registry is not a list, ignoring")
            return []

        users = []
        for item in raw:
            try:
                users.append(UserRecord.model_validate(item))
            except PydanticValidationError as e:
                logger.warning(f"Skipping invalid user record: {e.error_count()} error(s)")
        return users

    def _save_users(self, users: List[UserRecord]) -> None:
        self.store.save(KEY_USERS, [u.model_dump(mode="json") for u in users])

    @staticmethod
    def _find_by_email(users: List[UserRecord], email: str) -> Optional[UserRecord]:
        wanted = (email or "").strip().lower()
        for user in users:
            if user.email.lower() == wanted:
                return user
        return None

    @staticmethod
    def _find_by_id(users: List[UserRecord], user_id: str) -> UserRecord:
        for user in users:
            if user.id == user_id:
                return user
        raise NotFound(f"Usuário não encontrado: {user_id}")

    def _identity_for(self, record: UserRecord) -> Identity:
        identity = record.to_identity()
        if record.email.lower() in {e.lower() for e in self.settings.demo_emails}:
            identity.demo = True
        return identity

    def _sync_current(self, record: UserRecord) -> None:
        """Reflect registry changes in the live session"""
        if self.current_user is None or self.current_user.id != record.id:
            return
        fields = record.model_dump(exclude={"password_hash", "last_login", "created_at"})
        fields["demo"] = fields["demo"] or self.current_user.demo
        self.current_user = self.current_user.model_copy(update=fields)
        self.sessions.save(self.current_user)

    def get_user_by_email(self, email: str) -> Optional[Identity]:
        record = self._find_by_email(self._load_users(), email)
        return record.to_identity() if record else None

    def get_user(self, user_id: str) -> Optional[Identity]:
        """Registry identity for an id (demo accounts flagged), or None"""
        try:
            record = self._find_by_id(self._load_users(), user_id)
        except NotFound:
            return None
        return self._identity_for(record)

    def list_users(self) -> List[Identity]:
        require_admin(self.current_user)
        return [u.to_identity() for u in self._load_users()]

    # -------------------------------------------------------------------------
    # Account administration (admin or root)
    # -------------------------------------------------------------------------

    def add_user(
        self,
        name: str,
        email: str,
        password: Optional[str] = None,
        role: Role = Role.VISITANTE,
        is_admin: bool = False,
        is_root: bool = False,
        password_hash: Optional[str] = None,
        **profile: Any,
    ) -> Identity:
        """
        Create an account. New accounts always have must_change_password=True.

        Raises:
            PermissionDenied: Caller is not admin/root
            DemoModeBlocked: Demo session
            DuplicateEmail: Email already registered (case-insensitive)
            RootProtected: A root account already exists
            ValidationError: Missing name/email/password, unknown role, or a
                profile field outside the self-service profile
        """
        require_admin(self.current_user)
        self._guard_demo()

        unknown = set(profile) - _PROFILE_EDITABLE
        if unknown:
            raise ValidationError(f"Campos não editáveis: {', '.join(sorted(unknown))}")

        email = (email or "").strip()
        if not name or not name.strip():
            raise ValidationError("Nome obrigatório")
        if "@" not in email:
            raise ValidationError("Email inválido")
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError(f"Perfil inválido: {role}")
        if password_hash is None:
            password_hash = get_password_hash(password)

        users = self._load_users()
        if self._find_by_email(users, email):
            raise DuplicateEmail(f"Email já cadastrado: {email}")
        if is_root and any(u.is_root for u in users):
            raise RootProtected("Já existe um usuário root")

        try:
            record = UserRecord(
                id=uuid.uuid4().hex,
                email=email,
                name=name.strip(),
                role=role.value,
                is_admin=is_admin or is_root,
                is_root=is_root,
                active=True,
                must_change_password=True,
                created_at=self.clock(),
                password_hash=password_hash,
                **profile,
            )
        except PydanticValidationError as e:
            raise ValidationError(str(e))

        users.append(record)
        self._save_users(users)

        identity = record.to_identity()
        logger.info(f"User created: {email} ({role.value}) by {self.current_user.email}")
        self.notifier.notify(ChangeEvent.USER_UPDATED, {"action": "added", "user": identity})
        return identity

    def update_user(self, user_id: str, **fields: Any) -> Identity:
        """
        Update account fields.

        Raises:
            RootProtected: Deactivating root or removing its admin flag
            NotFound: Unknown user id
        """
        require_admin(self.current_user)
        self._guard_demo()

        unknown = set(fields) - _ADMIN_EDITABLE
        if unknown:
            raise ValidationError(f"Campos não editáveis: {', '.join(sorted(unknown))}")

        users = self._load_users()
        record = self._find_by_id(users, user_id)

        if record.is_root:
            if fields.get("active") is False or fields.get("is_admin") is False:
                raise RootProtected()

        if "email" in fields:
            other = self._find_by_email(users, fields["email"])
            if other is not None and other.id != record.id:
                raise DuplicateEmail(f"Email já cadastrado: {fields['email']}")
        if "role" in fields:
            try:
                fields["role"] = Role(fields["role"]).value
            except ValueError:
                raise ValidationError(f"Perfil inválido: {fields['role']}")

        try:
            updated = UserRecord.model_validate({**record.model_dump(), **fields})
        except PydanticValidationError as e:
            raise ValidationError(str(e))

        users[users.index(record)] = updated
        self._save_users(users)
        self._sync_current(updated)

        identity = updated.to_identity()
        self.notifier.notify(ChangeEvent.USER_UPDATED, {"action": "updated", "user": identity})
        return identity

    def remove_user(self, user_id: str) -> None:
        require_admin(self.current_user)
        self._guard_demo()

        users = self._load_users()
        record = self._find_by_id(users, user_id)
        if record.is_root:
            raise RootProtected()

        users.remove(record)
        self._save_users(users)
        logger.info(f"User removed: {record.email} by {self.current_user.email}")
        self.notifier.notify(ChangeEvent.USER_UPDATED, {"action": "removed", "user": record.to_identity()})

    def reset_user_password(self, user_id: str, new_password: str) -> Identity:
        """Set a new password; the user must change it on next login"""
        require_admin(self.current_user)
        self._guard_demo()

        users = self._load_users()
        record = self._find_by_id(users, user_id)
        record.password_hash = get_password_hash(new_password)
        record.must_change_password = True
        self._save_users(users)
        self._sync_current(record)
        return record.to_identity()

    def bootstrap_root(self, email: str, name: str, password: str) -> Identity:
        """
        Create the root account, or promote the account with this email.

        Idempotent for the same email. A different existing root raises
        RootProtected.
        """
        users = self._load_users()
        existing_root = next((u for u in users if u.is_root), None)
        if existing_root is not None and existing_root.email.lower() != email.strip().lower():
            raise RootProtected("Já existe um usuário root")

        password_hash = get_password_hash(password)
        record = self._find_by_email(users, email)
        if record is None:
            record = UserRecord(
                id=uuid.uuid4().hex,
                email=email.strip(),
                name=name,
                created_at=self.clock(),
            )
            users.append(record)
            action = "created"
        else:
            action = "updated"

        record.name = name
        record.role = Role.PESQUISADOR.value
        record.is_admin = True
        record.is_root = True
        record.active = True
        record.must_change_password = False
        record.password_hash = password_hash
        self._save_users(users)

        logger.info(f"Root user {action}: {record.email}")
        return record.to_identity()

    # -------------------------------------------------------------------------
    # Self-service
    # -------------------------------------------------------------------------

    def change_password(self, old_password: str, new_password: str) -> Identity:
        """
        Raises:
            InvalidCredentials: Old password does not match
        """
        user = self._require_login()
        self._guard_demo()

        users = self._load_users()
        record = self._find_by_id(users, user.id)
        if not record.password_hash or not verify_password(old_password, record.password_hash):
            raise InvalidCredentials("Senha atual incorreta")

        record.password_hash = get_password_hash(new_password)
        record.must_change_password = False
        self._save_users(users)
        self._sync_current(record)
        logger.info(f"Password changed: {record.email}")
        return self.current_user

    def update_profile(self, **fields: Any) -> Identity:
        user = self._require_login()
        self._guard_demo()

        unknown = set(fields) - _PROFILE_EDITABLE
        if unknown:
            raise ValidationError(f"Campos não editáveis: {', '.join(sorted(unknown))}")
        if "name" in fields and not (fields["name"] or "").strip():
            raise ValidationError("Nome obrigatório")

        users = self._load_users()
        try:
            record = self._find_by_id(users, user.id)
        except NotFound:
            # Provider-only sessions may have no registry entry yet
            record = None

        if record is not None:
            for key, value in fields.items():
                setattr(record, key, value)
            self._save_users(users)
            self._sync_current(record)
        else:
            self.current_user = user.model_copy(update=fields)
            self.sessions.save(self.current_user)

        self.notifier.notify(ChangeEvent.USER_UPDATED, {"action": "profile", "user": self.current_user})
        return self.current_user

    def get_notification_settings(self) -> Dict[str, bool]:
        user = self._require_login()
        stored = self.store.load(notifications_key(user.email), {})
        settings = dict(DEFAULT_NOTIFICATION_SETTINGS)
        if isinstance(stored, dict):
            settings.update({k: bool(v) for k, v in stored.items() if k in settings})
        return settings

    def set_notification_setting(self, key: str, enabled: bool) -> Dict[str, bool]:
        user = self._require_login()
        self._guard_demo()
        if key not in DEFAULT_NOTIFICATION_SETTINGS:
            raise ValidationError(f"Preferência desconhecida: {key}")

        settings = self.get_notification_settings()
        settings[key] = bool(enabled)
        self.store.save(notifications_key(user.email), settings)
        return settings

    # -------------------------------------------------------------------------
    # Identity provider
    # -------------------------------------------------------------------------

    def complete_provider_login(self, claims: Dict[str, Any], remember: bool = True) -> Identity:
        """
        Link (by email) or create the registry account for a provider login,
        then establish the session.

        Args:
            claims: Verified id-token claims (sub, email, name/nickname, ...)
        """
        sub = claims.get("sub")
        email = (claims.get("email") or "").strip()
        if not sub or "@" not in email:
            raise ValidationError("Perfil do provedor inválido")

        provider = claims.get("connection") or sub.split("|", 1)[0]
        display_name = claims.get("name") or claims.get("nickname")
        users = self._load_users()
        record = self._find_by_email(users, email)

        if record is not None:
            if not record.active:
                raise AccountDisabled()
            record.name = display_name or record.name
            record.provider = record.provider or provider
        else:
            is_root = (
                self.settings.root_email is not None
                and email.lower() == self.settings.root_email.lower()
                and not any(u.is_root for u in users)
            )
            record = UserRecord(
                id=uuid.uuid4().hex,
                email=email,
                name=display_name or email.split("@")[0],
                role=(Role.PESQUISADOR if is_root else Role.VISITANTE).value,
                is_admin=is_root,
                is_root=is_root,
                provider=provider,
                created_at=self.clock(),
            )
            users.append(record)
            logger.info(f"Provider account created: {email} via {provider}")

        record.last_login = self.clock()
        self._save_users(users)

        session = self.sessions.establish(self._identity_for(record), remember)
        self.current_user = session
        self.state = AuthState.AUTHENTICATED
        self.notifier.notify(ChangeEvent.USER_LOGGED_IN, session)
        return session

    @property
    def provider(self) -> IdentityProviderClient:
        if self._provider is None:
            self._provider = IdentityProviderClient(self.settings)
        return self._provider

    async def complete_provider_login_from_code(
        self,
        code: str,
        verifier: str,
        remember: bool = True,
    ) -> Identity:
        """
        Finish the redirect flow: exchange the code, verify the id token and
        link/create the account.

        Raises:
            InvalidCredentials: Code rejected, no id token, or token invalid
            RemoteUnavailable: Provider unreachable
            AccountDisabled: Linked account is inactive
        """
        previous_state = self.state
        self.state = AuthState.AUTHENTICATING
        try:
            tokens = await self.provider.exchange_code(code, verifier)
            if not tokens.id_token:
                raise InvalidCredentials("Resposta do provedor sem id_token")
            claims = self.provider.verify_id_token(tokens.id_token)
            session = self.complete_provider_login(claims, remember)
        except Exception:
            self.state = previous_state if self.current_user else AuthState.ANONYMOUS
            logger.info("Provider login failed")
            raise

        self._provider_tokens = tokens
        logger.info(f"User logged in via provider: {session.email}")
        return session

    async def renew_provider_tokens(self) -> TokenSet:
        """
        Refresh the provider tokens of the current session (one retry on an
        unreachable provider). A rejected refresh token ends the session.

        Raises:
            PermissionDenied: No provider session with a refresh token
            InvalidCredentials: Refresh token rejected (session logged out)
            RemoteUnavailable: Provider unreachable after the retry
        """
        self._require_login()
        current = self._provider_tokens
        if current is None or not current.refresh_token:
            raise PermissionDenied("Sessão sem token de renovação")

        try:
            tokens = await self.provider.renew(current.refresh_token)
        except InvalidCredentials:
            self.logout(True, EXPIRED_MESSAGE, expired=True)
            raise

        if not tokens.refresh_token:
            tokens.refresh_token = current.refresh_token
        self._provider_tokens = tokens
        self.refresh_session()
        return tokens

    def access_token(self) -> str:
        """Bearer token for the hosted functions"""
        user = self._require_login()
        return create_access_token(
            {
                "sub": user.id,
                "email": user.email,
                "name": user.name,
                "role": user.role,
                "is_admin": user.is_admin or user.is_root,
                "is_root": user.is_root,
                "demo": self.is_demo(),
            },
            self.settings,
        )
