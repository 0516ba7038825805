"""
Shared fixtures
===============

Everything runs against an in-memory store, a controllable clock and zero
login latency.
"""

from datetime import datetime, timedelta, timezone

import pytest

from observatorio.auth import AuthCoordinator
from observatorio.config import Settings
from observatorio.storage import MemoryStore


class FakeClock:
    """Controllable time source"""

    def __init__(self, start: datetime = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_settings(**overrides) -> Settings:
    values = {
        "environment": "local",
        "store_backend": "memory",
        "login_latency_seconds": 0,
        "search_debounce_seconds": 0.01,
        "demo_emails": ["demo@observatorio.org"],
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def kv():
    return MemoryStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redirects():
    """Views the coordinator redirected to"""
    return []


@pytest.fixture
def view():
    """Mutable current view name"""
    return {"name": "index"}


@pytest.fixture
def auth(kv, settings, clock, view, redirects):
    return AuthCoordinator(
        kv,
        settings=settings,
        clock=clock,
        current_view=lambda: view["name"],
        redirect=redirects.append,
    )


@pytest.fixture
def users(auth):
    """
    One account per role plus root and a demo account.
    Leaves root as the current user.
    """
    root = auth.bootstrap_root("root@observatorio.org", "Root", "root-secret")
    auth.current_user = root

    created = {
        "root": root,
        "pesquisador": auth.add_user("Paula", "paula@observatorio.org", "senha123", role="pesquisador"),
        "aluno": auth.add_user("Artur", "artur@observatorio.org", "senha123", role="aluno_extensao"),
        "visitante": auth.add_user("Vera", "vera@observatorio.org", "senha123", role="visitante"),
        "admin": auth.add_user("Ana", "ana@observatorio.org", "senha123", role="visitante", is_admin=True),
        "demo": auth.add_user("Demo", "demo@observatorio.org", "senha123", role="pesquisador"),
    }
    created["demo"] = created["demo"].model_copy(update={"demo": True})
    return created
