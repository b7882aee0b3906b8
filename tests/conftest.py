"""
tests/conftest.py -- Shared test fixtures for Homeboard.

This module provides:
  - FakeHomeAssistantClient: network-free stand-in for auth.homeassistant
  - make_user_store(): isolated in-memory auth DB
  - _patch_lifespan(): wires test services into app.state via init_services()
  - user_store / fake_ha / cipher: function-scoped unit-test fixtures
  - api_harness: module-scoped TestClient (follow_redirects=False) plus the
    store and fake client behind it

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG must be set before any auth/core import so get_settings() generates
SECRET_KEY and ENCRYPTION_KEY instead of raising ValueError. The slowapi
ceiling is raised so whole test modules from one "IP" never trip it.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, init_services
from auth.crypto import CredentialCipher, generate_key
from auth.homeassistant import HomeAssistantClient, ProviderIdentity, TokenSet
from auth.models import User
from auth.sessions import SESSION_COOKIE_NAME
from auth.store import UserStore
from auth.throttle import LoginThrottle
from auth.tokens import csrf_token_for, hash_password
from cache.store import MemoryKeyValueStore
from core.config import get_settings
from main import seed_roles

# ---------------------------------------------------------------------------
# Fake Home Assistant
# ---------------------------------------------------------------------------


class FakeHomeAssistantClient(HomeAssistantClient):
    """Records every call; authorization_url() is the real (offline) one.

    Set exchange_error / refresh_errors / service_error to make the next
    calls fail the way a real instance would.
    """

    def __init__(self) -> None:
        super().__init__(timeout=1.0)
        self.identity = ProviderIdentity(user_id="ha-user-1", name="Alice", is_owner=True, is_admin=True)
        self.expires_in = 1800
        self.exchange_calls: list[dict] = []
        self.refresh_calls: list[dict] = []
        self.service_calls: list[dict] = []
        self.exchange_error: Exception | None = None
        self.refresh_errors: list[Exception] = []
        self.service_error: Exception | None = None
        self._issued = 0

    def _tokens(self) -> TokenSet:
        self._issued += 1
        return TokenSet(
            access_token=f"access-{self._issued}",
            refresh_token=f"refresh-{self._issued}",
            expires_in=self.expires_in,
        )

    def exchange_code(self, ha_url, client_id, code, code_verifier):
        self.exchange_calls.append(
            {"ha_url": ha_url, "client_id": client_id, "code": code, "code_verifier": code_verifier}
        )
        if self.exchange_error is not None:
            raise self.exchange_error
        return self._tokens()

    def refresh(self, ha_url, client_id, refresh_token):
        self.refresh_calls.append({"ha_url": ha_url, "client_id": client_id, "refresh_token": refresh_token})
        if self.refresh_errors:
            raise self.refresh_errors.pop(0)
        return self._tokens()

    def fetch_identity(self, ha_url, access_token):
        return self.identity

    def call_service(self, ha_url, access_token, domain, service, data):
        self.service_calls.append(
            {"ha_url": ha_url, "token": access_token, "domain": domain, "service": service, "data": data}
        )
        if self.service_error is not None:
            raise self.service_error
        return []


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def memory_db_url(prefix: str = "auth") -> str:
    return f"sqlite:///file:test_{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_user_store(db_suffix: str | None = None) -> UserStore:
    """Create an isolated named shared-memory SQLite store."""
    return UserStore(db_url=memory_db_url(db_suffix or "auth"))


def create_local_user(
    store: UserStore,
    username: str,
    password: str = "correct-horse-battery",
    role: str | None = None,
    status: str = "active",
) -> int:
    role_id = store.get_role_by_name(role).id if role else None
    return store.create_user(
        User(
            display_name=username.title(),
            username=username,
            password_hash=hash_password(password),
            role_id=role_id,
            status=status,
        )
    )


def _patch_lifespan(user_store: UserStore, ha_client: FakeHomeAssistantClient):
    """Return an async context manager that replaces the real lifespan.

    Goes through init_services() so tests exercise the production wiring with
    only the database and the Home Assistant edge substituted. The purge task
    is a long sleep (a real asyncio.Task is required for .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_services(
            app,
            get_settings(),
            user_store=user_store,
            ha_client=ha_client,
            kv_store=MemoryKeyValueStore(),
        )
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = make_user_store()
    yield store
    store.close()


@pytest.fixture
def seeded_store(user_store: UserStore) -> UserStore:
    seed_roles(user_store)
    return user_store


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher.from_hex(generate_key())


@pytest.fixture
def fake_ha() -> FakeHomeAssistantClient:
    return FakeHomeAssistantClient()


class FakeClock:
    """Manually advanced epoch clock for throttle / cache / broker tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# API harness -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    store: UserStore
    ha: FakeHomeAssistantClient

    @property
    def state(self):
        return self.client.app.state

    def sign_in(self, user_id: int) -> str:
        """Give the client a fresh session for user_id; return its CSRF token."""
        issued = self.state.sessions.create(user_id)
        self.client.cookies.clear()
        self.client.cookies.set(SESSION_COOKIE_NAME, issued.token)
        return csrf_token_for(issued.token)

    def sign_out(self) -> None:
        self.client.cookies.clear()

    def reset_throttle(self) -> None:
        self.state.throttle = LoginThrottle()


@pytest.fixture(scope="module")
def api_harness() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness around the real app with isolated services.

    follow_redirects=False: login and callback tests assert on Location
    headers, which disappear once the client follows the redirect.
    """
    store = make_user_store("api")
    seed_roles(store)
    ha = FakeHomeAssistantClient()
    app.router.lifespan_context = _patch_lifespan(store, ha)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, store=store, ha=ha)

    store.close()
