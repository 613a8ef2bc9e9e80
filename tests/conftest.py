"""
tests/conftest.py -- Shared test fixtures for Restwarden.

This module provides:
  - rsa_keys / other_rsa_keys: session-scoped key pairs (RSA generation is slow)
  - make_settings(): Settings with test secrets plus nested overrides
  - clock: a FrozenClock pinned at a fixed epoch
  - make_service / service: AuthService over an isolated in-memory DB
  - alice: an active "author" user with a known password
  - api_client: TestClient with a patched lifespan for HTTP integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because UserStore and TokenStore each own an engine, and TestClient runs
route handlers in a thread pool. Plain :memory: DBs are per-connection and
would present a blank schema to each. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

The DEBUG env var must be set before any app import so get_settings() can
auto-generate secrets in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any core/api import.
os.environ.setdefault("DEBUG", "true")
# TestClient sends Host: testserver.
os.environ.setdefault("ALLOWED_HOSTS", '["localhost", "127.0.0.1", "testserver"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.models import User
from auth.service import AuthService
from auth.store import TokenStore, UserStore
from auth.tokens import hash_password
from cache.store import MemoryCache
from core.clock import FrozenClock, SystemClock
from core.config import Settings, generate_rsa_keypair

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters-long"
ALICE_PASSWORD = "correct horse battery"


def _merge(base: dict, overrides: dict) -> dict:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def memory_db_url(name: str = "") -> str:
    return f"sqlite:///file:test_{name or uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture(scope="session")
def rsa_keys() -> tuple[str, str]:
    return generate_rsa_keypair()


@pytest.fixture(scope="session")
def other_rsa_keys() -> tuple[str, str]:
    return generate_rsa_keypair()


@pytest.fixture
def make_settings(rsa_keys):
    """Factory: make_settings(jwt={"access_ttl": 60}, ...) -> Settings."""
    private_pem, public_pem = rsa_keys

    def _make(**overrides) -> Settings:
        base = {
            "debug": True,
            "secret_key": TEST_SECRET,
            "jwt": {"private_key": private_pem, "public_key": public_pem},
        }
        return Settings(**_merge(base, overrides))

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(1_700_000_000)


@pytest.fixture
def make_service(make_settings, clock):
    """Factory building AuthService instances over fresh in-memory stores.

    Every service built is closed at teardown.
    """
    built: list[AuthService] = []
    default_clock = clock

    def _make(clock=None, **overrides) -> AuthService:
        clock = clock or default_clock
        cfg = make_settings(**overrides)
        db_url = memory_db_url()
        svc = AuthService(cfg, UserStore(db_url), TokenStore(db_url), MemoryCache(clock=clock), clock)
        built.append(svc)
        return svc

    yield _make
    for svc in built:
        svc.close()


@pytest.fixture
def service(make_service) -> AuthService:
    return make_service()


def _add_user(svc: AuthService, username: str, roles: list[str], password: str = ALICE_PASSWORD, active=True) -> User:
    user = User(username=username, roles=roles, hashed_password=hash_password(password), is_active=active)
    user.id = svc.users.create_user(user, now=svc.clock.now_int())
    return user


@pytest.fixture
def user_password() -> str:
    return ALICE_PASSWORD


@pytest.fixture
def add_user():
    """add_user(service, username, roles, password=..., active=True) -> User"""
    return _add_user


@pytest.fixture
def alice(service) -> User:
    return _add_user(service, "alice", ["author"])


# ---------------------------------------------------------------------------
# HTTP integration
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires a pre-built AuthService into app.state so TestClient routes see an
    isolated test DB. The sweep_task is a long-sleeping coroutine so
    shutdown's .cancel() has a real asyncio.Task to act on.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth = service
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(rsa_keys) -> Generator[tuple[TestClient, AuthService, User], None, None]:
    """Yield (client, service, user) for API integration tests.

    The user is "apiuser" with roles ["author"] and password ALICE_PASSWORD.
    The service runs on the system clock, so issued tokens are fresh.
    """
    private_pem, public_pem = rsa_keys
    cfg = Settings(
        debug=True,
        secret_key=TEST_SECRET,
        jwt={"private_key": private_pem, "public_key": public_pem},
        auth_methods={"app_password": {"enabled": True}},
    )
    db_url = memory_db_url(f"api_{uuid.uuid4().hex}")
    clock = SystemClock()
    svc = AuthService(cfg, UserStore(db_url), TokenStore(db_url), MemoryCache(clock=clock), clock)
    user = _add_user(svc, "apiuser", ["author"])

    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(svc)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, svc, user

    svc.close()
