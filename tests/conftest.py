"""
tests/conftest.py -- Shared test fixtures for the admin dashboard test suite.

This module provides:
  - _db_url(): named shared-memory SQLite URL per test module
  - _patch_lifespan(): builds the real service graph against a test DB
  - client: TestClient over the real app with the patched lifespan
  - fresh_rate_limits: empties the shared limiter counters before every test
  - make_user / bearer: helpers for seeding accounts and minting access tokens
  - user_store / log_store / audit_sink / authenticator / authorizer:
    unit-level fixtures over plain in-memory stores

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment must be set before any api/auth/core import:
  DEBUG=true        get_settings() auto-generates SECRET_KEY instead of raising
  BCRYPT_ROUNDS=4   minimum cost factor keeps hashing fast
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set env before any auth/core import so get_settings() picks it up.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, build_services
from auth.audit import AuditSink
from auth.authorizer import Authorizer
from auth.models import User
from auth.permissions import PermissionTable
from auth.service import Authenticator
from auth.store import ActivityLogStore, UserStore
from auth.tokens import BcryptHasher, TokenService, claims_for

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters-long"
DEFAULT_PASSWORD = "password123"


# ---------------------------------------------------------------------------
# Integration helpers
# ---------------------------------------------------------------------------


def _db_url(name: str) -> str:
    return f"sqlite:///file:test_{name}?mode=memory&cache=shared&uri=true"


def _patch_lifespan(db_url: str):
    """Return an async context manager that replaces the real lifespan.

    Builds the same object graph as production (build_services) against the
    test database. The purge_task is a long-sleeping coroutine so shutdown
    can cancel a real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, db_url)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        app.state.user_store.close()
        app.state.log_store.close()

    return test_lifespan


@pytest.fixture(autouse=True)
def fresh_rate_limits() -> None:
    """Every TestClient request comes from "testclient", so counters would
    otherwise carry over between tests."""
    limiter.reset()


@pytest.fixture(scope="module")
def client(request) -> Generator[TestClient, None, None]:
    """One TestClient per test module, each with its own in-memory database."""
    module_name = request.module.__name__.rsplit(".", 1)[-1]
    app.router.lifespan_context = _patch_lifespan(_db_url(module_name))
    with TestClient(app, raise_server_exceptions=True) as test_client:
        yield test_client


@pytest.fixture(scope="module")
def make_user(client: TestClient) -> Callable[..., User]:
    """Insert a user straight into the app's store and return it."""
    counter = {"n": 0}

    def _make(role: str = "user", email: str | None = None, password: str = DEFAULT_PASSWORD, **fields) -> User:
        counter["n"] += 1
        state = client.app.state
        user = User(
            email=email or f"{role}{counter['n']}@example.com",
            name=fields.pop("name", f"{role.title()} {counter['n']}"),
            role=role,
            hashed_password=state.hasher.hash(password),
            **fields,
        )
        return state.user_store.insert_user(user)

    return _make


@pytest.fixture(scope="module")
def bearer(client: TestClient) -> Callable[[User], dict[str, str]]:
    """Return Authorization headers carrying a fresh access token for a user."""

    def _headers(user: User) -> dict[str, str]:
        token = client.app.state.token_service.issue_access(claims_for(user))
        return {"Authorization": f"Bearer {token}"}

    return _headers


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


class FakeClock:
    """Deterministic `now` callable for lockout and retention tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def log_store() -> Generator[ActivityLogStore, None, None]:
    store = ActivityLogStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def hasher() -> BcryptHasher:
    return BcryptHasher(rounds=4)


@pytest.fixture
def token_service() -> TokenService:
    return TokenService(TEST_SECRET, access_ttl=900, refresh_ttl=604800)


@pytest.fixture
def audit_sink(log_store: ActivityLogStore) -> AuditSink:
    return AuditSink(log_store)


@pytest.fixture
def authenticator(
    user_store: UserStore,
    token_service: TokenService,
    hasher: BcryptHasher,
    audit_sink: AuditSink,
    clock: FakeClock,
) -> Authenticator:
    return Authenticator(
        user_store,
        token_service,
        hasher,
        audit_sink,
        lockout_threshold=5,
        lockout_window_seconds=900,
        refresh_retention_seconds=604800,
        now=clock,
    )


@pytest.fixture
def authorizer(user_store: UserStore, token_service: TokenService, audit_sink: AuditSink) -> Authorizer:
    return Authorizer(user_store, token_service, PermissionTable(), audit_sink)
