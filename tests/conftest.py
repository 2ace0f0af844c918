"""
tests/conftest.py -- Shared test fixtures for Conductor.

This module provides:
  - FrozenClock: a controllable UTC clock for token and key expiry tests
  - services: a fresh AuthService + stores on a private in-memory DB (unit tests)
  - file_services: the same wired to a file DB in tmp_path (concurrency tests)
  - api_client: TestClient with a Developer JWT for API integration tests
  - make_user: seeds an account through the running app and returns (id, token)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any core/auth/api import so
get_settings() auto-generates SECRET_KEY (DEBUG), disables throttling, and
uses cheap argon2 parameters for speed.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

# CRITICAL: Set env before any core/auth/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_services
from audit.store import AuditLog
from auth.models import User
from auth.passwords import PasswordHasher
from auth.permissions import Permission, Role, UserStatus
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenIssuer
from core.config import get_settings
from core.database import make_engine
from keys.store import AccessKeyStore

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters-long"
DEFAULT_PASSWORD = "pass12345"


class FrozenClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def _memory_url(name: str) -> str:
    return f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"


def _build(engine, clock: Callable[[], datetime] | None = None) -> SimpleNamespace:
    users = UserStore(engine)
    keys = AccessKeyStore(engine, clock=clock) if clock else AccessKeyStore(engine)
    audit = AuditLog(engine)
    hasher = PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)
    tokens = TokenIssuer(TEST_SECRET, lifetime_seconds=86400, clock=clock) if clock else TokenIssuer(TEST_SECRET)
    service = AuthService(users=users, keys=keys, audit=audit, tokens=tokens, hasher=hasher)
    return SimpleNamespace(
        engine=engine,
        users=users,
        keys=keys,
        audit=audit,
        hasher=hasher,
        tokens=tokens,
        service=service,
        clock=clock,
    )


def seed_user(
    env,
    username: str,
    permission: Permission = Permission.USER,
    status: UserStatus = UserStatus.ACTIVE,
    password: str = DEFAULT_PASSWORD,
    role: Role = Role.ANALYST,
) -> int:
    """Insert an account directly through the store, bypassing registration policies."""
    return env.users.create_user(
        User(
            username=username,
            email=f"{username}@example.com",
            role=role,
            permission=permission,
            password_hash=env.hasher.hash(password),
            status=status,
        )
    )


# ---------------------------------------------------------------------------
# Unit-level fixtures -- fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def services(clock: FrozenClock) -> Generator[SimpleNamespace, None, None]:
    """Stores and AuthService on a private in-memory DB, all sharing `clock`."""
    engine = make_engine(_memory_url(f"unit_{uuid.uuid4().hex}"))
    yield _build(engine, clock)
    engine.dispose()


@pytest.fixture
def seed(services) -> Callable[..., int]:
    """Return a factory that inserts an account into `services` and returns its id."""

    def factory(username: str, permission: Permission = Permission.USER, **kwargs) -> int:
        return seed_user(services, username, permission, **kwargs)

    return factory


@pytest.fixture
def file_services(tmp_path) -> Generator[SimpleNamespace, None, None]:
    """Stores and AuthService on a file DB so threads get independent connections."""
    engine = make_engine(f"sqlite:///{tmp_path / 'conductor_test.db'}")
    yield _build(engine)
    engine.dispose()


# ---------------------------------------------------------------------------
# API fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def _patch_lifespan(db_url: str):
    """Return an async context manager that replaces the real lifespan.

    Wires stores built on an isolated test DB into app.state so TestClient
    routes never touch the configured DATABASE_URL.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        engine = make_engine(db_url)
        build_services(app, engine, get_settings())
        yield
        engine.dispose()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The caller is a Developer named "devadmin" with password DEFAULT_PASSWORD,
    seeded after startup. Each test module gets its own database.
    """
    db_name = f"test_api_{request.module.__name__.rsplit('.', 1)[-1]}_{uuid.uuid4().hex[:8]}"
    app.router.lifespan_context = _patch_lifespan(_memory_url(db_name))

    with TestClient(app, raise_server_exceptions=True) as client:
        state = app.state
        uid = seed_user(state_env(state), "devadmin", Permission.DEVELOPER)
        token = state.auth_service.tokens.issue(state.user_store.get_by_id(uid))
        yield client, token, uid


def state_env(state) -> SimpleNamespace:
    return SimpleNamespace(users=state.user_store, hasher=state.auth_service.hasher)


@pytest.fixture
def make_user(api_client) -> Callable[..., tuple[int, str]]:
    """Return a factory: make_user("name", Permission.X) -> (user_id, bearer token)."""

    def factory(
        username: str | None = None,
        permission: Permission = Permission.USER,
        status: UserStatus = UserStatus.ACTIVE,
        password: str = DEFAULT_PASSWORD,
    ) -> tuple[int, str]:
        state = app.state
        name = username or f"user_{uuid.uuid4().hex[:10]}"
        uid = seed_user(state_env(state), name, permission, status=status, password=password)
        token = state.auth_service.tokens.issue(state.user_store.get_by_id(uid))
        return uid, token

    return factory


@pytest.fixture
def bare_client() -> Generator[TestClient, None, None]:
    """TestClient over an empty database: no accounts, so first-user bootstrap applies."""
    app.router.lifespan_context = _patch_lifespan(_memory_url(f"test_bare_{uuid.uuid4().hex[:8]}"))
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client
