"""
tests/conftest.py -- Shared test fixtures for Fleetplane.

This module provides:
  - FakeClock: injectable clock for the liveness tracker
  - stores: a fresh in-memory Stores bundle per test (unit tests)
  - _make_test_stores(): named shared-memory stores for integration tests
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient plus an admin access key for the "acme" project

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the TestClient because it runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit tests run in one thread, so plain :memory: is enough.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from api.stores import Stores
from auth.models import CredentialKind
from auth.tokens import generate_secret, hash_password, hash_secret
from iam.store import bootstrap_project

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "adminpass123"


class FakeClock:
    """Manually advanced clock, in epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stores(clock: FakeClock) -> Generator[Stores, None, None]:
    """A fresh, empty Stores bundle on in-memory databases."""
    s = Stores.open("sqlite:///:memory:", ":memory:", clock=clock)
    yield s
    s.close()


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Rate-limit counters are process-global; start every test from zero."""
    limiter.reset()


# ---------------------------------------------------------------------------
# Integration-test helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str, clock: FakeClock) -> Stores:
    """Create isolated named shared-memory stores for one test module.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'health').
    """
    db_url = f"sqlite:///file:test_fleetplane_{db_suffix}?mode=memory&cache=shared&uri=true"
    return Stores.open(db_url, ":memory:", clock=clock)


def _patch_lifespan(stores: Stores):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.stores = stores
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


def create_confirmed_user(stores: Stores, email: str, password: str = "userpass123") -> str:
    """Create a user whose registration is already complete. Returns the user id."""
    user = stores.users.create_user(email, hash_password(password))
    stores.users.mark_registration_completed(user.id)
    return user.id


def mint_user_access_key(stores: Stores, user_id: str) -> str:
    """Store a new access key for user_id and return the raw key."""
    raw = generate_secret(CredentialKind.USER_ACCESS_KEY)
    stores.user_access_keys.create_user_access_key(user_id, hash_secret(CredentialKind.USER_ACCESS_KEY, raw))
    return raw


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, Stores, FakeClock], None, None]:
    """Yield (client, admin_key, stores, clock) for API integration tests.

    The admin user owns the "acme" project through its bootstrap 'admin'
    role. admin_key is a raw user access key for Authorization headers.
    """
    clock = FakeClock()
    stores = _make_test_stores(request.module.__name__.rsplit(".", 1)[-1], clock)

    admin_id = create_confirmed_user(stores, ADMIN_EMAIL, ADMIN_PASSWORD)
    bootstrap_project(stores.engine, "acme", admin_id)
    admin_key = mint_user_access_key(stores, admin_id)

    app.router.lifespan_context = _patch_lifespan(stores)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, admin_key, stores, clock

    stores.close()
