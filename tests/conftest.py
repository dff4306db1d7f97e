"""
tests/conftest.py -- Shared test fixtures for Gatehouse.

This module provides:
  - RecordingNotifier: captures notifications so tests can read emailed links
  - make_store(): an isolated named shared-memory credential store
  - components: store + context + sessions + tokens + flows, no HTTP
  - client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process. Each
fixture gets a fresh uuid-named database so tests never see each other's rows.

Environment variables must be set before any gatehouse import: get_settings()
is cached on first call and several modules read it at import time.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from urllib.parse import parse_qs, urlparse

# CRITICAL: configure before any gatehouse import.
os.environ.setdefault("DEBUG", "true")
os.environ["SECRET_KEY"] = "test-secret-key-0123456789abcdef0123456789abcdef"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["LOGIN_DELAY_MIN_MS"] = "50"
os.environ["LOGIN_DELAY_MAX_MS"] = "80"
os.environ["ALLOWED_HOSTS"] = '["testserver", "localhost", "127.0.0.1"]'
os.environ["ROOT_URL"] = "http://frontend.test"
os.environ["GITHUB_CLIENT_ID"] = "test-github-client"
os.environ["GITHUB_CLIENT_SECRET"] = "test-github-secret"  # noqa: S105 -- test fixture value

import pytest
from fastapi.testclient import TestClient

from accounts.flows import AccountFlows
from accounts.notifier import Notification
from api.main import app, wire
from auth.context import AuthContext
from auth.sessions import SessionManager
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from core.config import get_settings

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class RecordingNotifier:
    """Notifier that keeps every notification in memory."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> None:
        self.sent.append(notification)

    def last(self, template: str) -> Notification:
        matches = [n for n in self.sent if n.template == template]
        assert matches, f"no {template!r} notification was sent"
        return matches[-1]

    def link_params(self, template: str) -> dict[str, str]:
        """Query parameters of the link in the most recent notification of a template."""
        query = parse_qs(urlparse(self.last(template).variables["link"]).query)
        return {key: values[0] for key, values in query.items()}


def make_store(db_url: str | None = None) -> CredentialStore:
    """Create an isolated store. Defaults to a fresh named shared-memory database."""
    return CredentialStore(db_url or f"sqlite:///file:gatehouse_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


@dataclass
class Components:
    store: CredentialStore
    context: AuthContext
    sessions: SessionManager
    tokens: TokenIssuer
    notifier: RecordingNotifier
    flows: AccountFlows


def build_components(store: CredentialStore) -> Components:
    settings = get_settings()
    context = AuthContext(store, settings)
    sessions = SessionManager(store, context, settings)
    tokens = TokenIssuer(store, settings)
    notifier = RecordingNotifier()
    flows = AccountFlows(store, context, sessions, tokens, notifier, settings)
    return Components(store, context, sessions, tokens, notifier, flows)


def _patch_lifespan(store: CredentialStore, notifier: RecordingNotifier):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and recording notifier into app.state through the
    same wire() the real lifespan uses. The purge_task is a long-sleeping
    coroutine so shutdown has a real asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire(app, store, notifier)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def components() -> Generator[Components, None, None]:
    """Components over a fresh in-memory store, for flow and unit tests."""
    store = make_store()
    yield build_components(store)
    store.close()


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    """TestClient over the real app with an isolated store.

    follow_redirects=False so OAuth tests can assert on Location headers.
    The recording notifier is reachable as client.app.state.notifier.
    """
    store = make_store()
    app.router.lifespan_context = _patch_lifespan(store, RecordingNotifier())
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as test_client:
        yield test_client
    store.close()


def register(client: TestClient, username: str = "alice", email: str = "alice@example.com", password: str = "hunter22"):
    """POST /register and return the response. The client keeps the session cookie."""
    return client.post(
        "/register",
        json={"username": username, "email": email, "password": password, "confirm_password": password},
    )
