"""
tests/conftest.py -- Shared test fixtures for the auth service.

This module provides:
  - RecordingMailer / FakeIdentityProvider: in-process stand-ins for SMTP and
    Google, injected through the Mailer / IdentityProvider protocols
  - store, mailer, identity_provider, service: unit-level fixtures on a
    private in-memory SQLite database
  - api: TestClient wired to an isolated store through a patched lifespan
  - link_token(): pull the token out of a mailed link

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the API fixture because TestClient runs sync route handlers in a thread
pool. Plain :memory: DBs are per-connection and would present a blank schema
to each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

Environment must be set before any auth/core import so get_settings():
  - auto-generates SECRET_KEY in dev mode instead of raising ValueError
  - accepts TestClient's "testserver" Host header
  - leaves rate limiting off (the suite logs in far more than 10 times a minute)
"""

from __future__ import annotations

import asyncio
import os
import re
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from urllib.parse import parse_qs, urlparse

# CRITICAL: Set env before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("APP_BASE_URL", "http://testserver")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.errors import Unauthorized, UpstreamUnavailable
from auth.mailer import MailDeliveryError
from auth.models import OAuthIdentity
from auth.service import AuthService
from auth.store import UserStore

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


@dataclass
class SentMail:
    to: str
    subject: str
    body: str


@dataclass
class RecordingMailer:
    """Mailer that keeps messages in memory. Set fail=True to simulate an SMTP outage."""

    sent: list[SentMail] = field(default_factory=list)
    fail: bool = False

    def send(self, to: str, subject: str, body: str) -> None:
        if self.fail:
            raise MailDeliveryError("simulated outage")
        self.sent.append(SentMail(to, subject, body))

    def last_to(self, address: str) -> SentMail:
        matches = [m for m in self.sent if m.to == address]
        assert matches, f"No mail sent to {address}; sent: {[m.to for m in self.sent]}"
        return matches[-1]

    def token_for(self, address: str) -> str:
        """Token from the link in the latest mail sent to address."""
        return link_token(self.last_to(address).body)


@dataclass
class FakeIdentityProvider:
    """IdentityProvider keyed by authorization code.

    Unknown codes are rejected like Google rejects them; the code "outage"
    behaves like an unreachable provider.
    """

    identities: dict[str, OAuthIdentity] = field(default_factory=dict)

    def exchange(self, code: str) -> OAuthIdentity:
        if code == "outage":
            raise UpstreamUnavailable("Google sign-in is temporarily unavailable.")
        if code not in self.identities:
            raise Unauthorized("Google sign-in failed. Please try again.", code="oauth_rejected")
        return self.identities[code]


def link_token(body: str) -> str:
    """Return the ?token= value of the first link in a mail body."""
    match = re.search(r"https?://\S+", body)
    assert match, f"No link in mail body: {body!r}"
    values = parse_qs(urlparse(match.group(0)).query).get("token", [])
    assert len(values) == 1, f"Expected one token param, got {values}"
    return values[0]


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = UserStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def service(store: UserStore, mailer: RecordingMailer, identity_provider: FakeIdentityProvider) -> AuthService:
    return AuthService(store, mailer, identity_provider)


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    store: UserStore
    mailer: RecordingMailer
    identity_provider: FakeIdentityProvider


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built service and its store into app.state so TestClient
    routes see an isolated test DB, a recording mailer, and a fake Google.
    The purge_task is a long-sleeping coroutine (a real asyncio.Task is
    required; the shutdown path calls .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = service.store
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness around a fresh database.

    Function-scoped: every test starts with no users, no tokens, an empty
    mailbox, and an empty cookie jar.
    """
    db_url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    user_store = UserStore(db_url)
    mailer = RecordingMailer()
    provider = FakeIdentityProvider()
    service = AuthService(user_store, mailer, provider)

    app.router.lifespan_context = _patch_lifespan(service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client, user_store, mailer, provider)

    user_store.close()
