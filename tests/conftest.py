"""
tests/conftest.py -- Shared test fixtures for Handshake unit and integration tests.

This module provides:
  - FakeClock: one mutable clock feeding the store, replay guard and token manager
  - FakeSignatures: deterministic signature verifier (signature == "consumer_secret&token_secret")
  - store / machine fixtures: isolated credential store + state machine per test
  - api_client: TestClient against the real app with a patched lifespan

Design: named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool, and the
concurrency tests race real threads. Plain :memory: DBs are per-connection
and would present a blank schema to each worker thread. A uuid suffix keeps
every fixture instance isolated.

AUTHLIB_INSECURE_TRANSPORT must be set before any request is parsed: the
TestClient talks to http://testserver, and authlib refuses non-https URIs
otherwise. AUTHORIZE_RATE_LIMIT is raised so the suite does not trip the
password-step limiter.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# Set before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("AUTHLIB_INSECURE_TRANSPORT", "1")
os.environ.setdefault("AUTHORIZE_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from auth.models import Consumer, User, VerificationMode
from auth.replay import ReplayGuard
from auth.session import SessionStateMachine
from auth.signature import SignedCall
from auth.store import CredentialStore
from auth.tokens import TokenManager, password_hash

TIMEOUT = 86400

CONSUMER_KEY = "C1"
CONSUMER_SECRET = "S1"
USER_EMAIL = "alice@example.com"
USER_PASSWORD = "correct horse"


# ---------------------------------------------------------------------------
# Clock and signature fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """A settable UTC clock. Call it for a datetime; epoch() for time.time() semantics."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def epoch(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeSignatures:
    """Accepts a call iff its request carries 'consumer_secret&token_secret' (PLAINTEXT-style)."""

    def __init__(self) -> None:
        self.calls = 0

    def verify(self, call: SignedCall, consumer: Consumer, token_secret: str | None) -> bool:
        self.calls += 1
        return call.request == f"{consumer.consumer_secret}&{token_secret or ''}"


def signed(
    clock: FakeClock,
    consumer_key: str = CONSUMER_KEY,
    consumer_secret: str = CONSUMER_SECRET,
    token: str | None = None,
    token_secret: str | None = None,
    nonce: str | None = None,
    verifier: str | None = None,
    timestamp: int | None = None,
) -> SignedCall:
    """Build a SignedCall that FakeSignatures accepts."""
    return SignedCall(
        consumer_key=consumer_key,
        token=token,
        nonce=nonce or uuid.uuid4().hex,
        timestamp=str(timestamp if timestamp is not None else int(clock.epoch())),
        verifier=verifier,
        signature_method="PLAINTEXT",
        request=f"{consumer_secret}&{token_secret or ''}",
    )


def shared_memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@dataclass
class Harness:
    store: CredentialStore
    clock: FakeClock
    signatures: FakeSignatures
    tokens: TokenManager
    replay: ReplayGuard
    machine: SessionStateMachine
    consumer_id: int
    user_id: int


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> Generator[CredentialStore, None, None]:
    s = CredentialStore(shared_memory_url("test_store"), clock=clock)
    yield s
    s.close()


@pytest.fixture
def harness(store: CredentialStore, clock: FakeClock) -> Harness:
    """Store seeded with consumer C1/S1 and user alice, plus a wired state machine."""
    consumer_id = store.create_consumer(Consumer(consumer_key=CONSUMER_KEY, consumer_secret=CONSUMER_SECRET))
    user_id = store.create_user(User(email=USER_EMAIL, password_hash=password_hash(USER_EMAIL, USER_PASSWORD)))
    signatures = FakeSignatures()
    tokens = TokenManager(store, clock=clock)
    replay = ReplayGuard(store, timeout_delta=TIMEOUT, clock=clock.epoch)
    machine = SessionStateMachine(store, signatures, tokens=tokens, replay=replay)
    return Harness(store, clock, signatures, tokens, replay, machine, consumer_id, user_id)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: CredentialStore):
    """Return a lifespan that wires the test store into app.state.

    The purge_task is a long-sleeping coroutine so shutdown's .cancel() has a
    real asyncio.Task to cancel.
    """
    from auth.signature import OAuth1SignatureVerifier

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.credential_store = store
        app.state.oauth = SessionStateMachine(store, OAuth1SignatureVerifier())
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@dataclass
class ApiContext:
    client: TestClient
    store: CredentialStore
    user_id: int


@pytest.fixture(scope="module")
def api_client() -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for integration tests.

    The store holds two consumers: C1 (auto verification) and C2
    (user-authorized), and one user, alice. Requests are signed for real with
    authlib's ClientAuth, so this exercises the production signature path.
    """
    from api.main import app

    store = CredentialStore(shared_memory_url("test_api"))
    store.create_consumer(Consumer(consumer_key=CONSUMER_KEY, consumer_secret=CONSUMER_SECRET))
    store.create_consumer(
        Consumer(consumer_key="C2", consumer_secret="S2", verification_mode=VerificationMode.USER_AUTHORIZED)
    )
    user_id = store.create_user(User(email=USER_EMAIL, password_hash=password_hash(USER_EMAIL, USER_PASSWORD)))

    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiContext(client, store, user_id)

    store.close()
