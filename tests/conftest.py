import asyncio
import json
import os

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["STATE_BACKEND"] = "memory"
os.environ["RUN_CLEANUP_WORKER"] = "false"
os.environ["JWT_SECRET"] = "test-secret-with-enough-length-for-hs256-signing"

import pytest
from starlette.requests import Request

from chronos_auth.config import Settings
from chronos_auth.core.storage import InMemoryStore
from chronos_auth.services.auth_service import AuthService
from chronos_auth.services.token_service import TokenService


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_request(
    headers=None,
    cookies=None,
    client=("203.0.113.5", 40000),
    body=None,
    method="POST",
    path="/api/v1/test",
) -> Request:
    raw_headers = [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()]
    if cookies:
        cookie_header = "; ".join(f"{k}={v}" for k, v in cookies.items())
        raw_headers.append((b"cookie", cookie_header.encode("latin-1")))

    payload = b""
    if body is not None:
        payload = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")
        raw_headers.append((b"content-type", b"application/json"))

    async def receive():
        return {"type": "http.request", "body": payload, "more_body": False}

    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "query_string": b"",
        "headers": raw_headers,
        "client": client,
        "server": ("testserver", 80),
        "scheme": "http",
    }
    return Request(scope, receive)


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return Settings(
        ENVIRONMENT="test",
        JWT_SECRET="unit-test-secret-that-is-long-enough-1234",
        JWT_KDF_ITERATIONS=1000,
    )


@pytest.fixture
def store(clock):
    return InMemoryStore(clock=clock)


@pytest.fixture
def tokens(store, config):
    return TokenService(store, config=config)


@pytest.fixture
def auth(tokens, store, config, clock):
    return AuthService(tokens, store, config=config, clock=clock)


@pytest.fixture
def app_state():
    """Reset process-wide singletons shared with the FastAPI app"""
    from chronos_auth.core.database import Base, engine
    from chronos_auth.core.storage import state_store
    from chronos_auth.services.auth_service import auth_service
    from chronos_auth.services.rate_limiter import auth_rate_limiters

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    state_store.clear()
    for limiter in [*auth_rate_limiters.values(), auth_service.login_limiter, auth_service.ip_limiter]:
        if hasattr(limiter, "_buckets"):
            limiter._buckets.clear()
        if hasattr(limiter, "_windows"):
            limiter._windows.clear()
    yield
    state_store.clear()


@pytest.fixture
def client(app_state):
    from fastapi.testclient import TestClient

    from chronos_auth.main import app

    with TestClient(app) as test_client:
        yield test_client
