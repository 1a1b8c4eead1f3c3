"""
tests/conftest.py -- Shared test fixtures for va-auth integration tests.

This module provides:
  - _make_test_store(): isolated in-memory profile store per test module
  - _patch_lifespan(): wires test collaborators into app.state
  - login_client: TestClient (follow_redirects=False) on the cookie strategy
  - token_endpoint: an active `responses` mock for the provider's HTTP calls
  - make_id_token / start_login / cookie_header helpers

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

Identity provider coordinates and SECRET_KEY must be in the environment
before api.main is imported: the module builds its middleware from
get_settings() at import time.
"""

from __future__ import annotations

import base64
import json
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from urllib.parse import parse_qs, urlparse

# CRITICAL: set before any api/auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdef-0123456789")
os.environ.setdefault("IDP_DOMAIN", "idp.example")
os.environ.setdefault("IDP_CLIENT_ID", "va-test-client")
os.environ.setdefault("IDP_CLIENT_SECRET", "va-test-client-secret")
os.environ.setdefault("IDP_REDIRECT_URI", "https://auth.vasaauktioner.se/auth/finalize")
os.environ.setdefault("VERIFY_ID_TOKEN", "false")

import pytest
import responses
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from api.limiter import limiter
from api.main import app
from auth.oauth import IdentityProviderClient
from auth.state import make_state_codec
from auth.store import ProfileStore
from core.config import Settings, get_settings

# Rate limits are exercised by slowapi itself; keep them out of the flow tests.
limiter.enabled = False


# ---------------------------------------------------------------------------
# Store / lifespan helpers
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> ProfileStore:
    """Create an isolated named shared-memory profile store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share profiles (e.g. 'finalize', 'profile').
    """
    return ProfileStore(
        f"sqlite:///file:test_profiles_{db_suffix}?mode=memory&cache=shared&uri=true",
        poolclass=StaticPool,
    )


def _patch_lifespan(settings: Settings, store: ProfileStore):
    """Return an async context manager that replaces the real lifespan.

    Uses the real state codec and the real IdentityProviderClient; outbound
    HTTP is intercepted with `responses` in the tests that need it.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.state_codec = make_state_codec(settings)
        app.state.idp = IdentityProviderClient(settings)
        app.state.profile_store = store
        yield

    return test_lifespan


def make_client(db_suffix: str, **overrides) -> Generator[TestClient, None, None]:
    """Yield a TestClient on the real app with test collaborators.

    overrides are applied on top of the environment, e.g. state_strategy="signed".
    """
    settings = Settings(**overrides) if overrides else get_settings()
    store = _make_test_store(db_suffix)
    app.router.lifespan_context = _patch_lifespan(settings, store)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client
    store.close()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def login_client(request: pytest.FixtureRequest) -> Generator[TestClient, None, None]:
    """TestClient on the cookie state strategy, one per test module.

    follow_redirects=False: tests assert on Location headers, which are
    invisible once the client follows the redirect.
    """
    yield from make_client(request.module.__name__.rsplit(".", 1)[-1])


@pytest.fixture(scope="module")
def signed_client() -> Generator[TestClient, None, None]:
    """TestClient on the signed state strategy."""
    yield from make_client("signed_state", state_strategy="signed")


@pytest.fixture(scope="module")
def verifying_client() -> Generator[TestClient, None, None]:
    """TestClient that verifies identity tokens against the provider JWKS (RS256)."""
    yield from make_client("verified", verify_id_token=True, id_token_algorithms=["RS256"])


@pytest.fixture
def settings(login_client: TestClient) -> Settings:
    return login_client.app.state.settings


@pytest.fixture
def token_endpoint() -> Generator[responses.RequestsMock, None, None]:
    """Intercept every `requests` call. Unmatched calls raise ConnectionError."""
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()


@pytest.fixture
def make_id_token() -> Callable[..., str]:
    """Build an unsigned header.payload.signature token from claims."""

    def _make(**claims) -> str:
        return f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64(claims)}.sig"

    return _make


def _cookie_header(resp) -> str:
    """Turn the name=value part of every Set-Cookie on resp into a Cookie header.

    The session and state cookies are Secure and (for va_session) scoped to
    the parent domain, so the client's own jar will not send them back to
    http://testserver. Tests forward them explicitly.
    """
    pairs = [h.split(";", 1)[0] for h in resp.headers.get_list("set-cookie")]
    return "; ".join(p for p in pairs if not p.endswith("=") and not p.endswith('=""'))


@pytest.fixture
def start_login() -> Callable[..., tuple[str, str]]:
    """Run GET /auth/start and return (state, cookie_header) for the callback."""

    def _start(client: TestClient, return_url: str | None = None) -> tuple[str, str]:
        params = {"return": return_url} if return_url is not None else {}
        resp = client.get("/auth/start", params=params)
        assert resp.status_code == 302
        state = parse_qs(urlparse(resp.headers["location"]).query)["state"][0]
        return state, _cookie_header(resp)

    return _start


@pytest.fixture
def forward_cookies() -> Callable[..., str]:
    """Expose the Set-Cookie -> Cookie header conversion to tests."""
    return _cookie_header
