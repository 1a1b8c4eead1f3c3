"""
tests/test_tokens.py -- Unit tests for auth/tokens.py: session JWT, state
entropy, personal-number hashing, session cookie attributes.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt
from starlette.responses import Response

from auth.tokens import (
    create_session_token,
    decode_session_token,
    generate_state_token,
    hash_personal_number,
    set_session_cookie,
)
from core.config import Settings


@pytest.fixture
def cfg() -> Settings:
    return Settings()


class TestSessionToken:
    def test_round_trip(self, cfg: Settings) -> None:
        payload = decode_session_token(create_session_token("user-1", cfg), cfg)
        assert payload["sub"] == "user-1"
        assert payload["typ"] == "va_session"
        assert payload["exp"] - payload["iat"] == cfg.session_ttl_seconds

    def test_wrong_key_rejected(self, cfg: Settings) -> None:
        token = create_session_token("user-1", Settings(secret_key="y" * 40))
        assert decode_session_token(token, cfg) is None

    def test_expired_rejected(self, cfg: Settings) -> None:
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        token = jwt.encode(
            {"sub": "u", "typ": "va_session", "iat": past, "exp": past + timedelta(minutes=1)},
            cfg.secret_key,
            algorithm="HS256",
        )
        assert decode_session_token(token, cfg) is None

    def test_other_token_type_rejected(self, cfg: Settings) -> None:
        token = jwt.encode({"sub": "u", "typ": "va_state"}, cfg.secret_key, algorithm="HS256")
        assert decode_session_token(token, cfg) is None

    def test_garbage_rejected(self, cfg: Settings) -> None:
        assert decode_session_token("not-a-jwt", cfg) is None


def test_state_tokens_are_unique_and_long() -> None:
    tokens = {generate_state_token() for _ in range(100)}
    assert len(tokens) == 100
    assert all(len(t) >= 43 for t in tokens)


class TestPersonalNumberHash:
    def test_separators_normalized(self, cfg: Settings) -> None:
        assert hash_personal_number("19900101-1234", cfg) == hash_personal_number("199001011234", cfg)
        assert hash_personal_number("900101+1234", cfg) == hash_personal_number("9001011234", cfg)

    def test_keyed(self, cfg: Settings) -> None:
        other = Settings(secret_key="z" * 40)
        assert hash_personal_number("199001011234", cfg) != hash_personal_number("199001011234", other)

    def test_hex_digest_without_raw_value(self, cfg: Settings) -> None:
        digest = hash_personal_number("199001011234", cfg)
        assert len(digest) == 64
        assert "199001011234" not in digest


def test_session_cookie_attributes(cfg: Settings) -> None:
    resp = Response()
    set_session_cookie(resp, "tok", cfg)
    header = next(v.decode() for k, v in resp.raw_headers if k == b"set-cookie").lower()
    assert header.startswith("va_session=tok;")
    assert "domain=.vasaauktioner.se" in header
    assert "secure" in header
    assert "samesite=lax" in header
    assert f"max-age={cfg.session_ttl_seconds}" in header
    assert "httponly" not in header
