"""
auth/tokens.py -- Session JWT, CSRF state tokens, personal-number hashing.

Security design decisions:
  Session: python-jose with HS256. The va_session cookie carries a signed JWT
       with the profile subject and an expiry. Nothing is stored server-side;
       verification returns None on any failure and the route layer turns that
       into a 401.

  Session cookie is NOT HttpOnly [R1]. Client-side script on the application
       domain reads it to decide whether to show logged-in UI. This is an
       accepted risk: an XSS on any host under the cookie domain can lift the
       session. The JWT holds no secret beyond the subject.

  CSRF state: secrets.token_urlsafe(32) gives 256 bits of entropy. Never
       derived from anything public.

  Personal numbers: stored only as HMAC-SHA256(SECRET_KEY, normalized value).
       A plain SHA-256 of a 12-digit personal number is trivially brute-forced;
       keying it with SECRET_KEY means a leaked table alone is not enough.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from core.config import Settings

logger = logging.getLogger("vaauth.auth")

_ALGORITHM = "HS256"
_SESSION_TYPE = "va_session"


# ---------------------------------------------------------------------------
# CSRF state
# ---------------------------------------------------------------------------


def generate_state_token() -> str:
    """Return a fresh unguessable CSRF state value (256 bits, URL-safe)."""
    return secrets.token_urlsafe(32)


# ---------------------------------------------------------------------------
# Session JWT encode / decode
# ---------------------------------------------------------------------------


def create_session_token(subject: str, settings: Settings) -> str:
    """Encode a signed session JWT for subject, valid for SESSION_TTL_SECONDS."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "typ": _SESSION_TYPE,
        "iat": now,
        "exp": now + timedelta(seconds=settings.session_ttl_seconds),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=_ALGORITHM)


def decode_session_token(token: str, settings: Settings) -> dict | None:
    """Decode and verify a session JWT. Returns the payload dict or None on any failure.

    Tokens of another type signed with the same key (the signed state codec
    uses SECRET_KEY too) are rejected by the typ check.
    """
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("typ") != _SESSION_TYPE or not payload.get("sub"):
        return None
    return payload


# ---------------------------------------------------------------------------
# Personal number hashing
# ---------------------------------------------------------------------------

_PN_SEPARATORS = re.compile(r"[\s\-+]")


def hash_personal_number(raw: str, settings: Settings) -> str:
    """Return HMAC-SHA256(SECRET_KEY, normalized personal number) as hex.

    Separators are stripped first so "19900101-1234" and "199001011234"
    hash to the same value.
    """
    normalized = _PN_SEPARATORS.sub("", raw)
    return hmac.new(
        settings.secret_key.encode(),
        normalized.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, settings: Settings) -> None:
    """Write the session JWT as the va_session cookie on the parent domain.

    domain: COOKIE_DOMAIN (".vasaauktioner.se") so both the callback host and
        the application host see it.
    httponly=False: deliberate, see [R1] above.
    samesite="lax": sent on top-level navigations back into the app.
    max_age: matches the JWT expiry so both expire together.
    """
    response.set_cookie(
        settings.session_cookie_name,
        value=token,
        max_age=settings.session_ttl_seconds,
        path="/",
        domain=settings.cookie_domain,
        secure=settings.secure_cookies,
        httponly=False,
        samesite="lax",
    )
