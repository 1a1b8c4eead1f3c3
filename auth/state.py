"""
auth/state.py -- CSRF state binding across the identity-provider round trip.

Pattern: Strategy. StateCodec is the single capability Start and Finalize
talk to. Two implementations exist and exactly one is built at startup by
make_state_codec() from STATE_STRATEGY. Mixing strategies per request is what
produces state-confusion bugs, so the choice is never revisited after boot.

  CookieStateCodec ("cookie", default)
      The random state goes to the provider as-is and is also written to the
      va_oauth_state cookie; the return URL goes to va_return. Finalize
      compares query state with the cookie in constant time. Both cookies are
      host-only (callback subdomain), Secure, HttpOnly and expire within
      STATE_TTL_SECONDS. They are cleared on every Finalize outcome, which
      makes the state single use.

  SignedStateCodec ("signed")
      The state parameter is an HS256 JWT carrying the random nonce, the return
      URL and an expiry. Forgery is prevented by the signature, staleness by
      exp. The nonce alone is also written to the va_state_nonce cookie (same
      attributes as above) and must match the JWT's nonce in Finalize, so a
      state minted in one browser cannot complete a login in another. The
      cookie is cleared on every Finalize outcome.

Both codecs re-run resolve_return_url() on what they recover [C2].

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hmac
import logging
from abc import ABC, abstractmethod

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import IntegrityError
from auth.models import LoginAttempt
from auth.redirects import resolve_return_url
from core.config import Settings

logger = logging.getLogger("vaauth.auth.state")

STATE_COOKIE = "va_oauth_state"
RETURN_COOKIE = "va_return"
NONCE_COOKIE = "va_state_nonce"

_ALGORITHM = "HS256"
_STATE_TYPE = "va_state"


class StateCodec(ABC):
    """Binds {state, return_url} in Start and recovers it in Finalize."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _safe_return(self, candidate: str | None) -> str:
        return resolve_return_url(candidate, self.settings.app_domain, self.settings.default_return_url)

    def _set(self, response, key: str, value: str, max_age: int) -> None:
        # Host-only: no domain, so the cookie stays on the callback host.
        response.set_cookie(
            key,
            value=value,
            max_age=max_age,
            path="/",
            secure=self.settings.secure_cookies,
            httponly=True,
            samesite="lax",
        )

    @abstractmethod
    def encode(self, attempt: LoginAttempt) -> str:
        """Return the state parameter to send to the identity provider."""

    def persist(self, response, attempt: LoginAttempt) -> None:  # noqa: B027 -- optional hook
        """Attach whatever the codec needs to the Start redirect. Default: nothing."""

    @abstractmethod
    def recover(self, request, received_state: str | None) -> str:
        """Validate received_state and return the bound return URL.

        Raises:
            IntegrityError: state missing, forged, expired or not matching.
        """

    def discard(self, response) -> None:  # noqa: B027 -- optional hook
        """Invalidate any client-held binding. Default: nothing."""


class CookieStateCodec(StateCodec):
    name = "cookie"

    def encode(self, attempt: LoginAttempt) -> str:
        return attempt.csrf_state

    def persist(self, response, attempt: LoginAttempt) -> None:
        ttl = self.settings.state_ttl_seconds
        self._set(response, STATE_COOKIE, attempt.csrf_state, ttl)
        self._set(response, RETURN_COOKIE, attempt.return_url, ttl)

    def recover(self, request, received_state: str | None) -> str:
        expected = request.cookies.get(STATE_COOKIE)
        if not received_state or not expected:
            raise IntegrityError("state_missing", f"query={bool(received_state)} cookie={bool(expected)}")
        if not hmac.compare_digest(received_state.encode(), expected.encode()):
            raise IntegrityError("state_mismatch")
        return self._safe_return(request.cookies.get(RETURN_COOKIE))

    def discard(self, response) -> None:
        for key in (STATE_COOKIE, RETURN_COOKIE):
            self._set(response, key, "", 0)


class SignedStateCodec(StateCodec):
    name = "signed"

    def encode(self, attempt: LoginAttempt) -> str:
        payload = {
            "typ": _STATE_TYPE,
            "nonce": attempt.csrf_state,
            "ret": attempt.return_url,
            "iat": attempt.issued_at,
            "exp": attempt.expires_at,
        }
        return jwt.encode(payload, self.settings.secret_key, algorithm=_ALGORITHM)

    def persist(self, response, attempt: LoginAttempt) -> None:
        self._set(response, NONCE_COOKIE, attempt.csrf_state, self.settings.state_ttl_seconds)

    def recover(self, request, received_state: str | None) -> str:
        if not received_state:
            raise IntegrityError("state_missing")
        try:
            payload = jwt.decode(received_state, self.settings.secret_key, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise IntegrityError("state_expired") from exc
        except JWTError as exc:
            raise IntegrityError("state_mismatch", "signature or format invalid") from exc
        if payload.get("typ") != _STATE_TYPE or not payload.get("nonce"):
            raise IntegrityError("state_mismatch", "not a state token")

        browser_nonce = request.cookies.get(NONCE_COOKIE)
        if not browser_nonce:
            raise IntegrityError("state_missing", "nonce cookie absent")
        if not hmac.compare_digest(str(payload["nonce"]).encode(), browser_nonce.encode()):
            raise IntegrityError("state_mismatch", "nonce does not match this browser")
        return self._safe_return(payload.get("ret"))

    def discard(self, response) -> None:
        self._set(response, NONCE_COOKIE, "", 0)


_CODECS: dict[str, type[StateCodec]] = {
    CookieStateCodec.name: CookieStateCodec,
    SignedStateCodec.name: SignedStateCodec,
}


def make_state_codec(settings: Settings) -> StateCodec:
    """Build the one StateCodec this process will use."""
    codec = _CODECS[settings.state_strategy](settings)
    logger.info("State binding strategy: %s", settings.state_strategy)
    return codec
