"""
auth/oauth.py -- Identity provider client: authorization URL, code exchange,
identity token verification.

Uses authlib's requests-based OAuth2Session for the two OAuth legs. A fresh
session is created per call: nothing is shared between requests except the
JWKS memo below.

Security notes:
  [H1] Client authentication fallback. The exchange first presents the client
       credentials in the POST body (client_secret_post). Providers differ on
       what they accept, so if -- and only if -- the token endpoint rejects the
       client authentication itself (HTTP 401, or error=invalid_client /
       unauthorized_client) the same code is presented once more with HTTP
       Basic (client_secret_basic). Any other rejection (invalid_grant, 5xx,
       timeouts) fails immediately. This is auth-method negotiation, not a
       retry policy.

  [H2] Upstream bodies are logged truncated, the client secret never. The
       browser only ever sees the generic UpstreamError message.

  [H3] Identity token verification. With VERIFY_ID_TOKEN=true the token's
       signature, issuer, audience and expiry are checked against the provider
       JWKS (python-jose) before any claim is trusted. With it off only the
       payload segment is decoded -- a startup warning says so.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from typing import Any

import requests
from authlib.integrations.base_client import OAuthError
from authlib.integrations.requests_client import OAuth2Session
from jose import jwt
from jose.exceptions import JOSEError

from auth.claims import decode_id_token_payload
from auth.errors import ProtocolError, UpstreamError, truncate
from core.config import Settings

logger = logging.getLogger("vaauth.auth.oauth")

_CLIENT_AUTH_ERRORS = frozenset({"invalid_client", "unauthorized_client"})

# Module-level session for the JWKS document. max_redirects=3 replaces the
# requests default of 30 -- the provider is a known host.
_jwks_session = requests.Session()
_jwks_session.max_redirects = 3


class _ClientAuthRejected(Exception):
    """Token endpoint refused the client_secret_post credentials."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"HTTP {status}")
        self.status = status
        self.body = body


def _error_code(resp: requests.Response) -> str | None:
    try:
        data = resp.json()
    except ValueError:
        return None
    return data.get("error") if isinstance(data, dict) else None


# JWS algorithm family -> JWK key type (RFC 7518 section 6.1).
_KEY_TYPES = {"RS": "RSA", "PS": "RSA", "ES": "EC", "HS": "oct", "Ed": "OKP"}


def _select_key(jwks: dict[str, Any], kid: str | None, alg: str) -> dict[str, Any] | None:
    """Return the signing key for a token header, or None.

    Keys of another type, keys marked for encryption, and (when the header
    names one) keys with another kid are skipped. Without a kid the first
    remaining key is used.
    """
    kty = _KEY_TYPES.get(alg[:2])
    for key in jwks.get("keys", []):
        if not isinstance(key, dict) or key.get("kty") != kty:
            continue
        if key.get("use", "sig") != "sig":
            continue
        if kid and key.get("kid") != kid:
            continue
        return key
    return None


class IdentityProviderClient:
    """Talks to one OIDC-like provider on behalf of Start and Finalize.

    Usage:
        idp = IdentityProviderClient(settings)
        url = idp.authorization_url(state)
        id_token = idp.exchange_code(code)
        payload = idp.id_token_payload(id_token)
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        base = settings.idp_base_url
        self.authorize_endpoint = base + settings.idp_authorize_path
        self.token_endpoint = base + settings.idp_token_path
        self.jwks_endpoint = base + settings.idp_jwks_path
        self._jwks: dict[str, Any] | None = None
        if not settings.verify_id_token:
            logger.warning("VERIFY_ID_TOKEN is off: identity token signatures will NOT be checked")

    def _session(self, auth_method: str = "client_secret_post") -> OAuth2Session:
        return OAuth2Session(
            client_id=self.settings.idp_client_id,
            client_secret=self.settings.idp_client_secret,
            token_endpoint_auth_method=auth_method,
            redirect_uri=self.settings.idp_redirect_uri,
            scope=self.settings.idp_scope,
        )

    # ------------------------------------------------------------------
    # Authorization request
    # ------------------------------------------------------------------

    def authorization_url(self, state: str) -> str:
        """Return the provider authorize URL carrying client_id, redirect_uri,
        response_type=code, scope and state."""
        with self._session() as session:
            url, _ = session.create_authorization_url(self.authorize_endpoint, state=state)
        return url

    # ------------------------------------------------------------------
    # Code exchange
    # ------------------------------------------------------------------

    def exchange_code(self, code: str) -> str:
        """Exchange an authorization code for the identity token string.

        Raises:
            UpstreamError: token_exchange_failed on any non-2xx, transport
                error, timeout, malformed body, or missing id_token.
        """
        try:
            token = self._fetch_token(code, "client_secret_post")
        except _ClientAuthRejected as rejected:
            logger.info(
                "Token endpoint rejected client_secret_post (HTTP %s); retrying with client_secret_basic",
                rejected.status,
            )
            # The hook never raises _ClientAuthRejected for Basic: a second
            # rejection is a plain UpstreamError.
            token = self._fetch_token(code, "client_secret_basic")

        id_token = token.get("id_token")
        if not id_token or not isinstance(id_token, str):
            raise UpstreamError(
                "token_exchange_failed",
                "token response has no id_token",
                upstream_body=", ".join(sorted(token.keys())),
            )
        return id_token

    def _fetch_token(self, code: str, auth_method: str) -> dict:
        def check_response(resp: requests.Response) -> requests.Response:
            # authlib compliance hook: runs on the raw token response before
            # authlib parses it, so non-2xx never reaches its JSON parsing.
            if resp.ok:
                return resp
            body = truncate(resp.text or "")
            if auth_method == "client_secret_post" and (
                resp.status_code == 401 or _error_code(resp) in _CLIENT_AUTH_ERRORS
            ):
                raise _ClientAuthRejected(resp.status_code, body)
            raise UpstreamError(
                "token_exchange_failed",
                f"token endpoint returned HTTP {resp.status_code}",
                upstream_status=resp.status_code,
                upstream_body=body,
            )

        session = self._session(auth_method)
        session.register_compliance_hook("access_token_response", check_response)
        try:
            with session:
                return dict(
                    session.fetch_token(
                        self.token_endpoint,
                        code=code,
                        timeout=self.settings.idp_timeout_seconds,
                    )
                )
        except OAuthError as exc:
            raise UpstreamError("token_exchange_failed", f"provider error {exc.error!r}") from exc
        except requests.RequestException as exc:
            raise UpstreamError("token_exchange_failed", f"{type(exc).__name__}: {exc}") from exc
        except ValueError as exc:
            raise UpstreamError("token_exchange_failed", "token response is not JSON") from exc

    # ------------------------------------------------------------------
    # Identity token
    # ------------------------------------------------------------------

    def id_token_payload(self, id_token: str) -> dict:
        """Return the identity token's claims, verified when VERIFY_ID_TOKEN is on [H3].

        The token is checked against the one JWKS key whose kid and key type
        match its header. A key set that mixes key types (EC next to RSA) is
        never handed to python-jose as a whole.

        Raises:
            ProtocolError: malformed_id_token or invalid_id_token.
            UpstreamError: jwks_unavailable when the key set cannot be fetched.
        """
        if not self.settings.verify_id_token:
            return decode_id_token_payload(id_token)

        try:
            header = jwt.get_unverified_header(id_token)
        except JOSEError as exc:
            raise ProtocolError("malformed_id_token", "unreadable header") from exc
        kid = header.get("kid")
        alg = header.get("alg")
        if alg not in self.settings.id_token_algorithms:
            raise ProtocolError("invalid_id_token", f"algorithm {alg!r} not allowed")

        key = _select_key(self._get_jwks(refresh=False), kid, alg)
        if key is None:
            # Key rotation: the provider may have published a new key since the memo.
            key = _select_key(self._get_jwks(refresh=True), kid, alg)
        if key is None:
            raise ProtocolError("invalid_id_token", f"no {alg} signing key for kid {kid!r}")

        try:
            return jwt.decode(
                id_token,
                key,
                algorithms=[alg],
                audience=self.settings.idp_client_id,
                issuer=self.settings.idp_issuer,
                options={"verify_at_hash": False},
            )
        except JOSEError as exc:
            raise ProtocolError("invalid_id_token", str(exc)) from exc

    def _get_jwks(self, refresh: bool) -> dict[str, Any]:
        if self._jwks is not None and not refresh:
            return self._jwks
        try:
            resp = _jwks_session.get(self.jwks_endpoint, timeout=self.settings.idp_timeout_seconds)
            resp.raise_for_status()
            jwks = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise UpstreamError("jwks_unavailable", f"{type(exc).__name__}: {exc}") from exc
        if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
            raise UpstreamError("jwks_unavailable", "JWKS document has no keys list")
        self._jwks = jwks
        return jwks
