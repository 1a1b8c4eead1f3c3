"""
auth/errors.py -- Typed failures for the login pipeline.

Every Finalize step either succeeds or raises one of these. The reason string
is a stable machine-readable code (missing_code, state_mismatch,
token_exchange_failed, missing_subject, profile_store_error, ...). It is the
only piece of the failure that reaches the browser, together with the
class-level public_message.

Upstream details (provider status code, truncated body) ride along on
UpstreamError for the logs and are never rendered.
"""

from __future__ import annotations

_MAX_LOGGED_BODY = 300


class LoginFlowError(Exception):
    """Base class for login pipeline failures."""

    status_code = 500
    public_message = "Login failed."

    def __init__(self, reason: str, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class ValidationError(LoginFlowError):
    """Malformed callback input. Fails fast, before any side effect."""

    status_code = 400
    public_message = "Invalid login request."


class IntegrityError(LoginFlowError):
    """The callback state does not match what Start bound.

    Handled by failing closed: no session, redirect to the default URL, no
    detail exposed.
    """

    status_code = 401
    public_message = "Login could not be verified."


class UpstreamError(LoginFlowError):
    """The identity provider or the profile store failed or returned junk."""

    status_code = 502
    public_message = "Login service temporarily unavailable."

    def __init__(
        self,
        reason: str,
        detail: str = "",
        *,
        upstream_status: int | None = None,
        upstream_body: str | None = None,
    ) -> None:
        super().__init__(reason, detail)
        self.upstream_status = upstream_status
        self.upstream_body = truncate(upstream_body) if upstream_body is not None else None


class ProtocolError(LoginFlowError):
    """The provider answered, but the identity token breaks the protocol."""

    status_code = 502
    public_message = "Login provider returned an unusable identity."


def truncate(body: str, limit: int = _MAX_LOGGED_BODY) -> str:
    if len(body) <= limit:
        return body
    return body[:limit] + "...[truncated]"
