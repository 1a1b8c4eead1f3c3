"""
auth/dependencies.py -- FastAPI Depends() helpers for the va_session cookie.

The session is stateless: a valid signature and unexpired JWT is all there
is. try_get_session_subject() is the soft variant (returns None on failure).
get_session_subject() wraps it and raises HTTP 401 if there is no session.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.tokens import decode_session_token


def try_get_session_subject(request: Request) -> str | None:
    """Return the subject from a valid va_session cookie, None otherwise. Never raises."""
    settings = request.app.state.settings
    token = request.cookies.get(settings.session_cookie_name)
    if not token:
        return None
    payload = decode_session_token(token, settings)
    return payload["sub"] if payload else None


def get_session_subject(request: Request) -> str:
    """Require a session. Raises HTTP 401 if the request carries no valid va_session.

    Use as a FastAPI dependency:
        @router.post("/profile/complete")
        def route(subject: str = Depends(get_session_subject)): ...
    """
    subject = try_get_session_subject(request)
    if subject is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Login required."},
        )
    return subject
