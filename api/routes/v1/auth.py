"""
api/routes/v1/auth.py -- Federated login endpoints.

Routes:
  GET /auth/start?return=<url>           -- bind state, 302 to the provider
  GET /auth/finalize?code=&state=        -- provider callback, issue va_session
  GET /api/auth/session                  -- subject + onboarding flag for a session

Security:
  [C2] Return URLs are resolved through resolve_return_url() in Start and again
       on whatever the state codec recovers in Finalize.
  [F1] Fail closed. A state that does not match the binding never gets a
       session cookie: the browser is sent to DEFAULT_RETURN_URL with no detail.
  [F2] Ordering. va_session is only set after state validation, token
       exchange, claim extraction and profile reconciliation all succeeded.
  [M5] Cache-Control: no-store on every login response.

Both login handlers are plain def: the token exchange and the store calls
block, so FastAPI runs them in its thread pool.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from api.limiter import limiter, login_rate_limit
from api.models import ErrorDetail, ErrorResponse, SessionResponse
from auth.claims import extract_claims
from auth.dependencies import get_session_subject
from auth.errors import IntegrityError, LoginFlowError, UpstreamError, ValidationError
from auth.models import LoginAttempt, LoginStage
from auth.oauth import IdentityProviderClient
from auth.redirects import resolve_return_url, with_first_login_flag
from auth.state import StateCodec
from auth.store import ProfileStore
from auth.tokens import create_session_token, generate_state_token, hash_personal_number, set_session_cookie

logger = logging.getLogger("vaauth.api.auth")

# Auth policy:
# - GET /auth/start:        public -- entry point of the login flow
# - GET /auth/finalize:     public -- provider callback, protected by state binding
# - GET /api/auth/session:  requires va_session (get_session_subject)
router = APIRouter()


def login_error_response(exc: LoginFlowError) -> JSONResponse:
    """Render a pipeline failure as the standard error envelope.

    Only the reason code and the class-level public message are exposed.
    """
    resp = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.reason, message=exc.public_message)).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _log_failure(stage: LoginStage, exc: LoginFlowError) -> None:
    if isinstance(exc, UpstreamError) and exc.upstream_status is not None:
        logger.error(
            "finalize failed after %s: %s (%s) upstream_status=%s upstream_body=%r",
            stage.value,
            exc.reason,
            exc.detail,
            exc.upstream_status,
            exc.upstream_body,
        )
    else:
        logger.error("finalize failed after %s: %s (%s)", stage.value, exc.reason, exc.detail)


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.get("/auth/start")
def start(request: Request) -> RedirectResponse:
    """Redirect the browser to the identity provider's authorization endpoint.

    Flow:
      1. Resolve ?return= to a safe absolute URL (or the default) [C2].
      2. Mint a 256-bit CSRF state and bind it to the return URL via the
         configured StateCodec.
      3. 302 to the provider with client_id, redirect_uri, response_type=code,
         scope and state.
    """
    settings = request.app.state.settings
    codec: StateCodec = request.app.state.state_codec
    idp: IdentityProviderClient = request.app.state.idp

    return_url = resolve_return_url(
        request.query_params.get("return"),
        settings.app_domain,
        settings.default_return_url,
    )
    attempt = LoginAttempt.begin(generate_state_token(), return_url, settings.state_ttl_seconds)
    location = idp.authorization_url(codec.encode(attempt))

    resp = RedirectResponse(location, status_code=302)
    codec.persist(resp, attempt)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    logger.info("start: redirecting to provider (return=%s)", return_url)
    return resp


# ---------------------------------------------------------------------------
# Finalize
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)
@router.get("/auth/finalize")
def finalize(request: Request) -> Response:
    """Handle the provider callback and issue the va_session cookie.

    Flow (LoginStage):
      RECEIVED           -- code present, else 400 missing_code (no side effects).
      STATE_VALIDATED    -- StateCodec.recover(); mismatch fails closed [F1].
      TOKEN_EXCHANGED    -- code -> id_token; failure is 502.
      CLAIMS_EXTRACTED   -- sub required; failure is 502.
      PROFILE_RECONCILED -- atomic upsert; failure is 502.
      SESSION_ISSUED     -- va_session + 302 to the return URL (?first=1 on
                            first login) [F2].
    """
    settings = request.app.state.settings
    codec: StateCodec = request.app.state.state_codec
    idp: IdentityProviderClient = request.app.state.idp
    store: ProfileStore = request.app.state.profile_store

    stage = LoginStage.received
    code = request.query_params.get("code")
    if not code:
        provider_error = request.query_params.get("error")
        if provider_error:
            logger.warning("finalize: provider returned error=%r instead of a code", provider_error[:100])
        raise ValidationError("missing_code", "callback has no code parameter")

    # [F1] fail closed: no session without a validated state
    try:
        return_url = codec.recover(request, request.query_params.get("state"))
    except IntegrityError as exc:
        logger.warning("finalize: state check failed (%s); redirecting without session", exc.reason)
        resp = RedirectResponse(settings.default_return_url, status_code=302)
        codec.discard(resp)
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp
    stage = LoginStage.state_validated

    try:
        id_token = idp.exchange_code(code)
        stage = LoginStage.token_exchanged

        claims = extract_claims(idp.id_token_payload(id_token))
        stage = LoginStage.claims_extracted

        pn_hash = hash_personal_number(claims.personal_number_raw, settings) if claims.personal_number_raw else None
        result = store.reconcile_login(claims, pn_hash)
        stage = LoginStage.profile_reconciled
    except LoginFlowError as exc:
        _log_failure(stage, exc)
        resp = login_error_response(exc)
        codec.discard(resp)
        return resp

    target = with_first_login_flag(return_url) if result.first_login else return_url
    resp = RedirectResponse(target, status_code=302)
    set_session_cookie(resp, create_session_token(claims.subject, settings), settings)  # [F2]
    codec.discard(resp)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    stage = LoginStage.session_issued
    logger.info(
        "finalize: %s for subject=%s first_login=%s -> %s",
        stage.value,
        claims.subject,
        result.first_login,
        return_url,
    )
    return resp


# ---------------------------------------------------------------------------
# Session introspection
# ---------------------------------------------------------------------------


@router.get("/api/auth/session", response_model=SessionResponse)
def session(request: Request, subject: str = Depends(get_session_subject)) -> SessionResponse:
    """Return the session subject and whether onboarding is still pending.

    A valid JWT for a subject with no profile row (store wiped) is treated as
    no session.
    """
    store: ProfileStore = request.app.state.profile_store
    profile = store.get_by_subject(subject)
    if profile is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Login required."},
        )
    return SessionResponse(subject=profile.subject, needs_contact_info=profile.needs_contact_info)
