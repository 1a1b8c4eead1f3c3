"""
api/routes/v1/profile.py -- Profile completion after first login.

Routes:
  POST /api/profile/complete  -- store contact details, accept terms

The frontend sends users here when Finalize appended ?first=1 or
/api/auth/session reports needs_contact_info=true. This is the only place
needs_contact_info is ever cleared.

Security:
  [A1] Requires a valid va_session. The subject comes from the cookie, never
       from the request body.
  [A2] CORS allows only the app origin with credentials, so another site
       cannot post here with the user's cookie.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import ProfileCompleteRequest, ProfileResponse
from auth.dependencies import get_session_subject
from auth.store import ProfileStore

logger = logging.getLogger("vaauth.api.profile")

router = APIRouter()


@router.post("/api/profile/complete", response_model=ProfileResponse)
def complete_profile(
    body: ProfileCompleteRequest,
    request: Request,
    subject: str = Depends(get_session_subject),
) -> ProfileResponse:
    """Save contact details for the session's subject and clear needs_contact_info."""
    if not body.accept_terms:
        raise HTTPException(
            status_code=400,
            detail={"code": "terms_required", "message": "The terms must be accepted."},
        )

    store: ProfileStore = request.app.state.profile_store
    profile = store.complete_profile(
        subject,
        email=body.email,
        phone=body.phone,
        address=body.address,
        zip_code=body.zip,
        city=body.city,
    )
    logger.info("profile completed for subject=%s", subject)
    return ProfileResponse(
        subject=profile.subject,
        display_name=profile.display_name,
        email=profile.email,
        phone=profile.phone,
        address=profile.address,
        zip=profile.zip,
        city=profile.city,
        needs_contact_info=profile.needs_contact_info,
        accept_terms=profile.accept_terms,
    )
