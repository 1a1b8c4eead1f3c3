"""
API request and response models for va-auth HTTP endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# Deliberately loose: the profile store is not the place to enforce RFC 5322.
_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class ProfileCompleteRequest(BaseModel):
    """Request body for POST /api/profile/complete.

    accept_terms is validated in the route, not here, so a missing acceptance
    gets its own terms_required error code instead of a generic 422.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[str] = Field(default=None, max_length=254, pattern=_EMAIL_PATTERN)
    phone: Optional[str] = Field(default=None, max_length=32)
    address: Optional[str] = Field(default=None, max_length=200)
    zip: Optional[str] = Field(default=None, max_length=16)
    city: Optional[str] = Field(default=None, max_length=100)
    accept_terms: bool = False


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ProfileResponse(BaseModel):
    """Profile fields safe to show the logged-in user. Never the personal number hash."""

    subject: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    zip: Optional[str] = None
    city: Optional[str] = None
    needs_contact_info: bool
    accept_terms: bool


class SessionResponse(BaseModel):
    """Response for GET /api/auth/session."""

    subject: str
    needs_contact_info: bool


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = {}
