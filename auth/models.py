"""
auth/models.py -- Domain dataclasses for the login pipeline.

Pattern: Data class (pure data container, near-zero logic). Stores and routes
do the work; these types only own the shape of the data that flows between
Start, Finalize and the profile store.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum


class LoginStage(str, Enum):
    """Finalize pipeline states, in order.

    Only used for logging: a failed callback is logged with the last stage it
    reached so operators can tell a state problem from a provider problem.
    """

    received = "RECEIVED"
    state_validated = "STATE_VALIDATED"
    token_exchanged = "TOKEN_EXCHANGED"
    claims_extracted = "CLAIMS_EXTRACTED"
    profile_reconciled = "PROFILE_RECONCILED"
    session_issued = "SESSION_ISSUED"


@dataclass
class LoginAttempt:
    """One Start -> Finalize round trip.

    Never persisted server-side. Whichever StateCodec is configured carries it
    across the redirect, either in short-lived cookies or inside a signed
    state parameter.
    """

    csrf_state: str
    return_url: str
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def begin(cls, csrf_state: str, return_url: str, ttl_seconds: int) -> LoginAttempt:
        issued = datetime.now(timezone.utc)
        return cls(
            csrf_state=csrf_state,
            return_url=return_url,
            issued_at=issued,
            expires_at=issued + timedelta(seconds=ttl_seconds),
        )


@dataclass
class IdentityClaims:
    """Claims extracted from the identity token.

    subject is the provider's stable user ID and the profile's natural key.
    personal_number_raw is only ever held in memory long enough to hash it.
    """

    subject: str
    display_name: str | None = None
    email: str | None = None
    phone_number: str | None = None
    personal_number_raw: str | None = None

    def __repr__(self) -> str:
        # Keep personal numbers out of tracebacks and debug logs.
        pn = "present" if self.personal_number_raw else "absent"
        return (
            f"IdentityClaims(subject={self.subject!r}, display_name={self.display_name!r}, "
            f"email={self.email!r}, phone_number={self.phone_number!r}, personal_number={pn})"
        )


@dataclass
class Profile:
    """A local user profile keyed by the provider subject.

    needs_contact_info starts True and is only cleared by the profile
    completion endpoint. Login reconciliation never touches it.
    """

    subject: str
    id: int | None = None
    display_name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    zip: str | None = None
    city: str | None = None
    personal_number_hash: str | None = None
    needs_contact_info: bool = True
    accept_terms: bool = False
    last_login_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class ReconcileResult:
    profile: Profile
    first_login: bool
