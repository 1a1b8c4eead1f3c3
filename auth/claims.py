"""
auth/claims.py -- Identity token payload decoding and claim extraction.

Providers disagree on where optional attributes live. Swedish BankID brokers
alone use at least five names for the personal identity number. Instead of
ad hoc lookups, each logical field has an ordered tuple of extractors; the
first one that yields a non-empty string wins. The tuples are provider
compatibility shims: add a new candidate at the end, never reorder silently.

subject ("sub") is the exception: it is required, has no alternates, and its
absence is a ProtocolError -- the profile's natural key cannot be guessed.
"""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Callable
from typing import Any, Optional

from auth.errors import ProtocolError
from auth.models import IdentityClaims

Extractor = Callable[[dict[str, Any]], Optional[str]]


def decode_id_token_payload(id_token: str) -> dict[str, Any]:
    """Decode the payload segment of header.payload.signature. No signature check.

    Raises:
        ProtocolError: malformed_id_token when the token does not have three
            segments or the payload is not base64url-encoded JSON object.
    """
    parts = id_token.split(".")
    if len(parts) != 3 or not parts[1]:
        raise ProtocolError("malformed_id_token", f"expected 3 segments, got {len(parts)}")
    segment = parts[1] + "=" * (-len(parts[1]) % 4)  # re-pad
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ProtocolError("malformed_id_token", "payload is not base64url JSON") from exc
    if not isinstance(payload, dict):
        raise ProtocolError("malformed_id_token", "payload is not a JSON object")
    return payload


# ---------------------------------------------------------------------------
# Candidate extractors
# ---------------------------------------------------------------------------


def claim(name: str) -> Extractor:
    """Extractor for a single top-level string claim."""

    def extract(payload: dict[str, Any]) -> str | None:
        value = payload.get(name)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    extract.__name__ = f"claim_{name}"
    return extract


def _given_and_family(payload: dict[str, Any]) -> str | None:
    parts = [claim(n)(payload) for n in ("given_name", "family_name")]
    joined = " ".join(p for p in parts if p)
    return joined or None


CLAIM_CANDIDATES: dict[str, tuple[Extractor, ...]] = {
    "display_name": (claim("name"), _given_and_family, claim("preferred_username")),
    "email": (claim("email"),),
    "phone_number": (claim("phone_number"), claim("phone")),
    "personal_number_raw": (
        claim("ssn"),
        claim("socialno"),
        claim("personal_number"),
        claim("personalNumber"),
        claim("nin"),
    ),
}


def first_present(payload: dict[str, Any], extractors: tuple[Extractor, ...]) -> str | None:
    for extract in extractors:
        value = extract(payload)
        if value is not None:
            return value
    return None


def extract_claims(payload: dict[str, Any]) -> IdentityClaims:
    """Map a decoded identity token payload onto IdentityClaims.

    Optional claims are best-effort: missing or non-string values become None.

    Raises:
        ProtocolError: missing_subject when "sub" is absent or blank.
    """
    subject = claim("sub")(payload)
    if subject is None:
        raise ProtocolError("missing_subject", "identity token has no sub claim")
    optional = {field: first_present(payload, extractors) for field, extractors in CLAIM_CANDIDATES.items()}
    return IdentityClaims(subject=subject, **optional)
