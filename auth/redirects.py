"""
auth/redirects.py -- Post-login return URL resolution.

Security notes:
  [C2] Open redirect prevention. The return URL travels through the identity
       provider and back, so it is attacker-controllable at every hop. Only
       two shapes are accepted:
         - absolute https URLs whose host is the app domain or a subdomain of it
         - bare paths ("/dashboard"), rewritten onto https://{app_domain}
       Everything else collapses to the fixed default URL. The host check is a
       label-boundary comparison: "evilvasaauktioner.se" is not a subdomain of
       "vasaauktioner.se".

  A first= parameter in the candidate is dropped: the first-login flag is set
  by Finalize alone.

  resolve_return_url() runs twice per login: once in Start (before binding)
  and again in Finalize on whatever the state codec hands back. The second run
  costs nothing and means a tampered return cookie is still contained.
"""

from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


def _is_app_host(host: str, app_domain: str) -> bool:
    host = host.lower().rstrip(".")
    return host == app_domain or host.endswith("." + app_domain)


def _has_unsafe_chars(candidate: str) -> bool:
    # Backslashes are normalized to "/" by some browsers ("/\evil.example").
    return "\\" in candidate or any(ord(ch) < 0x20 or ord(ch) == 0x7F or ch.isspace() for ch in candidate)


def _drop_first_flag(query: str) -> str:
    # first=1 is only ever added by Finalize, on a first login.
    pairs = parse_qsl(query, keep_blank_values=True)
    if not any(k == "first" for k, _ in pairs):
        return query
    return urlencode([(k, v) for k, v in pairs if k != "first"])


def resolve_return_url(candidate: str | None, app_domain: str, default_url: str) -> str:
    """Return a safe absolute post-login URL for candidate, or default_url.

    Args:
        candidate:   Raw value from ?return= or the state binding. May be None.
        app_domain:  Registered application domain, e.g. "vasaauktioner.se".
        default_url: Fixed landing URL used for anything not accepted.
    """
    if not candidate or _has_unsafe_chars(candidate):
        return default_url

    # Bare path. "//host" is protocol-relative and would leave the domain.
    if candidate.startswith("/"):
        if candidate.startswith("//"):
            return default_url
        candidate = f"https://{app_domain}{candidate}"

    try:
        parts = urlsplit(candidate)
        host = parts.hostname
        port = parts.port  # raises ValueError on garbage ports
    except ValueError:
        return default_url

    if parts.scheme != "https" or not host:
        return default_url
    if parts.username is not None or parts.password is not None:
        return default_url
    if not _is_app_host(host, app_domain):
        return default_url

    netloc = host if port is None else f"{host}:{port}"
    return urlunsplit(("https", netloc, parts.path or "/", _drop_first_flag(parts.query), parts.fragment))


def with_first_login_flag(url: str) -> str:
    """Append first=1 to url, keeping any existing query parameters.

    The client reads the flag to start onboarding. Any first= already present
    is replaced so the flag cannot be smuggled in through the return URL.
    """
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "first"]
    query.append(("first", "1"))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))
