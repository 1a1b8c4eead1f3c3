"""
tests/test_return_url.py -- Unit tests for auth/redirects.py.

Covers the open-redirect rules for the post-login return URL and the
first-login flag.
"""

from __future__ import annotations

import pytest

from auth.redirects import resolve_return_url, with_first_login_flag

APP = "vasaauktioner.se"
DEFAULT = "https://vasaauktioner.se/post-login"


def _resolve(candidate):
    return resolve_return_url(candidate, APP, DEFAULT)


class TestResolveReturnUrl:
    @pytest.mark.parametrize(
        "candidate",
        [
            "https://vasaauktioner.se/lot/1",
            "https://app.vasaauktioner.se/my/bids?page=2",
            "https://VASAAUKTIONER.SE/",
        ],
    )
    def test_app_domain_urls_are_kept(self, candidate: str) -> None:
        assert _resolve(candidate).lower() == candidate.lower()

    def test_bare_path_is_rewritten_onto_app_domain(self) -> None:
        assert _resolve("/lot/42?tab=bids") == "https://vasaauktioner.se/lot/42?tab=bids"

    @pytest.mark.parametrize(
        "candidate",
        [
            None,
            "",
            "https://evil.example/",
            "https://evilvasaauktioner.se/",
            "https://vasaauktioner.se.evil.example/",
            "http://vasaauktioner.se/",
            "//evil.example/",
            "/\\evil.example",
            "javascript:alert(1)",
            "https://user:pw@vasaauktioner.se/",
            "https://vasaauktioner.se/\r\nSet-Cookie: x=1",
            "https://vasaauktioner.se:notaport/",
            "lot/1",
        ],
    )
    def test_everything_else_falls_back_to_default(self, candidate) -> None:
        assert _resolve(candidate) == DEFAULT

    @pytest.mark.parametrize(
        ("candidate", "expected"),
        [
            ("https://vasaauktioner.se/x?first=1", "https://vasaauktioner.se/x"),
            ("https://vasaauktioner.se/x?first=1&a=2", "https://vasaauktioner.se/x?a=2"),
            ("/x?a=2&first=1", "https://vasaauktioner.se/x?a=2"),
        ],
    )
    def test_first_flag_is_dropped(self, candidate: str, expected: str) -> None:
        assert _resolve(candidate) == expected

    def test_port_is_preserved(self) -> None:
        assert _resolve("https://app.vasaauktioner.se:8443/x") == "https://app.vasaauktioner.se:8443/x"


class TestFirstLoginFlag:
    def test_appends_flag(self) -> None:
        assert with_first_login_flag("https://vasaauktioner.se/post-login") == (
            "https://vasaauktioner.se/post-login?first=1"
        )

    def test_keeps_existing_query(self) -> None:
        assert with_first_login_flag("https://vasaauktioner.se/lot/1?tab=bids") == (
            "https://vasaauktioner.se/lot/1?tab=bids&first=1"
        )

    def test_replaces_smuggled_flag(self) -> None:
        url = with_first_login_flag("https://vasaauktioner.se/?first=0&x=1")
        assert url == "https://vasaauktioner.se/?x=1&first=1"
