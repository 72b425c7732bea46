import pytest

from sceneaccess.core.origin import OriginGuard, origin_of


@pytest.fixture
def guard():
    return OriginGuard("https://app.example.com/")


def test_matching_origin_allowed(guard):
    assert guard.check("https://app.example.com", None).allowed


def test_foreign_origin_denied(guard):
    result = guard.check("https://evil.example", None)
    assert not result.allowed
    assert result.reason == "bad_origin"


def test_origin_must_match_exactly(guard):
    assert not guard.check("http://app.example.com", None).allowed
    assert not guard.check("https://app.example.com:8443", None).allowed


def test_origin_wins_over_matching_referer(guard):
    result = guard.check("https://evil.example", "https://app.example.com/learn/1")
    assert not result.allowed


def test_referer_fallback_allowed(guard):
    assert guard.check(None, "https://app.example.com/works/42?tab=scenes").allowed


def test_foreign_referer_denied(guard):
    result = guard.check(None, "https://evil.example/app.example.com")
    assert not result.allowed
    assert result.reason == "bad_referer"


def test_malformed_referer_denied(guard):
    result = guard.check(None, "not a url")
    assert not result.allowed
    assert result.reason == "invalid_referer"


def test_missing_headers_denied(guard):
    result = guard.check(None, None)
    assert not result.allowed
    assert result.reason == "missing_origin"


def test_empty_origin_falls_back_to_referer(guard):
    assert guard.check("", "https://app.example.com/").allowed


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://App.Example.com:443/path", "https://app.example.com"),
        ("http://localhost:3000/x", "http://localhost:3000"),
        ("http://localhost:80", "http://localhost"),
        ("http://[::1]:8080/", "http://[::1]:8080"),
        ("ftp://example.com", None),
        ("//example.com/path", None),
        ("https://example.com:notaport/", None),
    ],
)
def test_origin_of(url, expected):
    assert origin_of(url) == expected


def test_invalid_site_url_rejected():
    with pytest.raises(ValueError):
        OriginGuard("localhost:3000")
