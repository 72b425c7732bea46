"""
Same-origin check for state-mutating requests.

Compares the Origin header (or, when absent, the origin of the Referer) with the
site's canonical origin and fails closed when neither header is present.

Only meaningful for browser traffic; non-browser clients need their own
credential scheme.
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from starlette.requests import Request


_DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(frozen=True)
class OriginCheck:
    allowed: bool
    reason: Optional[str] = None


def origin_of(url: str) -> Optional[str]:
    """Return scheme://host[:port] for an absolute http(s) URL, or None if malformed."""
    try:
        parts = urlsplit(url.strip())
        scheme = parts.scheme.lower()
        host = parts.hostname
        port = parts.port
    except ValueError:
        return None
    if scheme not in _DEFAULT_PORTS or not host:
        return None
    if ":" in host:
        host = f"[{host}]"
    if port is None or port == _DEFAULT_PORTS[scheme]:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


class OriginGuard:
    def __init__(self, site_url: str):
        expected = origin_of(site_url)
        if expected is None:
            raise ValueError(f"SITE_URL is not an absolute http(s) URL: {site_url!r}")
        self.expected_origin = expected

    def check(self, origin: Optional[str], referer: Optional[str]) -> OriginCheck:
        if origin:
            if origin == self.expected_origin:
                return OriginCheck(allowed=True)
            return OriginCheck(allowed=False, reason="bad_origin")

        if referer:
            referer_origin = origin_of(referer)
            if referer_origin is None:
                return OriginCheck(allowed=False, reason="invalid_referer")
            if referer_origin == self.expected_origin:
                return OriginCheck(allowed=True)
            return OriginCheck(allowed=False, reason="bad_referer")

        return OriginCheck(allowed=False, reason="missing_origin")

    def check_request(self, request: Request) -> OriginCheck:
        return self.check(request.headers.get("origin"), request.headers.get("referer"))
