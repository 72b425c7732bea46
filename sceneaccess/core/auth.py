"""
Session authentication.

Resolves the calling identity from a signed session token:
- Authorization: Bearer <jwt>, or
- the session cookie (SESSION_COOKIE_NAME).

Tokens are HS256 JWTs issued by the identity provider and verified with
SESSION_SECRET. Falls back to the X-User-Id header only when explicitly
enabled (dev/tests). Anything that does not verify resolves to anonymous;
callers decide whether anonymous is acceptable.
"""
import logging
import time
from typing import Any, Dict, Optional, Sequence

import jwt
from starlette.requests import Request

from sceneaccess.models.access import CurrentUser

logger = logging.getLogger(__name__)


def verify_session_token(token: str, secret: str, algorithms: Sequence[str] = ("HS256",)) -> Dict[str, Any]:
    """
    Verify a session JWT and return its claims.

    Raises jwt.PyJWTError on bad signature, expiry or a missing subject.
    """
    claims = jwt.decode(
        token,
        secret,
        algorithms=list(algorithms),
        options={"verify_signature": True, "verify_exp": True, "verify_aud": False, "require": ["sub", "exp"]},
    )
    if not claims.get("sub"):
        raise jwt.InvalidTokenError("No 'sub' claim in token")
    return claims


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()
    return token or None


class Authenticator:
    def __init__(
        self,
        secret: Optional[str],
        *,
        cookie_name: str = "sa_session",
        allow_user_id_header: bool = False,
        algorithms: Sequence[str] = ("HS256",),
    ):
        self.secret = secret
        self.cookie_name = cookie_name
        self.allow_user_id_header = allow_user_id_header
        self.algorithms = tuple(algorithms)

    def get_current_user(self, request: Request) -> Optional[CurrentUser]:
        """Return the authenticated user, or None for anonymous callers."""
        token = _bearer_token(request) or request.cookies.get(self.cookie_name)
        if token:
            if not self.secret:
                logger.debug("Session token presented but SESSION_SECRET is not configured")
                return None
            try:
                claims = verify_session_token(token, self.secret, self.algorithms)
            except jwt.ExpiredSignatureError:
                logger.debug("Session token expired")
                return None
            except jwt.PyJWTError as e:
                logger.debug(f"Invalid session token: {e}")
                return None
            return CurrentUser(id=str(claims["sub"]), email=claims.get("email"))

        if self.allow_user_id_header:
            user_id = request.headers.get("X-User-Id", "").strip()
            if user_id:
                return CurrentUser(id=user_id)

        return None


def build_authenticator(cfg) -> Authenticator:
    return Authenticator(
        cfg.SESSION_SECRET,
        cookie_name=cfg.SESSION_COOKIE_NAME,
        allow_user_id_header=cfg.ALLOW_USER_ID_HEADER,
    )


def create_session_token(
    sub: str = "test_user_123",
    email: Optional[str] = "test@example.com",
    exp_minutes: int = 60,
    secret: str = "test-session-secret",
) -> str:
    """Create a signed session token (tests and local tooling)."""
    now = int(time.time())
    payload = {
        "sub": sub,
        "email": email,
        "iat": now,
        "exp": now + (exp_minutes * 60),
    }
    return jwt.encode(payload, secret, algorithm="HS256")
