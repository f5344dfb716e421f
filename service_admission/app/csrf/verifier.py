"""
CSRF verification using the double-submit cookie pattern.

A signed, time-boxed token is set as an httpOnly cookie and must be
echoed byte-for-byte in the ``x-csrf-token`` header of every
state-changing request. No server-side state is kept.
"""

import hmac
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

import jwt
from jwt.utils import base64url_decode, base64url_encode
from fastapi import Request

from shared.logging import get_logger
from shared.errors import InvalidCsrfTokenError

ALGORITHM = "HS256"
TOKEN_TYPE = "csrf"
MIN_SECRET_LENGTH = 32
CSRF_HEADER_NAME = "x-csrf-token"
SECURE_COOKIE_NAME = "__Host-csrf"
COOKIE_NAME = "csrf"
PROTECTED_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

DEFAULT_EXEMPT_PATHS = (
    "/api/auth/signin",
    "/api/auth/signup",
    "/api/auth/verify-email",
    "/api/auth/reset",
    "/api/webhook/payos",
    "/api/health",
)


@dataclass(frozen=True)
class CsrfToken:
    token: str
    cookie_value: str


class CsrfVerifier:
    """Issues and checks CSRF tokens."""

    def __init__(
        self,
        secret: str,
        expiry_seconds: int = 24 * 3600,
        exempt_paths: Iterable[str] = DEFAULT_EXEMPT_PATHS,
        secure_cookie: bool = True,
        clock: Callable[[], float] = time.time
    ):
        if not secret or len(secret) < MIN_SECRET_LENGTH:
            raise ValueError(f"CSRF secret must be at least {MIN_SECRET_LENGTH} characters long")
        self._secret = secret
        self.expiry_seconds = expiry_seconds
        self.exempt_paths = tuple(exempt_paths)
        self.secure_cookie = secure_cookie
        self.clock = clock
        self.logger = get_logger("admission.csrf")

    @property
    def cookie_name(self) -> str:
        # Browsers only accept the __Host- prefix on Secure cookies.
        return SECURE_COOKIE_NAME if self.secure_cookie else COOKIE_NAME

    def generate_csrf_token(self) -> CsrfToken:
        now = int(self.clock())
        token = jwt.encode(
            {
                "nonce": secrets.token_hex(32),
                "type": TOKEN_TYPE,
                "iat": now,
                "exp": now + self.expiry_seconds,
            },
            self._secret,
            algorithm=ALGORITHM
        )
        return CsrfToken(token=token, cookie_value=token)

    def _signature_is_canonical(self, token: str) -> bool:
        # base64url decoding ignores trailing pad bits, so two spellings of
        # one signature exist; accept only the one we would have produced.
        try:
            signature = token.rsplit(".", 1)[1]
            return base64url_encode(base64url_decode(signature)).decode("ascii") == signature
        except (IndexError, ValueError):
            return False

    def verify_csrf_token(self, cookie_value: Optional[str], header_value: Optional[str]) -> bool:
        """True only if both values are present, identical and validly signed."""
        if not cookie_value or not header_value:
            self.logger.debug("Missing CSRF token in cookie or header")
            return False

        if not hmac.compare_digest(cookie_value.encode("utf-8"), header_value.encode("utf-8")):
            self.logger.warning("CSRF token mismatch between cookie and header")
            return False

        try:
            payload = jwt.decode(
                cookie_value,
                self._secret,
                algorithms=[ALGORITHM],
                options={
                    "require": ["exp", "iat", "nonce", "type"],
                    "verify_exp": False,
                    "verify_iat": False,
                }
            )
        except jwt.InvalidTokenError as e:
            self.logger.warning("CSRF token verification failed", error=str(e))
            return False

        exp = payload["exp"]
        if not isinstance(exp, (int, float)) or exp <= self.clock():
            self.logger.warning("CSRF token expired")
            return False

        if payload.get("type") != TOKEN_TYPE:
            self.logger.warning("Invalid CSRF token type")
            return False

        if not self._signature_is_canonical(cookie_value):
            self.logger.warning("CSRF token signature not canonical")
            return False

        return True

    def verify_request(self, request: Request) -> None:
        """Raise ``InvalidCsrfTokenError`` unless the request passes.

        Safe methods and exempt paths pass without a token.
        """
        if not self.requires_csrf_protection(request.method) or self.is_csrf_exempt(request.url.path):
            return

        cookie_value = request.cookies.get(self.cookie_name)
        header_value = request.headers.get(CSRF_HEADER_NAME)
        if not self.verify_csrf_token(cookie_value, header_value):
            raise InvalidCsrfTokenError()

    @staticmethod
    def requires_csrf_protection(method: str) -> bool:
        return method.upper() in PROTECTED_METHODS

    def is_csrf_exempt(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.exempt_paths)

    def cookie_config(self) -> Dict[str, Any]:
        """Keyword arguments for ``Response.set_cookie``."""
        return {
            "key": self.cookie_name,
            "httponly": True,
            "secure": self.secure_cookie,
            "samesite": "strict",
            "path": "/",
            "max_age": self.expiry_seconds,
        }
