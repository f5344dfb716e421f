"""
Signed session tokens checked against the revocation store.
"""

import time
import uuid
from typing import Any, Callable, Dict, Optional

import jwt

from shared.logging import get_logger, set_user_context
from shared.errors import AuthenticationError, TokenRevokedError
from .revocation import SessionRevocationStore

ALGORITHM = "HS256"
MIN_SECRET_LENGTH = 32


class SessionTokenService:
    """Issues HS256 session tokens and verifies them on every request.

    Verification order: signature and expiry first (local and cheap), then
    the revocation flag in the shared store.
    """

    def __init__(
        self,
        secret: str,
        revocations: SessionRevocationStore,
        ttl_seconds: int = 7 * 24 * 3600,
        clock: Callable[[], float] = time.time
    ):
        if not secret or len(secret) < MIN_SECRET_LENGTH:
            raise ValueError(f"Session secret must be at least {MIN_SECRET_LENGTH} characters long")
        if ttl_seconds > revocations.revocation_ttl_seconds:
            raise ValueError("Session token lifetime must not exceed the revocation record lifetime")

        self._secret = secret
        self.revocations = revocations
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.logger = get_logger("admission.sessions.tokens")

    async def issue(self, user_id: str, email: Optional[str] = None, role: Optional[str] = None) -> str:
        """Sign a new session token and track its session id for the user."""
        now = int(self.clock())
        session_id = uuid.uuid4().hex
        claims: Dict[str, Any] = {
            "sub": user_id,
            "sid": session_id,
            "iat": now,
            "exp": now + self.ttl_seconds,
        }
        if email:
            claims["email"] = email
        if role:
            claims["role"] = role

        token = jwt.encode(claims, self._secret, algorithm=ALGORITHM)
        await self.revocations.track_user_session(user_id, session_id)
        self.logger.info("Session issued", user_id=user_id, session_id=session_id)
        return token

    def decode(self, token: str) -> Dict[str, Any]:
        """Validate signature and expiry only."""
        if token.startswith("Bearer "):
            token = token[7:]
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={
                    "require": ["exp", "iat", "sub", "sid"],
                    "verify_exp": False,
                    "verify_iat": False,
                }
            )
        except jwt.InvalidTokenError as e:
            self.logger.warning("Session token rejected", error=str(e))
            raise AuthenticationError("Invalid session token") from e

        exp = claims["exp"]
        if not isinstance(exp, (int, float)):
            raise AuthenticationError("Invalid session token")
        if exp <= self.clock():
            raise AuthenticationError("Session expired")
        return claims

    async def verify(self, token: str) -> Dict[str, Any]:
        """Claims of a valid, unrevoked token.

        Raises ``AuthenticationError`` for bad or expired tokens and
        ``TokenRevokedError`` for revoked sessions.
        """
        claims = self.decode(token)

        check = await self.revocations.check_session(claims["sid"])
        if check.revoked:
            self.logger.warning("Revoked session presented", user_id=claims["sub"], session_id=claims["sid"])
            raise TokenRevokedError()

        set_user_context(user_id=claims["sub"])
        return claims

    async def logout(self, token: str) -> None:
        """Revoke the token's session and stop tracking it."""
        claims = self.decode(token)
        await self.revocations.revoke_session(claims["sid"])
        await self.revocations.untrack_user_session(claims["sub"], claims["sid"])
