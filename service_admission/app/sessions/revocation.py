"""
Session revocation store.

Keeps a per-user set of session ids (sliding 30-day expiry) and a
revocation flag per revoked session. The flag outlives the longest
legitimate token lifetime, so a revoked token can never become valid
again by outliving its revocation record.

``is_session_revoked`` fails open on store outages: an outage must not
log out every user. ``check_session`` exposes the degraded state. The
explicit revocation writes raise ``StoreUnavailableError`` instead, so a
logout-everywhere never reports success it did not achieve.
"""

import asyncio
from dataclasses import dataclass
from typing import List, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.errors import StoreUnavailableError
from ..store.base import BucketStore

SESSION_SET_TTL_SECONDS = 30 * 24 * 3600
REVOCATION_TTL_SECONDS = 7 * 24 * 3600


@dataclass(frozen=True)
class RevocationCheck:
    revoked: bool
    store_available: bool = True


class SessionRevocationStore:
    """Distributed session tracking and invalidation."""

    REVOKED_PREFIX = "revoked:session:"
    USER_SESSIONS_PREFIX = "sessions:user:"

    def __init__(
        self,
        store: BucketStore,
        session_set_ttl_seconds: int = SESSION_SET_TTL_SECONDS,
        revocation_ttl_seconds: int = REVOCATION_TTL_SECONDS,
        metrics: Optional[MetricsCollector] = None
    ):
        self.store = store
        self.session_set_ttl_seconds = session_set_ttl_seconds
        self.revocation_ttl_seconds = revocation_ttl_seconds
        self.metrics = metrics
        self.logger = get_logger("admission.sessions")

    def _revoked_key(self, session_id: str) -> str:
        return f"{self.REVOKED_PREFIX}{session_id}"

    def _user_key(self, user_id: str) -> str:
        return f"{self.USER_SESSIONS_PREFIX}{user_id}"

    def _store_failed(self, operation: str, error: Exception, **fields):
        self.logger.error("Session store unavailable", operation=operation, error=str(error), **fields)
        if self.metrics:
            self.metrics.record_store_failure("sessions")

    async def track_user_session(self, user_id: str, session_id: str) -> None:
        """Add a session to the user's set and slide the set's expiry."""
        key = self._user_key(user_id)
        try:
            await self.store.sadd(key, session_id)
            await self.store.expire(key, self.session_set_ttl_seconds)
        except StoreUnavailableError as e:
            self._store_failed("track_user_session", e, user_id=user_id, session_id=session_id)
            return

        self.logger.debug("Session tracked", user_id=user_id, session_id=session_id)

    async def untrack_user_session(self, user_id: str, session_id: str) -> None:
        """Remove a session that ended naturally."""
        try:
            await self.store.srem(self._user_key(user_id), session_id)
        except StoreUnavailableError as e:
            self._store_failed("untrack_user_session", e, user_id=user_id, session_id=session_id)
            return

        self.logger.debug("Session untracked", user_id=user_id, session_id=session_id)

    async def revoke_session(self, session_id: str) -> None:
        """Flag one session as revoked."""
        try:
            await self.store.setex(self._revoked_key(session_id), self.revocation_ttl_seconds, "1")
        except StoreUnavailableError as e:
            self._store_failed("revoke_session", e, session_id=session_id)
            raise

        self.logger.info("Session revoked", session_id=session_id)

    async def revoke_all_user_sessions(self, user_id: str) -> int:
        """Revoke every tracked session of a user; returns how many."""
        key = self._user_key(user_id)
        try:
            session_ids = await self.store.smembers(key)
            if not session_ids:
                self.logger.info("No active sessions found", user_id=user_id)
                return 0

            results = await asyncio.gather(*[
                self.store.setex(self._revoked_key(session_id), self.revocation_ttl_seconds, "1")
                for session_id in session_ids
            ], return_exceptions=True)
            failures = [result for result in results if isinstance(result, BaseException)]
            if failures:
                raise failures[0]
            await self.store.delete(key)
        except StoreUnavailableError as e:
            self._store_failed("revoke_all_user_sessions", e, user_id=user_id)
            raise

        self.logger.info("All user sessions revoked", user_id=user_id, count=len(session_ids))
        return len(session_ids)

    async def check_session(self, session_id: str) -> RevocationCheck:
        """Revocation state, distinguishing a degraded answer from a real one."""
        try:
            revoked = await self.store.get(self._revoked_key(session_id))
        except StoreUnavailableError as e:
            self._store_failed("is_session_revoked", e, session_id=session_id)
            return RevocationCheck(revoked=False, store_available=False)

        return RevocationCheck(revoked=revoked is not None)

    async def is_session_revoked(self, session_id: str) -> bool:
        """True if the session was revoked; False when the store is down."""
        return (await self.check_session(session_id)).revoked

    async def get_user_active_sessions(self, user_id: str) -> List[str]:
        try:
            return await self.store.smembers(self._user_key(user_id))
        except StoreUnavailableError as e:
            self._store_failed("get_user_active_sessions", e, user_id=user_id)
            return []

    async def get_user_session_count(self, user_id: str) -> int:
        try:
            return await self.store.scard(self._user_key(user_id))
        except StoreUnavailableError as e:
            self._store_failed("get_user_session_count", e, user_id=user_id)
            return 0
