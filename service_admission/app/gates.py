"""
Request-path composition of the admission gates.

Order for a spend-bearing request: CSRF (mutating methods) -> rate limit
-> quota check -> caller's work -> usage recording. Authentication
consults the lockout guard around the credential check, and every
authenticated request checks its session against the revocation store.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import Request

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.errors import (
    AccountLockedError,
    AuthenticationError,
    InvalidCsrfTokenError,
    QuotaExceededError,
    RateLimitError,
)
from .csrf import CsrfVerifier
from .lockout import LockoutGuard
from .quota import CanSpendResult, LedgerResult, QuotaLedger
from .ratelimit import RateLimitResult
from .ratelimit.middleware import RateLimitMiddleware
from .sessions import SessionTokenService


@dataclass(frozen=True)
class AdmissionTicket:
    """What the gates decided for an admitted request."""
    rate_limit: RateLimitResult
    quota: Optional[CanSpendResult] = None


class AdmissionGates:
    """Runs the gates in order and raises typed errors on rejection."""

    def __init__(
        self,
        rate_limit: RateLimitMiddleware,
        quota: QuotaLedger,
        lockout: LockoutGuard,
        sessions: SessionTokenService,
        csrf: CsrfVerifier,
        metrics: Optional[MetricsCollector] = None
    ):
        self.rate_limit = rate_limit
        self.quota = quota
        self.lockout = lockout
        self.sessions = sessions
        self.csrf = csrf
        self.metrics = metrics
        self.logger = get_logger("admission.gates")

    def _record(self, gate: str, outcome: str):
        if self.metrics:
            self.metrics.record_decision(gate, outcome)

    def enforce_csrf(self, request: Request) -> None:
        try:
            self.csrf.verify_request(request)
        except InvalidCsrfTokenError:
            self._record("csrf", "rejected")
            raise

    async def enforce_rate_limit(self, request: Request, scope: Optional[str] = None) -> RateLimitResult:
        result = await self.rate_limit.check_request(request, scope)
        if not result.store_available and self.metrics:
            self.metrics.record_store_failure("rate_limit")
        if not result.ok:
            self._record("rate_limit", "rejected")
            raise RateLimitError(details=result.to_dict())
        self._record("rate_limit", "accepted")
        return result

    async def enforce_quota(self, user_id: str, estimate_tokens: int) -> CanSpendResult:
        result = await self.quota.can_spend(user_id, estimate_tokens)
        if not result.ok:
            raise QuotaExceededError(
                result.reason.value,
                details={
                    "remaining": result.remaining,
                    "limit": result.limit,
                    "would_exceed_by": result.would_exceed_by,
                }
            )
        return result

    async def admit(
        self,
        request: Request,
        user_id: Optional[str] = None,
        estimate_tokens: Optional[int] = None,
        scope: Optional[str] = None
    ) -> AdmissionTicket:
        """Run CSRF, rate limit and (when an estimate is given) quota gates."""
        self.enforce_csrf(request)
        rate_result = await self.enforce_rate_limit(request, scope)

        quota_result = None
        if estimate_tokens is not None:
            if not user_id:
                raise AuthenticationError("Spend-bearing requests require an authenticated user")
            quota_result = await self.enforce_quota(user_id, estimate_tokens)

        return AdmissionTicket(rate_limit=rate_result, quota=quota_result)

    async def run_metered(
        self,
        request: Request,
        user_id: str,
        model: str,
        estimate_tokens: int,
        work: Callable[[], Awaitable[Dict[str, Any]]],
        request_id: Optional[str] = None
    ) -> LedgerResult:
        """Admit, run ``work`` and record its actual usage.

        ``work`` returns a mapping with ``tokens_in``, ``tokens_out`` and
        optionally ``cost_usd``, ``provider`` and ``conversation_id``.
        """
        await self.admit(request, user_id=user_id, estimate_tokens=estimate_tokens)
        usage = await work()
        return await self.quota.record_usage(
            user_id=user_id,
            model=model,
            tokens_in=usage["tokens_in"],
            tokens_out=usage["tokens_out"],
            cost_usd=usage.get("cost_usd"),
            meta={
                "request_id": request_id,
                "provider": usage.get("provider"),
                "conversation_id": usage.get("conversation_id"),
            }
        )

    async def authenticate(self, request: Request) -> Dict[str, Any]:
        """Verify the bearer session token and attach the user to the request."""
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            raise AuthenticationError("Authorization header required")

        claims = await self.sessions.verify(auth_header)
        user_info = {"user_id": claims["sub"], "session_id": claims["sid"], "role": claims.get("role")}
        request.state.user_info = user_info
        return user_info

    async def guard_login(self, identifier: str, check_credentials: Callable[[], Awaitable[bool]]) -> None:
        """Wrap a credential check with the lockout guard.

        Raises ``AccountLockedError`` while locked (or when this failure
        triggers the lock) and ``AuthenticationError`` on bad credentials.
        Both responses are identical for known and unknown identifiers.
        """
        status = await self.lockout.is_account_locked(identifier)
        if status.locked:
            self._record("lockout", "rejected")
            raise AccountLockedError(retry_after=status.time_remaining)

        if await check_credentials():
            await self.lockout.clear_failed_attempts(identifier)
            self._record("lockout", "accepted")
            return

        attempt = await self.lockout.record_failed_attempt(identifier)
        if attempt.locked:
            raise AccountLockedError(retry_after=self.lockout.lockout_duration_seconds)
        raise AuthenticationError("Invalid credentials")
