"""
Integration tests for the complete admission flow.

Runs the gates the way an AI endpoint would: authenticate, admit
(CSRF, rate limit, quota), do the work, record usage. All components
share one in-memory bucket store and usage repository, as instances of
one deployment share Redis and PostgreSQL.
"""

import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from service_admission.app.csrf import CSRF_HEADER_NAME, CsrfVerifier
from service_admission.app.gates import AdmissionGates
from service_admission.app.lockout import LockoutGuard
from service_admission.app.quota import InMemoryUsageRepository, PlanTier, QuotaLedger
from service_admission.app.ratelimit import FixedWindowRateLimiter
from service_admission.app.ratelimit.base import RateLimitOptions
from service_admission.app.ratelimit.middleware import RateLimitMiddleware
from service_admission.app.sessions import SessionRevocationStore, SessionTokenService
from service_admission.app.store import InMemoryBucketStore
from shared.errors import QuotaExceededError, RateLimitError, TokenRevokedError

SECRET = "integration-secret-0123456789abcdefghij"


def _build_gates(store, repository):
    revocations = SessionRevocationStore(store)
    return AdmissionGates(
        RateLimitMiddleware(FixedWindowRateLimiter(store, RateLimitOptions(limit=200, window_ms=3_600_000))),
        QuotaLedger(repository),
        LockoutGuard(store),
        SessionTokenService(SECRET, revocations),
        CsrfVerifier(SECRET, secure_cookie=False),
    )


class TestAdmissionFlow:
    """Integration tests for the request path through every gate."""

    @pytest.fixture
    def store(self):
        """Bucket store shared by all instances."""
        return InMemoryBucketStore()

    @pytest.fixture
    def repository(self):
        """Usage ledger with one FREE user at 99000 tokens."""
        repository = InMemoryUsageRepository()
        repository.upsert_user("user-1", PlanTier.FREE, 99_000)
        return repository

    @pytest.fixture
    def instances(self, store, repository):
        """Two service instances over the same shared state."""
        return _build_gates(store, repository), _build_gates(store, repository)

    async def _chat_request(self, gates, token):
        csrf = gates.csrf.generate_csrf_token().token
        request = MagicMock()
        request.method = "POST"
        request.url.path = "/api/chat"
        request.headers = {"Authorization": f"Bearer {token}", CSRF_HEADER_NAME: csrf}
        request.cookies = {"csrf": csrf}
        request.client.host = "203.0.113.7"
        request.state = SimpleNamespace()
        await gates.authenticate(request)
        return request

    @pytest.mark.asyncio
    async def test_chat_request_lifecycle(self, instances, repository):
        """Test rejection over quota, admission within it, and recording."""
        gates, _ = instances
        token = await gates.sessions.issue("user-1")
        request = await self._chat_request(gates, token)

        with pytest.raises(QuotaExceededError) as exc_info:
            await gates.admit(request, user_id="user-1", estimate_tokens=2000)
        assert exc_info.value.code == "OVER_LIMIT"
        assert exc_info.value.details["would_exceed_by"] == 1000

        ticket = await gates.admit(request, user_id="user-1", estimate_tokens=500)
        assert ticket.quota.remaining == 500

        result = await gates.quota.record_usage(
            "user-1", "gpt_4o_mini", 200, 300, meta={"request_id": "chat-1"}
        )
        assert result.new_monthly_used == 99_500

        retried = await gates.quota.record_usage(
            "user-1", "gpt_4o_mini", 200, 300, meta={"request_id": "chat-1"}
        )
        assert retried.skipped is True
        assert (await repository.get_user_quota_state("user-1")).monthly_token_used == 99_500

    @pytest.mark.asyncio
    async def test_rate_limit_shared_across_instances(self, instances):
        """Test the fixed window budget is global, not per instance."""
        first, second = instances
        token = await first.sessions.issue("user-1")

        for i in range(100):
            gates = first if i % 2 else second
            await gates.enforce_rate_limit(await self._chat_request(gates, token))

        with pytest.raises(RateLimitError):
            await first.enforce_rate_limit(await self._chat_request(first, token))

    @pytest.mark.asyncio
    async def test_logout_everywhere_across_instances(self, instances):
        """Test a revocation on one instance is honoured by the other."""
        first, second = instances
        token = await first.sessions.issue("user-1")

        assert await second.sessions.revocations.revoke_all_user_sessions("user-1") == 1

        with pytest.raises(TokenRevokedError):
            await first.sessions.verify(token)

    @pytest.mark.asyncio
    async def test_metered_work_recorded_once(self, instances, repository):
        """Test run_metered records the work's actual usage."""
        gates, _ = instances
        token = await gates.sessions.issue("user-1")
        work = AsyncMock(return_value={"tokens_in": 120, "tokens_out": 80, "conversation_id": "conv-9"})

        result = await gates.run_metered(
            await self._chat_request(gates, token), "user-1", "gpt_4o", 300, work, request_id="chat-2"
        )

        assert result.saved is True
        assert result.new_monthly_used == 99_200
        assert repository.records[-1].meta.conversation_id == "conv-9"
