"""
Unit tests for the PostgreSQL usage repository.
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from service_admission.app.quota.models import UsageMeta, UsageRecord
from service_admission.app.quota.plans import PlanTier
from service_admission.app.quota.postgres import PostgresUsageRepository
from shared.errors import LedgerUnavailableError, UserNotFoundError

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _async_cm(value):
    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=value)
    cm.__aexit__ = AsyncMock(return_value=False)
    return cm


class TestPostgresUsageRepository:
    """Test cases for PostgresUsageRepository."""

    @pytest.fixture
    def conn(self):
        """Mock asyncpg connection with a transaction context."""
        conn = AsyncMock()
        conn.transaction = MagicMock(return_value=_async_cm(None))
        return conn

    @pytest.fixture
    def repository(self, conn):
        """Create PostgresUsageRepository with a mocked pool."""
        repository = PostgresUsageRepository("postgresql://localhost/admission")
        pool = MagicMock()
        pool.acquire.return_value = _async_cm(conn)
        repository.pool = pool
        return repository

    @pytest.fixture
    def record(self):
        """Usage record carrying a request id."""
        return UsageRecord(
            id="usage-1",
            user_id="u1",
            model="gpt_4o",
            tokens_in=200,
            tokens_out=300,
            cost_usd=0.0035,
            meta=UsageMeta(request_id="req-1", provider="openai"),
            created_at=NOW,
        )

    @pytest.mark.asyncio
    async def test_not_started(self):
        """Test calls before start are reported as unavailable."""
        repository = PostgresUsageRepository("postgresql://localhost/admission")

        with pytest.raises(LedgerUnavailableError):
            await repository.get_user_quota_state("u1")

    @pytest.mark.asyncio
    async def test_get_user_quota_state(self, repository, conn):
        """Test the quota slice of a user row."""
        conn.fetchrow.return_value = {"user_id": "u1", "plan_tier": "PLUS", "monthly_token_used": 42}

        state = await repository.get_user_quota_state("u1")

        assert state.plan_tier == PlanTier.PLUS
        assert state.monthly_token_used == 42

    @pytest.mark.asyncio
    async def test_get_user_quota_state_unknown(self, repository, conn):
        """Test unknown users."""
        conn.fetchrow.return_value = None

        assert await repository.get_user_quota_state("ghost") is None

    @pytest.mark.asyncio
    async def test_connection_errors_translated(self, repository, conn):
        """Test connectivity failures surface as LedgerUnavailableError."""
        conn.fetchrow.side_effect = ConnectionRefusedError("connection refused")

        with pytest.raises(LedgerUnavailableError):
            await repository.get_user_quota_state("u1")

    @pytest.mark.asyncio
    async def test_record_usage_in_one_transaction(self, repository, conn, record):
        """Test lock, dedupe check, counter update and insert."""
        conn.fetchrow.side_effect = [
            None,
            {"user_id": "u1", "plan_tier": "FREE", "monthly_token_used": 1500},
        ]

        state = await repository.record_usage(record, NOW - timedelta(seconds=60))

        assert state.monthly_token_used == 1500
        conn.transaction.assert_called_once()

        lock_call, insert_call = conn.execute.await_args_list
        assert "pg_advisory_xact_lock" in lock_call.args[0]
        assert lock_call.args[1] == "u1:gpt_4o:req-1"
        assert "INSERT INTO token_usage" in insert_call.args[0]
        assert insert_call.args[7] == "req-1"
        assert insert_call.args[8] == '{"request_id":"req-1","provider":"openai"}'

        update_call = conn.fetchrow.await_args_list[1]
        assert update_call.args[1:] == ("u1", 500)

    @pytest.mark.asyncio
    async def test_record_usage_duplicate_inside_transaction(self, repository, conn, record):
        """Test a concurrent duplicate found under the lock writes nothing."""
        conn.fetchrow.return_value = {"id": "usage-0"}

        state = await repository.record_usage(record, NOW - timedelta(seconds=60))

        assert state is None
        assert not any("INSERT" in call.args[0] for call in conn.execute.await_args_list)

    @pytest.mark.asyncio
    async def test_record_usage_without_request_id(self, repository, conn, record):
        """Test no lock is taken without an idempotency key."""
        record = record.model_copy(update={"meta": UsageMeta()})
        conn.fetchrow.return_value = {"user_id": "u1", "plan_tier": "FREE", "monthly_token_used": 500}

        await repository.record_usage(record, None)

        assert conn.execute.await_count == 1
        assert "INSERT INTO token_usage" in conn.execute.await_args.args[0]

    @pytest.mark.asyncio
    async def test_record_usage_unknown_user(self, repository, conn, record):
        """Test the transaction aborts for unknown users."""
        conn.fetchrow.return_value = None

        with pytest.raises(UserNotFoundError):
            await repository.record_usage(record, None)

        conn.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_find_recent_usage(self, repository, conn):
        """Test rows map back to usage records."""
        conn.fetchrow.return_value = {
            "id": "usage-1",
            "user_id": "u1",
            "model": "gpt_4o",
            "tokens_in": 10,
            "tokens_out": 20,
            "cost_usd": "0.000225",
            "meta": '{"request_id": "req-1"}',
            "created_at": NOW,
        }

        record = await repository.find_recent_usage("u1", "gpt_4o", "req-1", NOW - timedelta(seconds=60))

        assert record.meta.request_id == "req-1"
        assert record.total_tokens == 30
        assert record.cost_usd == pytest.approx(0.000225)

    @pytest.mark.asyncio
    async def test_reset_monthly_usage(self, repository, conn):
        """Test the command tag is parsed into a row count."""
        conn.execute.return_value = "UPDATE 3"

        assert await repository.reset_monthly_usage() == 3

    @pytest.mark.asyncio
    async def test_ping(self, repository, conn):
        """Test the health check query."""
        conn.fetchval.return_value = 1

        assert await repository.ping() is True

        conn.fetchval.side_effect = OSError("network unreachable")
        with pytest.raises(LedgerUnavailableError):
            await repository.ping()
