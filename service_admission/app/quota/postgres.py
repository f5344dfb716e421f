"""
PostgreSQL persistence for the usage ledger.
"""

import asyncio
import json
from datetime import datetime
from typing import Optional

import asyncpg

from shared.logging import get_logger
from shared.errors import LedgerUnavailableError, UserNotFoundError
from .models import UsageMeta, UsageRecord, UserQuotaState
from .plans import PlanTier
from .repository import UsageRepository

_CONNECTIVITY_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class PostgresUsageRepository(UsageRepository):
    """Usage ledger on PostgreSQL via an asyncpg pool."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.logger = get_logger("admission.quota.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the pool and ensure the schema exists."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=30
            )
            await self._create_tables()
            self.logger.info("PostgreSQL usage ledger started")
        except _CONNECTIVITY_ERRORS as e:
            self.logger.error("Failed to start PostgreSQL usage ledger", error=str(e))
            raise LedgerUnavailableError(str(e)) from e

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL usage ledger stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id VARCHAR(255) PRIMARY KEY,
                    plan_tier VARCHAR(20) NOT NULL DEFAULT 'FREE',
                    monthly_token_used BIGINT NOT NULL DEFAULT 0
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS token_usage (
                    id VARCHAR(64) PRIMARY KEY,
                    user_id VARCHAR(255) NOT NULL REFERENCES users(user_id),
                    model VARCHAR(100) NOT NULL,
                    tokens_in INTEGER NOT NULL,
                    tokens_out INTEGER NOT NULL,
                    cost_usd NUMERIC(14, 6) NOT NULL,
                    request_id VARCHAR(255),
                    meta JSONB NOT NULL DEFAULT '{}',
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_token_usage_request
                ON token_usage(user_id, model, request_id, created_at DESC)
                WHERE request_id IS NOT NULL;
            """)

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise LedgerUnavailableError("Usage ledger not started")
        return self.pool

    @staticmethod
    def _row_to_record(row) -> UsageRecord:
        meta = row["meta"]
        if isinstance(meta, str):
            meta = json.loads(meta)
        return UsageRecord(
            id=row["id"],
            user_id=row["user_id"],
            model=row["model"],
            tokens_in=row["tokens_in"],
            tokens_out=row["tokens_out"],
            cost_usd=float(row["cost_usd"]),
            meta=UsageMeta.model_validate(meta or {}),
            created_at=row["created_at"],
        )

    async def get_user_quota_state(self, user_id: str) -> Optional[UserQuotaState]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT user_id, plan_tier, monthly_token_used FROM users WHERE user_id = $1",
                    user_id
                )
        except _CONNECTIVITY_ERRORS as e:
            self.logger.error("Error loading quota state", user_id=user_id, error=str(e))
            raise LedgerUnavailableError(str(e)) from e

        if row is None:
            return None
        return UserQuotaState(
            user_id=row["user_id"],
            plan_tier=PlanTier(row["plan_tier"]),
            monthly_token_used=row["monthly_token_used"],
        )

    async def _find_recent(self, conn, user_id: str, model: str, request_id: str, since: datetime):
        return await conn.fetchrow("""
            SELECT * FROM token_usage
            WHERE user_id = $1 AND model = $2 AND request_id = $3 AND created_at >= $4
            ORDER BY created_at DESC
            LIMIT 1
        """, user_id, model, request_id, since)

    async def find_recent_usage(self, user_id: str, model: str, request_id: str, since: datetime) -> Optional[UsageRecord]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                row = await self._find_recent(conn, user_id, model, request_id, since)
        except _CONNECTIVITY_ERRORS as e:
            self.logger.error("Error looking up request id", user_id=user_id, error=str(e))
            raise LedgerUnavailableError(str(e)) from e

        return self._row_to_record(row) if row else None

    async def record_usage(self, record: UsageRecord, dedupe_since: Optional[datetime] = None) -> Optional[UserQuotaState]:
        pool = self._require_pool()
        request_id = record.meta.request_id

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    if request_id and dedupe_since is not None:
                        # Serialise concurrent retries of the same request.
                        await conn.execute(
                            "SELECT pg_advisory_xact_lock(hashtext($1))",
                            f"{record.user_id}:{record.model}:{request_id}"
                        )
                        if await self._find_recent(conn, record.user_id, record.model, request_id, dedupe_since):
                            return None

                    row = await conn.fetchrow("""
                        UPDATE users SET monthly_token_used = monthly_token_used + $2
                        WHERE user_id = $1
                        RETURNING user_id, plan_tier, monthly_token_used
                    """, record.user_id, record.total_tokens)
                    if row is None:
                        raise UserNotFoundError(record.user_id)

                    await conn.execute("""
                        INSERT INTO token_usage (
                            id, user_id, model, tokens_in, tokens_out, cost_usd,
                            request_id, meta, created_at
                        ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9)
                    """,
                        record.id, record.user_id, record.model, record.tokens_in,
                        record.tokens_out, record.cost_usd, request_id,
                        record.meta.model_dump_json(exclude_none=True), record.created_at
                    )
        except _CONNECTIVITY_ERRORS as e:
            self.logger.error("Usage transaction rolled back", user_id=record.user_id, error=str(e))
            raise LedgerUnavailableError(str(e)) from e

        return UserQuotaState(
            user_id=row["user_id"],
            plan_tier=PlanTier(row["plan_tier"]),
            monthly_token_used=row["monthly_token_used"],
        )

    async def reset_monthly_usage(self) -> int:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                status = await conn.execute("UPDATE users SET monthly_token_used = 0")
        except _CONNECTIVITY_ERRORS as e:
            self.logger.error("Error resetting monthly usage", error=str(e))
            raise LedgerUnavailableError(str(e)) from e

        # asyncpg returns the command tag, e.g. "UPDATE 42"
        return int(status.split()[-1])

    async def ping(self) -> bool:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except _CONNECTIVITY_ERRORS as e:
            raise LedgerUnavailableError(str(e)) from e
        return True
