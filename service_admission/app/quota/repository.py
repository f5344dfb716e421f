"""
Usage ledger repositories.

``UsageRepository.record_usage`` is the single write path: it inserts the
usage row and increments the user's monthly counter in one atomic unit.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from shared.errors import UserNotFoundError
from .models import UsageRecord, UserQuotaState
from .plans import PlanTier


class UsageRepository(ABC):
    """Storage for users' quota counters and usage rows.

    Implementations raise ``LedgerUnavailableError`` when the backing
    database cannot be reached.
    """

    async def start(self):
        """Open connections. No-op by default."""

    async def stop(self):
        """Close connections. No-op by default."""

    @abstractmethod
    async def get_user_quota_state(self, user_id: str) -> Optional[UserQuotaState]:
        """Plan tier and monthly counter, or None for unknown users."""

    @abstractmethod
    async def find_recent_usage(
        self,
        user_id: str,
        model: str,
        request_id: str,
        since: datetime
    ) -> Optional[UsageRecord]:
        """Usage row with this request id created at or after ``since``."""

    @abstractmethod
    async def record_usage(self, record: UsageRecord, dedupe_since: Optional[datetime] = None) -> Optional[UserQuotaState]:
        """Insert ``record`` and add its tokens to the user's counter atomically.

        When the record carries a request id and ``dedupe_since`` is given,
        the duplicate check is repeated inside the atomic unit and None is
        returned instead of writing. Raises ``UserNotFoundError`` (with
        nothing applied) for unknown users.
        """

    @abstractmethod
    async def reset_monthly_usage(self) -> int:
        """Zero every user's monthly counter; returns the number of users."""

    async def ping(self) -> bool:
        return True


class InMemoryUsageRepository(UsageRepository):
    """Process-local ledger for single-instance deployments and tests.

    With ``retention_seconds`` set, usage rows older than that (relative to
    the newest row) are dropped on each write. The monthly counters are kept
    regardless; the retention must cover the idempotency window.
    """

    def __init__(self, retention_seconds: Optional[int] = None):
        self.retention = timedelta(seconds=retention_seconds) if retention_seconds is not None else None
        self._users: Dict[str, UserQuotaState] = {}
        self._records: List[UsageRecord] = []
        self._lock = threading.Lock()

    def upsert_user(self, user_id: str, plan_tier: PlanTier = PlanTier.FREE, monthly_token_used: int = 0) -> UserQuotaState:
        """Create or replace a user's quota state."""
        state = UserQuotaState(user_id=user_id, plan_tier=plan_tier, monthly_token_used=monthly_token_used)
        with self._lock:
            self._users[user_id] = state
        return state

    @property
    def records(self) -> List[UsageRecord]:
        with self._lock:
            return list(self._records)

    async def get_user_quota_state(self, user_id: str) -> Optional[UserQuotaState]:
        with self._lock:
            state = self._users.get(user_id)
            return state.model_copy() if state else None

    def _find_recent(self, user_id: str, model: str, request_id: str, since: datetime) -> Optional[UsageRecord]:
        for record in reversed(self._records):
            if (
                record.user_id == user_id
                and record.model == model
                and record.meta.request_id == request_id
                and record.created_at >= since
            ):
                return record
        return None

    async def find_recent_usage(self, user_id: str, model: str, request_id: str, since: datetime) -> Optional[UsageRecord]:
        with self._lock:
            return self._find_recent(user_id, model, request_id, since)

    async def record_usage(self, record: UsageRecord, dedupe_since: Optional[datetime] = None) -> Optional[UserQuotaState]:
        with self._lock:
            state = self._users.get(record.user_id)
            if state is None:
                raise UserNotFoundError(record.user_id)

            request_id = record.meta.request_id
            if request_id and dedupe_since is not None:
                if self._find_recent(record.user_id, record.model, request_id, dedupe_since):
                    return None

            updated = state.model_copy(update={
                "monthly_token_used": state.monthly_token_used + record.total_tokens
            })
            self._records.append(record)
            self._users[record.user_id] = updated
            if self.retention is not None:
                self._prune(record.created_at - self.retention)
            return updated.model_copy()

    def _prune(self, cutoff: datetime):
        if self._records and self._records[0].created_at < cutoff:
            self._records = [record for record in self._records if record.created_at >= cutoff]

    async def reset_monthly_usage(self) -> int:
        with self._lock:
            for user_id, state in self._users.items():
                self._users[user_id] = state.model_copy(update={"monthly_token_used": 0})
            return len(self._users)
