"""
Quota ledger data models.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .plans import PlanTier


class QuotaRejectReason(str, Enum):
    NO_USER = "NO_USER"
    PER_REQUEST_TOO_LARGE = "PER_REQUEST_TOO_LARGE"
    OVER_LIMIT = "OVER_LIMIT"
    QUOTA_UNAVAILABLE = "QUOTA_UNAVAILABLE"


class LedgerSkipReason(str, Enum):
    DUPLICATE_REQUEST_ID = "DUPLICATE_REQUEST_ID"


class UsageMeta(BaseModel):
    """Known metadata attached to a usage record.

    ``request_id`` is the idempotency key for retried requests.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    request_id: Optional[str] = Field(default=None, alias="requestId")
    provider: Optional[str] = None
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")


class UsageRecord(BaseModel):
    """Append-only ledger row for one completed spend-bearing operation."""

    id: str
    user_id: str
    model: str
    tokens_in: int = Field(ge=0)
    tokens_out: int = Field(ge=0)
    cost_usd: float
    meta: UsageMeta = Field(default_factory=UsageMeta)
    created_at: datetime

    @property
    def total_tokens(self) -> int:
        return self.tokens_in + self.tokens_out


class UserQuotaState(BaseModel):
    """The quota-relevant slice of a user record."""

    user_id: str
    plan_tier: PlanTier
    monthly_token_used: int


class CanSpendResult(BaseModel):
    ok: bool
    reason: Optional[QuotaRejectReason] = None
    remaining: int
    limit: int
    would_exceed_by: Optional[int] = None
    store_available: bool = True


class LedgerResult(BaseModel):
    saved: bool
    skipped: bool = False
    reason: Optional[LedgerSkipReason] = None
    usage_id: Optional[str] = None
    new_monthly_used: Optional[int] = None
    plan: Optional[PlanTier] = None
    limit: Optional[int] = None
    cost_usd: Optional[float] = None


class UsageSummary(BaseModel):
    used: int
    limit: int
    remaining: int
    percent: int
    plan: PlanTier
