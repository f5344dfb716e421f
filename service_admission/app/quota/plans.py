"""
Per-tier quota budgets.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict


class PlanTier(str, Enum):
    """Subscription level that determines quota limits."""
    FREE = "FREE"
    PLUS = "PLUS"
    PRO = "PRO"


@dataclass(frozen=True)
class PlanLimits:
    """Static token budget for a plan tier."""
    monthly_token_limit: int
    per_request_max_tokens: int


PLAN_LIMITS: Dict[PlanTier, PlanLimits] = {
    PlanTier.FREE: PlanLimits(monthly_token_limit=100_000, per_request_max_tokens=4_000),
    PlanTier.PLUS: PlanLimits(monthly_token_limit=1_000_000, per_request_max_tokens=16_000),
    PlanTier.PRO: PlanLimits(monthly_token_limit=5_000_000, per_request_max_tokens=32_000),
}
