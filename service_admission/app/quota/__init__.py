"""
Quota ledger package: plan budgets, pricing and the usage ledger.
"""

from .ledger import QuotaLedger
from .models import CanSpendResult, LedgerResult, LedgerSkipReason, QuotaRejectReason, UsageMeta, UsageRecord, UsageSummary
from .plans import PLAN_LIMITS, PlanLimits, PlanTier
from .pricing import DEFAULT_PRICING, calc_cost_usd
from .repository import InMemoryUsageRepository, UsageRepository

__all__ = [
    "QuotaLedger",
    "CanSpendResult",
    "LedgerResult",
    "LedgerSkipReason",
    "QuotaRejectReason",
    "UsageMeta",
    "UsageRecord",
    "UsageSummary",
    "PLAN_LIMITS",
    "PlanLimits",
    "PlanTier",
    "DEFAULT_PRICING",
    "calc_cost_usd",
    "InMemoryUsageRepository",
    "UsageRepository",
]
