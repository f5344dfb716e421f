"""
Quota ledger: pre-spend budget checks and idempotent usage recording.

``can_spend`` runs before work starts and fails closed: if the budget
cannot be read the request is rejected. ``record_usage`` runs after the
work completes; the usage row and the monthly counter are written in one
atomic unit, and retries carrying the same ``request_id`` within the
idempotency window are absorbed.
"""

import uuid
from contextlib import nullcontext
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Union

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.errors import LedgerUnavailableError
from .models import (
    CanSpendResult,
    LedgerResult,
    LedgerSkipReason,
    QuotaRejectReason,
    UsageMeta,
    UsageRecord,
    UsageSummary,
)
from .plans import PLAN_LIMITS, PlanLimits, PlanTier
from .pricing import DEFAULT_PRICING, PricingTable
from .repository import UsageRepository


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuotaLedger:
    """Per-user monthly token budget backed by a usage repository."""

    def __init__(
        self,
        repository: UsageRepository,
        plan_limits: Mapping[PlanTier, PlanLimits] = PLAN_LIMITS,
        pricing: PricingTable = DEFAULT_PRICING,
        idempotency_window_seconds: int = 60,
        clock: Callable[[], datetime] = _utcnow,
        metrics: Optional[MetricsCollector] = None
    ):
        self.repository = repository
        self.plan_limits = plan_limits
        self.pricing = pricing
        self.idempotency_window = timedelta(seconds=idempotency_window_seconds)
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("admission.quota")

    def _timed(self):
        if self.metrics:
            return self.metrics.time_operation("admission_gate_duration_seconds", gate="quota")
        return nullcontext()

    def _decision(self, result: CanSpendResult) -> CanSpendResult:
        if self.metrics:
            outcome = "accepted" if result.ok else result.reason.value.lower()
            self.metrics.record_decision("quota", outcome)
        return result

    async def can_spend(self, user_id: str, estimate_tokens: int) -> CanSpendResult:
        """Check whether ``estimate_tokens`` fits the user's budget."""
        if estimate_tokens < 0:
            raise ValueError("estimate_tokens must be non-negative")

        try:
            with self._timed():
                state = await self.repository.get_user_quota_state(user_id)
        except LedgerUnavailableError as e:
            self.logger.error("Quota check failed, rejecting", user_id=user_id, error=str(e))
            if self.metrics:
                self.metrics.record_store_failure("quota")
            return self._decision(CanSpendResult(
                ok=False,
                reason=QuotaRejectReason.QUOTA_UNAVAILABLE,
                remaining=0,
                limit=0,
                store_available=False,
            ))

        if state is None:
            self.logger.warning("Quota check for unknown user", user_id=user_id)
            return self._decision(CanSpendResult(
                ok=False, reason=QuotaRejectReason.NO_USER, remaining=0, limit=0
            ))

        limits = self.plan_limits[state.plan_tier]
        limit = limits.monthly_token_limit
        used = state.monthly_token_used

        if estimate_tokens > limits.per_request_max_tokens:
            self.logger.warning(
                "Request exceeds per-request token limit",
                user_id=user_id,
                estimate_tokens=estimate_tokens,
                per_request_max_tokens=limits.per_request_max_tokens
            )
            return self._decision(CanSpendResult(
                ok=False,
                reason=QuotaRejectReason.PER_REQUEST_TOO_LARGE,
                remaining=max(0, limit - used),
                limit=limit,
                would_exceed_by=estimate_tokens - limits.per_request_max_tokens,
            ))

        projected = used + estimate_tokens
        if projected > limit:
            self.logger.warning(
                "User would exceed monthly quota",
                user_id=user_id,
                used=used,
                limit=limit,
                projected=projected
            )
            return self._decision(CanSpendResult(
                ok=False,
                reason=QuotaRejectReason.OVER_LIMIT,
                remaining=max(0, limit - used),
                limit=limit,
                would_exceed_by=projected - limit,
            ))

        return self._decision(CanSpendResult(ok=True, remaining=limit - projected, limit=limit))

    async def record_usage(
        self,
        user_id: str,
        model: str,
        tokens_in: int,
        tokens_out: int,
        cost_usd: Optional[float] = None,
        meta: Union[UsageMeta, Dict[str, Any], None] = None
    ) -> LedgerResult:
        """Record actual spend for a completed operation.

        Raises ``UserNotFoundError`` for unknown users and
        ``LedgerUnavailableError`` when nothing could be committed; in both
        cases neither the row nor the counter changed.
        """
        if not isinstance(meta, UsageMeta):
            meta = UsageMeta.model_validate(meta or {})

        now = self.clock()
        dedupe_since = now - self.idempotency_window if meta.request_id else None

        if meta.request_id:
            duplicate = await self.repository.find_recent_usage(user_id, model, meta.request_id, dedupe_since)
            if duplicate is not None:
                return self._skipped(user_id, meta.request_id)

        if cost_usd is None:
            cost_usd = self.pricing.calc_cost_usd(model, tokens_in, tokens_out)

        record = UsageRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            model=model,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_usd=cost_usd,
            meta=meta,
            created_at=now,
        )

        try:
            state = await self.repository.record_usage(record, dedupe_since)
        except LedgerUnavailableError:
            self.logger.error("Usage not recorded", user_id=user_id, model=model, request_id=meta.request_id)
            raise

        if state is None:
            return self._skipped(user_id, meta.request_id)

        if self.metrics:
            self.metrics.record_tokens(model, record.total_tokens)

        self.logger.info(
            "Usage recorded",
            user_id=user_id,
            model=model,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_usd=cost_usd,
            new_monthly_used=state.monthly_token_used
        )

        return LedgerResult(
            saved=True,
            usage_id=record.id,
            new_monthly_used=state.monthly_token_used,
            plan=state.plan_tier,
            limit=self.plan_limits[state.plan_tier].monthly_token_limit,
            cost_usd=cost_usd,
        )

    def _skipped(self, user_id: str, request_id: Optional[str]) -> LedgerResult:
        self.logger.debug("Duplicate request detected, skipping usage recording", user_id=user_id, request_id=request_id)
        return LedgerResult(saved=False, skipped=True, reason=LedgerSkipReason.DUPLICATE_REQUEST_ID)

    async def get_user_limits(self, user_id: str) -> Optional[PlanLimits]:
        state = await self.repository.get_user_quota_state(user_id)
        if state is None:
            return None
        return self.plan_limits[state.plan_tier]

    async def get_usage_summary(self, user_id: str) -> Optional[UsageSummary]:
        """Used/limit/remaining/percent for display; None for unknown users."""
        state = await self.repository.get_user_quota_state(user_id)
        if state is None:
            return None

        limit = self.plan_limits[state.plan_tier].monthly_token_limit
        used = state.monthly_token_used
        percent = min(100, round(used / limit * 100)) if limit > 0 else 0
        return UsageSummary(
            used=used,
            limit=limit,
            remaining=max(0, limit - used),
            percent=percent,
            plan=state.plan_tier,
        )

    async def reset_monthly_quotas(self) -> int:
        """Billing-cycle reset of every user's monthly counter."""
        count = await self.repository.reset_monthly_usage()
        self.logger.info("Monthly quotas reset for all users", count=count)
        return count
