"""
Per-model token pricing.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

from shared.logging import get_logger

logger = get_logger("admission.quota.pricing")

_ONE_K = Decimal(1000)
_MICRO_USD = Decimal("0.000001")


@dataclass(frozen=True)
class ModelPricing:
    """USD price per 1K tokens for one model."""
    prompt_cost_per_1k: Decimal
    completion_cost_per_1k: Decimal


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> Optional[ModelPricing]:
        return self.prices.get(model)

    def calc_cost_usd(self, model: str, tokens_in: int, tokens_out: int) -> float:
        """Cost of one call, rounded to micro-dollars.

        Unknown models cost nothing; their tokens are still charged
        against the monthly quota by the ledger.
        """
        pricing = self.get_pricing(model)
        if pricing is None:
            logger.warning("No pricing for model, recording zero cost", model=model)
            return 0.0

        cost = (
            Decimal(tokens_in) * pricing.prompt_cost_per_1k
            + Decimal(tokens_out) * pricing.completion_cost_per_1k
        ) / _ONE_K
        return float(cost.quantize(_MICRO_USD, rounding=ROUND_HALF_UP))


DEFAULT_PRICING = PricingTable(prices={
    "gpt_4o": ModelPricing(Decimal("0.0025"), Decimal("0.01")),
    "gpt_4o_mini": ModelPricing(Decimal("0.00015"), Decimal("0.0006")),
    "gpt_4_turbo": ModelPricing(Decimal("0.01"), Decimal("0.03")),
    "gpt_3_5_turbo": ModelPricing(Decimal("0.0005"), Decimal("0.0015")),
    "claude_3_opus": ModelPricing(Decimal("0.015"), Decimal("0.075")),
    "claude_3_5_sonnet": ModelPricing(Decimal("0.003"), Decimal("0.015")),
    "claude_3_5_haiku": ModelPricing(Decimal("0.0008"), Decimal("0.004")),
    "gemini_1_5_pro": ModelPricing(Decimal("0.00125"), Decimal("0.005")),
    "gemini_1_5_flash": ModelPricing(Decimal("0.000075"), Decimal("0.0003")),
    "gemini_2_0_flash": ModelPricing(Decimal("0.0001"), Decimal("0.0004")),
})


def calc_cost_usd(model: str, tokens_in: int, tokens_out: int) -> float:
    """Cost of one call using the default pricing table."""
    return DEFAULT_PRICING.calc_cost_usd(model, tokens_in, tokens_out)
