"""
Pricing calculations and rate management.

Handles cost computations for the models served by the upstream provider.
Prices are USD per one million tokens.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict, Mapping

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_PRICING_KEY = "default"
ONE_MILLION = Decimal("1000000")
COST_PRECISION = Decimal("0.00000001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    prompt_cost_per_1m: Decimal  # Cost per 1M prompt tokens
    completion_cost_per_1m: Decimal  # Cost per 1M completion tokens


@dataclass(frozen=True)
class PricingTable:
    """Pricing table with a mandatory default entry for unknown models."""
    prices: Dict[str, ModelPricing]

    def __post_init__(self):
        if DEFAULT_PRICING_KEY not in self.prices:
            raise ValueError(f"Pricing table requires a '{DEFAULT_PRICING_KEY}' entry")

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Unknown models fall back to the default entry instead of failing,
        so a provider-side model rename never breaks cost tracking.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model (or the default pricing)
        """
        pricing = self.prices.get(model)
        if pricing is None:
            logger.debug("pricing_default_used", model=model)
            return self.prices[DEFAULT_PRICING_KEY]
        return pricing

    def with_overrides(self, overrides: Mapping[str, ModelPricing]) -> "PricingTable":
        """Return a new table with ``overrides`` merged over these prices."""
        merged = dict(self.prices)
        merged.update(overrides)
        return PricingTable(merged)


PRICING_TABLE = PricingTable({
    "llama3-8b-8192": ModelPricing(
        prompt_cost_per_1m=Decimal("0.05"),
        completion_cost_per_1m=Decimal("0.08")
    ),
    "llama3-70b-8192": ModelPricing(
        prompt_cost_per_1m=Decimal("0.59"),
        completion_cost_per_1m=Decimal("0.79")
    ),
    "mixtral-8x7b-32768": ModelPricing(
        prompt_cost_per_1m=Decimal("0.27"),
        completion_cost_per_1m=Decimal("0.27")
    ),
    "gemma-7b-it": ModelPricing(
        prompt_cost_per_1m=Decimal("0.07"),
        completion_cost_per_1m=Decimal("0.07")
    ),
    "llama-3.1-70b-versatile": ModelPricing(
        prompt_cost_per_1m=Decimal("0.59"),
        completion_cost_per_1m=Decimal("0.79")
    ),
    "llama-3.1-8b-instant": ModelPricing(
        prompt_cost_per_1m=Decimal("0.05"),
        completion_cost_per_1m=Decimal("0.08")
    ),
    DEFAULT_PRICING_KEY: ModelPricing(
        prompt_cost_per_1m=Decimal("0.05"),
        completion_cost_per_1m=Decimal("0.08")
    ),
})


def calculate_cost(
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    table: PricingTable = PRICING_TABLE,
) -> float:
    """Calculate total cost for one call with conservative rounding.

    Args:
        model: Model identifier (unknown models use the default price)
        prompt_tokens: Prompt tokens billed
        completion_tokens: Completion tokens billed
        table: Pricing table to use

    Returns:
        Total cost in USD rounded UP to 8 decimal places
    """
    if prompt_tokens < 0 or completion_tokens < 0:
        raise ValueError("token counts cannot be negative")

    pricing = table.get_pricing(model)

    prompt_cost = (Decimal(prompt_tokens) / ONE_MILLION) * pricing.prompt_cost_per_1m
    completion_cost = (Decimal(completion_tokens) / ONE_MILLION) * pricing.completion_cost_per_1m

    total_cost = prompt_cost + completion_cost
    return float(total_cost.quantize(COST_PRECISION, rounding=ROUND_UP))
