"""
Pricing calculations and rate management.

Handles cost computations for provider models. Prices live in the ledger's
pricing table; the defaults below only seed a fresh database.
"""

from decimal import Decimal
from typing import List

from .token_counter import TokenUsage
from cost_governor.storage.models import ModelPricing

# Seed prices per 1K tokens. Not kept in sync with provider price lists.
DEFAULT_PRICING: List[ModelPricing] = [
    ModelPricing("openai", "gpt-4o", 0.0025, 0.010),
    ModelPricing("openai", "gpt-4o-mini", 0.00015, 0.0006),
    ModelPricing("openai", "gpt-4", 0.030, 0.060),
    ModelPricing("openai", "gpt-3.5-turbo", 0.0005, 0.0015),
    ModelPricing("anthropic", "claude-opus-4-5", 0.015, 0.075),
    ModelPricing("anthropic", "claude-sonnet-4-5", 0.003, 0.015),
    ModelPricing("anthropic", "claude-haiku-4-5", 0.00025, 0.00125),
    ModelPricing("google", "gemini-2.5-pro", 0.0025, 0.010),
]


def calculate_cost(pricing: ModelPricing, usage: TokenUsage) -> float:
    """Calculate total cost for model usage.

    Args:
        pricing: Unit prices for the model
        usage: Token usage data

    Returns:
        Total cost in currency units
    """
    # Calculate prompt cost: (tokens / 1000) * cost_per_1k
    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * Decimal(
        str(pricing.prompt_cost_per_1k)
    )

    # Calculate completion cost: (tokens / 1000) * cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * Decimal(
        str(pricing.completion_cost_per_1k)
    )

    return float(prompt_cost + completion_cost)
