"""Token pricing for agents whose telemetry carries no cost field.

Only Codex needs this: its OTLP stream reports token counts but never a
dollar amount. Every other agent's cost is passed through as reported.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelPricing:
    """USD per 1M tokens."""
    input: float
    output: float
    cached: float


# Matched by case-insensitive substring in insertion order; the first hit
# wins, so "gpt-4o-mini-2024" resolves to the "gpt-4o" row.
TOKEN_PRICING: dict[str, ModelPricing] = {
    "gpt-4o": ModelPricing(input=2.5, output=10.0, cached=1.25),
    "gpt-4o-mini": ModelPricing(input=0.15, output=0.6, cached=0.075),
    "gpt-4-turbo": ModelPricing(input=10.0, output=30.0, cached=5.0),
    "gpt-4": ModelPricing(input=30.0, output=60.0, cached=15.0),
    "gpt-3.5-turbo": ModelPricing(input=0.5, output=1.5, cached=0.25),
    "o1": ModelPricing(input=15.0, output=60.0, cached=7.5),
    "o1-mini": ModelPricing(input=3.0, output=12.0, cached=1.5),
    "o1-preview": ModelPricing(input=15.0, output=60.0, cached=7.5),
    "o3-mini": ModelPricing(input=1.1, output=4.4, cached=0.55),
}

DEFAULT_PRICING = ModelPricing(input=5.0, output=15.0, cached=2.5)


def get_model_pricing(model: str | None) -> ModelPricing:
    """Price row for ``model``, or :data:`DEFAULT_PRICING`."""
    model_lower = (model or "").lower()
    for key, pricing in TOKEN_PRICING.items():
        if key in model_lower:
            return pricing
    return DEFAULT_PRICING


def calculate_cost(
    model: str | None,
    input_tokens: int,
    output_tokens: int,
    cached_tokens: int = 0,
    reasoning_tokens: int = 0,
) -> float:
    """Cost in USD for one model call.

    Reasoning tokens are billed at the output rate.

    >>> round(calculate_cost("gpt-4o", 1000, 500), 6)
    0.0075
    """
    pricing = get_model_pricing(model)
    return (
        input_tokens * pricing.input / 1_000_000
        + (output_tokens + reasoning_tokens) * pricing.output / 1_000_000
        + cached_tokens * pricing.cached / 1_000_000
    )
