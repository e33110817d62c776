from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens."""

    input: float
    output: float
    cache_read: float | None = None
    cache_write: float | None = None


MODEL_PRICING: dict[str, ModelPricing] = {
    "claude-haiku-4-5": ModelPricing(input=1.00, output=5.00, cache_read=0.10, cache_write=1.25),
    "claude-sonnet-4-5": ModelPricing(input=3.00, output=15.00, cache_read=0.30, cache_write=3.75),
    "claude-opus-4-5": ModelPricing(input=5.00, output=25.00, cache_read=0.50, cache_write=6.25),
    "gpt-4o": ModelPricing(input=2.50, output=10.00, cache_read=1.25),
    "gpt-4o-mini": ModelPricing(input=0.15, output=0.60, cache_read=0.075),
    "gpt-4.1": ModelPricing(input=2.00, output=8.00, cache_read=0.50),
    "gpt-4.1-mini": ModelPricing(input=0.40, output=1.60, cache_read=0.10),
}

DEFAULT_PRICING = ModelPricing(input=5.00, output=15.00)


def get_model_pricing(model: str | None) -> ModelPricing:
    if not model:
        return DEFAULT_PRICING
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]
    # Dated snapshots ("claude-sonnet-4-5-20250929", "gpt-4o-2024-08-06") share the family price.
    for name in sorted(MODEL_PRICING, key=len, reverse=True):
        if model.startswith(name + "-"):
            return MODEL_PRICING[name]
    return DEFAULT_PRICING


def is_known_model(model: str | None) -> bool:
    return get_model_pricing(model) is not DEFAULT_PRICING


def calculate_cost_usd(
    model: str | None,
    input_tokens: int,
    output_tokens: int,
    *,
    cache_read_tokens: int = 0,
    cache_write_tokens: int = 0,
) -> float:
    """Cost of one call. ``input_tokens`` excludes cache reads and cache writes."""
    pricing = get_model_pricing(model)
    cost = input_tokens * pricing.input + output_tokens * pricing.output
    cost += cache_read_tokens * (pricing.cache_read if pricing.cache_read is not None else pricing.input)
    cost += cache_write_tokens * (pricing.cache_write if pricing.cache_write is not None else pricing.input)
    return cost / 1_000_000


def calculate_cost_cents(
    model: str | None,
    input_tokens: int,
    output_tokens: int,
    *,
    cache_read_tokens: int = 0,
    cache_write_tokens: int = 0,
) -> float:
    return 100 * calculate_cost_usd(
        model,
        input_tokens,
        output_tokens,
        cache_read_tokens=cache_read_tokens,
        cache_write_tokens=cache_write_tokens,
    )


def format_cost(cents: float) -> str:
    return f"${cents / 100:.4f}"


def format_tokens(count: int) -> str:
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1_000:
        return f"{count / 1_000:.1f}K"
    return str(count)
