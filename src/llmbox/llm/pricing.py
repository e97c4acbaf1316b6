"""Token pricing, cost calculation, and conservative pre-call cost estimates.

Prices are USD per million tokens.  Costs are ``Decimal`` USD quantized to
micro-USD (six decimal places); the ledger stores them as integer micros.
"""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal

MICROS_PER_USD = 1_000_000
COST_QUANTUM = Decimal("0.000001")

# (input, output) USD per 1M tokens.  Longest prefix wins.
MODEL_PRICING: dict[str, tuple[Decimal, Decimal]] = {
    "claude-opus-4": (Decimal("15.00"), Decimal("75.00")),
    "claude-sonnet-4": (Decimal("3.00"), Decimal("15.00")),
    "claude-haiku-4": (Decimal("1.00"), Decimal("5.00")),
    "claude-3-7-sonnet": (Decimal("3.00"), Decimal("15.00")),
    "claude-3-5-sonnet": (Decimal("3.00"), Decimal("15.00")),
    "claude-3-5-haiku": (Decimal("0.80"), Decimal("4.00")),
    "claude-3-haiku": (Decimal("0.25"), Decimal("1.25")),
}

# Unknown models are priced as the most expensive family so estimates stay conservative.
FALLBACK_PRICING: tuple[Decimal, Decimal] = MODEL_PRICING["claude-opus-4"]

# Heuristic: ~4 characters per token, plus 20% for template overhead.
CHARS_PER_TOKEN = 4
ESTIMATE_BUFFER = 1.2


def price_for(model: str) -> tuple[Decimal, Decimal]:
    """Return ``(input, output)`` USD-per-million prices for *model*."""
    normalized = model.strip().lower()
    for prefix in sorted(MODEL_PRICING, key=len, reverse=True):
        if normalized.startswith(prefix):
            return MODEL_PRICING[prefix]
    return FALLBACK_PRICING


def quantize_cost(value: Decimal) -> Decimal:
    return value.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> Decimal:
    """Actual cost of a completed call.

    Example:
        >>> calculate_cost("claude-haiku-4-5", 1000, 500)
        Decimal('0.003500')
    """
    input_rate, output_rate = price_for(model)
    total = (input_rate * input_tokens + output_rate * output_tokens) / MICROS_PER_USD
    return quantize_cost(total)


def estimate_input_tokens(text: str) -> int:
    """Conservative token count for *text* (never below 1 for non-empty input)."""
    if not text:
        return 0
    return math.ceil(math.ceil(len(text) / CHARS_PER_TOKEN) * ESTIMATE_BUFFER)


def estimate_cost(model: str, prompt_text: str, max_output_tokens: int) -> Decimal:
    """Upper-bound cost estimate used for the admission reservation.

    Prices the heuristic input size plus the full output-token budget, so the
    actual cost only exceeds the estimate when the tokenizer disagrees with the
    heuristic on input length.
    """
    return calculate_cost(model, estimate_input_tokens(prompt_text), max_output_tokens)


def to_micros(cost: Decimal) -> int:
    return int(quantize_cost(cost) * MICROS_PER_USD)


def from_micros(micros: int) -> Decimal:
    return quantize_cost(Decimal(micros) / MICROS_PER_USD)


def format_cost(cost: Decimal) -> str:
    """Render *cost* as ``$0.001234`` (always six decimals)."""
    return f"${quantize_cost(cost):.6f}"
