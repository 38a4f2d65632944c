"""Token accounting across tool-loop iterations, plus cost estimates.

Vendors report usage as cumulative snapshots within one stream (Gemini
repeats usageMetadata on every chunk, Anthropic splits input/output across
message_start and message_delta). The last value per field wins inside an
iteration; iterations are summed into the session totals.
"""

from __future__ import annotations

from dataclasses import dataclass

from conduit.api.models import UsageTotals
from conduit.providers.base import UsageSnapshot


@dataclass
class ModelPricing:
    """USD per million tokens."""

    input: float
    output: float


PRICING: dict[str, ModelPricing] = {
    "claude-opus-4": ModelPricing(15.0, 75.0),
    "claude-sonnet-4": ModelPricing(3.0, 15.0),
    "claude-haiku-4": ModelPricing(0.8, 4.0),
    "gpt-4o-mini": ModelPricing(0.15, 0.6),
    "gpt-4o": ModelPricing(2.5, 10.0),
    "gpt-4.1": ModelPricing(2.0, 8.0),
    "gemini-2.0-flash": ModelPricing(0.1, 0.4),
    "gemini-1.5-pro": ModelPricing(1.25, 5.0),
}

# Fallback for unrecognized models: Sonnet pricing
DEFAULT_PRICING = ModelPricing(3.0, 15.0)


def get_model_pricing(model: str) -> ModelPricing:
    """Longest matching prefix wins (gpt-4o-mini before gpt-4o)."""
    name = model.split(":", 1)[1] if model.startswith(("anthropic:", "openai:", "gemini:")) else model
    for key in sorted(PRICING, key=len, reverse=True):
        if name.startswith(key):
            return PRICING[key]
    return DEFAULT_PRICING


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    # Ollama models are local and free
    if model.startswith("ollama:"):
        return 0.0
    pricing = get_model_pricing(model)
    return (input_tokens / 1_000_000) * pricing.input + (output_tokens / 1_000_000) * pricing.output


class UsageAccountant:
    """Accumulates prompt/completion tokens for one session."""

    def __init__(self) -> None:
        self._totals = UsageTotals()
        self._iteration = UsageTotals()
        self.iterations = 0

    def begin_iteration(self) -> None:
        self._iteration = UsageTotals()

    def observe(self, snapshot: UsageSnapshot) -> None:
        if snapshot.input_tokens is not None:
            self._iteration.input_tokens = snapshot.input_tokens
        if snapshot.output_tokens is not None:
            self._iteration.output_tokens = snapshot.output_tokens

    def commit_iteration(self) -> None:
        self._totals.input_tokens += self._iteration.input_tokens
        self._totals.output_tokens += self._iteration.output_tokens
        self._iteration = UsageTotals()
        self.iterations += 1

    @property
    def totals(self) -> UsageTotals:
        return UsageTotals(self._totals.input_tokens, self._totals.output_tokens)

    def cost(self, model: str) -> float:
        return calculate_cost(model, self._totals.input_tokens, self._totals.output_tokens)
