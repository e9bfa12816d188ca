"""Token pricing in integer cents with a platform markup."""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from fractions import Fraction

from scan_orchestrator.orchestrator.providers import MODEL_REGISTRY, ModelSpec, resolve_model

TOKENS_PER_PRICE_UNIT = 1_000_000
DEFAULT_AVG_INPUT_TOKENS = 500
DEFAULT_AVG_OUTPUT_TOKENS = 1_000
DEFAULT_EVALUATION_MULTIPLIER = 1.5
DEFAULT_RESERVATION_BUFFER = 1.2


@dataclass(frozen=True, slots=True)
class ModelPricing:
    """Final per-model price in cents per 1M tokens, markup already applied."""

    model_id: str
    provider: str
    input_cents_per_1m: int
    output_cents_per_1m: int


class PricingTable:
    """Pricing lookup resolved once from the static model registry."""

    def __init__(
        self,
        *,
        markup_percent: float = 0.0,
        registry: dict[str, ModelSpec] | None = None,
    ) -> None:
        if markup_percent < 0:
            raise ValueError(f"Markup percent must be >= 0, got {markup_percent}")
        self.markup_percent = markup_percent
        self._registry = MODEL_REGISTRY if registry is None else registry
        self._prices = {
            model_id: _final_pricing(spec, markup_percent)
            for model_id, spec in self._registry.items()
        }

    def pricing_for(self, model_id: str) -> ModelPricing:
        spec = resolve_model(model_id, self._registry)
        return self._prices[spec.model_id]

    def cost_cents(self, model_id: str, input_tokens: int, output_tokens: int) -> int:
        """Cost of one call, rounded up to a whole cent."""

        pricing = self.pricing_for(model_id)
        scaled = (
            max(0, input_tokens) * pricing.input_cents_per_1m
            + max(0, output_tokens) * pricing.output_cents_per_1m
        )
        return _ceil_div(scaled, TOKENS_PER_PRICE_UNIT)

    def estimate_scan_cost_cents(  # noqa: PLR0913
        self,
        *,
        model_ids: Iterable[str],
        query_count: int,
        turns_per_operation: int = 1,
        avg_input_tokens: int = DEFAULT_AVG_INPUT_TOKENS,
        avg_output_tokens: int = DEFAULT_AVG_OUTPUT_TOKENS,
        evaluation_multiplier: float = DEFAULT_EVALUATION_MULTIPLIER,
    ) -> int:
        """Estimate a scan from average token counts per query per model.

        `turns_per_operation` is `1 + depth` when follow-up is enabled, and the
        evaluation multiplier covers the evaluation call made for every turn.
        """

        scaled_total = 0
        for model_id in model_ids:
            pricing = self.pricing_for(model_id)
            scaled_total += (
                avg_input_tokens * pricing.input_cents_per_1m
                + avg_output_tokens * pricing.output_cents_per_1m
            )
        scaled_total *= max(0, query_count) * max(1, turns_per_operation)
        exact = Fraction(scaled_total, TOKENS_PER_PRICE_UNIT) * Fraction(
            str(evaluation_multiplier),
        )
        return math.ceil(exact)


def reservation_amount_cents(
    estimated_cost_cents: int,
    buffer: float = DEFAULT_RESERVATION_BUFFER,
) -> int:
    """Reservation hold: the estimate plus a safety buffer, rounded up."""

    return math.ceil(Fraction(estimated_cost_cents) * Fraction(str(buffer)))


def _final_pricing(spec: ModelSpec, markup_percent: float) -> ModelPricing:
    factor = 1 + markup_percent / 100
    return ModelPricing(
        model_id=spec.model_id,
        provider=spec.provider.value,
        input_cents_per_1m=round(spec.input_usd_per_1m * 100 * factor),
        output_cents_per_1m=round(spec.output_usd_per_1m * 100 * factor),
    )


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)
