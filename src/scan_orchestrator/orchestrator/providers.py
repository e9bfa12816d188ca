"""Static model registry: model id -> provider tag and base token prices."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from scan_orchestrator.orchestrator.errors import UnknownModelError


class Provider(str, Enum):
    """Provider tag resolved once from the registry, never from the model name."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    GROQ = "groq"
    PERPLEXITY = "perplexity"


@dataclass(frozen=True, slots=True)
class ModelSpec:
    """Registry entry with USD prices per 1M tokens."""

    model_id: str
    provider: Provider
    display_name: str
    input_usd_per_1m: float
    output_usd_per_1m: float
    available_free_tier: bool = False


MODEL_REGISTRY: dict[str, ModelSpec] = {
    spec.model_id: spec
    for spec in (
        ModelSpec("gpt-5-2", Provider.OPENAI, "GPT-5.2", 1.75, 14.00),
        ModelSpec("gpt-5-mini", Provider.OPENAI, "GPT-5 Mini", 0.25, 2.00, True),
        ModelSpec("gpt-5-nano", Provider.OPENAI, "GPT-5 Nano", 0.10, 0.40, True),
        ModelSpec("claude-opus-4-5", Provider.ANTHROPIC, "Claude Opus 4.5", 5.00, 25.00),
        ModelSpec("claude-sonnet-4-5", Provider.ANTHROPIC, "Claude Sonnet 4.5", 3.00, 15.00),
        ModelSpec("claude-haiku-4-5", Provider.ANTHROPIC, "Claude Haiku 4.5", 1.00, 5.00, True),
        ModelSpec("claude-opus-4-1", Provider.ANTHROPIC, "Claude Opus 4.1", 12.00, 60.00),
        ModelSpec(
            "gemini-3-flash-preview",
            Provider.GOOGLE,
            "Gemini 3 Flash Preview",
            0.50,
            3.00,
            True,
        ),
        ModelSpec("gemini-2-5-flash", Provider.GOOGLE, "Gemini 2.5 Flash", 0.60, 3.50, True),
        ModelSpec(
            "gemini-2-5-flash-lite",
            Provider.GOOGLE,
            "Gemini 2.5 Flash Lite",
            0.30,
            2.50,
            True,
        ),
        ModelSpec("llama-4-scout", Provider.GROQ, "Llama 4 Scout", 0.10, 0.15, True),
        ModelSpec("llama-4-maverick", Provider.GROQ, "Llama 4 Maverick", 0.20, 0.60, True),
        ModelSpec("sonar-reasoning-pro", Provider.PERPLEXITY, "Sonar Reasoning Pro", 2.00, 8.00),
    )
}

# Too weak to follow the metrics rubric reliably.
_EVALUATION_EXCLUDED = frozenset({"gpt-5-nano"})


def resolve_model(model_id: str, registry: dict[str, ModelSpec] | None = None) -> ModelSpec:
    """Look up a model id; unknown ids are a configuration error."""

    table = MODEL_REGISTRY if registry is None else registry
    spec = table.get(model_id.strip())
    if spec is None:
        raise UnknownModelError(model_id)
    return spec


def resolve_models(
    model_ids: Iterable[str],
    registry: dict[str, ModelSpec] | None = None,
) -> list[ModelSpec]:
    return [resolve_model(model_id, registry) for model_id in model_ids]


def cheapest_evaluation_model(registry: dict[str, ModelSpec] | None = None) -> ModelSpec:
    """Pick the cheapest model usable as an evaluator (by combined token price)."""

    table = MODEL_REGISTRY if registry is None else registry
    candidates = [spec for spec in table.values() if spec.model_id not in _EVALUATION_EXCLUDED]
    if not candidates:
        raise ValueError("Model registry has no evaluation-capable models.")
    return min(
        candidates,
        key=lambda spec: (spec.input_usd_per_1m + spec.output_usd_per_1m, spec.model_id),
    )
