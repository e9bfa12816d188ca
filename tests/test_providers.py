from __future__ import annotations

import allure
import pytest

from scan_orchestrator.orchestrator.errors import UnknownModelError
from scan_orchestrator.orchestrator.providers import (
    MODEL_REGISTRY,
    ModelSpec,
    Provider,
    cheapest_evaluation_model,
    resolve_model,
    resolve_models,
)

pytestmark = [
    allure.epic("Chunk Executor"),
    allure.feature("Model Registry"),
]


def test_provider_comes_from_registry_entry() -> None:
    assert resolve_model("claude-haiku-4-5").provider is Provider.ANTHROPIC
    assert resolve_model(" gemini-2-5-flash ").provider is Provider.GOOGLE

    lookalike = {"gpt-lookalike": ModelSpec("gpt-lookalike", Provider.GROQ, "Lookalike", 1, 1)}
    assert resolve_model("gpt-lookalike", lookalike).provider is Provider.GROQ


def test_unknown_model_raises_value_error_subclass() -> None:
    with pytest.raises(UnknownModelError) as error:
        resolve_models(["gpt-5-mini", "made-up"])

    assert isinstance(error.value, ValueError)
    assert error.value.model_id == "made-up"


def test_cheapest_evaluation_model_skips_excluded_models() -> None:
    registry = {
        model_id: MODEL_REGISTRY[model_id] for model_id in ("gpt-5-nano", "gpt-5-mini", "gpt-5-2")
    }

    assert cheapest_evaluation_model(registry).model_id == "gpt-5-mini"
    assert cheapest_evaluation_model().model_id == "llama-4-scout"


def test_cheapest_evaluation_model_requires_candidates() -> None:
    with pytest.raises(ValueError, match="no evaluation-capable"):
        cheapest_evaluation_model({"gpt-5-nano": MODEL_REGISTRY["gpt-5-nano"]})
