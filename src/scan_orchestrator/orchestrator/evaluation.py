"""Response evaluation: metrics parsing, LLM evaluator and keyword fallback."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol

from scan_orchestrator.orchestrator.backend.base import ProbeClient
from scan_orchestrator.orchestrator.errors import EvaluationParseError
from scan_orchestrator.orchestrator.models import ScanMetrics
from scan_orchestrator.orchestrator.pricing import PricingTable
from scan_orchestrator.orchestrator.prompts import (
    EVALUATION_SYSTEM_PROMPT,
    build_evaluation_prompt,
)

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_METRIC_KEYS = ("visibility_score", "ranking_score", "recommendation_score")

POSITIVE_WORDS = (
    "recommend",
    "best",
    "excellent",
    "great",
    "top",
    "leading",
    "premier",
    "quality",
    "reliable",
    "trusted",
    "popular",
)
NEGATIVE_WORDS = (
    "avoid",
    "worst",
    "poor",
    "bad",
    "disappointing",
    "unreliable",
    "expensive",
    "lacking",
)


@dataclass(slots=True)
class EvaluationOutcome:
    """Metrics for one response plus the evaluation call's own usage.

    `charged` is false when no billable evaluation call was made or its
    output could not be parsed; uncharged outcomes carry zero cost.
    """

    metrics: ScanMetrics
    input_tokens: int = 0
    output_tokens: int = 0
    cost_cents: int = 0
    charged: bool = False
    model_id: str | None = None


class EvaluationClient(Protocol):
    model_id: str | None

    def evaluate(self, content: str, brand_names: list[str], domain: str) -> EvaluationOutcome:
        """Score how well `content` presents the brand."""


def normalize_domain(domain: str) -> str:
    value = domain.strip().lower()
    value = re.sub(r"^[a-z][a-z0-9+.-]*://", "", value)
    value = value.removeprefix("www.")
    return value.split("/", 1)[0]


def mentions_brand(content: str, brand_names: list[str], domain: str) -> tuple[bool, bool]:
    """Return (brand mentioned, domain mentioned), case-insensitively."""

    lowered = content.lower()
    brand_hit = any(name.strip() and name.strip().lower() in lowered for name in brand_names)
    host = normalize_domain(domain)
    domain_hit = bool(host) and host in lowered
    return brand_hit, domain_hit


def parse_evaluation(content: str) -> ScanMetrics:
    """Parse evaluator output into clamped metrics.

    Markdown code fences around the JSON object are tolerated. Sentiment is
    dropped whenever visibility is zero.
    """

    text = _FENCE_RE.sub("", content.strip()).strip()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as error:
        raise EvaluationParseError(f"Evaluation output is not JSON: {error.msg}") from error
    if not isinstance(payload, dict):
        raise EvaluationParseError("Evaluation output must be a JSON object.")

    values: dict[str, float] = {}
    for key in _METRIC_KEYS:
        raw = payload.get(key)
        number = _as_number(raw)
        if number is None:
            raise EvaluationParseError(f"Evaluation output field {key!r} is not a number: {raw!r}")
        values[key] = _clamp(number)

    sentiment_raw = payload.get("sentiment_score")
    sentiment = _as_number(sentiment_raw)
    if sentiment_raw is not None and sentiment is None:
        raise EvaluationParseError(
            f"Evaluation output field 'sentiment_score' is not a number: {sentiment_raw!r}",
        )
    visibility = values["visibility_score"]
    return ScanMetrics(
        visibility_score=visibility,
        sentiment_score=_clamp(sentiment) if sentiment is not None and visibility > 0 else None,
        ranking_score=values["ranking_score"],
        recommendation_score=values["recommendation_score"],
    )


class LlmEvaluationClient:
    """Ask an evaluation model to score a response against the rubric."""

    def __init__(self, *, probe_client: ProbeClient, pricing: PricingTable, model_id: str) -> None:
        pricing.pricing_for(model_id)
        self._probe_client = probe_client
        self._pricing = pricing
        self.model_id = model_id

    def evaluate(self, content: str, brand_names: list[str], domain: str) -> EvaluationOutcome:
        brand_hit, domain_hit = mentions_brand(content, brand_names, domain)
        if not brand_hit and not domain_hit:
            return EvaluationOutcome(metrics=ScanMetrics.zero())

        response = self._probe_client.call(
            self.model_id,
            build_evaluation_prompt(content, brand_names, domain),
            system_prompt=EVALUATION_SYSTEM_PROMPT,
        )
        try:
            metrics = parse_evaluation(response.content)
        except EvaluationParseError as error:
            logger.warning("Evaluation by %s was unparseable: %s", self.model_id, error)
            return EvaluationOutcome(metrics=ScanMetrics.zero(), model_id=self.model_id)

        return EvaluationOutcome(
            metrics=metrics,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            cost_cents=self._pricing.cost_cents(
                self.model_id,
                response.input_tokens,
                response.output_tokens,
            ),
            charged=True,
            model_id=self.model_id,
        )


class KeywordEvaluationClient:
    """Free heuristic evaluator based on mentions and sentiment keywords."""

    model_id: str | None = None

    def evaluate(self, content: str, brand_names: list[str], domain: str) -> EvaluationOutcome:
        brand_hit, domain_hit = mentions_brand(content, brand_names, domain)
        if not brand_hit and not domain_hit:
            return EvaluationOutcome(metrics=ScanMetrics.zero())

        visibility = (50 if brand_hit else 0) + (50 if domain_hit else 0)
        needles = [name.strip().lower() for name in brand_names if name.strip()]
        host = normalize_domain(domain)
        if host:
            needles.append(host)
        context = " ".join(
            sentence
            for sentence in _SENTENCE_SPLIT_RE.split(content.lower())
            if any(needle in sentence for needle in needles)
        )
        positive = sum(context.count(word) for word in POSITIVE_WORDS)
        negative = sum(context.count(word) for word in NEGATIVE_WORDS)
        sentiment = 50 + min(positive * 10, 40) - min(negative * 10, 40)
        ranking = 90 if positive > 0 else 50
        recommendation = _clamp(
            round(visibility * 0.35 + (sentiment - 50) * 2 * 0.35 + ranking * 0.3),
        )
        return EvaluationOutcome(
            metrics=ScanMetrics(
                visibility_score=visibility,
                sentiment_score=sentiment,
                ranking_score=ranking,
                recommendation_score=recommendation,
            ),
        )


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, float(value)))
