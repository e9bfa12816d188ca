"""Fold per-turn conversation metrics into one resilience score.

A chain is the ordered results of one (query, model) pair across follow-up
levels. Level 0 establishes the baseline; later levels can only move the
score through a signed bonus, so a scan without follow-ups scores exactly
its mean initial recommendation.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from statistics import fmean

from scan_orchestrator.orchestrator.models import ScanMetrics, ScanScores

IMPROVING_WEIGHT = 0.5
DISAPPEARED_WEIGHT = 0.4
DECLINING_WEIGHT = 0.2


@dataclass(frozen=True, slots=True)
class ChainLevel:
    level: int
    metrics: ScanMetrics | None


@dataclass(slots=True)
class ResilienceScore:
    initial_score: float
    conversational_bonus: float
    brand_persistence: float
    sentiment_stability: float
    final_score: float
    follow_up_active: bool


@dataclass(slots=True)
class AggregateMetrics:
    overall_score: float
    avg_visibility: float
    avg_sentiment: float | None
    avg_ranking: float | None


def score_resilience(
    chains: Sequence[Sequence[ChainLevel]],
    *,
    follow_up_enabled: bool,
) -> ResilienceScore:
    """Compute initial score, persistence, bonus and the clamped final score.

    Chains without level-0 metrics are excluded from every denominator.
    `brand_persistence` is a fraction in [0, 1]; `sentiment_stability` is the
    chain mean of 100 minus the mean absolute deviation of visible sentiments.
    """

    valid = [levels for levels in (_scored_levels(chain) for chain in chains) if levels]
    if not valid:
        return ResilienceScore(
            initial_score=0.0,
            conversational_bonus=0.0,
            brand_persistence=0.0,
            sentiment_stability=100.0,
            final_score=0.0,
            follow_up_active=False,
        )

    initial = fmean(levels[0].recommendation_score for levels in valid)
    mentioned_initially = [levels for levels in valid if levels[0].brand_mentioned]
    persistence = (
        sum(1 for levels in mentioned_initially if levels[-1].brand_mentioned)
        / len(mentioned_initially)
        if mentioned_initially
        else 0.0
    )

    deep_chains = [levels for levels in valid if len(levels) > 1]
    follow_up_active = follow_up_enabled and bool(deep_chains)
    bonus = 0.0
    stability = 100.0
    if follow_up_active:
        bonus = fmean(_weighted_delta(levels) for levels in deep_chains)
        if bonus > 0:
            bonus *= persistence
        stability = fmean(_sentiment_stability(levels) for levels in valid)

    return ResilienceScore(
        initial_score=round(initial, 1),
        conversational_bonus=round(bonus, 2),
        brand_persistence=round(persistence, 4),
        sentiment_stability=float(round(stability)),
        final_score=round(_clamp(initial + bonus), 1),
        follow_up_active=follow_up_active,
    )


def aggregate_metrics(metrics: Sequence[ScanMetrics]) -> AggregateMetrics:
    """Scan-level averages; sentiment and ranking only where the brand is visible."""

    if not metrics:
        return AggregateMetrics(
            overall_score=0.0,
            avg_visibility=0.0,
            avg_sentiment=None,
            avg_ranking=None,
        )
    visible = [item for item in metrics if item.visibility_score > 0]
    sentiments = [item.sentiment_score for item in visible if item.sentiment_score is not None]
    return AggregateMetrics(
        overall_score=round(fmean(item.recommendation_score for item in metrics), 1),
        avg_visibility=round(fmean(item.visibility_score for item in metrics), 1),
        avg_sentiment=round(fmean(sentiments), 1) if sentiments else None,
        avg_ranking=round(fmean(item.ranking_score for item in visible), 1) if visible else None,
    )


def compute_scan_scores(
    chains: Sequence[Sequence[ChainLevel]],
    *,
    follow_up_enabled: bool,
) -> ScanScores:
    """Combine level-0 aggregates with the resilience fold for the scan row."""

    initial_metrics = [
        levels[0] for levels in (_scored_levels(chain) for chain in chains) if levels
    ]
    aggregate = aggregate_metrics(initial_metrics)
    resilience = score_resilience(chains, follow_up_enabled=follow_up_enabled)
    return ScanScores(
        overall_score=aggregate.overall_score,
        avg_visibility=aggregate.avg_visibility,
        avg_sentiment=aggregate.avg_sentiment,
        avg_ranking=aggregate.avg_ranking,
        initial_score=resilience.initial_score,
        conversational_bonus=resilience.conversational_bonus,
        brand_persistence=resilience.brand_persistence,
        sentiment_stability=resilience.sentiment_stability,
        final_score=resilience.final_score,
        follow_up_active=resilience.follow_up_active,
    )


def _scored_levels(chain: Sequence[ChainLevel]) -> list[ScanMetrics]:
    """Metrics of the contiguous scored prefix 0..N; empty when level 0 is unscored."""

    by_level = {item.level: item.metrics for item in chain}
    scored: list[ScanMetrics] = []
    for level in range(len(by_level)):
        metrics = by_level.get(level)
        if metrics is None:
            break
        scored.append(metrics)
    return scored


def _composite(metrics: ScanMetrics) -> float:
    if metrics.sentiment_score is None:
        return metrics.recommendation_score
    return fmean((metrics.recommendation_score, metrics.sentiment_score))


def _weighted_delta(levels: Sequence[ScanMetrics]) -> float:
    baseline = levels[0]
    delta = fmean(_composite(item) for item in levels[1:]) - _composite(baseline)
    if delta > 0:
        return delta * IMPROVING_WEIGHT
    if baseline.brand_mentioned and not levels[-1].brand_mentioned:
        return delta * DISAPPEARED_WEIGHT
    return delta * DECLINING_WEIGHT


def _sentiment_stability(levels: Sequence[ScanMetrics]) -> float:
    sentiments = [
        item.sentiment_score
        for item in levels
        if item.sentiment_score is not None and item.visibility_score > 0
    ]
    if len(sentiments) <= 1:
        return 100.0
    mean = fmean(sentiments)
    return max(0.0, 100.0 - fmean(abs(value - mean) for value in sentiments))


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))
