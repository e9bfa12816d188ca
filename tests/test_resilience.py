from __future__ import annotations

import allure
import pytest

from scan_orchestrator.orchestrator.models import ScanMetrics
from scan_orchestrator.orchestrator.resilience import (
    ChainLevel,
    aggregate_metrics,
    compute_scan_scores,
    score_resilience,
)

pytestmark = [
    allure.epic("Resilience Scorer"),
    allure.feature("Conversational Bonus"),
]


def _metrics(
    recommendation: float,
    sentiment: float | None = None,
    *,
    visibility: float = 50,
    ranking: float = 0,
) -> ScanMetrics:
    return ScanMetrics(
        visibility_score=visibility,
        sentiment_score=sentiment,
        ranking_score=ranking,
        recommendation_score=recommendation,
    )


def _chain(*metrics: ScanMetrics | None) -> list[ChainLevel]:
    return [ChainLevel(level=level, metrics=item) for level, item in enumerate(metrics)]


def test_without_follow_ups_final_equals_initial() -> None:
    score = score_resilience(
        [_chain(_metrics(60)), _chain(_metrics(80))],
        follow_up_enabled=False,
    )

    assert score.initial_score == 70
    assert score.final_score == 70
    assert score.conversational_bonus == 0
    assert not score.follow_up_active
    assert score.brand_persistence == 1


def test_improving_chain_earns_half_the_delta() -> None:
    score = score_resilience(
        [_chain(_metrics(60, 60), _metrics(80, 80))],
        follow_up_enabled=True,
    )

    assert score.follow_up_active
    assert score.conversational_bonus == pytest.approx(10)
    assert score.final_score == pytest.approx(70)


def test_positive_bonus_is_scaled_by_persistence() -> None:
    persisting = _chain(_metrics(50, 50), _metrics(70, 70))
    vanishing = _chain(_metrics(50, 50), _metrics(50, visibility=0))

    score = score_resilience([persisting, vanishing], follow_up_enabled=True)

    assert score.brand_persistence == 0.5
    assert score.conversational_bonus == pytest.approx(2.5)
    assert score.final_score == pytest.approx(52.5)


def test_disappearing_brand_is_penalised_harder_than_declining() -> None:
    disappeared = score_resilience(
        [_chain(_metrics(80, 80, visibility=100), _metrics(20, visibility=0))],
        follow_up_enabled=True,
    )
    declining = score_resilience(
        [_chain(_metrics(80, 80, visibility=100), _metrics(60, 60, visibility=100))],
        follow_up_enabled=True,
    )

    assert disappeared.conversational_bonus == pytest.approx(-24)
    assert disappeared.final_score == pytest.approx(56)
    assert disappeared.brand_persistence == 0
    assert declining.conversational_bonus == pytest.approx(-4)
    assert declining.final_score == pytest.approx(76)


def test_disabled_follow_up_ignores_deeper_levels() -> None:
    score = score_resilience(
        [_chain(_metrics(60, 60), _metrics(100, 100))],
        follow_up_enabled=False,
    )

    assert not score.follow_up_active
    assert score.conversational_bonus == 0
    assert score.final_score == 60


def test_chain_without_level_zero_metrics_is_excluded() -> None:
    score = score_resilience(
        [_chain(None, _metrics(90, 90)), _chain(_metrics(40))],
        follow_up_enabled=True,
    )

    assert score.initial_score == 40
    assert score.final_score == 40
    assert not score.follow_up_active


def test_gap_in_levels_truncates_the_chain() -> None:
    chain = [
        ChainLevel(level=0, metrics=_metrics(60, 60)),
        ChainLevel(level=2, metrics=_metrics(100, 100)),
    ]

    score = score_resilience([chain], follow_up_enabled=True)

    assert score.conversational_bonus == 0
    assert score.final_score == 60


@pytest.mark.parametrize(
    ("chain", "expected"),
    [
        (_chain(_metrics(0, 100), _metrics(0, visibility=0)), 0),
        (_chain(_metrics(100, 20), _metrics(100, 100)), 100),
    ],
)
def test_final_score_is_clamped(chain: list[ChainLevel], expected: float) -> None:
    assert score_resilience([chain], follow_up_enabled=True).final_score == expected


def test_empty_input_scores_zero() -> None:
    score = score_resilience([], follow_up_enabled=True)

    assert (score.initial_score, score.final_score, score.brand_persistence) == (0, 0, 0)
    assert aggregate_metrics([]).avg_sentiment is None


def test_scan_scores_aggregate_level_zero_only() -> None:
    chains = [
        _chain(
            _metrics(60, 60, visibility=100, ranking=80),
            _metrics(0, visibility=0),
        ),
        _chain(_metrics(40, 40, visibility=20, ranking=100)),
        _chain(_metrics(20, visibility=0)),
    ]

    scores = compute_scan_scores(chains, follow_up_enabled=True)

    assert scores.overall_score == 40
    assert scores.avg_visibility == 40
    assert scores.avg_sentiment == 50
    assert scores.avg_ranking == 90
    assert scores.initial_score == 40
    assert scores.brand_persistence == 0.5
    assert scores.conversational_bonus == pytest.approx(-24)
    assert scores.final_score == pytest.approx(16)
    assert scores.follow_up_active


def test_sentiment_stability_averages_visible_deviation_per_chain() -> None:
    shifting = _chain(_metrics(50, 40), _metrics(50, 80))
    vanishing = _chain(_metrics(50, 70), _metrics(0, 10, visibility=0))

    enabled = score_resilience([shifting, vanishing], follow_up_enabled=True)
    disabled = score_resilience([shifting, vanishing], follow_up_enabled=False)

    assert enabled.sentiment_stability == 90
    assert disabled.sentiment_stability == 100
    assert score_resilience([], follow_up_enabled=True).sentiment_stability == 100
    scores = compute_scan_scores([shifting, vanishing], follow_up_enabled=True)
    assert scores.sentiment_stability == 90
