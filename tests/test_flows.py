from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from scan_orchestrator.orchestrator.flows import TickResult, scan_tick_flow
from scan_orchestrator.orchestrator.models import (
    QueueStatus,
    ScheduleConfig,
    ScheduleFrequency,
)
from scan_orchestrator.orchestrator.runtime import ScanRuntime
from tests.conftest import make_settings, seed_project

pytestmark = [
    allure.epic("Scan Queue"),
    allure.feature("Scheduled Tick"),
]

NOW = datetime(2026, 2, 9, 6, 30, tzinfo=UTC)


@pytest.fixture()
def tick_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("SCAN_ORCHESTRATOR_EVALUATOR", "keyword")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_CHAIN_ENABLED", "false")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_ENV", "development")
    return tmp_path / "tick.db"


def _seed_due(runtime_factory: Callable[..., ScanRuntime], db_path: Path) -> str:
    runtime = runtime_factory(make_settings(db_path))
    project = seed_project(
        runtime,
        schedule=ScheduleConfig(frequency=ScheduleFrequency.DAILY, hour=6),
        next_scheduled_scan_at=datetime(2026, 2, 9, 6, 0, tzinfo=UTC),
    )
    return project.project_id


def test_tick_enqueues_and_processes_due_project(
    tick_db: Path,
    runtime_factory: Callable[..., ScanRuntime],
) -> None:
    _seed_due(runtime_factory, tick_db)

    result = scan_tick_flow.fn(db_path=tick_db, now=NOW)

    assert isinstance(result, TickResult)
    assert (result.enqueued, result.already_queued) == (1, 0)
    assert (result.processed, result.remaining) == (1, 0)
    assert result.message == "Scan completed"
    assert result.queue_id is not None

    check = runtime_factory(make_settings(tick_db))
    assert check.queue.require(result.queue_id).status is QueueStatus.COMPLETED


def test_tick_without_processing_only_enqueues(
    tick_db: Path,
    runtime_factory: Callable[..., ScanRuntime],
) -> None:
    project_id = _seed_due(runtime_factory, tick_db)

    first = scan_tick_flow.fn(db_path=tick_db, now=NOW, process=False)
    second = scan_tick_flow.fn(db_path=tick_db, now=NOW, process=False)

    assert (first.enqueued, first.processed, first.remaining) == (1, 0, 1)
    assert first.queue_id is None
    assert (second.enqueued, second.already_queued, second.remaining) == (0, 0, 1)

    check = runtime_factory(make_settings(tick_db))
    project = check.scans.get_project(project_id)
    assert project is not None
    assert project.next_scheduled_scan_at == datetime(2026, 2, 10, 6, 0, tzinfo=UTC)


def test_idle_tick_reports_nothing_to_do(tick_db: Path) -> None:
    result = scan_tick_flow.fn(db_path=tick_db, now=NOW)

    assert result == TickResult(
        enqueued=0,
        already_queued=0,
        processed=0,
        remaining=0,
        queue_id=None,
        message="No pending scans",
    )
