from __future__ import annotations

from os import environ
from pathlib import Path

import allure
import pytest

from scan_orchestrator.config import (
    ChunkSettings,
    CreditSettings,
    ProbeSettings,
    QueueSettings,
    Settings,
    WorkerSettings,
)

pytestmark = [
    allure.epic("Scan Queue"),
    allure.feature("Configuration"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(environ):
        if name.startswith("SCAN_ORCHESTRATOR_"):
            monkeypatch.delenv(name)


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".scan_orchestrator.db")
    assert settings.chunk.max_queries_per_chunk == 2
    assert settings.chunk.wall_clock_ceiling_seconds == 290.0
    assert settings.queue.zero_progress_seconds == 900
    assert settings.credits.max_free_scans_per_month == 10
    assert settings.probe.backend == "echo"
    assert settings.probe.evaluator == "llm"
    assert settings.worker.chain_enabled
    assert not settings.worker.is_development


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCAN_ORCHESTRATOR_DB_PATH", "/tmp/custom.db")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_CHUNK_MAX_QUERIES", "5")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_QUEUE_HARD_CEILING_SECONDS", "60")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_EVALUATOR", " Keyword ")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_CHAIN_ENABLED", "off")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_ENV", "Development")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_CRON_SECRET", "")
    monkeypatch.setenv("SCAN_ORCHESTRATOR_PRICING_MARKUP_PERCENT", "25")

    settings = Settings.from_env()

    assert settings.db_path == Path("/tmp/custom.db")
    assert settings.chunk.max_queries_per_chunk == 5
    assert settings.queue.hard_ceiling_seconds == 60
    assert settings.probe.evaluator == "keyword"
    assert not settings.worker.chain_enabled
    assert settings.worker.is_development
    assert settings.worker.cron_secret is None
    assert settings.pricing.markup_percent == 25.0


def test_explicit_db_path_wins_over_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCAN_ORCHESTRATOR_DB_PATH", "/tmp/env.db")

    settings = Settings.from_env(db_path=Path("/tmp/cli.db"))

    assert settings.db_path == Path("/tmp/cli.db")


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCAN_ORCHESTRATOR_CHAIN_ENABLED", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value for SCAN_ORCHESTRATOR_CHAIN"):
        Settings.from_env()


def test_default_settings_are_valid_for_worker() -> None:
    Settings().validate_for_worker()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(queue=QueueSettings(hard_ceiling_seconds=0)), "HARD_CEILING_SECONDS"),
        (Settings(queue=QueueSettings(claim_max_retries=0)), "CLAIM_MAX_RETRIES"),
        (Settings(chunk=ChunkSettings(max_queries_per_chunk=0)), "CHUNK_MAX_QUERIES"),
        (Settings(chunk=ChunkSettings(wall_clock_ceiling_seconds=0)), "WALL_CLOCK_CEILING"),
        (Settings(credits=CreditSettings(reservation_buffer=0.5)), "RESERVATION_BUFFER"),
        (Settings(probe=ProbeSettings(backend="grpc")), "PROBE_BACKEND must be one of"),
        (Settings(probe=ProbeSettings(evaluator="vibes")), "EVALUATOR must be one of"),
        (
            Settings(probe=ProbeSettings(backend="http")),
            "SCAN_ORCHESTRATOR_GATEWAY_URL is required when",
        ),
        (
            Settings(probe=ProbeSettings(backend="http", gateway_url="gateway.local")),
            "Invalid SCAN_ORCHESTRATOR_GATEWAY_URL",
        ),
    ],
)
def test_validate_for_worker_rejects_bad_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate_for_worker()


def test_http_backend_with_gateway_is_valid() -> None:
    settings = Settings(
        probe=ProbeSettings(backend="http", gateway_url="https://gateway.example.com/v1"),
    )

    settings.validate_for_worker()


def test_validate_for_api_requires_secret_outside_development() -> None:
    settings = Settings(worker=WorkerSettings(environment="production", cron_secret=None))

    with pytest.raises(ValueError, match="CRON_SECRET is required outside development"):
        settings.validate_for_api()


def test_validate_for_api_allows_development_without_secret() -> None:
    Settings(worker=WorkerSettings(environment="development")).validate_for_api()
    Settings(worker=WorkerSettings(cron_secret="s3cret")).validate_for_api()


def test_validate_for_api_rejects_relative_base_url() -> None:
    settings = Settings(worker=WorkerSettings(cron_secret="s3cret", base_url="worker:8000"))

    with pytest.raises(ValueError, match="Invalid SCAN_ORCHESTRATOR_BASE_URL"):
        settings.validate_for_api()
