"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import replace
from pathlib import Path

import pytest

from scan_orchestrator.config import ProbeSettings, Settings, WorkerSettings
from scan_orchestrator.orchestrator.backend import EchoProbeClient, ProbeClient
from scan_orchestrator.orchestrator.models import (
    ProjectCreate,
    ProjectView,
    QueryType,
    UserTier,
)
from scan_orchestrator.orchestrator.runtime import ScanRuntime, build_runtime

BRAND_RESPONSE = "Acme is the best and most reliable choice. See acme.com for details."
DEFAULT_MODELS = ("gpt-5-mini", "claude-haiku-4-5")


def make_settings(db_path: Path, **overrides: object) -> Settings:
    """Local settings: keyword evaluator, development auth, no HTTP chaining."""

    settings = Settings(
        db_path=db_path,
        probe=ProbeSettings(backend="echo", evaluator="keyword"),
        worker=WorkerSettings(environment="development", chain_enabled=False),
    )
    return replace(settings, **overrides)


@pytest.fixture()
def echo_client() -> EchoProbeClient:
    return EchoProbeClient(response_text=BRAND_RESPONSE)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path / "scans.db")


@pytest.fixture()
def runtime_factory() -> Iterator[Callable[..., ScanRuntime]]:
    created: list[ScanRuntime] = []

    def _build(settings: Settings, probe_client: ProbeClient | None = None) -> ScanRuntime:
        runtime = build_runtime(
            settings,
            probe_client=probe_client or EchoProbeClient(response_text=BRAND_RESPONSE),
        )
        created.append(runtime)
        return runtime

    yield _build
    for runtime in created:
        runtime.close()


@pytest.fixture()
def runtime(
    settings: Settings,
    echo_client: EchoProbeClient,
    runtime_factory: Callable[..., ScanRuntime],
) -> ScanRuntime:
    return runtime_factory(settings, echo_client)


def seed_project(  # noqa: PLR0913
    runtime: ScanRuntime,
    *,
    user_id: str = "user-1",
    tier: UserTier = UserTier.PAID,
    balance_cents: int = 10_000,
    queries: int = 2,
    models: tuple[str, ...] = DEFAULT_MODELS,
    **project_fields: object,
) -> ProjectView:
    """Create a user (if missing) and an Acme project with `queries` active queries."""

    runtime.scans.ensure_user(user_id, tier=tier, credit_balance_cents=balance_cents)
    payload = ProjectCreate(
        user_id=user_id,
        name="Acme visibility",
        domain="acme.com",
        brand_names=["Acme"],
        selected_models=list(models),
        queries=[
            (f"What is the best widget vendor #{index}?", QueryType.INFORMATIONAL)
            for index in range(1, queries + 1)
        ],
    )
    return runtime.scans.create_project(replace(payload, **project_fields))
