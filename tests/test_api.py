from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest
from fastapi.testclient import TestClient

from scan_orchestrator.api import create_app
from scan_orchestrator.api.security import is_authorized
from scan_orchestrator.config import WorkerSettings
from scan_orchestrator.orchestrator.models import ScheduleConfig, ScheduleFrequency
from scan_orchestrator.orchestrator.runtime import ScanRuntime
from tests.conftest import make_settings, seed_project

pytestmark = [
    allure.epic("Scan Queue"),
    allure.feature("HTTP API"),
]


@pytest.fixture()
def client(runtime: ScanRuntime) -> Iterator[TestClient]:
    with TestClient(create_app(runtime=runtime)) as test_client:
        yield test_client


def _enqueue(client: TestClient, project_id: str, user_id: str = "user-1") -> str:
    response = client.post("/api/queue", json={"user_id": user_id, "project_id": project_id})
    assert response.status_code == 201
    return response.json()["queue_id"]


def test_enqueue_and_read_queue_item(client: TestClient, runtime: ScanRuntime) -> None:
    project = seed_project(runtime)

    response = client.post(
        "/api/queue",
        json={"user_id": "user-1", "project_id": project.project_id, "priority": 2},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "pending"

    item = client.get(f"/api/queue/{body['queue_id']}")
    assert item.status_code == 200
    assert item.json()["progress"] == {
        "current": 0,
        "total": 0,
        "message": "Waiting in queue...",
    }
    assert item.json()["project_id"] == project.project_id


def test_duplicate_enqueue_is_conflict(client: TestClient, runtime: ScanRuntime) -> None:
    project = seed_project(runtime)
    _enqueue(client, project.project_id)

    response = client.post(
        "/api/queue",
        json={"user_id": "user-1", "project_id": project.project_id},
    )

    assert response.status_code == 409
    assert response.json()["code"] == "SCAN_ALREADY_QUEUED"


def test_unknown_resources_are_not_found(client: TestClient, runtime: ScanRuntime) -> None:
    project = seed_project(runtime)

    missing_item = client.get("/api/queue/does-not-exist")
    foreign_project = client.post(
        "/api/queue",
        json={"user_id": "someone-else", "project_id": project.project_id},
    )

    assert missing_item.status_code == 404
    assert missing_item.json()["code"] == "QUEUE_ITEM_NOT_FOUND"
    assert foreign_project.status_code == 404
    assert foreign_project.json()["code"] == "PROJECT_NOT_FOUND"


def test_patch_applies_queue_actions(client: TestClient, runtime: ScanRuntime) -> None:
    project = seed_project(runtime)
    queue_id = _enqueue(client, project.project_id)

    pause = client.patch(f"/api/queue/{queue_id}", json={"action": "pause"})
    cancel = client.patch(f"/api/queue/{queue_id}", json={"action": "cancel"})
    resume = client.patch(f"/api/queue/{queue_id}", json={"action": "resume"})
    bogus = client.patch(f"/api/queue/{queue_id}", json={"action": "explode"})

    assert pause.status_code == 409
    assert pause.json()["code"] == "INVALID_TRANSITION"
    assert cancel.status_code == 200
    assert cancel.json()["status"] == "cancelled"
    assert resume.status_code == 409
    assert bogus.status_code == 422


def test_delete_removes_terminal_item(client: TestClient, runtime: ScanRuntime) -> None:
    project = seed_project(runtime)
    queue_id = _enqueue(client, project.project_id)

    assert client.delete(f"/api/queue/{queue_id}").status_code == 409
    client.patch(f"/api/queue/{queue_id}", json={"action": "cancel"})
    deleted = client.delete(f"/api/queue/{queue_id}")

    assert deleted.status_code == 200
    assert deleted.json() == {"queue_id": queue_id, "deleted": True}
    assert client.get(f"/api/queue/{queue_id}").status_code == 404


def test_process_queue_runs_one_item(client: TestClient, runtime: ScanRuntime) -> None:
    first = seed_project(runtime)
    second = seed_project(runtime)
    queue_id = _enqueue(client, first.project_id)
    _enqueue(client, second.project_id)

    response = client.post("/api/cron/process-queue")

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 1
    assert body["remaining"] == 1
    assert body["queue_id"] == queue_id
    assert body["message"] == "Scan completed"
    assert client.get(f"/api/queue/{queue_id}").json()["status"] == "completed"


def test_cron_endpoints_require_secret_outside_development(
    tmp_path: Path,
    runtime_factory: Callable[..., ScanRuntime],
) -> None:
    settings = make_settings(
        tmp_path / "prod.db",
        worker=WorkerSettings(environment="production", cron_secret="s3cret", chain_enabled=False),
    )
    runtime = runtime_factory(settings)

    with TestClient(create_app(runtime=runtime)) as client:
        anonymous = client.post("/api/cron/process-queue")
        wrong = client.post(
            "/api/cron/process-queue",
            headers={"Authorization": "Bearer nope"},
        )
        authorized = client.post(
            "/api/cron/process-queue",
            headers={"Authorization": "Bearer s3cret"},
        )
        health = client.get("/api/health")

    assert anonymous.status_code == 401
    assert anonymous.headers["WWW-Authenticate"] == "Bearer"
    assert wrong.status_code == 401
    assert authorized.status_code == 200
    assert authorized.json()["processed"] == 0
    assert health.status_code == 200


def test_is_authorized_rules() -> None:
    production = make_settings(
        Path("unused.db"),
        worker=WorkerSettings(environment="production", cron_secret="abc"),
    )
    unconfigured = make_settings(Path("unused.db"), worker=WorkerSettings(cron_secret=None))
    development = make_settings(Path("unused.db"))

    assert is_authorized(production, "Bearer abc")
    assert not is_authorized(production, "abc")
    assert not is_authorized(production, None)
    assert not is_authorized(unconfigured, "Bearer ")
    assert is_authorized(development, None)


def test_scheduled_scans_enqueue_due_projects(client: TestClient, runtime: ScanRuntime) -> None:
    due = seed_project(
        runtime,
        schedule=ScheduleConfig(frequency=ScheduleFrequency.DAILY, hour=6),
        next_scheduled_scan_at=datetime.now(UTC) - timedelta(minutes=5),
    )

    response = client.post("/api/cron/scheduled-scans")

    assert response.status_code == 200
    body = response.json()
    assert body["enqueued"] == 1
    assert body["already_queued"] == 0
    assert body["triggered"] is False
    queued = client.get(f"/api/queue/{body['queue_ids'][0]}").json()
    assert queued["project_id"] == due.project_id
    assert queued["is_scheduled"] is True


def test_health_reports_pending_count(client: TestClient, runtime: ScanRuntime) -> None:
    _enqueue(client, seed_project(runtime).project_id)

    response = client.get("/api/health")

    assert response.json() == {"status": "ok", "pending": 1}
