from __future__ import annotations

import allure
import httpx

from scan_orchestrator.orchestrator.chaining import PROCESS_QUEUE_PATH, WorkerChainTrigger

pytestmark = [
    allure.epic("Scan Queue"),
    allure.feature("Worker Chaining"),
]


def test_trigger_posts_with_bearer_secret() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"processed": 1})

    trigger = WorkerChainTrigger(
        base_url="http://worker.local/",
        cron_secret="s3cret",
        transport=httpx.MockTransport(_handler),
    )

    result = trigger.send()

    assert result.is_success
    assert result.status_code == 200
    assert result.url == "http://worker.local" + PROCESS_QUEUE_PATH
    assert seen[0].method == "POST"
    assert seen[0].headers["Authorization"] == "Bearer s3cret"


def test_trigger_without_secret_sends_no_authorization() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    WorkerChainTrigger(
        base_url="http://worker.local",
        cron_secret=None,
        transport=httpx.MockTransport(_handler),
    ).send()

    assert "Authorization" not in seen[0].headers


def test_trigger_reports_non_success_status() -> None:
    trigger = WorkerChainTrigger(
        base_url="http://worker.local",
        cron_secret="s3cret",
        transport=httpx.MockTransport(lambda request: httpx.Response(401)),
    )

    result = trigger.send()

    assert not result.is_success
    assert result.status_code == 401
    assert result.error == "HTTP 401"


def test_trigger_swallows_transport_failures() -> None:
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    def _stall(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    refused = WorkerChainTrigger(
        base_url="http://worker.local",
        cron_secret=None,
        transport=httpx.MockTransport(_refuse),
    ).send()
    stalled = WorkerChainTrigger(
        base_url="http://worker.local",
        cron_secret=None,
        transport=httpx.MockTransport(_stall),
    ).send()

    assert not refused.is_success
    assert refused.error is not None
    assert "connection refused" in refused.error
    assert (stalled.status_code, stalled.error) == (0, "timeout")


def test_fire_runs_in_background_thread() -> None:
    seen: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200)

    thread = WorkerChainTrigger(
        base_url="http://worker.local",
        cron_secret="s3cret",
        transport=httpx.MockTransport(_handler),
    ).fire()
    thread.join(timeout=5)

    assert thread.daemon
    assert seen == ["http://worker.local" + PROCESS_QUEUE_PATH]
