from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from pathlib import Path

import allure

from scan_orchestrator.config import ChunkSettings, QueueSettings, Settings
from scan_orchestrator.orchestrator.backend.base import Message
from scan_orchestrator.orchestrator.backend.echo_backend import EchoProbeClient
from scan_orchestrator.orchestrator.ledger import FREE_TIER_RESERVATION
from scan_orchestrator.orchestrator.models import (
    QueueStatus,
    ReservationStatus,
    ScanStatus,
    TransactionType,
    UserTier,
)
from scan_orchestrator.orchestrator.runtime import ScanRuntime
from scan_orchestrator.orchestrator.services import EnqueueScan
from scan_orchestrator.orchestrator.worker import ALL_OPERATIONS_FAILED_MESSAGE
from scan_orchestrator.storage.common import utc_now
from tests.conftest import BRAND_RESPONSE, DEFAULT_MODELS, make_settings, seed_project

pytestmark = [
    allure.epic("Scan Queue"),
    allure.feature("Worker"),
]


class _ChainStub:
    def __init__(self) -> None:
        self.fired = 0

    def fire(self) -> None:
        self.fired += 1


def _enqueue(runtime: ScanRuntime, **seed: object) -> str:
    project = seed_project(runtime, **seed)
    item = runtime.queue_service().enqueue_scan(
        EnqueueScan(user_id=project.user_id, project_id=project.project_id),
    )
    return item.queue_id


def _acting_client(action: str, holder: dict[str, object]) -> EchoProbeClient:
    """Echo client that applies a queue action on its first call."""

    def _respond(model_id: str, prompt: str, history: Sequence[Message]) -> str:  # noqa: ARG001
        if not holder.get("done"):
            holder["done"] = True
            runtime = holder["runtime"]
            assert isinstance(runtime, ScanRuntime)
            getattr(runtime.queue, action)(queue_id=holder["queue_id"])
        return BRAND_RESPONSE

    return EchoProbeClient(response_factory=_respond)


def test_run_once_completes_scan_and_settles_credits(runtime: ScanRuntime) -> None:
    queue_id = _enqueue(runtime)

    summary = runtime.build_worker(worker_id="worker-test").run_once()

    assert (summary.processed, summary.succeeded, summary.failed) == (1, 1, 0)
    assert summary.queue_id == queue_id
    assert summary.message == "Scan completed"

    item = runtime.queue.require(queue_id)
    assert item.status is QueueStatus.COMPLETED
    assert item.scan_id is not None
    assert item.reservation_id is not None

    scan = runtime.scans.get_scan(item.scan_id)
    assert scan is not None
    assert scan.status is ScanStatus.COMPLETED
    assert scan.total_results == 4
    assert scan.overall_score == 76
    assert scan.final_score == scan.initial_score == 76
    assert scan.sentiment_stability == 100
    assert not scan.follow_up_active

    assert runtime.ledger.balance("user-1") == 10_000 - scan.total_cost_cents
    reservation = runtime.ledger.get_reservation(item.reservation_id)
    assert reservation is not None
    assert reservation.status is ReservationStatus.CONSUMED
    assert reservation.consumed_cents == scan.total_cost_cents
    transactions = runtime.ledger.list_transactions(user_id="user-1")
    assert [row.transaction_type for row in transactions] == [
        TransactionType.USAGE,
        TransactionType.RELEASE,
        TransactionType.RESERVATION,
    ]
    usage = runtime.scans.monthly_usage(user_id="user-1", month=utc_now().strftime("%Y-%m"))
    assert {record.model_id for record in usage} >= set(DEFAULT_MODELS)


def test_insufficient_credits_fail_item_before_probing(
    runtime: ScanRuntime,
    echo_client: EchoProbeClient,
) -> None:
    queue_id = _enqueue(runtime, balance_cents=0)

    summary = runtime.build_worker().run_once()

    assert summary.failed == 1
    item = runtime.queue.require(queue_id)
    assert item.status is QueueStatus.FAILED
    assert item.error_message is not None
    assert "Insufficient credits" in item.error_message
    assert item.scan_id is None
    assert echo_client.call_count == 0


def test_free_tier_scan_uses_monthly_quota(runtime: ScanRuntime) -> None:
    queue_id = _enqueue(runtime, tier=UserTier.FREE, balance_cents=0)

    summary = runtime.build_worker().run_once()

    assert summary.succeeded == 1
    item = runtime.queue.require(queue_id)
    assert item.reservation_id == FREE_TIER_RESERVATION
    assert runtime.ledger.balance("user-1") == 0
    assert runtime.ledger.free_scans_remaining(user_id="user-1") == (
        runtime.settings.credits.max_free_scans_per_month - 1
    )


def test_all_operations_failing_fails_item_and_refunds(
    settings: Settings,
    runtime_factory: Callable[..., ScanRuntime],
) -> None:
    runtime = runtime_factory(settings, EchoProbeClient(fail_models=set(DEFAULT_MODELS)))
    queue_id = _enqueue(runtime)

    summary = runtime.build_worker().run_once()

    assert summary.failed == 1
    item = runtime.queue.require(queue_id)
    assert item.status is QueueStatus.FAILED
    assert item.error_message == ALL_OPERATIONS_FAILED_MESSAGE
    assert item.scan_id is not None
    scan = runtime.scans.get_scan(item.scan_id)
    assert scan is not None
    assert scan.status is ScanStatus.FAILED
    assert runtime.ledger.balance("user-1") == 10_000


def test_unknown_model_and_empty_project_fail_item(runtime: ScanRuntime) -> None:
    bad_model = _enqueue(runtime, models=("gpt-5-mini", "made-up-model"))
    no_queries = _enqueue(runtime, queries=0)
    worker = runtime.build_worker()

    worker.run_once()
    worker.run_once()

    bad_item = runtime.queue.require(bad_model)
    empty_item = runtime.queue.require(no_queries)
    assert bad_item.status is QueueStatus.FAILED
    assert bad_item.error_message is not None
    assert "made-up-model" in bad_item.error_message
    assert empty_item.error_message == "Project has no active queries"
    assert runtime.ledger.balance("user-1") == 10_000


def test_idle_run_reports_no_pending_scans(runtime: ScanRuntime) -> None:
    summary = runtime.build_worker().run_once()

    assert (summary.processed, summary.idle_polls) == (0, 1)
    assert summary.message == "No pending scans"


def test_sweep_releases_reservation_of_dead_worker(
    tmp_path: Path,
    runtime_factory: Callable[..., ScanRuntime],
) -> None:
    runtime = runtime_factory(
        make_settings(tmp_path / "sweep.db", queue=QueueSettings(zero_progress_seconds=0)),
    )
    queue_id = _enqueue(runtime)
    runtime.queue.claim_next(worker_id="worker-dead")
    reservation_id = runtime.ledger.reserve(user_id="user-1", amount_cents=700)
    runtime.queue.attach_reservation(queue_id=queue_id, reservation_id=reservation_id)
    time.sleep(0.01)

    summary = runtime.build_worker(worker_id="worker-live").run_once()

    assert summary.swept == 1
    assert summary.processed == 0
    item = runtime.queue.require(queue_id)
    assert item.status is QueueStatus.FAILED
    assert runtime.ledger.balance("user-1") == 10_000
    reservation = runtime.ledger.get_reservation(reservation_id)
    assert reservation is not None
    assert reservation.status is ReservationStatus.RELEASED


def test_paused_scan_resumes_without_reprobing_or_rereserving(
    tmp_path: Path,
    runtime_factory: Callable[..., ScanRuntime],
) -> None:
    holder: dict[str, object] = {}
    client = _acting_client("pause", holder)
    runtime = runtime_factory(
        make_settings(tmp_path / "pause.db", chunk=ChunkSettings(max_queries_per_chunk=1)),
        client,
    )
    holder["runtime"] = runtime
    holder["queue_id"] = queue_id = _enqueue(runtime, models=("gpt-5-mini",))
    worker = runtime.build_worker()

    first = worker.run_once()

    assert first.paused == 1
    paused = runtime.queue.require(queue_id)
    assert paused.status is QueueStatus.PAUSED
    assert paused.scan_id is not None
    assert paused.reservation_id is not None
    assert client.call_count == 1

    runtime.queue_service().resume(queue_id)
    second = worker.run_once()

    assert second.succeeded == 1
    assert client.call_count == 2
    done = runtime.queue.require(queue_id)
    assert done.scan_id == paused.scan_id
    assert done.reservation_id == paused.reservation_id
    scan = runtime.scans.get_scan(paused.scan_id)
    assert scan is not None
    assert scan.total_results == 2
    reservations = [
        row
        for row in runtime.ledger.list_transactions(user_id="user-1")
        if row.transaction_type is TransactionType.RESERVATION
    ]
    assert len(reservations) == 1
    assert runtime.ledger.balance("user-1") == 10_000 - scan.total_cost_cents


def test_cancel_mid_scan_charges_completed_work_only(
    tmp_path: Path,
    runtime_factory: Callable[..., ScanRuntime],
) -> None:
    holder: dict[str, object] = {}
    runtime = runtime_factory(
        make_settings(tmp_path / "cancel.db", chunk=ChunkSettings(max_queries_per_chunk=1)),
        _acting_client("cancel", holder),
    )
    holder["runtime"] = runtime
    holder["queue_id"] = queue_id = _enqueue(runtime, queries=3, models=("gpt-5-mini",))

    summary = runtime.build_worker().run_once()

    assert summary.cancelled == 1
    item = runtime.queue.require(queue_id)
    assert item.status is QueueStatus.CANCELLED
    assert item.scan_id is not None
    scan = runtime.scans.get_scan(item.scan_id)
    assert scan is not None
    assert scan.status is ScanStatus.CANCELLED
    assert scan.total_results == 1
    assert runtime.ledger.balance("user-1") == 10_000 - scan.total_cost_cents


def test_worker_chains_next_invocation_while_work_remains(runtime: ScanRuntime) -> None:
    _enqueue(runtime)
    _enqueue(runtime)
    worker = runtime.build_worker()
    chain = _ChainStub()
    worker.chain_trigger = chain

    worker.run_once()
    worker.run_once()

    assert chain.fired == 1


def test_wall_clock_ceiling_hands_scan_to_next_invocation(
    tmp_path: Path,
    runtime_factory: Callable[..., ScanRuntime],
) -> None:
    client = EchoProbeClient(response_text=BRAND_RESPONSE)
    runtime = runtime_factory(
        make_settings(
            tmp_path / "ceiling.db",
            chunk=ChunkSettings(max_queries_per_chunk=1, wall_clock_ceiling_seconds=0.5),
        ),
        client,
    )
    queue_id = _enqueue(runtime, queries=3, models=("gpt-5-mini",))
    worker = runtime.build_worker()
    worker.clock = lambda: time.monotonic() - 10
    chain = _ChainStub()
    worker.chain_trigger = chain

    first = worker.run_once()

    assert (first.requeued, first.failed, first.message) == (1, 0, "Scan requeued")
    handed_off = runtime.queue.require(queue_id)
    assert handed_off.status is QueueStatus.PENDING
    assert handed_off.scan_id is not None
    assert handed_off.reservation_id is not None
    assert (handed_off.progress_current, handed_off.progress_total) == (1, 3)
    assert handed_off.progress_message == (
        "Worker ceiling of 0.5s reached after 1 chunk(s); continuing in the next worker"
    )
    assert chain.fired == 1
    assert runtime.ledger.balance("user-1") < 10_000

    results = [first]
    while runtime.queue.require(queue_id).status is QueueStatus.PENDING and len(results) < 5:
        results.append(worker.run_once())

    assert [summary.message for summary in results] == [
        "Scan requeued",
        "Scan requeued",
        "Scan completed",
    ]
    assert client.call_count == 3
    done = runtime.queue.require(queue_id)
    assert done.status is QueueStatus.COMPLETED
    assert (done.scan_id, done.reservation_id) == (handed_off.scan_id, handed_off.reservation_id)
    scan = runtime.scans.get_scan(handed_off.scan_id)
    assert scan is not None
    assert scan.status is ScanStatus.COMPLETED
    assert scan.total_results == 3
    assert runtime.ledger.balance("user-1") == 10_000 - scan.total_cost_cents
    details = runtime.queue.get_details(queue_id)
    assert details is not None
    assert [event.event_type for event in details.events].count("requeued") == 2


def test_run_loop_drains_queue(runtime: ScanRuntime) -> None:
    for _ in range(3):
        _enqueue(runtime)

    summary = runtime.build_worker().run_loop(max_idle_polls=1)

    assert (summary.processed, summary.succeeded, summary.idle_polls) == (3, 3, 1)
    assert runtime.queue.count_pending() == 0


def test_run_loop_stops_after_max_items(runtime: ScanRuntime) -> None:
    for _ in range(3):
        _enqueue(runtime)

    summary = runtime.build_worker().run_loop(max_items=2)

    assert summary.processed == 2
    assert runtime.queue.count_pending() == 1
