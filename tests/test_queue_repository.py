from __future__ import annotations

import threading
from datetime import timedelta

import allure
import pytest

from scan_orchestrator.orchestrator.errors import (
    AlreadyQueuedError,
    InvalidTransitionError,
    QueueItemNotFoundError,
)
from scan_orchestrator.orchestrator.models import QueueItemCreate, QueueStatus
from scan_orchestrator.orchestrator.repository import WAITING_MESSAGE, QueueRepository
from scan_orchestrator.orchestrator.runtime import ScanRuntime
from scan_orchestrator.storage.common import build_sqlite_engine, utc_now
from tests.conftest import seed_project

pytestmark = [
    allure.epic("Scan Queue"),
    allure.feature("Claim & Lifecycle"),
]


def _enqueue(runtime: ScanRuntime, *, priority: int = 0, user_id: str = "user-1") -> str:
    project = seed_project(runtime, user_id=user_id)
    item = runtime.queue.enqueue(
        QueueItemCreate(user_id=user_id, project_id=project.project_id, priority=priority),
    )
    return item.queue_id


def test_enqueue_creates_pending_item(runtime: ScanRuntime) -> None:
    project = seed_project(runtime)

    item = runtime.queue.enqueue(
        QueueItemCreate(user_id="user-1", project_id=project.project_id, priority=3),
    )

    assert item.status is QueueStatus.PENDING
    assert item.priority == 3
    assert item.progress_message == WAITING_MESSAGE
    assert item.scan_id is None
    assert item.reservation_id is None
    assert runtime.queue.count_pending() == 1


def test_enqueue_on_fresh_database_records_enqueued_event(runtime: ScanRuntime) -> None:
    project = seed_project(runtime)

    item = runtime.queue.enqueue(
        QueueItemCreate(user_id="user-1", project_id=project.project_id, priority=2),
    )
    details = runtime.queue.get_details(item.queue_id)

    assert details is not None
    assert [event.event_type for event in details.events] == ["enqueued"]
    event = details.events[0]
    assert (event.status_from, event.status_to) == (None, QueueStatus.PENDING)
    assert event.details == {
        "is_scheduled": False,
        "priority": 2,
        "project_id": project.project_id,
    }


def test_only_one_active_item_per_project(runtime: ScanRuntime) -> None:
    project = seed_project(runtime)
    payload = QueueItemCreate(user_id="user-1", project_id=project.project_id)
    first = runtime.queue.enqueue(payload)

    with pytest.raises(AlreadyQueuedError) as error:
        runtime.queue.enqueue(payload)
    assert error.value.code == "SCAN_ALREADY_QUEUED"

    runtime.queue.cancel(queue_id=first.queue_id)
    second = runtime.queue.enqueue(payload)
    assert second.queue_id != first.queue_id


def test_claim_orders_by_priority_then_age(runtime: ScanRuntime) -> None:
    oldest_low = _enqueue(runtime, priority=0)
    newer_low = _enqueue(runtime, priority=0)
    high = _enqueue(runtime, priority=5)

    claimed = [
        runtime.queue.claim_next(worker_id="worker-a"),
        runtime.queue.claim_next(worker_id="worker-a"),
        runtime.queue.claim_next(worker_id="worker-a"),
    ]

    assert [item.queue_id for item in claimed if item is not None] == [
        high,
        oldest_low,
        newer_low,
    ]
    assert all(item is not None and item.status is QueueStatus.RUNNING for item in claimed)
    assert runtime.queue.claim_next(worker_id="worker-a") is None


def test_concurrent_claims_hand_each_item_to_exactly_one_worker(runtime: ScanRuntime) -> None:
    queue_ids = {_enqueue(runtime) for _ in range(6)}
    start = threading.Event()
    claimed: list[tuple[str, str]] = []
    lock = threading.Lock()

    def _worker(worker_id: str) -> None:
        engine = build_sqlite_engine(db_path=runtime.settings.db_path, busy_timeout_ms=10_000)
        repository = QueueRepository(engine, claim_max_retries=10)
        start.wait(timeout=5)
        try:
            while True:
                item = repository.claim_next(worker_id=worker_id)
                if item is None:
                    return
                with lock:
                    claimed.append((item.queue_id, worker_id))
        finally:
            engine.dispose()

    threads = [threading.Thread(target=_worker, args=(f"worker-{index}",)) for index in range(4)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=30)

    claimed_ids = [queue_id for queue_id, _ in claimed]
    assert sorted(claimed_ids) == sorted(queue_ids)
    assert len(set(claimed_ids)) == len(claimed_ids)
    for queue_id, worker_id in claimed:
        assert runtime.queue.require(queue_id).worker_id == worker_id


def test_progress_never_moves_backwards(runtime: ScanRuntime) -> None:
    queue_id = _enqueue(runtime)
    runtime.queue.claim_next(worker_id="worker-a")

    assert runtime.queue.update_progress(queue_id=queue_id, current=3, total=10, message="a")
    runtime.queue.update_progress(queue_id=queue_id, current=1, total=5)
    item = runtime.queue.require(queue_id)
    assert (item.progress_current, item.progress_total) == (3, 10)
    assert item.progress_message == "a"

    runtime.queue.update_progress(queue_id=queue_id, current=50, total=10)
    item = runtime.queue.require(queue_id)
    assert (item.progress_current, item.progress_total) == (10, 10)


def test_progress_is_ignored_for_items_not_running(runtime: ScanRuntime) -> None:
    queue_id = _enqueue(runtime)

    assert not runtime.queue.update_progress(queue_id=queue_id, current=1, total=2)
    assert runtime.queue.require(queue_id).progress_current == 0


def test_pause_resume_and_cancel_follow_the_state_machine(runtime: ScanRuntime) -> None:
    queue_id = _enqueue(runtime)

    with pytest.raises(InvalidTransitionError, match="Only running scans can be paused"):
        runtime.queue.pause(queue_id=queue_id)

    runtime.queue.claim_next(worker_id="worker-a")
    paused = runtime.queue.pause(queue_id=queue_id)
    assert paused.status is QueueStatus.PAUSED

    resumed = runtime.queue.resume(queue_id=queue_id)
    assert resumed.status is QueueStatus.PENDING
    assert resumed.worker_id is None
    assert resumed.progress_message == WAITING_MESSAGE

    cancelled = runtime.queue.cancel(queue_id=queue_id)
    assert cancelled.status is QueueStatus.CANCELLED
    assert cancelled.completed_at is not None

    with pytest.raises(InvalidTransitionError, match="Cannot cancel completed or failed scans"):
        runtime.queue.cancel(queue_id=queue_id)
    with pytest.raises(InvalidTransitionError):
        runtime.queue.resume(queue_id=queue_id)


def test_resume_is_rejected_while_project_has_another_active_item(runtime: ScanRuntime) -> None:
    project = seed_project(runtime)
    payload = QueueItemCreate(user_id="user-1", project_id=project.project_id)
    paused = runtime.queue.enqueue(payload)
    runtime.queue.claim_next(worker_id="worker-a")
    runtime.queue.pause(queue_id=paused.queue_id)
    runtime.queue.enqueue(payload)

    with pytest.raises(AlreadyQueuedError):
        runtime.queue.resume(queue_id=paused.queue_id)
    assert runtime.queue.require(paused.queue_id).status is QueueStatus.PAUSED


def test_complete_and_fail_require_running_item(runtime: ScanRuntime) -> None:
    queue_id = _enqueue(runtime)

    assert not runtime.queue.complete(queue_id=queue_id)
    assert not runtime.queue.fail(queue_id=queue_id, error_message="boom")

    runtime.queue.claim_next(worker_id="worker-a")
    runtime.queue.update_progress(queue_id=queue_id, current=1, total=4)
    assert runtime.queue.complete(queue_id=queue_id)

    item = runtime.queue.require(queue_id)
    assert item.status is QueueStatus.COMPLETED
    assert item.progress_current == item.progress_total == 4
    assert not runtime.queue.fail(queue_id=queue_id, error_message="late failure")

    details = runtime.queue.get_details(queue_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["enqueued", "claimed", "completed"]


def test_requeue_keeps_links_progress_and_first_start(runtime: ScanRuntime) -> None:
    queue_id = _enqueue(runtime)

    assert not runtime.queue.requeue(queue_id=queue_id, message="later")

    first = runtime.queue.claim_next(worker_id="worker-a")
    assert first is not None
    runtime.queue.attach_scan(queue_id=queue_id, scan_id="scan-1")
    runtime.queue.attach_reservation(queue_id=queue_id, reservation_id="reservation-1")
    runtime.queue.update_progress(queue_id=queue_id, current=2, total=6)
    assert runtime.queue.requeue(queue_id=queue_id, message="Continuing later")

    pending = runtime.queue.require(queue_id)
    assert pending.status is QueueStatus.PENDING
    assert pending.worker_id is None
    assert (pending.scan_id, pending.reservation_id) == ("scan-1", "reservation-1")
    assert (pending.progress_current, pending.progress_total) == (2, 6)
    assert pending.progress_message == "Continuing later"

    second = runtime.queue.claim_next(worker_id="worker-b")
    assert second is not None
    assert second.queue_id == queue_id
    assert second.started_at == first.started_at
    assert second.progress_current == 2

    runtime.queue.pause(queue_id=queue_id)
    resumed = runtime.queue.resume(queue_id=queue_id)
    assert resumed.started_at is None
    details = runtime.queue.get_details(queue_id)
    assert details is not None
    assert [event.event_type for event in details.events] == [
        "enqueued",
        "claimed",
        "requeued",
        "claimed",
        "paused",
        "resumed",
    ]


def test_delete_only_removes_terminal_items(runtime: ScanRuntime) -> None:
    queue_id = _enqueue(runtime)

    with pytest.raises(InvalidTransitionError):
        runtime.queue.delete(queue_id=queue_id)

    runtime.queue.cancel(queue_id=queue_id)
    runtime.queue.delete(queue_id=queue_id)

    assert runtime.queue.get(queue_id) is None
    with pytest.raises(QueueItemNotFoundError):
        runtime.queue.require(queue_id)


def test_sweep_fails_items_past_hard_ceiling_once(runtime: ScanRuntime) -> None:
    queue_id = _enqueue(runtime)
    runtime.queue.claim_next(worker_id="worker-dead")
    runtime.queue.update_progress(queue_id=queue_id, current=1, total=10)
    later = utc_now() + timedelta(hours=3)

    report = runtime.queue.sweep_stuck(
        hard_ceiling_seconds=7_200,
        zero_progress_seconds=900,
        stall_seconds=86_400,
        now=later,
    )
    repeated = runtime.queue.sweep_stuck(
        hard_ceiling_seconds=7_200,
        zero_progress_seconds=900,
        stall_seconds=86_400,
        now=later,
    )

    assert report.failed_queue_ids == [queue_id]
    assert "execution ceiling" in report.reasons[queue_id]
    assert repeated.count == 0
    item = runtime.queue.require(queue_id)
    assert item.status is QueueStatus.FAILED
    assert item.error_message is not None
    assert "worker presumed dead" in item.error_message


def test_sweep_fails_items_without_progress(runtime: ScanRuntime) -> None:
    queue_id = _enqueue(runtime)
    runtime.queue.claim_next(worker_id="worker-dead")

    report = runtime.queue.sweep_stuck(
        hard_ceiling_seconds=7_200,
        zero_progress_seconds=900,
        stall_seconds=900,
        now=utc_now() + timedelta(minutes=16),
    )

    assert report.failed_queue_ids == [queue_id]
    assert "no progress" in report.reasons[queue_id]


def test_sweep_fails_stalled_items(runtime: ScanRuntime) -> None:
    queue_id = _enqueue(runtime)
    runtime.queue.claim_next(worker_id="worker-dead")
    runtime.queue.update_progress(queue_id=queue_id, current=2, total=8)

    report = runtime.queue.sweep_stuck(
        hard_ceiling_seconds=7_200,
        zero_progress_seconds=900,
        stall_seconds=900,
        now=utc_now() + timedelta(minutes=16),
    )

    assert report.failed_queue_ids == [queue_id]
    assert "stalled at 2/8" in report.reasons[queue_id]


def test_sweep_leaves_healthy_and_pending_items_alone(runtime: ScanRuntime) -> None:
    running = _enqueue(runtime)
    pending = _enqueue(runtime)
    runtime.queue.claim_next(worker_id="worker-a")
    runtime.queue.update_progress(queue_id=running, current=1, total=4)

    report = runtime.queue.sweep_stuck(
        hard_ceiling_seconds=7_200,
        zero_progress_seconds=900,
        stall_seconds=900,
        now=utc_now() + timedelta(minutes=1),
    )

    assert report.count == 0
    assert runtime.queue.require(running).status is QueueStatus.RUNNING
    assert runtime.queue.require(pending).status is QueueStatus.PENDING


def test_reset_stuck_only_touches_running_items_of_user(runtime: ScanRuntime) -> None:
    mine = _enqueue(runtime, user_id="user-1")
    theirs = _enqueue(runtime, user_id="user-2")
    runtime.queue.claim_next(worker_id="worker-a")
    runtime.queue.claim_next(worker_id="worker-a")

    reset = runtime.queue.reset_stuck(user_id="user-1")

    assert [item.queue_id for item in reset] == [mine]
    assert runtime.queue.require(mine).status is QueueStatus.FAILED
    assert runtime.queue.require(theirs).status is QueueStatus.RUNNING
