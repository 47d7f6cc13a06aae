from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta, timezone

from quest_guard.errors import AbandonedError, NetworkError
from quest_guard.http_client import DeliveryResponse
from quest_guard.queue_store import MemoryKeyValueStore, SqliteKeyValueStore
from quest_guard.submission_queue import (
    QUEUE_KEY,
    DrainScheduler,
    SubmissionQueue,
    backoff_delay,
)


def _dt(y: int, m: int, d: int, h: int = 10, minute: int = 0) -> datetime:
    return datetime(y, m, d, h, minute, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class _Transport:
    """Replays scripted outcomes; an exception instance is raised instead of returned."""

    def __init__(self, *outcomes: object) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict] = []

    def deliver(self, payload: dict) -> DeliveryResponse:
        self.calls.append(payload)
        outcome = self.outcomes.pop(0) if self.outcomes else DeliveryResponse(200, {"success": True})
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


PAYLOAD = {"user_id": "u1", "quest_id": "game-1111", "score": 1111}


def test_backoff_doubles_from_one_second() -> None:
    assert [backoff_delay(n) for n in range(4)] == [
        timedelta(seconds=1),
        timedelta(seconds=2),
        timedelta(seconds=4),
        timedelta(seconds=8),
    ]


def test_enqueue_persists_documented_shape() -> None:
    store = MemoryKeyValueStore()
    clock = _Clock(_dt(2026, 3, 1))
    queue = SubmissionQueue(store, _Transport(), clock=clock)

    item_id = queue.enqueue(PAYLOAD)

    rows = json.loads(store.get(QUEUE_KEY) or "[]")
    assert len(rows) == 1
    row = rows[0]
    assert set(row) == {"id", "data", "enqueued_at", "retry_count", "next_retry_at"}
    assert row["id"] == item_id
    assert row["retry_count"] == 0
    assert row["next_retry_at"] == clock.now.isoformat()
    assert row["data"]["quest_id"] == "game-1111"
    assert row["data"]["idempotency_key"]


def test_enqueue_keeps_existing_idempotency_key() -> None:
    queue = SubmissionQueue(MemoryKeyValueStore(), _Transport(), clock=_Clock(_dt(2026, 3, 1)))
    queue.enqueue({**PAYLOAD, "idempotency_key": "attempt-7"})
    assert queue.items()[0].data["idempotency_key"] == "attempt-7"


def test_queue_survives_restart(tmp_path) -> None:
    clock = _Clock(_dt(2026, 3, 1))
    first = SubmissionQueue(SqliteKeyValueStore(tmp_path / "client.db"), _Transport(), clock=clock)
    item_id = first.enqueue(PAYLOAD)

    transport = _Transport(DeliveryResponse(200, {"success": True}))
    reopened = SubmissionQueue(SqliteKeyValueStore(tmp_path / "client.db"), transport, clock=clock)
    assert [i.id for i in reopened.items()] == [item_id]

    report = reopened.drain()
    assert report.delivered == [item_id]
    assert transport.calls[0]["quest_id"] == "game-1111"
    assert reopened.items() == []


def test_failures_back_off_then_abandon() -> None:
    clock = _Clock(_dt(2026, 3, 1))
    abandoned: list[AbandonedError] = []
    transport = _Transport(*[NetworkError("offline") for _ in range(5)])
    queue = SubmissionQueue(MemoryKeyValueStore(), transport, clock=clock, on_abandoned=abandoned.append)
    queue.enqueue(PAYLOAD)

    expected_delays = [1, 2, 4, 8]
    for attempt, delay in enumerate(expected_delays, start=1):
        report = queue.drain()
        assert len(report.retried) == 1
        item = queue.items()[0]
        assert item.retry_count == attempt
        assert item.next_retry_at == clock.now + timedelta(seconds=delay)

        clock.advance(seconds=delay - 0.5)
        assert queue.drain().attempted == 0
        clock.advance(seconds=0.5)

    report = queue.drain()
    assert len(report.abandoned) == 1
    assert report.abandoned[0].submission.retry_count == 5
    assert str(report.abandoned[0]) == "Quest progress not saved - retry manually"
    assert report.abandoned[0].last_error == "offline"
    assert abandoned == report.abandoned
    assert queue.items() == []
    assert len(transport.calls) == 5


def test_cooldown_response_is_retried_like_other_failures() -> None:
    clock = _Clock(_dt(2026, 3, 1))
    transport = _Transport(
        DeliveryResponse(429, {"error": "Quest is on cooldown", "next_available_at": "2026-03-02T10:00:00+00:00"}),
        DeliveryResponse(500, {"error": "Failed to record quest completion"}),
        DeliveryResponse(200, {"success": True, "replayed": True}),
    )
    queue = SubmissionQueue(MemoryKeyValueStore(), transport, clock=clock)
    queue.enqueue(PAYLOAD)

    assert len(queue.drain().retried) == 1
    clock.advance(seconds=1)
    assert len(queue.drain().retried) == 1
    clock.advance(seconds=2)
    assert len(queue.drain().delivered) == 1

    keys = {call["idempotency_key"] for call in transport.calls}
    assert len(keys) == 1
    assert queue.stats().total == 0


def test_next_retry_strictly_increases() -> None:
    clock = _Clock(_dt(2026, 3, 1))
    queue = SubmissionQueue(MemoryKeyValueStore(), _Transport(*[NetworkError("x") for _ in range(3)]), clock=clock)
    queue.enqueue(PAYLOAD)

    seen = [queue.items()[0].next_retry_at]
    for _ in range(3):
        queue.drain()
        current = queue.items()[0].next_retry_at
        assert current > seen[-1]
        seen.append(current)
        clock.now = current


def test_only_due_items_are_attempted() -> None:
    clock = _Clock(_dt(2026, 3, 1))
    transport = _Transport(NetworkError("offline"))
    queue = SubmissionQueue(MemoryKeyValueStore(), transport, clock=clock)
    queue.enqueue(PAYLOAD)
    queue.drain()

    queue.enqueue({**PAYLOAD, "quest_id": "daily-checkin"})
    report = queue.drain()

    assert report.skipped == 1
    assert [call["quest_id"] for call in transport.calls] == ["game-1111", "daily-checkin"]
    stats = queue.stats()
    assert (stats.total, stats.pending, stats.retrying) == (1, 0, 1)


def test_overlapping_drains_deliver_each_item_once() -> None:
    clock = _Clock(_dt(2026, 3, 1))
    entered = threading.Event()
    release = threading.Event()

    class _SlowTransport:
        def __init__(self) -> None:
            self.calls: list[dict] = []

        def deliver(self, payload: dict) -> DeliveryResponse:
            self.calls.append(payload)
            entered.set()
            release.wait(5)
            return DeliveryResponse(200, {"success": True})

    transport = _SlowTransport()
    queue = SubmissionQueue(MemoryKeyValueStore(), transport, clock=clock)
    queue.enqueue(PAYLOAD)

    background = threading.Thread(target=queue.drain)
    background.start()
    assert entered.wait(5)

    concurrent = queue.drain()
    release.set()
    background.join(5)

    assert concurrent.attempted == 0
    assert len(transport.calls) == 1
    assert queue.items() == []


def test_concurrent_enqueues_are_not_lost() -> None:
    queue = SubmissionQueue(MemoryKeyValueStore(), _Transport(), clock=_Clock(_dt(2026, 3, 1)))
    threads = [threading.Thread(target=queue.enqueue, args=({**PAYLOAD, "n": n},)) for n in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert queue.stats().total == 20


def test_corrupt_storage_starts_empty() -> None:
    store = MemoryKeyValueStore({QUEUE_KEY: "{not json"})
    queue = SubmissionQueue(store, _Transport(), clock=_Clock(_dt(2026, 3, 1)))
    assert queue.items() == []
    queue.enqueue(PAYLOAD)
    assert queue.stats().total == 1


def test_submit_queues_only_retryable_failures() -> None:
    clock = _Clock(_dt(2026, 3, 1))
    transport = _Transport(
        DeliveryResponse(200, {"success": True}),
        NetworkError("offline"),
        DeliveryResponse(429, {"error": "Quest is on cooldown"}),
        DeliveryResponse(404, {"error": "Quest not found"}),
    )
    queue = SubmissionQueue(MemoryKeyValueStore(), transport, clock=clock)

    assert queue.submit(PAYLOAD).delivered is True
    offline = queue.submit(PAYLOAD)
    assert offline.delivered is False and offline.queued_id is not None
    cooldown = queue.submit(PAYLOAD)
    assert cooldown.queued_id is not None
    missing = queue.submit(PAYLOAD)
    assert missing.queued_id is None
    assert missing.response is not None and missing.response.status_code == 404

    assert queue.stats().total == 2
    queue.clear()
    assert queue.stats().total == 0
    assert queue.stats().oldest is None


def test_queued_submission_reuses_key_from_first_attempt() -> None:
    clock = _Clock(_dt(2026, 3, 1))
    transport = _Transport(NetworkError("offline"), DeliveryResponse(200, {"success": True}))
    queue = SubmissionQueue(MemoryKeyValueStore(), transport, clock=clock)

    queue.submit(PAYLOAD)
    queue.drain()

    assert transport.calls[0]["idempotency_key"] == transport.calls[1]["idempotency_key"]


def test_scheduler_drains_on_start_and_each_tick() -> None:
    clock = _Clock(_dt(2026, 3, 1))
    transport = _Transport(NetworkError("offline"), NetworkError("offline"))
    queue = SubmissionQueue(MemoryKeyValueStore(), transport, clock=clock)
    queue.enqueue(PAYLOAD)
    ticks: list[float] = []
    done = threading.Event()

    def fake_wait(interval: float) -> bool:
        ticks.append(interval)
        clock.advance(seconds=interval)
        if len(ticks) > 2:
            done.set()
            return True
        return False

    scheduler = DrainScheduler(queue, interval_seconds=30, wait=fake_wait)
    initial = scheduler.start()
    assert done.wait(5)
    scheduler.stop()

    assert initial is not None and len(initial.retried) == 1
    assert ticks == [30, 30, 30]
    assert len(transport.calls) == 3
    assert queue.stats().total == 0
    assert scheduler.running is False


def test_scheduler_logs_and_survives_drain_errors(caplog) -> None:
    class _Exploding:
        def deliver(self, payload: dict) -> DeliveryResponse:
            raise RuntimeError("bug")

    queue = SubmissionQueue(MemoryKeyValueStore(), _Exploding(), clock=_Clock(_dt(2026, 3, 1)))
    queue.enqueue(PAYLOAD)
    scheduler = DrainScheduler(queue, interval_seconds=30)

    assert scheduler.drain() is None
    assert "quest queue drain failed" in caplog.text
    assert queue.stats().total == 1
    assert scheduler.drain() is None
