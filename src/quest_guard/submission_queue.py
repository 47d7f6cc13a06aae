from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

from quest_guard.errors import AbandonedError, NetworkError
from quest_guard.http_client import CompletionTransport, DeliveryResponse
from quest_guard.queue_store import KeyValueStore
from quest_guard.time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

QUEUE_KEY = "zo_quest_queue"
MAX_RETRIES = 5
INITIAL_RETRY_DELAY_MS = 1000
DRAIN_INTERVAL_SECONDS = 30.0


@dataclass(frozen=True)
class QueuedSubmission:
    id: str
    data: dict[str, Any]
    enqueued_at: datetime
    retry_count: int
    next_retry_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "data": self.data,
            "enqueued_at": self.enqueued_at.isoformat(),
            "retry_count": self.retry_count,
            "next_retry_at": self.next_retry_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> QueuedSubmission:
        return cls(
            id=str(raw["id"]),
            data=dict(raw["data"]),
            enqueued_at=ensure_utc(datetime.fromisoformat(raw["enqueued_at"])),
            retry_count=int(raw.get("retry_count", 0)),
            next_retry_at=ensure_utc(datetime.fromisoformat(raw["next_retry_at"])),
        )


@dataclass(frozen=True)
class QueueStats:
    total: int
    pending: int
    retrying: int
    oldest: datetime | None


@dataclass
class DrainReport:
    delivered: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    abandoned: list[AbandonedError] = field(default_factory=list)
    skipped: int = 0

    @property
    def attempted(self) -> int:
        return len(self.delivered) + len(self.retried) + len(self.abandoned)


@dataclass(frozen=True)
class SubmitResult:
    delivered: bool
    response: DeliveryResponse | None
    queued_id: str | None


def backoff_delay(retry_count: int, initial_delay_ms: int = INITIAL_RETRY_DELAY_MS) -> timedelta:
    return timedelta(milliseconds=initial_delay_ms * (2 ** max(0, retry_count)))


def _failure_reason(response: DeliveryResponse | None, error: str | None) -> str:
    if response is None:
        return error or "network error"
    message = response.body.get("error") if isinstance(response.body, dict) else None
    return f"HTTP {response.status_code}: {message or 'no detail'}"


class SubmissionQueue:
    """
    Durable at-least-once delivery of quest completions.

    Every read-modify-write of the persisted list happens under one lock; the
    network call happens outside it. Items move Pending -> Delivered (removed),
    Pending (backoff) or Abandoned (removed) once ``max_retries`` is reached.
    """

    def __init__(
        self,
        store: KeyValueStore,
        transport: CompletionTransport,
        clock: Callable[[], datetime] = utc_now,
        max_retries: int = MAX_RETRIES,
        initial_delay_ms: int = INITIAL_RETRY_DELAY_MS,
        on_abandoned: Callable[[AbandonedError], None] | None = None,
    ) -> None:
        self._store = store
        self._transport = transport
        self._clock = clock
        self.max_retries = max_retries
        self.initial_delay_ms = initial_delay_ms
        self._on_abandoned = on_abandoned
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    def _load(self) -> list[QueuedSubmission]:
        raw = self._store.get(QUEUE_KEY)
        if not raw:
            return []
        try:
            rows = json.loads(raw)
        except json.JSONDecodeError:
            logger.error("quest queue storage is corrupt, starting empty")
            return []
        items: list[QueuedSubmission] = []
        for row in rows if isinstance(rows, list) else []:
            try:
                items.append(QueuedSubmission.from_dict(row))
            except (KeyError, TypeError, ValueError):
                logger.error("dropping unreadable queued submission: %r", row)
        return items

    def _save(self, items: list[QueuedSubmission]) -> None:
        if not items:
            self._store.remove(QUEUE_KEY)
            return
        self._store.set(QUEUE_KEY, json.dumps([item.to_dict() for item in items]))

    @staticmethod
    def with_idempotency_key(payload: dict[str, Any]) -> dict[str, Any]:
        data = dict(payload)
        if not data.get("idempotency_key"):
            data["idempotency_key"] = uuid.uuid4().hex
        return data

    def enqueue(self, payload: dict[str, Any]) -> str:
        data = self.with_idempotency_key(payload)
        now = self._now()
        item = QueuedSubmission(
            id=f"quest_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}",
            data=data,
            enqueued_at=now,
            retry_count=0,
            next_retry_at=now,
        )
        with self._lock:
            items = self._load()
            items.append(item)
            self._save(items)
        logger.info("queued quest completion %s for retry (quest=%s)", item.id, data.get("quest_id"))
        return item.id

    def items(self) -> list[QueuedSubmission]:
        with self._lock:
            return self._load()

    def stats(self) -> QueueStats:
        items = self.items()
        return QueueStats(
            total=len(items),
            pending=sum(1 for i in items if i.retry_count == 0),
            retrying=sum(1 for i in items if i.retry_count > 0),
            oldest=min((i.enqueued_at for i in items), default=None),
        )

    def clear(self) -> None:
        with self._lock:
            self._store.remove(QUEUE_KEY)
        logger.warning("quest queue cleared")

    def _remove(self, item_id: str) -> None:
        with self._lock:
            items = self._load()
            self._save([i for i in items if i.id != item_id])

    def _record_failure(self, item_id: str, reason: str) -> QueuedSubmission | AbandonedError | None:
        with self._lock:
            items = self._load()
            current = next((i for i in items if i.id == item_id), None)
            if current is None:
                return None

            retry_count = current.retry_count + 1
            if retry_count >= self.max_retries:
                self._save([i for i in items if i.id != item_id])
                return AbandonedError(replace(current, retry_count=retry_count), last_error=reason)

            next_retry_at = self._now() + backoff_delay(current.retry_count, self.initial_delay_ms)
            # clock may step backwards
            if next_retry_at <= current.next_retry_at:
                next_retry_at = current.next_retry_at + timedelta(milliseconds=1)
            updated = replace(current, retry_count=retry_count, next_retry_at=next_retry_at)
            self._save([updated if i.id == item_id else i for i in items])
            return updated

    def _abandon(self, error: AbandonedError, report: DrainReport) -> None:
        report.abandoned.append(error)
        logger.error(
            "abandoned quest completion %s after %d attempts (quest=%s): %s",
            error.submission.id,
            error.submission.retry_count,
            error.submission.data.get("quest_id"),
            error.last_error,
        )
        if self._on_abandoned is not None:
            try:
                self._on_abandoned(error)
            except Exception:
                logger.exception("on_abandoned callback failed for %s", error.submission.id)

    def _claim_due(self, now: datetime) -> tuple[list[QueuedSubmission], int]:
        with self._lock:
            items = self._load()
            due = [i for i in items if i.next_retry_at <= now and i.id not in self._in_flight]
            self._in_flight.update(i.id for i in due)
        return due, len(items) - len(due)

    def _expire(self, item: QueuedSubmission) -> AbandonedError | None:
        with self._lock:
            items = self._load()
            if not any(i.id == item.id for i in items):
                return None
            self._save([i for i in items if i.id != item.id])
        return AbandonedError(item, last_error="retry limit already reached")

    def drain(self) -> DrainReport:
        report = DrainReport()
        due, report.skipped = self._claim_due(self._now())
        if not due:
            return report

        logger.info("processing quest queue (%d due, %d waiting)", len(due), report.skipped)
        try:
            for item in due:
                if item.retry_count >= self.max_retries:
                    expired = self._expire(item)
                    if expired is not None:
                        self._abandon(expired, report)
                    continue

                response: DeliveryResponse | None = None
                error: str | None = None
                try:
                    response = self._transport.deliver(item.data)
                except NetworkError as exc:
                    error = str(exc)

                if response is not None and response.ok:
                    self._remove(item.id)
                    report.delivered.append(item.id)
                    logger.info("delivered queued quest completion %s", item.id)
                    continue

                if response is not None and response.cooldown:
                    logger.warning(
                        "quest on cooldown for %s (will retry), next_available_at=%s",
                        item.id,
                        response.body.get("next_available_at"),
                    )

                outcome = self._record_failure(item.id, _failure_reason(response, error))
                if isinstance(outcome, AbandonedError):
                    self._abandon(outcome, report)
                elif outcome is not None:
                    report.retried.append(item.id)
                    logger.info(
                        "retry %d/%d for %s scheduled at %s",
                        outcome.retry_count,
                        self.max_retries,
                        item.id,
                        outcome.next_retry_at.isoformat(),
                    )
        finally:
            with self._lock:
                self._in_flight.difference_update(i.id for i in due)

        logger.info(
            "quest queue processed: %d delivered, %d retrying, %d abandoned",
            len(report.delivered),
            len(report.retried),
            len(report.abandoned),
        )
        return report

    def submit(self, payload: dict[str, Any]) -> SubmitResult:
        """Try to deliver now; queue the attempt when the failure is retryable."""
        data = self.with_idempotency_key(payload)
        try:
            response = self._transport.deliver(data)
        except NetworkError as exc:
            logger.warning("quest completion delivery failed, queueing: %s", exc)
            return SubmitResult(delivered=False, response=None, queued_id=self.enqueue(data))

        if response.ok:
            return SubmitResult(delivered=True, response=response, queued_id=None)
        if response.cooldown or response.status_code >= 500:
            return SubmitResult(delivered=False, response=response, queued_id=self.enqueue(data))
        logger.warning("quest completion rejected with HTTP %s: %s", response.status_code, response.body.get("error"))
        return SubmitResult(delivered=False, response=response, queued_id=None)


class DrainScheduler:
    """Drains once on ``start()``, then every ``interval_seconds`` until ``stop()``."""

    def __init__(
        self,
        queue: SubmissionQueue,
        interval_seconds: float = DRAIN_INTERVAL_SECONDS,
        wait: Callable[[float], bool] | None = None,
    ) -> None:
        self.queue = queue
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._wait = wait or self._stop.wait
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def drain(self) -> DrainReport | None:
        try:
            return self.queue.drain()
        except Exception:
            logger.exception("quest queue drain failed")
            return None

    def trigger(self) -> threading.Thread:
        worker = threading.Thread(target=self.drain, name="quest-queue-drain-now", daemon=True)
        worker.start()
        return worker

    def _run(self) -> None:
        while not self._wait(self.interval_seconds):
            if self._stop.is_set():
                break
            self.drain()

    def start(self) -> DrainReport | None:
        if self.running:
            return None
        self._stop.clear()
        initial = self.drain()
        self._thread = threading.Thread(target=self._run, name="quest-queue-drain", daemon=True)
        self._thread.start()
        return initial

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_forever(self) -> None:
        self.start()
        try:
            while not self._stop.wait(3600):
                pass
        except KeyboardInterrupt:
            logger.info("stopping quest queue worker")
        finally:
            self.stop()
