from __future__ import annotations

import logging

from quest_guard.api_app import run_api
from quest_guard.config import Settings, load_settings
from quest_guard.errors import AbandonedError
from quest_guard.http_client import HttpCompletionClient
from quest_guard.logging_setup import setup_logging
from quest_guard.queue_store import SqliteKeyValueStore
from quest_guard.submission_queue import DrainScheduler, SubmissionQueue

logger = logging.getLogger(__name__)

__all__ = ["build_submission_queue", "run_api", "run_worker"]


def _report_abandoned(error: AbandonedError) -> None:
    data = error.submission.data
    logger.error(
        "%s (user=%s quest=%s key=%s)",
        error,
        data.get("user_id"),
        data.get("quest_id"),
        data.get("idempotency_key"),
    )


def build_submission_queue(settings: Settings) -> SubmissionQueue:
    return SubmissionQueue(
        store=SqliteKeyValueStore(settings.queue_store_path),
        transport=HttpCompletionClient(settings.quest_api_url, timeout=settings.request_timeout_seconds),
        max_retries=settings.queue_max_retries,
        initial_delay_ms=settings.queue_initial_delay_ms,
        on_abandoned=_report_abandoned,
    )


def run_worker() -> None:
    settings = load_settings()
    setup_logging(settings.log_level)
    queue = build_submission_queue(settings)
    stats = queue.stats()
    logger.info(
        "quest queue worker starting: %d queued (%d retrying), draining every %.0fs",
        stats.total,
        stats.retrying,
        settings.queue_drain_interval_seconds,
    )
    DrainScheduler(queue, interval_seconds=settings.queue_drain_interval_seconds).run_forever()
