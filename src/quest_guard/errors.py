from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from quest_guard.submission_queue import QueuedSubmission


class QuestGuardError(Exception):
    status_code = 500
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(QuestGuardError):
    status_code = 400


class NotFoundError(QuestGuardError):
    status_code = 404


class ConflictError(QuestGuardError):
    status_code = 409


class CooldownActiveError(QuestGuardError):
    status_code = 429
    retryable = True

    def __init__(self, next_available_at: datetime | None) -> None:
        super().__init__("Quest is on cooldown")
        self.next_available_at = next_available_at


class StorageError(QuestGuardError):
    status_code = 500
    retryable = True


class NetworkError(Exception):
    """Delivery never got an HTTP response (connect failure, timeout, reset)."""

    retryable = True


class AbandonedError(Exception):
    """A queued submission ran out of retries and was dropped from the queue."""

    retryable = False

    def __init__(self, submission: QueuedSubmission, last_error: str | None = None) -> None:
        super().__init__("Quest progress not saved - retry manually")
        self.submission = submission
        self.last_error = last_error
