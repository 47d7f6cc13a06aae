from __future__ import annotations

from quest_guard.db_models import (
    CompletionAttempt,
    CompletionResult,
    LedgerEntry,
    QuestCompletionRecord,
    QuestDefinition,
    SecurityEvent,
    UserRecord,
    UserReputation,
    UserStreak,
)
from quest_guard.db_repo import (
    BaseDatabase,
    CompletionMixin,
    ProgressMixin,
    QuestMixin,
    SecurityMixin,
    UserMixin,
)

__all__ = [
    "Database",
    "CompletionAttempt",
    "CompletionResult",
    "LedgerEntry",
    "QuestCompletionRecord",
    "QuestDefinition",
    "SecurityEvent",
    "UserRecord",
    "UserReputation",
    "UserStreak",
]


class Database(
    QuestMixin,
    UserMixin,
    CompletionMixin,
    SecurityMixin,
    ProgressMixin,
    BaseDatabase,
):
    pass
