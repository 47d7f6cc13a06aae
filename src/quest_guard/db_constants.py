from __future__ import annotations

from typing import Any

COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
STORAGE_ERROR = "STORAGE_ERROR"
IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"

# Claimed vs computed rewards may differ by one token from client-side rounding.
REWARD_MISMATCH_TOLERANCE = 1

SECURITY_EVENT_REWARD_MISMATCH = "reward_mismatch"

REPUTATION_TRAITS = ("Builder", "Connector", "Explorer", "Pioneer")
STREAK_TYPES = ("login", "quest", "event", "checkin")

LEDGER_SOURCE_QUEST = "quest"

# Writers wait this long for the database write lock before the attempt is a storage error.
SQLITE_BUSY_TIMEOUT_SECONDS = 30.0

DEFAULT_QUEST_CATALOG: list[dict[str, Any]] = [
    {
        "slug": "game-1111",
        "title": "Sync at 1111",
        "cooldown_hours": 12,
        "reward_rule": {
            "type": "proximity",
            "target": 1111,
            "base": 50,
            "bonus_span": 150,
            "min_bound": 50,
            "max_bound": 200,
        },
        "reputation": {"Explorer": 5},
        "items": [],
    },
]
