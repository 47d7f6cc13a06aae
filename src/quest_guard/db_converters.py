from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import Any

from quest_guard.db_models import (
    LedgerEntry,
    QuestCompletionRecord,
    QuestDefinition,
    SecurityEvent,
    UserRecord,
    UserReputation,
    UserStreak,
)
from quest_guard.rewards import parse_reward_rule
from quest_guard.time_utils import parse_iso


def _load_json(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def _row_to_quest(row: sqlite3.Row) -> QuestDefinition:
    reputation = _load_json(row["reputation_json"], {})
    items = _load_json(row["items_json"], [])
    return QuestDefinition(
        id=int(row["id"]),
        slug=row["slug"],
        title=row["title"],
        cooldown_hours=float(row["cooldown_hours"]),
        reward_rule=parse_reward_rule(_load_json(row["reward_rule_json"], {})),
        reputation_rewards={str(k): int(v) for k, v in reputation.items()} if isinstance(reputation, dict) else {},
        item_rewards=tuple(str(x) for x in items) if isinstance(items, list) else (),
        active=bool(row["active"]),
    )


def _row_to_user(row: sqlite3.Row) -> UserRecord:
    return UserRecord(
        id=row["id"],
        nickname=row["nickname"],
        balance=int(row["balance"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_completion(row: sqlite3.Row) -> QuestCompletionRecord:
    metadata = _load_json(row["metadata_json"], {})
    return QuestCompletionRecord(
        id=int(row["id"]),
        user_id=row["user_id"],
        quest_id=int(row["quest_id"]),
        score=float(row["score"]),
        location=row["location"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        awarded_amount=int(row["awarded_amount"]),
        metadata=metadata if isinstance(metadata, dict) else {},
        idempotency_key=row["idempotency_key"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_security_event(row: sqlite3.Row) -> SecurityEvent:
    return SecurityEvent(
        id=int(row["id"]),
        event_type=row["event_type"],
        user_id=row["user_id"],
        quest_slug=row["quest_slug"],
        score=row["score"],
        claimed_amount=float(row["claimed_amount"]),
        computed_amount=int(row["computed_amount"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_ledger(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        id=int(row["id"]),
        user_id=row["user_id"],
        amount=int(row["amount"]),
        source=row["source"],
        completion_id=row["completion_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_reputation(row: sqlite3.Row) -> UserReputation:
    return UserReputation(
        user_id=row["user_id"],
        trait=row["trait"],
        score=int(row["score"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_streak(row: sqlite3.Row) -> UserStreak:
    return UserStreak(
        user_id=row["user_id"],
        streak_type=row["streak_type"],
        count=int(row["count"]),
        longest_streak=int(row["longest_streak"]),
        last_action_at=parse_iso(row["last_action_at"]),
    )
