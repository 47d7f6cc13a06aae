from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import Any, Protocol

from quest_guard.db_converters import _row_to_quest
from quest_guard.db_models import QuestDefinition
from quest_guard.rewards import RewardRule, reward_rule_to_dict

QUEST_COLUMNS = "id, slug, title, cooldown_hours, reward_rule_json, reputation_json, items_json, active"


class DbProtocol(Protocol):
    def _connect(self) -> sqlite3.Connection: ...
    def get_quest_by_slug(self, slug: str, include_inactive: bool = False) -> QuestDefinition | None: ...


class QuestMixin:
    def upsert_quest(
        self: DbProtocol,
        slug: str,
        title: str,
        cooldown_hours: float,
        reward_rule: RewardRule,
        now: datetime,
        reputation_rewards: dict[str, int] | None = None,
        item_rewards: list[str] | tuple[str, ...] | None = None,
        active: bool = True,
    ) -> QuestDefinition:
        if cooldown_hours < 0:
            raise ValueError("cooldown_hours must be >= 0")
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO quests(slug, title, cooldown_hours, reward_rule_json, reputation_json, items_json, active, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(slug) DO UPDATE SET
                    title=excluded.title,
                    cooldown_hours=excluded.cooldown_hours,
                    reward_rule_json=excluded.reward_rule_json,
                    reputation_json=excluded.reputation_json,
                    items_json=excluded.items_json,
                    active=excluded.active,
                    updated_at=excluded.updated_at
                """,
                (
                    slug,
                    title,
                    float(cooldown_hours),
                    json.dumps(reward_rule_to_dict(reward_rule)),
                    json.dumps(reputation_rewards or {}),
                    json.dumps(list(item_rewards or [])),
                    1 if active else 0,
                    now.isoformat(),
                ),
            )
        quest = self.get_quest_by_slug(slug, include_inactive=True)
        assert quest is not None
        return quest

    def get_quest_by_slug(self: DbProtocol, slug: str, include_inactive: bool = False) -> QuestDefinition | None:
        query = f"SELECT {QUEST_COLUMNS} FROM quests WHERE slug = ?"
        if not include_inactive:
            query += " AND active = 1"
        with self._connect() as conn:
            row = conn.execute(query, (slug,)).fetchone()
        return _row_to_quest(row) if row else None

    def list_quests(self: DbProtocol, include_inactive: bool = False) -> list[QuestDefinition]:
        query = f"SELECT {QUEST_COLUMNS} FROM quests"
        if not include_inactive:
            query += " WHERE active = 1"
        query += " ORDER BY id ASC"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_quest(row) for row in rows]

    def deactivate_missing_quests(self: DbProtocol, keep_slugs: set[str], now: datetime) -> int:
        with self._connect() as conn:
            rows = conn.execute("SELECT slug FROM quests WHERE active = 1").fetchall()
            stale: list[Any] = [row["slug"] for row in rows if row["slug"] not in keep_slugs]
            for slug in stale:
                conn.execute(
                    "UPDATE quests SET active = 0, updated_at = ? WHERE slug = ?",
                    (now.isoformat(), slug),
                )
        return len(stale)
