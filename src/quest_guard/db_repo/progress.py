from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta
from typing import Protocol

from quest_guard.db_constants import REPUTATION_TRAITS, STREAK_TYPES
from quest_guard.db_converters import _row_to_reputation, _row_to_streak
from quest_guard.db_models import UserReputation, UserStreak


class DbProtocol(Protocol):
    def _connect(self) -> sqlite3.Connection: ...
    def get_streak(self, user_id: str, streak_type: str) -> UserStreak: ...


class ProgressMixin:
    def add_reputation(self: DbProtocol, user_id: str, trait: str, delta: int, now: datetime) -> UserReputation:
        if trait not in REPUTATION_TRAITS:
            raise ValueError(f"Unknown reputation trait: {trait}")
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_reputations(user_id, trait, score, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, trait) DO UPDATE SET
                    score=user_reputations.score + excluded.score,
                    updated_at=excluded.updated_at
                """,
                (user_id, trait, int(delta), now.isoformat()),
            )
            row = conn.execute(
                "SELECT user_id, trait, score, updated_at FROM user_reputations WHERE user_id = ? AND trait = ?",
                (user_id, trait),
            ).fetchone()
        assert row is not None
        return _row_to_reputation(row)

    def list_reputations(self: DbProtocol, user_id: str) -> list[UserReputation]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT user_id, trait, score, updated_at FROM user_reputations WHERE user_id = ? ORDER BY score DESC",
                (user_id,),
            ).fetchall()
        return [_row_to_reputation(row) for row in rows]

    def get_streak(self: DbProtocol, user_id: str, streak_type: str) -> UserStreak:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT user_id, streak_type, count, longest_streak, last_action_at
                FROM user_streaks WHERE user_id = ? AND streak_type = ?
                """,
                (user_id, streak_type),
            ).fetchone()
        if row is None:
            return UserStreak(user_id=user_id, streak_type=streak_type, count=0, longest_streak=0, last_action_at=None)
        return _row_to_streak(row)

    def list_streaks(self: DbProtocol, user_id: str) -> list[UserStreak]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT user_id, streak_type, count, longest_streak, last_action_at
                FROM user_streaks WHERE user_id = ? ORDER BY count DESC
                """,
                (user_id,),
            ).fetchall()
        return [_row_to_streak(row) for row in rows]

    def touch_streak(self: DbProtocol, user_id: str, streak_type: str, now: datetime) -> UserStreak:
        if streak_type not in STREAK_TYPES:
            raise ValueError(f"Unknown streak type: {streak_type}")
        streak = self.get_streak(user_id, streak_type)
        today = now.date()

        if streak.last_action_at is None:
            new_count = 1
        else:
            last_day = streak.last_action_at.date()
            if last_day == today:
                new_count = max(streak.count, 1)
            elif last_day == today - timedelta(days=1):
                new_count = streak.count + 1
            else:
                new_count = 1

        new_longest = max(streak.longest_streak, new_count)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_streaks(user_id, streak_type, count, longest_streak, last_action_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id, streak_type) DO UPDATE SET
                    count=excluded.count,
                    longest_streak=excluded.longest_streak,
                    last_action_at=excluded.last_action_at
                """,
                (user_id, streak_type, new_count, new_longest, now.isoformat()),
            )
        return UserStreak(
            user_id=user_id,
            streak_type=streak_type,
            count=new_count,
            longest_streak=new_longest,
            last_action_at=now,
        )
