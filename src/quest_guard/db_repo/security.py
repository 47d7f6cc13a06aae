from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Protocol

from quest_guard.db_converters import _row_to_security_event
from quest_guard.db_models import SecurityEvent


class DbProtocol(Protocol):
    def _connect(self) -> sqlite3.Connection: ...


class SecurityMixin:
    def record_security_event(
        self: DbProtocol,
        event_type: str,
        user_id: str,
        quest_slug: str,
        score: float | None,
        claimed_amount: float,
        computed_amount: int,
        created_at: datetime,
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO security_events(
                    event_type, user_id, quest_slug, score, claimed_amount, computed_amount, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (event_type, user_id, quest_slug, score, claimed_amount, computed_amount, created_at.isoformat()),
            )
        return int(cur.lastrowid)

    def list_security_events(
        self: DbProtocol,
        limit: int = 100,
        user_id: str | None = None,
    ) -> list[SecurityEvent]:
        query = (
            "SELECT id, event_type, user_id, quest_slug, score, claimed_amount, computed_amount, created_at "
            "FROM security_events"
        )
        params: list[object] = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_security_event(row) for row in rows]
