from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Protocol

from quest_guard.db_constants import COOLDOWN_ACTIVE, IDEMPOTENCY_CONFLICT, LEDGER_SOURCE_QUEST, STORAGE_ERROR
from quest_guard.db_converters import _row_to_completion
from quest_guard.db_models import CompletionResult, QuestCompletionRecord
from quest_guard.time_utils import cooldown_ends_at, ensure_utc

logger = logging.getLogger(__name__)

COMPLETION_COLUMNS = (
    "id, user_id, quest_id, score, location, latitude, longitude, "
    "awarded_amount, metadata_json, idempotency_key, created_at"
)


class DbProtocol(Protocol):
    def _connect(self) -> sqlite3.Connection: ...
    def _write_transaction(self) -> Any: ...

    @staticmethod
    def _credit_balance(
        conn: sqlite3.Connection,
        user_id: str,
        amount: int,
        source: str,
        completion_id: int | None,
        created_at: datetime,
    ) -> None: ...


def _latest_completion(conn: sqlite3.Connection, user_id: str, quest_id: int) -> QuestCompletionRecord | None:
    row = conn.execute(
        f"""
        SELECT {COMPLETION_COLUMNS}
        FROM completed_quests
        WHERE user_id = ? AND quest_id = ?
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        """,
        (user_id, quest_id),
    ).fetchone()
    return _row_to_completion(row) if row else None


def _completion_by_key(conn: sqlite3.Connection, user_id: str, idempotency_key: str) -> QuestCompletionRecord | None:
    row = conn.execute(
        f"SELECT {COMPLETION_COLUMNS} FROM completed_quests WHERE user_id = ? AND idempotency_key = ?",
        (user_id, idempotency_key),
    ).fetchone()
    return _row_to_completion(row) if row else None


class CompletionMixin:
    def complete_quest_atomic(
        self: DbProtocol,
        user_id: str,
        quest_id: int,
        cooldown_hours: float,
        score: float | None,
        location: str | None,
        amount: int,
        metadata: dict[str, Any],
        now: datetime,
        latitude: float | None = None,
        longitude: float | None = None,
        idempotency_key: str | None = None,
    ) -> CompletionResult:
        """
        Accept or reject one completion as a single serialized unit of work.

        Replay lookup, cooldown check, record insert and balance credit all run
        under one ``BEGIN IMMEDIATE`` transaction, so concurrent attempts on the
        same (user, quest) observe each other's writes. A storage failure rolls
        everything back and is reported as a retryable ``STORAGE_ERROR``. A key
        already used for another quest is ``IDEMPOTENCY_CONFLICT``.
        """
        now = ensure_utc(now)
        try:
            with self._write_transaction() as conn:
                if idempotency_key:
                    previous = _completion_by_key(conn, user_id, idempotency_key)
                    if previous is not None:
                        if previous.quest_id != quest_id:
                            logger.warning(
                                "idempotency key %s reused across quests for user %s (%s -> %s)",
                                idempotency_key,
                                user_id,
                                previous.quest_id,
                                quest_id,
                            )
                            return CompletionResult(success=False, error_code=IDEMPOTENCY_CONFLICT)
                        logger.info("replayed completion %s for user %s", previous.id, user_id)
                        return CompletionResult(
                            success=True,
                            completion_id=previous.id,
                            next_available_at=cooldown_ends_at(previous.created_at, cooldown_hours),
                            created_at=ensure_utc(previous.created_at),
                            awarded_amount=previous.awarded_amount,
                            replayed=True,
                        )

                last = _latest_completion(conn, user_id, quest_id)
                if last is not None:
                    ends_at = cooldown_ends_at(last.created_at, cooldown_hours)
                    if ends_at is not None and now < ends_at:
                        logger.info("cooldown active for user %s quest %s until %s", user_id, quest_id, ends_at.isoformat())
                        return CompletionResult(
                            success=False,
                            error_code=COOLDOWN_ACTIVE,
                            next_available_at=ends_at,
                        )

                cur = conn.execute(
                    """
                    INSERT INTO completed_quests(
                        user_id, quest_id, score, location, latitude, longitude,
                        awarded_amount, metadata_json, idempotency_key, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        quest_id,
                        float(score or 0),
                        location or "Unknown",
                        latitude,
                        longitude,
                        int(amount),
                        json.dumps(metadata, default=str),
                        idempotency_key,
                        now.isoformat(timespec="microseconds"),
                    ),
                )
                completion_id = int(cur.lastrowid)
                if amount:
                    self._credit_balance(conn, user_id, int(amount), LEDGER_SOURCE_QUEST, completion_id, now)
        except sqlite3.Error:
            logger.exception("storage failure completing quest %s for user %s", quest_id, user_id)
            return CompletionResult(success=False, error_code=STORAGE_ERROR)

        return CompletionResult(
            success=True,
            completion_id=completion_id,
            next_available_at=cooldown_ends_at(now, cooldown_hours),
            created_at=now,
            awarded_amount=int(amount),
        )

    def latest_completion(self: DbProtocol, user_id: str, quest_id: int) -> QuestCompletionRecord | None:
        with self._connect() as conn:
            return _latest_completion(conn, user_id, quest_id)

    def get_completion(self: DbProtocol, completion_id: int) -> QuestCompletionRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {COMPLETION_COLUMNS} FROM completed_quests WHERE id = ?",
                (completion_id,),
            ).fetchone()
        return _row_to_completion(row) if row else None

    def list_completions(
        self: DbProtocol,
        user_id: str,
        quest_id: int | None = None,
        limit: int = 100,
    ) -> list[QuestCompletionRecord]:
        conditions = ["user_id = ?"]
        params: list[Any] = [user_id]
        if quest_id is not None:
            conditions.append("quest_id = ?")
            params.append(quest_id)
        params.append(max(1, int(limit)))
        query = (
            f"SELECT {COMPLETION_COLUMNS} FROM completed_quests "
            f"WHERE {' AND '.join(conditions)} ORDER BY created_at DESC, id DESC LIMIT ?"
        )
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_completion(row) for row in rows]

    def count_completions(self: DbProtocol, user_id: str, quest_id: int | None = None) -> int:
        query = "SELECT COUNT(*) AS n FROM completed_quests WHERE user_id = ?"
        params: list[Any] = [user_id]
        if quest_id is not None:
            query += " AND quest_id = ?"
            params.append(quest_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return int(row["n"]) if row else 0
