from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Protocol

from quest_guard.db_converters import _row_to_ledger, _row_to_user
from quest_guard.db_models import LedgerEntry, UserRecord


class DbProtocol(Protocol):
    def _connect(self) -> sqlite3.Connection: ...
    def get_user(self, user_id: str) -> UserRecord | None: ...


class UserMixin:
    def upsert_user(self: DbProtocol, user_id: str, now: datetime, nickname: str | None = None) -> UserRecord:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO users(id, nickname, balance, created_at)
                VALUES (?, ?, 0, ?)
                ON CONFLICT(id) DO UPDATE SET
                    nickname=COALESCE(excluded.nickname, users.nickname)
                """,
                (user_id, nickname, now.isoformat()),
            )
        user = self.get_user(user_id)
        assert user is not None
        return user

    def get_user(self: DbProtocol, user_id: str) -> UserRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, nickname, balance, created_at FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
        return _row_to_user(row) if row else None

    def user_exists(self: DbProtocol, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone()
        return row is not None

    def get_balance(self: DbProtocol, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT balance FROM users WHERE id = ?", (user_id,)).fetchone()
        return int(row["balance"]) if row else 0

    def list_ledger_entries(self: DbProtocol, user_id: str, limit: int = 50) -> list[LedgerEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, user_id, amount, source, completion_id, created_at
                FROM balance_ledger
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (user_id, max(1, int(limit))),
            ).fetchall()
        return [_row_to_ledger(row) for row in rows]

    @staticmethod
    def _credit_balance(
        conn: sqlite3.Connection,
        user_id: str,
        amount: int,
        source: str,
        completion_id: int | None,
        created_at: datetime,
    ) -> None:
        """Credit inside the caller's transaction; the caller owns commit/rollback."""
        conn.execute(
            """
            INSERT INTO balance_ledger(user_id, amount, source, completion_id, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (user_id, amount, source, completion_id, created_at.isoformat()),
        )
        cur = conn.execute(
            "UPDATE users SET balance = balance + ? WHERE id = ?",
            (amount, user_id),
        )
        if cur.rowcount != 1:
            raise sqlite3.IntegrityError(f"Cannot credit unknown user {user_id}")
