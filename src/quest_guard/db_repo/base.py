from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from quest_guard.db_constants import SQLITE_BUSY_TIMEOUT_SECONDS


class BaseDatabase:
    def __init__(self, path: Path, busy_timeout: float = SQLITE_BUSY_TIMEOUT_SECONDS) -> None:
        self.path = path
        self.busy_timeout = busy_timeout
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _write_transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside ``BEGIN IMMEDIATE``.

        The write lock is taken before the first read, so two writers touching the
        same rows can never interleave their read and write phases. Concurrent
        writers queue on the lock for up to ``busy_timeout`` seconds.
        """
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
                """
            )
            current = {row["version"] for row in conn.execute("SELECT version FROM schema_migrations")}

            migrations: dict[int, str] = {
                1: """
                    CREATE TABLE quests (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        slug TEXT NOT NULL UNIQUE,
                        title TEXT NOT NULL,
                        cooldown_hours REAL NOT NULL DEFAULT 0 CHECK(cooldown_hours >= 0),
                        reward_rule_json TEXT NOT NULL,
                        reputation_json TEXT NOT NULL DEFAULT '{}',
                        items_json TEXT NOT NULL DEFAULT '[]',
                        active INTEGER NOT NULL DEFAULT 1,
                        updated_at TEXT NOT NULL
                    );

                    CREATE TABLE users (
                        id TEXT PRIMARY KEY,
                        nickname TEXT,
                        balance INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL
                    );

                    CREATE TABLE completed_quests (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        user_id TEXT NOT NULL,
                        quest_id INTEGER NOT NULL,
                        score REAL NOT NULL DEFAULT 0,
                        location TEXT NOT NULL DEFAULT 'Unknown',
                        latitude REAL,
                        longitude REAL,
                        awarded_amount INTEGER NOT NULL,
                        metadata_json TEXT NOT NULL DEFAULT '{}',
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (user_id) REFERENCES users(id),
                        FOREIGN KEY (quest_id) REFERENCES quests(id)
                    );

                    CREATE INDEX idx_completed_user_quest_created
                    ON completed_quests(user_id, quest_id, created_at DESC);

                    CREATE TABLE balance_ledger (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        user_id TEXT NOT NULL,
                        amount INTEGER NOT NULL,
                        source TEXT NOT NULL,
                        completion_id INTEGER,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (user_id) REFERENCES users(id),
                        FOREIGN KEY (completion_id) REFERENCES completed_quests(id)
                    );

                    CREATE INDEX idx_balance_ledger_user ON balance_ledger(user_id, created_at);
                """,
                2: """
                    CREATE TABLE security_events (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        event_type TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        quest_slug TEXT NOT NULL,
                        score REAL,
                        claimed_amount REAL NOT NULL,
                        computed_amount INTEGER NOT NULL,
                        created_at TEXT NOT NULL
                    );

                    CREATE INDEX idx_security_events_created ON security_events(created_at DESC);
                """,
                3: """
                    CREATE TABLE user_reputations (
                        user_id TEXT NOT NULL,
                        trait TEXT NOT NULL,
                        score INTEGER NOT NULL DEFAULT 0,
                        updated_at TEXT NOT NULL,
                        PRIMARY KEY(user_id, trait)
                    );

                    CREATE TABLE user_streaks (
                        user_id TEXT NOT NULL,
                        streak_type TEXT NOT NULL,
                        count INTEGER NOT NULL DEFAULT 0,
                        longest_streak INTEGER NOT NULL DEFAULT 0,
                        last_action_at TEXT,
                        PRIMARY KEY(user_id, streak_type)
                    );
                """,
                4: """
                    ALTER TABLE completed_quests ADD COLUMN idempotency_key TEXT;

                    CREATE UNIQUE INDEX idx_completed_user_idempotency
                    ON completed_quests(user_id, idempotency_key)
                    WHERE idempotency_key IS NOT NULL;
                """,
            }

            now = datetime.now(timezone.utc).isoformat(timespec="seconds")
            for version in sorted(migrations):
                if version in current:
                    continue
                conn.executescript(migrations[version])
                conn.execute(
                    "INSERT INTO schema_migrations(version, applied_at) VALUES (?, ?)",
                    (version, now),
                )
