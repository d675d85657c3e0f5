from __future__ import annotations

import sqlite3
from pathlib import Path


SCHEMA_VERSION = 1


class AdsDB:
    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    def init(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )

            # `seq` defines ledger order; applied_at has second resolution and can tie.
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS changes (
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  id TEXT NOT NULL UNIQUE,
                  customer_id TEXT NOT NULL,
                  campaign_id TEXT NOT NULL,
                  change_type TEXT NOT NULL,
                  previous_json TEXT,
                  new_json TEXT,
                  confidence REAL NOT NULL,
                  reason TEXT NOT NULL DEFAULT '',
                  applied_at TEXT NOT NULL,
                  status TEXT NOT NULL,
                  resource_name TEXT,
                  idempotency_key TEXT,
                  reverted_at TEXT
                );

                CREATE TABLE IF NOT EXISTS change_attempts (
                  id TEXT PRIMARY KEY,
                  idempotency_key TEXT NOT NULL UNIQUE,
                  customer_id TEXT NOT NULL,
                  campaign_id TEXT NOT NULL,
                  change_type TEXT NOT NULL,
                  request_json TEXT NOT NULL DEFAULT '{}',
                  started_at TEXT NOT NULL,
                  finished_at TEXT,
                  status TEXT NOT NULL,
                  error TEXT,
                  change_id TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_changes_campaign
                  ON changes(customer_id, campaign_id);
                CREATE INDEX IF NOT EXISTS idx_attempts_started
                  ON change_attempts(started_at);
                """
            )
            conn.execute(
                "INSERT OR REPLACE INTO meta(key, value) VALUES('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )

    def schema_version(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key='schema_version'").fetchone()
            return int(row["value"]) if row else 0
