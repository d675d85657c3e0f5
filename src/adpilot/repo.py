from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

from adpilot.util import now_utc_iso, new_id


class Repo:
    """
    Lightweight repository for the change ledger and the mutation attempt log.
    Keeps DB access centralized while staying dependency-free (sqlite3 only).
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    # ------------------------------------------------------------------ #
    # Changes                                                              #
    # ------------------------------------------------------------------ #

    def insert_change(
        self,
        *,
        change_id: str,
        customer_id: str,
        campaign_id: str,
        change_type: str,
        previous_value: Any,
        new_value: Any,
        confidence: float,
        reason: str,
        applied_at: str,
        status: str,
        resource_name: str | None,
        idempotency_key: str | None,
    ) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO changes(
                  id, customer_id, campaign_id, change_type, previous_json, new_json,
                  confidence, reason, applied_at, status, resource_name, idempotency_key
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    change_id,
                    customer_id,
                    campaign_id,
                    change_type,
                    json.dumps(previous_value, ensure_ascii=True),
                    json.dumps(new_value, ensure_ascii=True),
                    float(confidence),
                    reason,
                    applied_at,
                    status,
                    resource_name,
                    idempotency_key,
                ),
            )

    def list_changes(self, limit: int | None = None) -> list[dict[str, Any]]:
        q = "SELECT * FROM changes ORDER BY seq DESC"
        params: tuple[Any, ...] = ()
        if limit is not None:
            q += " LIMIT ?"
            params = (int(limit),)
        with self.connect() as conn:
            rows = conn.execute(q, params).fetchall()
            return [dict(r) for r in rows]

    def get_change(self, change_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM changes WHERE id=?", (change_id,)).fetchone()
            return dict(row) if row else None

    def count_changes(self) -> int:
        with self.connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM changes").fetchone()
            return int(row["n"])

    def set_change_reverted(self, change_id: str, *, reverted_at: str) -> bool:
        """Transition applied -> reverted. Returns False when no applied row matched."""
        with self.connect() as conn:
            cur = conn.execute(
                "UPDATE changes SET status='reverted', reverted_at=? WHERE id=? AND status='applied'",
                (reverted_at, change_id),
            )
            return cur.rowcount == 1

    # ------------------------------------------------------------------ #
    # Attempts                                                             #
    # ------------------------------------------------------------------ #

    def create_attempt(
        self,
        *,
        idempotency_key: str,
        customer_id: str,
        campaign_id: str,
        change_type: str,
        request: dict[str, Any],
    ) -> str:
        aid = new_id("att")
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO change_attempts(
                  id, idempotency_key, customer_id, campaign_id, change_type,
                  request_json, started_at, status
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    aid,
                    idempotency_key,
                    customer_id,
                    campaign_id,
                    change_type,
                    json.dumps(request, ensure_ascii=True),
                    now,
                    "running",
                ),
            )
        return aid

    def finish_attempt(
        self,
        attempt_id: str,
        *,
        status: str,
        error: str | None,
        change_id: str | None,
    ) -> None:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                """
                UPDATE change_attempts
                SET finished_at=?, status=?, error=?, change_id=?
                WHERE id=?
                """,
                (now, status, error, change_id, attempt_id),
            )

    def list_attempts(self, limit: int = 100) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM change_attempts
                ORDER BY started_at DESC, rowid DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
            return [dict(r) for r in rows]
