from __future__ import annotations

import json
from typing import Any

from adpilot.models import Change
from adpilot.repo import Repo


def _load_json(raw: Any) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


def _row_to_change(row: dict[str, Any]) -> Change:
    return Change(
        id=str(row["id"]),
        customer_id=str(row["customer_id"]),
        campaign_id=str(row["campaign_id"]),
        type=str(row["change_type"]),
        previous_value=_load_json(row.get("previous_json")),
        new_value=_load_json(row.get("new_json")),
        confidence=float(row["confidence"]),
        reason=str(row.get("reason") or ""),
        applied_at=str(row["applied_at"]),
        status=str(row["status"]),
        resource_name=row.get("resource_name"),
        idempotency_key=row.get("idempotency_key"),
        reverted_at=row.get("reverted_at"),
    )


class ChangeLedger:
    """
    Append-only history of applied changes.

    There is no delete: reverting only flips `status` in place so every
    automatic mutation stays inspectable. Order is creation order; `list()`
    returns newest first.
    """

    def __init__(self, repo: Repo):
        self.repo = repo

    def append(self, change: Change) -> Change:
        if change.status != "applied":
            raise ValueError(f"only applied changes enter the ledger, got {change.status!r}")
        self.repo.insert_change(
            change_id=change.id,
            customer_id=change.customer_id,
            campaign_id=change.campaign_id,
            change_type=change.type,
            previous_value=change.previous_value,
            new_value=change.new_value,
            confidence=change.confidence,
            reason=change.reason,
            applied_at=change.applied_at,
            status=change.status,
            resource_name=change.resource_name,
            idempotency_key=change.idempotency_key,
        )
        return change

    def list(self, limit: int | None = None) -> list[Change]:
        return [_row_to_change(r) for r in self.repo.list_changes(limit=limit)]

    def find(self, change_id: str) -> Change | None:
        row = self.repo.get_change(change_id)
        return _row_to_change(row) if row else None

    def __len__(self) -> int:
        return self.repo.count_changes()

    def mark_reverted(self, change_id: str) -> Change | None:
        """
        Flip an applied change to reverted and return the stored record.

        Returns None for unknown ids. An already reverted change is returned unchanged.
        """
        current = self.find(change_id)
        if current is None:
            return None
        if current.status == "reverted":
            return current
        updated = current.reverted()
        self.repo.set_change_reverted(change_id, reverted_at=str(updated.reverted_at))
        return self.find(change_id)
