from __future__ import annotations

from pathlib import Path

import pytest

from adpilot.db import SCHEMA_VERSION, AdsDB
from adpilot.ledger import ChangeLedger
from adpilot.models import Change
from adpilot.repo import Repo
from adpilot.util import new_id, now_utc_iso


def _ledger(tmp_path: Path) -> ChangeLedger:
    db_path = tmp_path / "ads.sqlite3"
    AdsDB(db_path).init()
    return ChangeLedger(Repo(db_path))


def _change(**overrides) -> Change:
    base = dict(
        id=new_id("chg"),
        customer_id="9990001111",
        campaign_id="111",
        type="budget",
        previous_value=50.0,
        new_value=75.0,
        confidence=100.0,
        reason="capped by budget",
        applied_at=now_utc_iso(),
    )
    base.update(overrides)
    return Change(**base)


def test_init_is_idempotent(tmp_path: Path) -> None:
    db = AdsDB(tmp_path / "nested" / "ads.sqlite3")
    db.init()
    db.init()
    assert db.schema_version() == SCHEMA_VERSION


def test_append_and_list_newest_first(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    a = ledger.append(_change())
    b = ledger.append(_change(type="bid", previous_value={"keyword_id": "k1", "bid": 1.0},
                              new_value={"keyword_id": "k1", "bid": 1.5}))
    c = ledger.append(_change(type="status", previous_value="active", new_value="paused"))

    assert [x.id for x in ledger.list()] == [c.id, b.id, a.id]
    assert [x.id for x in ledger.list(limit=2)] == [c.id, b.id]
    assert len(ledger) == 3

    stored = ledger.find(b.id)
    assert stored == b
    assert stored.new_value == {"keyword_id": "k1", "bid": 1.5}


def test_only_applied_changes_are_appended(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    with pytest.raises(ValueError):
        ledger.append(_change(status="failed"))
    assert len(ledger) == 0


def test_mark_reverted_updates_in_place(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    change = ledger.append(_change())

    reverted = ledger.mark_reverted(change.id)

    assert reverted.status == "reverted"
    assert reverted.reverted_at is not None
    assert len(ledger) == 1
    assert ledger.find(change.id).status == "reverted"

    again = ledger.mark_reverted(change.id)
    assert again == reverted


def test_mark_reverted_unknown_returns_none(tmp_path: Path) -> None:
    assert _ledger(tmp_path).mark_reverted("chg_missing") is None


def test_change_record_transitions() -> None:
    change = _change()
    reverted = change.reverted()
    assert change.status == "applied"
    assert reverted.status == "reverted"
    assert reverted.reverted() is reverted
    with pytest.raises(ValueError):
        _change(status="failed").reverted()


def test_attempt_log(tmp_path: Path) -> None:
    db_path = tmp_path / "ads.sqlite3"
    AdsDB(db_path).init()
    repo = Repo(db_path)

    aid = repo.create_attempt(
        idempotency_key="idem_1",
        customer_id="9990001111",
        campaign_id="111",
        change_type="budget",
        request={"kind": "budget", "value": {"budget": 75.0}},
    )
    rows = repo.list_attempts()
    assert rows[0]["id"] == aid
    assert rows[0]["status"] == "running"
    assert rows[0]["finished_at"] is None

    repo.finish_attempt(aid, status="failed", error="PlatformError: quota", change_id=None)
    row = repo.list_attempts()[0]
    assert row["status"] == "failed"
    assert row["error"] == "PlatformError: quota"
    assert row["finished_at"] is not None
