from __future__ import annotations

import asyncio
import re
import secrets
from datetime import datetime, timezone


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc).replace(microsecond=0)


def now_utc_iso() -> str:
    return now_utc().isoformat()


def new_id(prefix: str) -> str:
    # URL-safe, reasonably short, no external deps
    return f"{prefix}_{secrets.token_urlsafe(10)}"


def normalize_customer_id(raw: str) -> str:
    # Google Ads customer id is digits only (UI shows hyphens).
    return re.sub(r"\D+", "", str(raw or ""))


def format_customer_id(raw: str) -> str:
    digits = normalize_customer_id(raw)
    if len(digits) != 10:
        return digits
    return f"{digits[:3]}-{digits[3:6]}-{digits[6:]}"


def format_percent(value: float) -> str:
    v = float(value)
    if v.is_integer():
        return str(int(v))
    return f"{v:g}"


class KeyedLock:
    """
    One asyncio.Lock per key. Locks are created lazily and never removed;
    the key space is the set of campaigns touched by one service.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def for_key(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock
