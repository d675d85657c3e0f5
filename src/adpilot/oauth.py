from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from urllib.parse import urlencode

from adpilot.util import now_utc

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
SCOPES = ["https://www.googleapis.com/auth/adwords"]
STATE_TTL = timedelta(minutes=10)


def build_authorization_url(*, client_id: str, redirect_uri: str, state: str) -> str:
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(SCOPES),
        # offline + consent so Google always returns a refresh token.
        "access_type": "offline",
        "prompt": "consent",
        "state": state,
    }
    return f"{AUTH_URL}?{urlencode(params)}"


class OAuthStateStore:
    """One-time CSRF `state` values issued with authorization URLs."""

    def __init__(self, ttl: timedelta = STATE_TTL):
        self.ttl = ttl
        self._issued: dict[str, datetime] = {}

    def issue(self) -> str:
        self._prune()
        state = secrets.token_urlsafe(16)
        self._issued[state] = now_utc()
        return state

    def consume(self, state: str | None) -> bool:
        if not state:
            return False
        issued_at = self._issued.pop(state, None)
        if issued_at is None:
            return False
        return now_utc() - issued_at <= self.ttl

    def _prune(self) -> None:
        cutoff = now_utc() - self.ttl
        for s in [s for s, at in self._issued.items() if at < cutoff]:
            del self._issued[s]

    def clear(self) -> None:
        self._issued.clear()
