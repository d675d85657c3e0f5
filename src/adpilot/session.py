from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Callable

from adpilot.config import Settings
from adpilot.connectors.base import AdsPlatformTransport, Credentials, TokenGrant
from adpilot.errors import AdsError, NotAuthenticated, NotConfigured, PlatformError, platform_call
from adpilot.models import AccessibleAccount, Result
from adpilot.notify.sink import Notification, NotificationSink, failure_notification
from adpilot.oauth import OAuthStateStore, build_authorization_url
from adpilot.util import normalize_customer_id, now_utc

logger = logging.getLogger(__name__)

# Access tokens are refreshed this long before they expire.
REFRESH_BUFFER = timedelta(minutes=5)


@dataclass(frozen=True)
class ConnectResult:
    session_id: str
    accounts: list[AccessibleAccount]

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "accounts": [a.to_dict() for a in self.accounts],
        }


class SessionStore:
    """
    Owns the single live Google Ads session (OAuth tokens + opaque session handle).

    Listeners registered with `add_listener` are called synchronously whenever
    the session is torn down, so no caller can observe a stale "configured"
    state after `disconnect()` returns.
    """

    def __init__(
        self,
        settings: Settings,
        transport: AdsPlatformTransport,
        notifier: NotificationSink | None = None,
    ):
        self.settings = settings
        self.transport = transport
        self.notifier = notifier
        self._credentials: Credentials | None = None
        self._states = OAuthStateStore()
        self._listeners: list[Callable[[], None]] = []

    # ------------------------------------------------------------------ #
    # Queries                                                              #
    # ------------------------------------------------------------------ #

    @property
    def credentials(self) -> Credentials | None:
        return self._credentials

    def is_configured(self) -> bool:
        return self._credentials is not None and bool(self._credentials.session_id)

    def require_credentials(self) -> Credentials:
        if self._credentials is None:
            raise NotAuthenticated()
        return self._credentials

    def missing_configuration(self) -> str | None:
        """Why a connected session still cannot mutate, or None when it can."""
        if self.settings.demo_mode:
            return None
        if not self.settings.google_ads_developer_token:
            return "Google Ads API not configured: missing GOOGLE_ADS_DEVELOPER_TOKEN."
        return None

    def verify_session(self, session_id: str | None) -> bool:
        if not session_id or self._credentials is None:
            return False
        return secrets.compare_digest(str(session_id), self._credentials.session_id)

    def add_listener(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def set_customer_id(self, customer_id: str) -> None:
        if self._credentials is None:
            return
        self._credentials = replace(self._credentials, customer_id=normalize_customer_id(customer_id))

    # ------------------------------------------------------------------ #
    # OAuth                                                                #
    # ------------------------------------------------------------------ #

    def authorization_url(self) -> Result[dict[str, str]]:
        client_id = self.settings.google_ads_client_id
        if not client_id and self.settings.demo_mode:
            client_id = "demo-client"
        if not client_id:
            return Result.fail(NotConfigured("Google Ads API not configured: missing GOOGLE_ADS_CLIENT_ID."))
        state = self._states.issue()
        url = build_authorization_url(
            client_id=client_id,
            redirect_uri=self.settings.oauth_redirect_uri,
            state=state,
        )
        return Result.ok({"auth_url": url, "state": state})

    async def connect(self, code: str, state: str | None) -> Result[ConnectResult]:
        try:
            if not self._states.consume(state):
                raise NotAuthenticated("OAuth state mismatch; restart the connection from Settings.")
            if not code:
                raise NotAuthenticated("OAuth callback carried no authorization code.")
            grant = await platform_call(self.transport.exchange_code(code, self.settings.oauth_redirect_uri))
            result = await self._establish(grant)
        except AdsError as e:
            return await self._fail("Google Ads connection failed", e)
        await self._notify(Notification(
            type="success",
            title="Google Ads connected",
            message=f"{len(result.accounts)} accessible account(s) found.",
        ))
        return Result.ok(result)

    async def connect_with_refresh_token(self, refresh_token: str | None) -> Result[ConnectResult]:
        """Operator path: connect from a stored refresh token instead of an OAuth callback."""
        try:
            if not refresh_token:
                raise NotAuthenticated("Missing GOOGLE_ADS_REFRESH_TOKEN")
            grant = await platform_call(self.transport.refresh_access_token(refresh_token))
            if not grant.refresh_token:
                grant = TokenGrant(grant.access_token, refresh_token, grant.expires_in)
            result = await self._establish(grant)
        except AdsError as e:
            return await self._fail("Google Ads connection failed", e)
        await self._notify(Notification(
            type="success",
            title="Google Ads connected",
            message=f"{len(result.accounts)} accessible account(s) found.",
        ))
        return Result.ok(result)

    async def _establish(self, grant: TokenGrant) -> ConnectResult:
        if not grant.access_token:
            raise PlatformError("OAuth token response carried no access token")
        if self._credentials is not None:
            self._clear()
        creds = Credentials(
            session_id=secrets.token_urlsafe(24),
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at(),
        )
        self._credentials = creds
        try:
            accounts = await platform_call(self.transport.list_accessible_accounts(creds))
        except BaseException:
            # All-or-nothing: a session that cannot list accounts is not kept.
            self._clear()
            raise
        return ConnectResult(session_id=creds.session_id, accounts=list(accounts))

    async def valid_access_token(self) -> str:
        creds = self.require_credentials()
        if creds.expires_at > now_utc() + REFRESH_BUFFER:
            return creds.access_token
        if not creds.refresh_token:
            raise NotAuthenticated("Session expired; reconnect Google Ads.")
        logger.info("Access token for session %s expiring, refreshing", creds.session_id[:6])
        grant = await platform_call(self.transport.refresh_access_token(creds.refresh_token))
        # The session may have been dropped while the refresh was in flight.
        if self._credentials is None or self._credentials.session_id != creds.session_id:
            raise NotAuthenticated()
        self._credentials = replace(
            self._credentials,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or creds.refresh_token,
            expires_at=grant.expires_at(),
        )
        return self._credentials.access_token

    # ------------------------------------------------------------------ #
    # Teardown                                                             #
    # ------------------------------------------------------------------ #

    async def disconnect(self) -> Result[None]:
        creds = self._credentials
        if creds is None:
            return Result.ok(None)

        self._clear()
        try:
            await self.transport.revoke_token(creds.refresh_token or creds.access_token)
        except Exception as e:  # noqa: BLE001 - revocation is best-effort, local state is already gone
            logger.warning("Token revocation failed: %s: %s", type(e).__name__, e)

        await self._notify(Notification(
            type="info",
            title="Google Ads disconnected",
            message="Linked accounts were cleared.",
        ))
        return Result.ok(None)

    def dispose(self) -> None:
        self._clear()
        self._listeners.clear()
        self._states.clear()

    def _clear(self) -> None:
        self._credentials = None
        for callback in list(self._listeners):
            callback()

    async def _fail(self, title: str, err: AdsError) -> Result[Any]:
        if isinstance(err, PlatformError):
            logger.error("%s: %s", title, err)
        await self._notify(failure_notification(title, err))
        return Result.fail(err)

    async def _notify(self, notification: Notification) -> None:
        if self.notifier is not None:
            await self.notifier.send(notification)
