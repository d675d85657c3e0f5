from __future__ import annotations

import logging
from typing import Any

from adpilot.connectors.base import AdsPlatformTransport, Credentials
from adpilot.errors import (
    AdsError,
    DuplicateAccount,
    InvalidRequest,
    NotConfigured,
    NotFound,
    PlatformError,
    platform_call,
)
from adpilot.models import (
    AccessibleAccount,
    CampaignSummary,
    KeywordSummary,
    LinkedAccount,
    Result,
    parse_campaign_id,
)
from adpilot.notify.sink import Notification, NotificationSink, failure_notification
from adpilot.session import SessionStore
from adpilot.util import format_customer_id, new_id, normalize_customer_id, now_utc_iso

logger = logging.getLogger(__name__)


class AccountRegistry:
    """
    Linked ad accounts for the current session plus the one selected for mutations.

    Registers itself as a disconnect listener on the session store, so the
    linked set and the selection never outlive the session that created them.
    """

    def __init__(
        self,
        session: SessionStore,
        transport: AdsPlatformTransport,
        notifier: NotificationSink | None = None,
    ):
        self.session = session
        self.transport = transport
        self.notifier = notifier
        self._accounts: dict[str, LinkedAccount] = {}
        self._selected_id: str | None = None
        session.add_listener(self.clear)

    def list_accounts(self) -> list[LinkedAccount]:
        return list(self._accounts.values())

    def selected_account(self) -> LinkedAccount | None:
        if self._selected_id is None:
            return None
        return self._accounts.get(self._selected_id)

    @property
    def selected_account_id(self) -> str | None:
        return self._selected_id

    def clear(self) -> None:
        self._accounts.clear()
        self._selected_id = None

    async def fetch_accessible_accounts(self) -> Result[list[AccessibleAccount]]:
        try:
            creds = self.session.require_credentials()
            accounts = await platform_call(self.transport.list_accessible_accounts(creds))
        except AdsError as e:
            if isinstance(e, PlatformError):
                logger.error("Listing accessible accounts failed: %s", e)
            return Result.fail(e)
        return Result.ok(list(accounts))

    async def list_campaigns(self) -> Result[list[CampaignSummary]]:
        """Campaigns of the selected account, for picking change targets."""
        try:
            creds, cid = self._require_selected()
            campaigns = await platform_call(self.transport.list_campaigns(creds, cid))
        except AdsError as e:
            if isinstance(e, PlatformError):
                logger.error("Listing campaigns failed: %s", e)
            return Result.fail(e)
        return Result.ok(list(campaigns))

    async def list_keywords(self, campaign_id: str | None = None) -> Result[list[KeywordSummary]]:
        try:
            creds, cid = self._require_selected()
            campaign_id = parse_campaign_id(campaign_id) if campaign_id else None
            keywords = await platform_call(self.transport.list_keywords(creds, cid, campaign_id))
        except AdsError as e:
            if isinstance(e, PlatformError):
                logger.error("Listing keywords failed: %s", e)
            return Result.fail(e)
        return Result.ok(list(keywords))

    def _require_selected(self) -> tuple[Credentials, str]:
        creds = self.session.require_credentials()
        account = self.selected_account()
        if account is None:
            raise NotConfigured("No Google Ads account selected. Link and select an account in Settings.")
        return creds, account.external_customer_id

    async def link_account(self, external_customer_id: str) -> Result[LinkedAccount]:
        try:
            account = await self._link(external_customer_id)
        except AdsError as e:
            return await self._fail("Account link failed", e)
        await self._notify(Notification(
            type="success",
            title="Account linked",
            message=f"{account.display_name} ({format_customer_id(account.external_customer_id)}) linked.",
        ))
        return Result.ok(account)

    async def _link(self, external_customer_id: str) -> LinkedAccount:
        creds = self.session.require_credentials()
        cid = normalize_customer_id(external_customer_id)
        if len(cid) != 10:
            raise InvalidRequest("Customer ID must have 10 digits (e.g. 999-000-1111).")
        if any(a.external_customer_id == cid for a in self._accounts.values()):
            raise DuplicateAccount(f"Account {format_customer_id(cid)} is already linked.")

        details = await self._lookup(creds, cid)
        account = LinkedAccount(
            id=new_id("acct"),
            external_customer_id=cid,
            display_name=details.descriptive_name if details else f"Account {format_customer_id(cid)}",
            currency_code=details.currency_code if details else "USD",
            time_zone=details.time_zone if details else "America/Los_Angeles",
            is_manager=details.is_manager if details else False,
            can_manage_clients=details.can_manage_clients if details else False,
            status="enabled",
            linked_at=now_utc_iso(),
        )
        self._accounts[account.id] = account
        self._check_invariants()
        return account

    async def _lookup(self, creds: Credentials, cid: str) -> AccessibleAccount | None:
        # Manually entered ids may not be in the listing; fall back to defaults then.
        try:
            listing = await platform_call(self.transport.list_accessible_accounts(creds))
        except PlatformError as e:
            logger.warning("Account lookup for %s failed, using defaults: %s", cid, e)
            return None
        for a in listing:
            if normalize_customer_id(a.customer_id) == cid:
                return a
        return None

    async def unlink_account(self, account_id: str) -> Result[None]:
        try:
            account = self._accounts.get(account_id)
            if account is None:
                raise NotFound(f"Linked account not found: {account_id}")
            del self._accounts[account_id]
            if self._selected_id == account_id:
                self._selected_id = None
                self.session.set_customer_id("")
            self._check_invariants()
        except AdsError as e:
            return await self._fail("Account unlink failed", e)

        await self._notify(Notification(
            type="success",
            title="Account unlinked",
            message=f"{account.display_name} was unlinked.",
        ))
        return Result.ok(None)

    async def select_account(self, account_id: str) -> Result[LinkedAccount]:
        try:
            account = self._accounts.get(account_id)
            if account is None:
                raise NotFound(f"Linked account not found: {account_id}")
            self._selected_id = account_id
            self.session.set_customer_id(account.external_customer_id)
            self._check_invariants()
        except AdsError as e:
            return await self._fail("Account selection failed", e)

        await self._notify(Notification(
            type="success",
            title="Account selected",
            message=f"Changes will be applied to {account.display_name}.",
        ))
        return Result.ok(account)

    def _check_invariants(self) -> None:
        problem = None
        external_ids = [a.external_customer_id for a in self._accounts.values()]
        if len(external_ids) != len(set(external_ids)):
            problem = "duplicate external customer id"
        elif any(k != a.id for k, a in self._accounts.items()):
            problem = "account keyed by wrong id"
        elif self._selected_id is not None and self._selected_id not in self._accounts:
            problem = "selected account is not linked"
        if problem:
            raise PlatformError(f"Account registry is inconsistent: {problem}")

    async def _fail(self, title: str, err: AdsError) -> Result[Any]:
        if isinstance(err, PlatformError):
            logger.error("%s: %s", title, err)
        await self._notify(failure_notification(title, err))
        return Result.fail(err)

    async def _notify(self, notification: Notification) -> None:
        if self.notifier is not None:
            await self.notifier.send(notification)
