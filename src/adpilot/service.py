from __future__ import annotations

from typing import Any, Mapping

from adpilot.accounts import AccountRegistry
from adpilot.config import Settings
from adpilot.connectors.base import AdsPlatformTransport
from adpilot.db import AdsDB
from adpilot.errors import NotFound
from adpilot.executor import ChangeExecutor
from adpilot.gate import ConfidenceGate
from adpilot.ledger import ChangeLedger
from adpilot.models import (
    AccessibleAccount,
    CampaignSummary,
    Change,
    KeywordSummary,
    LinkedAccount,
    Recommendation,
    Result,
)
from adpilot.notify.sink import FanoutNotificationSink, MemoryNotificationSink, Notification, NotificationSink
from adpilot.notify.telegram import TelegramNotificationSink
from adpilot.registry import build_transport
from adpilot.repo import Repo
from adpilot.session import ConnectResult, SessionStore


class AdsAutomationService:
    """
    The public contract: session, linked accounts, gated changes and their history.

    Constructed explicitly (one per process or per test) and torn down with
    `dispose()`. Every method returns a `Result`; no AdsError escapes.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: AdsPlatformTransport | None = None,
        notifier: NotificationSink | None = None,
        repo: Repo | None = None,
    ):
        self.settings = settings
        self.transport = transport or build_transport(settings)
        self.inbox = MemoryNotificationSink()
        sinks: list[NotificationSink] = [self.inbox]
        if notifier is not None:
            sinks.append(notifier)
        self.notifier = FanoutNotificationSink(*sinks)

        if repo is None:
            AdsDB(settings.db_path).init()
            repo = Repo(settings.db_path)
        self.repo = repo

        self.gate = ConfidenceGate(settings.auto_apply_confidence)
        self.session = SessionStore(settings, self.transport, self.notifier)
        self.registry = AccountRegistry(self.session, self.transport, self.notifier)
        self.ledger = ChangeLedger(repo)
        self.executor = ChangeExecutor(
            gate=self.gate,
            session=self.session,
            registry=self.registry,
            ledger=self.ledger,
            repo=repo,
            transport=self.transport,
            notifier=self.notifier,
            timeout_sec=settings.mutate_timeout_sec,
            revert_compensates=settings.revert_compensates,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "AdsAutomationService":
        notifier: NotificationSink | None = None
        if settings.telegram_bot_token and settings.telegram_allowed_chat_id:
            notifier = TelegramNotificationSink(settings.telegram_bot_token, settings.telegram_allowed_chat_id)
        return cls(settings, notifier=notifier)

    def dispose(self) -> None:
        self.session.dispose()
        self.registry.clear()
        self.inbox.notifications.clear()

    # Session

    def is_configured(self) -> bool:
        return self.session.is_configured()

    def authorization_url(self) -> Result[dict[str, str]]:
        return self.session.authorization_url()

    async def connect(self, code: str, state: str | None) -> Result[ConnectResult]:
        return await self.session.connect(code, state)

    async def connect_with_refresh_token(self, refresh_token: str | None = None) -> Result[ConnectResult]:
        return await self.session.connect_with_refresh_token(refresh_token or self.settings.google_ads_refresh_token)

    async def disconnect(self) -> Result[None]:
        return await self.session.disconnect()

    # Accounts

    async def fetch_accessible_accounts(self) -> Result[list[AccessibleAccount]]:
        return await self.registry.fetch_accessible_accounts()

    async def link_account(self, external_customer_id: str) -> Result[LinkedAccount]:
        return await self.registry.link_account(external_customer_id)

    async def unlink_account(self, account_id: str) -> Result[None]:
        return await self.registry.unlink_account(account_id)

    async def select_account(self, account_id: str) -> Result[LinkedAccount]:
        return await self.registry.select_account(account_id)

    async def list_campaigns(self) -> Result[list[CampaignSummary]]:
        return await self.registry.list_campaigns()

    async def list_keywords(self, campaign_id: str | None = None) -> Result[list[KeywordSummary]]:
        return await self.registry.list_keywords(campaign_id)

    def list_linked_accounts(self) -> Result[dict[str, Any]]:
        return Result.ok({
            "accounts": self.registry.list_accounts(),
            "selected_account_id": self.registry.selected_account_id,
        })

    # Changes

    async def apply_recommendation(self, rec: Recommendation | Mapping[str, Any]) -> Result[Change]:
        return await self.executor.apply_recommendation(rec)

    async def update_campaign_budget(self, campaign_id: str, budget: Any, confidence: Any, reason: str = "") -> Result[Change]:
        return await self.executor.update_campaign_budget(campaign_id, budget, confidence, reason)

    async def update_campaign_status(self, campaign_id: str, status: Any, confidence: Any, reason: str = "") -> Result[Change]:
        return await self.executor.update_campaign_status(campaign_id, status, confidence, reason)

    async def update_keyword_bid(
        self, campaign_id: str, keyword_id: str, bid: Any, confidence: Any, reason: str = ""
    ) -> Result[Change]:
        return await self.executor.update_keyword_bid(campaign_id, keyword_id, bid, confidence, reason)

    async def add_negative_keyword(
        self, campaign_id: str, keyword: str, match_type: Any = "exact", confidence: Any = 100, reason: str = ""
    ) -> Result[Change]:
        return await self.executor.add_negative_keyword(campaign_id, keyword, match_type, confidence, reason)

    async def revert_change(self, change_id: str, compensate: bool | None = None) -> Result[Change]:
        return await self.executor.revert_change(change_id, compensate)

    def get_change_history(self, limit: int | None = None) -> Result[list[Change]]:
        return Result.ok(self.ledger.list(limit=limit))

    def get_change_attempts(self, limit: int = 100) -> Result[list[dict[str, Any]]]:
        return Result.ok(self.repo.list_attempts(limit=limit))

    # Notifications

    def list_notifications(self, unread_only: bool = False) -> Result[list[Notification]]:
        items = self.inbox.unread() if unread_only else list(self.inbox.notifications)
        return Result.ok(items)

    def mark_notification_read(self, notification_id: str) -> Result[None]:
        if not self.inbox.mark_read(notification_id):
            return Result.fail(NotFound(f"Notification not found: {notification_id}"))
        return Result.ok(None)

    def health(self) -> Result[dict[str, Any]]:
        selected = self.registry.selected_account()
        return Result.ok({
            "ok": True,
            "demo_mode": self.settings.demo_mode,
            "connected": self.session.is_configured(),
            "linked_accounts": len(self.registry.list_accounts()),
            "selected_customer_id": selected.external_customer_id if selected else None,
            "auto_apply_confidence": self.gate.threshold,
            "capabilities": self.transport.capabilities.to_dict(),
            "changes": len(self.ledger),
        })
