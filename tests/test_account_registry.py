from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, patch

from adpilot.accounts import AccountRegistry
from adpilot.config import Settings
from adpilot.connectors.demo import DemoTransport
from adpilot.errors import PlatformError
from adpilot.notify.sink import MemoryNotificationSink
from adpilot.session import SessionStore


def _settings() -> Settings:
    return Settings(
        db_path=Path("unused.sqlite3"),
        web_host="127.0.0.1",
        web_port=0,
        frontend_url="http://localhost:5173",
        oauth_redirect_uri="http://localhost:3001/oauth/callback",
        google_ads_client_id=None,
        google_ads_client_secret=None,
        google_ads_developer_token=None,
        google_ads_login_customer_id=None,
        google_ads_refresh_token=None,
        google_ads_customer_id=None,
        telegram_bot_token=None,
        telegram_allowed_chat_id=None,
        demo_mode=True,
    )


def _registry(connected: bool = True) -> tuple[AccountRegistry, SessionStore, DemoTransport, MemoryNotificationSink]:
    transport = DemoTransport()
    inbox = MemoryNotificationSink()
    session = SessionStore(_settings(), transport, inbox)
    registry = AccountRegistry(session, transport, inbox)
    if connected:
        asyncio.run(session.connect_with_refresh_token("rt"))
    return registry, session, transport, inbox


def test_link_requires_session() -> None:
    registry, _, _, _ = _registry(connected=False)
    res = asyncio.run(registry.link_account("999-000-1111"))
    assert res.code == "not_authenticated"
    assert registry.list_accounts() == []


def test_link_uses_platform_details() -> None:
    registry, _, _, _ = _registry()
    res = asyncio.run(registry.link_account("555-000-2222"))

    assert res.success
    account = res.data
    assert account.external_customer_id == "5550002222"
    assert account.display_name == "Demo Dental Group"
    assert account.currency_code == "EUR"
    assert account.time_zone == "Europe/Berlin"
    assert account.status == "enabled"
    assert account.to_dict()["external_customer_id"] == "555-000-2222"


def test_link_manual_id_uses_defaults() -> None:
    registry, _, _, _ = _registry()
    res = asyncio.run(registry.link_account("1112223333"))

    assert res.success
    assert res.data.display_name == "Account 111-222-3333"
    assert res.data.currency_code == "USD"
    assert res.data.time_zone == "America/Los_Angeles"


def test_link_falls_back_to_defaults_when_lookup_fails() -> None:
    registry, _, transport, _ = _registry()
    with patch.object(transport, "list_accessible_accounts", new=AsyncMock(side_effect=PlatformError("quota"))):
        res = asyncio.run(registry.link_account("999-000-1111"))
    assert res.success
    assert res.data.display_name == "Account 999-000-1111"


def test_link_rejects_duplicates_and_bad_ids() -> None:
    registry, _, _, inbox = _registry()

    async def _run():
        first = await registry.link_account("999-000-1111")
        dup = await registry.link_account("9990001111")
        short = await registry.link_account("12-34")
        return first, dup, short

    first, dup, short = asyncio.run(_run())
    assert first.success
    assert dup.code == "duplicate_account"
    assert short.code == "invalid_request"
    assert len(registry.list_accounts()) == 1
    assert [n.type for n in list(inbox.notifications)[:3]] == ["error", "error", "success"]


def test_select_sets_active_customer() -> None:
    registry, session, _, _ = _registry()

    async def _run():
        linked = await registry.link_account("999-000-1111")
        return await registry.select_account(linked.data.id)

    res = asyncio.run(_run())
    assert res.success
    assert registry.selected_account() == res.data
    assert registry.selected_account_id == res.data.id
    assert session.credentials.customer_id == "9990001111"


def test_select_unknown_account_is_not_found() -> None:
    registry, _, _, _ = _registry()
    res = asyncio.run(registry.select_account("acct_nope"))
    assert res.code == "not_found"
    assert registry.selected_account() is None


def test_unlinking_selected_account_clears_selection() -> None:
    registry, session, _, _ = _registry()

    async def _run():
        a = await registry.link_account("999-000-1111")
        b = await registry.link_account("555-000-2222")
        await registry.select_account(a.data.id)
        removed = await registry.unlink_account(a.data.id)
        return a.data, b.data, removed

    a, b, removed = asyncio.run(_run())
    assert removed.success
    assert registry.selected_account() is None
    assert session.credentials.customer_id == ""
    assert [x.id for x in registry.list_accounts()] == [b.id]


def test_unlinking_other_account_keeps_selection() -> None:
    registry, _, _, _ = _registry()

    async def _run():
        a = await registry.link_account("999-000-1111")
        b = await registry.link_account("555-000-2222")
        await registry.select_account(a.data.id)
        await registry.unlink_account(b.data.id)
        return a.data

    a = asyncio.run(_run())
    assert registry.selected_account_id == a.id


def test_unlink_unknown_account_is_not_found() -> None:
    registry, _, _, _ = _registry()
    res = asyncio.run(registry.unlink_account("acct_nope"))
    assert res.code == "not_found"


def test_disconnect_clears_registry() -> None:
    registry, session, _, _ = _registry()

    async def _run():
        linked = await registry.link_account("999-000-1111")
        await registry.select_account(linked.data.id)
        await session.disconnect()

    asyncio.run(_run())
    assert registry.list_accounts() == []
    assert registry.selected_account() is None


def test_fetch_accessible_accounts() -> None:
    registry, _, _, _ = _registry()
    res = asyncio.run(registry.fetch_accessible_accounts())
    assert res.success
    assert [a.customer_id for a in res.data] == ["1234567890", "9990001111", "5550002222"]
    assert registry.list_accounts() == []


def test_fetch_accessible_accounts_requires_session() -> None:
    registry, _, _, _ = _registry(connected=False)
    res = asyncio.run(registry.fetch_accessible_accounts())
    assert res.code == "not_authenticated"


def test_fetch_accessible_accounts_wraps_unexpected_errors() -> None:
    registry, _, transport, _ = _registry()
    transport.fail_next = TimeoutError("read timed out")
    res = asyncio.run(registry.fetch_accessible_accounts())
    assert res.code == "platform_error"
    assert "TimeoutError" in res.error


def test_inconsistent_registry_is_a_platform_error() -> None:
    registry, _, _, inbox = _registry()

    async def _run():
        linked = await registry.link_account("999-000-1111")
        # Same account under a second key breaks both uniqueness and keying.
        registry._accounts["acct_stray"] = linked.data
        return await registry.select_account(linked.data.id), await registry.unlink_account("acct_stray")

    selected, unlinked = asyncio.run(_run())
    assert selected.code == "platform_error"
    assert "inconsistent" in selected.error
    assert unlinked.code == "platform_error"
    assert inbox.notifications[0].type == "error"


def test_campaign_and_keyword_listings_follow_selection() -> None:
    registry, _, transport, _ = _registry()

    async def _run():
        before = await registry.list_campaigns()
        linked = await registry.link_account("999-000-1111")
        await registry.select_account(linked.data.id)
        return before, await registry.list_campaigns(), await registry.list_keywords("111")

    before, campaigns, keywords = asyncio.run(_run())
    assert before.code == "not_configured"
    assert [c.id for c in campaigns.data] == ["111", "222", "333"]
    assert campaigns.data[0].budget == 50.0
    assert [k.id for k in keywords.data] == ["1110~501", "1110~502"]
    assert ("list_campaigns", "9990001111") in transport.calls


def test_keyword_listing_rejects_non_numeric_campaign() -> None:
    registry, _, transport, _ = _registry()

    async def _run():
        linked = await registry.link_account("999-000-1111")
        await registry.select_account(linked.data.id)
        return await registry.list_keywords("111 OR 1=1")

    res = asyncio.run(_run())
    assert res.code == "invalid_request"
    assert not any(c[0] == "list_keywords" for c in transport.calls)
