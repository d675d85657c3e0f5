from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest

from adpilot.config import Settings
from adpilot.connectors.base import Credentials, MutateRequest
from adpilot.connectors.google_ads import GoogleAdsTransport
from adpilot.errors import InvalidRequest, NotConfigured, PlatformError
from adpilot.util import now_utc

CID = "8666829099"


# ------------------------------------------------------------------ #
# Helpers                                                              #
# ------------------------------------------------------------------ #


def _settings(**overrides) -> Settings:
    base = dict(
        db_path=Path("unused.sqlite3"),
        web_host="127.0.0.1",
        web_port=0,
        frontend_url="http://localhost:5173",
        oauth_redirect_uri="http://localhost:3001/oauth/callback",
        google_ads_client_id="client-id",
        google_ads_client_secret="client-secret",
        google_ads_developer_token="dev-token",
        google_ads_login_customer_id=None,
        google_ads_refresh_token=None,
        google_ads_customer_id=None,
        telegram_bot_token=None,
        telegram_allowed_chat_id=None,
        demo_mode=False,
    )
    base.update(overrides)
    return Settings(**base)


def _creds() -> Credentials:
    return Credentials(
        session_id="sess",
        access_token="access",
        refresh_token="refresh",
        expires_at=now_utc() + timedelta(hours=1),
        customer_id=CID,
    )


def _request(kind: str, value: dict, campaign_id: str = "111") -> MutateRequest:
    return MutateRequest(kind=kind, campaign_id=campaign_id, value=value, idempotency_key="idem_test")


def _mock_row(**attrs):
    """Create a mock GAQL row with nested attribute access."""
    row = MagicMock()
    for path, val in attrs.items():
        parts = path.split(".")
        obj = row
        for part in parts[:-1]:
            obj = getattr(obj, part)
        setattr(obj, parts[-1], val)
    return row


def _setup_client(search_rows_sequence=None):
    """
    Build a mock Google Ads client with pre-wired services.

    search_rows_sequence: list of lists (or exceptions); each item is what
    successive ga_service.search() calls return or raise.
    """
    client = MagicMock()
    client.enums.CampaignStatusEnum.PAUSED = "PAUSED"
    client.enums.CampaignStatusEnum.ENABLED = "ENABLED"
    client.enums.KeywordMatchTypeEnum.EXACT = "EXACT"
    client.enums.KeywordMatchTypeEnum.BROAD = "BROAD"
    client.enums.KeywordMatchTypeEnum.PHRASE = "PHRASE"

    ga_service = MagicMock()
    if search_rows_sequence is not None:
        ga_service.search.side_effect = [
            item if isinstance(item, Exception) else list(item) for item in search_rows_sequence
        ]

    services: dict[str, MagicMock] = {
        "GoogleAdsService": ga_service,
        "CustomerService": MagicMock(),
        "CampaignService": MagicMock(),
        "AdGroupCriterionService": MagicMock(),
        "CampaignBudgetService": MagicMock(),
        "CampaignCriterionService": MagicMock(),
    }

    def get_service(name: str) -> MagicMock:
        return services.get(name, MagicMock())

    client.get_service.side_effect = get_service
    return client, services


def _confirm(service: MagicMock, method: str, resource_name: str) -> None:
    result = MagicMock()
    result.resource_name = resource_name
    getattr(service, method).return_value.results = [result]


# ------------------------------------------------------------------ #
# Mutations                                                            #
# ------------------------------------------------------------------ #


def test_pause_campaign():
    transport = GoogleAdsTransport(_settings())

    before_row = _mock_row(**{"campaign.status": "ENABLED"})
    client, services = _setup_client(search_rows_sequence=[[before_row]])
    _confirm(services["CampaignService"], "mutate_campaigns", f"customers/{CID}/campaigns/111")

    with patch.object(transport, "_google_client", return_value=client):
        result = asyncio.run(transport.mutate(_creds(), CID, _request("status", {"status": "paused"})))

    assert result.success is True
    assert result.previous_value == "active"
    assert result.applied_value == "paused"
    assert result.resource_name == f"customers/{CID}/campaigns/111"
    call_args = services["CampaignService"].mutate_campaigns.call_args
    assert call_args.kwargs.get("customer_id") == CID
    op = call_args.kwargs["operations"][0]
    assert op.update.status == "PAUSED"


def test_set_budget():
    transport = GoogleAdsTransport(_settings())

    budget_rn = f"customers/{CID}/campaignBudgets/999"
    row_campaign = _mock_row(**{"campaign.campaign_budget": budget_rn})
    row_budget = _mock_row(**{"campaign_budget.amount_micros": 30_000_000})
    client, services = _setup_client(search_rows_sequence=[[row_campaign], [row_budget]])
    _confirm(services["CampaignBudgetService"], "mutate_campaign_budgets", budget_rn)

    with patch.object(transport, "_google_client", return_value=client):
        result = asyncio.run(transport.mutate(_creds(), "866-682-9099", _request("budget", {"budget": 50})))

    assert result.previous_value == 30.0
    assert result.applied_value == 50.0
    assert result.extra["amount_micros"] == 50_000_000
    assert result.resource_name == budget_rn
    call_args = services["CampaignBudgetService"].mutate_campaign_budgets.call_args
    assert call_args.kwargs.get("customer_id") == CID


def test_set_keyword_bid_with_ad_group_prefix_skips_lookup():
    """'adGroupId~criterionId' keyword ids need only the before-bid query."""
    transport = GoogleAdsTransport(_settings())

    before_row = _mock_row(**{"ad_group_criterion.cpc_bid_micros": 1_250_000})
    client, services = _setup_client(search_rows_sequence=[[before_row]])
    _confirm(
        services["AdGroupCriterionService"],
        "mutate_ad_group_criteria",
        f"customers/{CID}/adGroupCriteria/222~333",
    )

    with patch.object(transport, "_google_client", return_value=client):
        result = asyncio.run(
            transport.mutate(_creds(), CID, _request("bid", {"keyword_id": "222~333", "bid": 2.5}))
        )

    assert result.previous_value == {"keyword_id": "222~333", "bid": 1.25}
    assert result.applied_value == {"keyword_id": "222~333", "bid": 2.5}
    assert result.extra["cpc_bid_micros"] == 2_500_000
    assert services["GoogleAdsService"].search.call_count == 1
    op = services["AdGroupCriterionService"].mutate_ad_group_criteria.call_args.kwargs["operations"][0]
    assert op.update.resource_name == f"customers/{CID}/adGroupCriteria/222~333"


def test_set_keyword_bid_resolves_ad_group():
    transport = GoogleAdsTransport(_settings())

    ad_group_row = _mock_row(**{"ad_group.id": "222"})
    before_row = _mock_row(**{"ad_group_criterion.cpc_bid_micros": 1_000_000})
    client, services = _setup_client(search_rows_sequence=[[ad_group_row], [before_row]])
    _confirm(
        services["AdGroupCriterionService"],
        "mutate_ad_group_criteria",
        f"customers/{CID}/adGroupCriteria/222~333",
    )

    with patch.object(transport, "_google_client", return_value=client):
        result = asyncio.run(
            transport.mutate(_creds(), CID, _request("bid", {"keyword_id": "333", "bid": 1.5}))
        )

    assert "222~333" in result.resource_name
    assert result.previous_value["bid"] == 1.0


def test_add_negative_keyword():
    transport = GoogleAdsTransport(_settings())
    client, services = _setup_client()
    _confirm(
        services["CampaignCriterionService"],
        "mutate_campaign_criteria",
        f"customers/{CID}/campaignCriteria/111~12345",
    )

    with patch.object(transport, "_google_client", return_value=client):
        result = asyncio.run(
            transport.mutate(
                _creds(), CID, _request("negativeKeyword", {"keyword": "free trial", "match_type": "phrase"})
            )
        )

    assert result.resource_name == f"customers/{CID}/campaignCriteria/111~12345"
    assert result.applied_value == {"keyword": "free trial", "match_type": "phrase", "is_negative": True}
    op = services["CampaignCriterionService"].mutate_campaign_criteria.call_args.kwargs["operations"][0]
    assert op.create.negative is True
    assert op.create.keyword.match_type == "PHRASE"


def test_unconfirmed_mutate_is_a_platform_error():
    transport = GoogleAdsTransport(_settings())
    before_row = _mock_row(**{"campaign.status": "PAUSED"})
    client, services = _setup_client(search_rows_sequence=[[before_row]])
    services["CampaignService"].mutate_campaigns.return_value.results = []

    with patch.object(transport, "_google_client", return_value=client):
        with pytest.raises(PlatformError, match="not confirmed"):
            asyncio.run(transport.mutate(_creds(), CID, _request("status", {"status": "active"})))


def test_missing_campaign_raises_platform_error():
    transport = GoogleAdsTransport(_settings())
    client, _ = _setup_client(search_rows_sequence=[[]])

    with patch.object(transport, "_google_client", return_value=client):
        with pytest.raises(PlatformError, match="Campaign not found"):
            asyncio.run(transport.mutate(_creds(), CID, _request("status", {"status": "paused"})))


def test_unknown_kind_surfaces_as_platform_error():
    transport = GoogleAdsTransport(_settings())
    client, _ = _setup_client()

    with patch.object(transport, "_google_client", return_value=client):
        with pytest.raises(PlatformError, match="Unsupported mutate kind"):
            asyncio.run(transport.mutate(_creds(), CID, _request("do_magic", {})))


def test_missing_developer_token_is_not_configured():
    transport = GoogleAdsTransport(_settings(google_ads_developer_token=None))
    with pytest.raises(NotConfigured):
        transport._google_client(_creds())


# ------------------------------------------------------------------ #
# Accounts                                                             #
# ------------------------------------------------------------------ #


def test_list_accessible_accounts_skips_unreadable_customers():
    transport = GoogleAdsTransport(_settings())
    row = _mock_row(**{
        "customer.descriptive_name": "Acme Shoes",
        "customer.currency_code": "EUR",
        "customer.time_zone": "Europe/Berlin",
        "customer.manager": False,
        "customer.status": "ENABLED",
    })
    client, services = _setup_client(search_rows_sequence=[[row], RuntimeError("PERMISSION_DENIED")])
    services["CustomerService"].list_accessible_customers.return_value.resource_names = [
        "customers/1112223333",
        "customers/4445556666",
    ]

    with patch.object(transport, "_google_client", return_value=client):
        accounts = asyncio.run(transport.list_accessible_accounts(_creds()))

    assert len(accounts) == 1
    a = accounts[0]
    assert a.customer_id == "1112223333"
    assert a.descriptive_name == "Acme Shoes"
    assert a.currency_code == "EUR"
    assert a.status == "enabled"
    assert a.to_dict()["customer_id"] == "111-222-3333"


def test_list_accessible_accounts_wraps_sdk_failure():
    transport = GoogleAdsTransport(_settings())
    client, services = _setup_client()
    services["CustomerService"].list_accessible_customers.side_effect = RuntimeError("UNAUTHENTICATED")

    with patch.object(transport, "_google_client", return_value=client):
        with pytest.raises(PlatformError, match="UNAUTHENTICATED"):
            asyncio.run(transport.list_accessible_accounts(_creds()))


# ------------------------------------------------------------------ #
# OAuth                                                                #
# ------------------------------------------------------------------ #


def test_exchange_code_posts_form_and_parses_tokens():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"access_token": "at", "refresh_token": "rt", "expires_in": 1800})

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            transport = GoogleAdsTransport(_settings(), http_client=http)
            return await transport.exchange_code("the-code", "http://localhost:3001/oauth/callback")

    grant = asyncio.run(_run())

    assert grant.access_token == "at"
    assert grant.refresh_token == "rt"
    assert grant.expires_in == 1800
    body = seen[0].content.decode()
    assert "grant_type=authorization_code" in body
    assert "code=the-code" in body
    assert str(seen[0].url) == "https://oauth2.googleapis.com/token"


def test_refresh_keeps_refresh_token_when_not_rotated():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"access_token": "at2", "expires_in": 3600})

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            return await GoogleAdsTransport(_settings(), http_client=http).refresh_access_token("rt-old")

    grant = asyncio.run(_run())
    assert grant.access_token == "at2"
    assert grant.refresh_token == "rt-old"


def test_oauth_error_body_raises_platform_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Bad Request"})

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            await GoogleAdsTransport(_settings(), http_client=http).exchange_code("x", "http://cb")

    with pytest.raises(PlatformError, match="OAuth error: Bad Request"):
        asyncio.run(_run())


def test_exchange_code_without_client_credentials_is_not_configured():
    transport = GoogleAdsTransport(_settings(google_ads_client_id=None))
    with pytest.raises(NotConfigured):
        asyncio.run(transport.exchange_code("x", "http://cb"))


def test_non_object_token_body_raises_platform_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=["not", "an", "object"])

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            await GoogleAdsTransport(_settings(), http_client=http).exchange_code("x", "http://cb")

    with pytest.raises(PlatformError, match="not a JSON object"):
        asyncio.run(_run())


def test_invalid_expires_in_raises_platform_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"access_token": "at", "expires_in": "soon"})

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            await GoogleAdsTransport(_settings(), http_client=http).refresh_access_token("rt")

    with pytest.raises(PlatformError, match="expires_in"):
        asyncio.run(_run())


# ------------------------------------------------------------------ #
# Campaigns and keywords                                               #
# ------------------------------------------------------------------ #


def _batch(*rows):
    batch = MagicMock()
    batch.results = list(rows)
    return batch


def test_list_campaigns_reads_streamed_batches():
    transport = GoogleAdsTransport(_settings())
    first = _mock_row(**{
        "campaign.id": 111,
        "campaign.name": "Emergency Repairs",
        "campaign.status": "ENABLED",
        "campaign.advertising_channel_type": "SEARCH",
        "campaign_budget.amount_micros": 50_000_000,
        "metrics.impressions": 1200,
        "metrics.clicks": 60,
        "metrics.cost_micros": 90_000_000,
    })
    second = _mock_row(**{
        "campaign.id": 222,
        "campaign.name": "Water Heaters",
        "campaign.status": "PAUSED",
        "campaign.advertising_channel_type": "SEARCH",
        "campaign_budget.amount_micros": 20_000_000,
    })
    client, services = _setup_client()
    services["GoogleAdsService"].search_stream.return_value = [_batch(first), _batch(second)]

    with patch.object(transport, "_google_client", return_value=client):
        campaigns = asyncio.run(transport.list_campaigns(_creds(), "866-682-9099"))

    assert [c.id for c in campaigns] == ["111", "222"]
    assert [c.status for c in campaigns] == ["active", "paused"]
    assert campaigns[0].channel_type == "search"
    assert campaigns[0].budget == 50.0
    assert campaigns[0].impressions == 1200
    assert campaigns[0].cost == 90.0
    call = services["GoogleAdsService"].search_stream.call_args
    assert call.kwargs["customer_id"] == CID
    assert "campaign.status != 'REMOVED'" in call.kwargs["query"]


def test_list_keywords_builds_bid_ready_ids():
    transport = GoogleAdsTransport(_settings())
    row = _mock_row(**{
        "campaign.id": 111,
        "ad_group.id": 1110,
        "ad_group_criterion.criterion_id": 501,
        "ad_group_criterion.keyword.text": "emergency plumber",
        "ad_group_criterion.keyword.match_type": "PHRASE",
        "ad_group_criterion.status": "ENABLED",
        "ad_group_criterion.cpc_bid_micros": 2_500_000,
        "ad_group_criterion.quality_info.quality_score": 7,
    })
    client, services = _setup_client()
    services["GoogleAdsService"].search_stream.return_value = [_batch(row)]

    with patch.object(transport, "_google_client", return_value=client):
        keywords = asyncio.run(transport.list_keywords(_creds(), CID, "111"))

    k = keywords[0]
    assert k.id == "1110~501"
    assert k.campaign_id == "111"
    assert k.match_type == "phrase"
    assert k.bid == 2.5
    assert k.quality_score == 7
    assert "campaign.id = 111" in services["GoogleAdsService"].search_stream.call_args.kwargs["query"]


def test_listing_wraps_sdk_failure():
    transport = GoogleAdsTransport(_settings())
    client, services = _setup_client()
    services["GoogleAdsService"].search_stream.side_effect = RuntimeError("QUOTA_EXHAUSTED")

    with patch.object(transport, "_google_client", return_value=client):
        with pytest.raises(PlatformError, match="QUOTA_EXHAUSTED"):
            asyncio.run(transport.list_campaigns(_creds(), CID))


def test_non_numeric_ids_are_never_interpolated():
    transport = GoogleAdsTransport(_settings())
    client, services = _setup_client(search_rows_sequence=[])
    injected = "111 OR campaign.id > 0"

    with patch.object(transport, "_google_client", return_value=client):
        with pytest.raises(InvalidRequest):
            asyncio.run(transport.mutate(_creds(), CID, _request("budget", {"budget": 50}, campaign_id=injected)))
        with pytest.raises(InvalidRequest):
            asyncio.run(transport.mutate(_creds(), CID, _request("bid", {"keyword_id": "1 OR 1=1", "bid": 2.0})))
        with pytest.raises(InvalidRequest):
            asyncio.run(transport.list_keywords(_creds(), CID, injected))

    services["GoogleAdsService"].search.assert_not_called()
    services["GoogleAdsService"].search_stream.assert_not_called()
