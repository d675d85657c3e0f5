from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from adpilot.config import Settings
from adpilot.connectors.base import (
    Credentials,
    MutateRequest,
    MutateResult,
    TokenGrant,
    TransportCapabilities,
)
from adpilot.errors import AdsError, NotConfigured, PlatformError
from adpilot.models import (
    AccessibleAccount,
    CampaignSummary,
    KeywordSummary,
    parse_campaign_id,
    parse_keyword_id,
)
from adpilot.util import normalize_customer_id

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"

_ACCOUNT_STATUS = {
    "ENABLED": "enabled",
    "SUSPENDED": "suspended",
    "CANCELED": "cancelled",
    "CANCELLED": "cancelled",
    "CLOSED": "cancelled",
}


def _to_micros(amount: float) -> int:
    return int(round(float(amount) * 1_000_000))


def _from_micros(micros: Any) -> float:
    try:
        return float(micros or 0) / 1_000_000.0
    except (TypeError, ValueError):
        return 0.0


def _enum_name(v: Any) -> str:
    name = getattr(v, "name", None)
    if isinstance(name, str) and name:
        return name.upper()
    return str(v or "").rsplit(".", 1)[-1].upper()


def _campaign_status(v: Any) -> str:
    name = _enum_name(v)
    return {"ENABLED": "active", "PAUSED": "paused"}.get(name, name.lower())


def _number(v: Any) -> float:
    try:
        return float(v or 0)
    except (TypeError, ValueError):
        return 0.0


def _describe_error(e: Exception) -> str:
    # GoogleAdsException carries per-operation messages under failure.errors.
    failure = getattr(e, "failure", None)
    errors = getattr(failure, "errors", None)
    if errors:
        try:
            msgs = [str(getattr(err, "message", "") or "") for err in errors]
            msgs = [m for m in msgs if m]
            if msgs:
                return "; ".join(msgs)
        except TypeError:
            pass
    return f"{type(e).__name__}: {e}"


def _token_grant(body: dict[str, Any], refresh_token: str | None) -> TokenGrant:
    try:
        expires_in = int(body.get("expires_in") or 3600)
    except (TypeError, ValueError) as e:
        raise PlatformError(f"OAuth token response has an invalid expires_in: {body.get('expires_in')!r}") from e
    return TokenGrant(
        access_token=str(body.get("access_token") or ""),
        refresh_token=body.get("refresh_token") or refresh_token,
        expires_in=expires_in,
    )


class GoogleAdsTransport:
    """
    Google Ads implementation of the ads platform port.

    GAQL reads and mutates use the official `google-ads` Python client (run in a
    worker thread); the OAuth token endpoints are called with httpx.
    """

    capabilities = TransportCapabilities(
        write_status=True,
        write_budget=True,
        write_bid=True,
        write_negatives=True,
        # Google Ads mutates have no client idempotency key.
        idempotency_keys=False,
    )

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        self.settings = settings
        self._http = http_client

    # ------------------------------------------------------------------ #
    # OAuth                                                                #
    # ------------------------------------------------------------------ #

    async def _post_form(self, url: str, data: dict[str, str]) -> dict[str, Any]:
        try:
            if self._http is not None:
                r = await self._http.post(url, data=data, timeout=30)
            else:
                async with httpx.AsyncClient() as client:
                    r = await client.post(url, data=data, timeout=30)
        except httpx.HTTPError as e:
            raise PlatformError(f"OAuth request failed: {type(e).__name__}: {e}") from e
        try:
            body = r.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            raise PlatformError(f"OAuth response is not a JSON object (HTTP {r.status_code})")
        if r.status_code >= 400 or body.get("error"):
            detail = body.get("error_description") or body.get("error") or f"HTTP {r.status_code}"
            raise PlatformError(f"OAuth error: {detail}")
        return body

    def _client_credentials(self) -> tuple[str, str]:
        client_id = self.settings.google_ads_client_id
        client_secret = self.settings.google_ads_client_secret
        if not client_id or not client_secret:
            raise NotConfigured("Missing GOOGLE_ADS_CLIENT_ID / GOOGLE_ADS_CLIENT_SECRET")
        return client_id, client_secret

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        client_id, client_secret = self._client_credentials()
        body = await self._post_form(
            TOKEN_URL,
            {
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        return _token_grant(body, None)

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        client_id, client_secret = self._client_credentials()
        body = await self._post_form(
            TOKEN_URL,
            {
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "refresh_token",
            },
        )
        return _token_grant(body, refresh_token)

    async def revoke_token(self, token: str) -> None:
        await self._post_form(REVOKE_URL, {"token": token})

    # ------------------------------------------------------------------ #
    # Google Ads client                                                    #
    # ------------------------------------------------------------------ #

    def _google_client(self, credentials: Credentials):
        try:
            from google.ads.googleads.client import GoogleAdsClient  # type: ignore
        except Exception as e:  # noqa: BLE001
            raise NotConfigured("Missing dependency: google-ads") from e

        if not self.settings.google_ads_developer_token:
            raise NotConfigured("Missing GOOGLE_ADS_DEVELOPER_TOKEN")
        if not credentials.refresh_token:
            raise NotConfigured("Session has no refresh token; reconnect with offline access")

        cfg: dict[str, Any] = {
            "developer_token": self.settings.google_ads_developer_token,
            "client_id": self.settings.google_ads_client_id or "",
            "client_secret": self.settings.google_ads_client_secret or "",
            "refresh_token": credentials.refresh_token,
            "use_proto_plus": True,
        }
        login_customer_id = normalize_customer_id(self.settings.google_ads_login_customer_id or "")
        if login_customer_id:
            cfg["login_customer_id"] = login_customer_id
        return GoogleAdsClient.load_from_dict(cfg)

    def _query_single(self, client: Any, cid: str, gaql: str) -> Any:
        """Run a GAQL query and return the first result row, or None."""
        ga_service = client.get_service("GoogleAdsService")
        q = gaql.strip()
        if "LIMIT" not in q.upper():
            q = q + " LIMIT 1"
        response = ga_service.search(customer_id=cid, query=q)
        for row in response:
            return row
        return None

    @staticmethod
    def _confirmed_resource_name(resp: Any) -> str:
        results = list(getattr(resp, "results", None) or [])
        if not results:
            raise PlatformError("Mutate response carried no results; change not confirmed")
        return str(results[0].resource_name)

    # ------------------------------------------------------------------ #
    # Accounts                                                             #
    # ------------------------------------------------------------------ #

    async def list_accessible_accounts(self, credentials: Credentials) -> list[AccessibleAccount]:
        try:
            return await asyncio.to_thread(self._list_accessible_accounts_api, credentials)
        except AdsError:
            raise
        except Exception as e:  # noqa: BLE001 - any SDK failure is a platform failure
            raise PlatformError(_describe_error(e)) from e

    def _list_accessible_accounts_api(self, credentials: Credentials) -> list[AccessibleAccount]:
        client = self._google_client(credentials)
        customer_service = client.get_service("CustomerService")
        resp = customer_service.list_accessible_customers()

        accounts: list[AccessibleAccount] = []
        for resource_name in list(resp.resource_names):
            cid = normalize_customer_id(str(resource_name).rsplit("/", 1)[-1])
            if not cid:
                continue
            try:
                row = self._query_single(
                    client, cid,
                    """
                    SELECT
                      customer.id,
                      customer.descriptive_name,
                      customer.currency_code,
                      customer.time_zone,
                      customer.manager,
                      customer.status
                    FROM customer
                    """,
                )
            except Exception as e:  # noqa: BLE001 - one unreadable customer must not hide the others
                logger.warning("Skipping customer %s: %s", cid, _describe_error(e))
                continue
            customer = getattr(row, "customer", None) if row else None
            is_manager = bool(getattr(customer, "manager", False)) if customer else False
            accounts.append(
                AccessibleAccount(
                    customer_id=cid,
                    descriptive_name=str(getattr(customer, "descriptive_name", "") or "") or f"Account {cid}",
                    currency_code=str(getattr(customer, "currency_code", "") or "") or "USD",
                    time_zone=str(getattr(customer, "time_zone", "") or "") or "America/Los_Angeles",
                    is_manager=is_manager,
                    can_manage_clients=is_manager,
                    status=_ACCOUNT_STATUS.get(_enum_name(getattr(customer, "status", "ENABLED")), "pending"),
                )
            )
        return accounts

    # ------------------------------------------------------------------ #
    # Campaigns and keywords                                               #
    # ------------------------------------------------------------------ #

    async def list_campaigns(self, credentials: Credentials, customer_id: str) -> list[CampaignSummary]:
        try:
            return await asyncio.to_thread(self._list_campaigns_api, credentials, customer_id)
        except AdsError:
            raise
        except Exception as e:  # noqa: BLE001 - any SDK failure is a platform failure
            raise PlatformError(_describe_error(e)) from e

    async def list_keywords(
        self,
        credentials: Credentials,
        customer_id: str,
        campaign_id: str | None = None,
    ) -> list[KeywordSummary]:
        try:
            return await asyncio.to_thread(self._list_keywords_api, credentials, customer_id, campaign_id)
        except AdsError:
            raise
        except Exception as e:  # noqa: BLE001 - any SDK failure is a platform failure
            raise PlatformError(_describe_error(e)) from e

    @staticmethod
    def _stream(client: Any, cid: str, query: str):
        ga_service = client.get_service("GoogleAdsService")
        for batch in ga_service.search_stream(customer_id=cid, query=query):
            for row in batch.results:
                yield row

    def _list_campaigns_api(self, credentials: Credentials, customer_id: str) -> list[CampaignSummary]:
        cid = normalize_customer_id(customer_id)
        if not cid:
            raise NotConfigured("Missing Google Ads customer ID")
        client = self._google_client(credentials)
        q = """
        SELECT
          campaign.id,
          campaign.name,
          campaign.status,
          campaign.advertising_channel_type,
          campaign_budget.amount_micros,
          metrics.impressions,
          metrics.clicks,
          metrics.conversions,
          metrics.cost_micros,
          metrics.ctr,
          metrics.average_cpc
        FROM campaign
        WHERE campaign.status != 'REMOVED'
        ORDER BY metrics.impressions DESC
        LIMIT 50
        """
        out: list[CampaignSummary] = []
        for row in self._stream(client, cid, q):
            campaign = row.campaign
            campaign_id = str(getattr(campaign, "id", "") or "").strip()
            if not campaign_id:
                continue
            metrics = getattr(row, "metrics", None)
            out.append(
                CampaignSummary(
                    id=campaign_id,
                    name=str(getattr(campaign, "name", "") or ""),
                    status=_campaign_status(getattr(campaign, "status", "")),
                    channel_type=_enum_name(getattr(campaign, "advertising_channel_type", "")).lower(),
                    budget=_from_micros(getattr(getattr(row, "campaign_budget", None), "amount_micros", 0)),
                    impressions=int(_number(getattr(metrics, "impressions", 0))),
                    clicks=int(_number(getattr(metrics, "clicks", 0))),
                    conversions=_number(getattr(metrics, "conversions", 0)),
                    cost=_from_micros(getattr(metrics, "cost_micros", 0)),
                    ctr=_number(getattr(metrics, "ctr", 0)),
                    cpc=_from_micros(getattr(metrics, "average_cpc", 0)),
                )
            )
        return out

    def _list_keywords_api(
        self,
        credentials: Credentials,
        customer_id: str,
        campaign_id: str | None,
    ) -> list[KeywordSummary]:
        cid = normalize_customer_id(customer_id)
        if not cid:
            raise NotConfigured("Missing Google Ads customer ID")
        where = "ad_group_criterion.status != 'REMOVED'"
        if campaign_id:
            where += f" AND campaign.id = {parse_campaign_id(campaign_id)}"
        client = self._google_client(credentials)
        q = f"""
        SELECT
          campaign.id,
          ad_group.id,
          ad_group_criterion.criterion_id,
          ad_group_criterion.keyword.text,
          ad_group_criterion.keyword.match_type,
          ad_group_criterion.status,
          ad_group_criterion.cpc_bid_micros,
          ad_group_criterion.quality_info.quality_score,
          metrics.impressions,
          metrics.clicks,
          metrics.conversions,
          metrics.cost_micros,
          metrics.ctr,
          metrics.average_cpc
        FROM keyword_view
        WHERE {where}
        ORDER BY metrics.impressions DESC
        LIMIT 100
        """
        out: list[KeywordSummary] = []
        for row in self._stream(client, cid, q):
            criterion = row.ad_group_criterion
            criterion_id = str(getattr(criterion, "criterion_id", "") or "").strip()
            ad_group_id = str(getattr(getattr(row, "ad_group", None), "id", "") or "").strip()
            if not criterion_id or not ad_group_id:
                continue
            keyword = getattr(criterion, "keyword", None)
            metrics = getattr(row, "metrics", None)
            out.append(
                KeywordSummary(
                    id=f"{ad_group_id}~{criterion_id}",
                    campaign_id=str(getattr(getattr(row, "campaign", None), "id", "") or ""),
                    text=str(getattr(keyword, "text", "") or ""),
                    match_type=_enum_name(getattr(keyword, "match_type", "")).lower(),
                    status=_campaign_status(getattr(criterion, "status", "")),
                    bid=_from_micros(getattr(criterion, "cpc_bid_micros", 0)),
                    quality_score=int(_number(getattr(getattr(criterion, "quality_info", None), "quality_score", 0))),
                    impressions=int(_number(getattr(metrics, "impressions", 0))),
                    clicks=int(_number(getattr(metrics, "clicks", 0))),
                    conversions=_number(getattr(metrics, "conversions", 0)),
                    cost=_from_micros(getattr(metrics, "cost_micros", 0)),
                    ctr=_number(getattr(metrics, "ctr", 0)),
                    cpc=_from_micros(getattr(metrics, "average_cpc", 0)),
                )
            )
        return out

    # ------------------------------------------------------------------ #
    # Mutations                                                            #
    # ------------------------------------------------------------------ #

    def _mutate_budget(self, client: Any, cid: str, request: MutateRequest) -> MutateResult:
        campaign_id = request.campaign_id
        new_budget = float(request.value["budget"])
        new_amount_micros = _to_micros(new_budget)

        row = self._query_single(
            client, cid,
            f"SELECT campaign.campaign_budget FROM campaign WHERE campaign.id = {campaign_id}",
        )
        if not row:
            raise PlatformError(f"Campaign not found: {campaign_id}")
        budget_resource = str(
            getattr(getattr(row, "campaign", None), "campaign_budget", "") or ""
        ).strip()
        if not budget_resource:
            raise PlatformError(f"No campaign_budget resource for campaign {campaign_id}")

        budget_id = budget_resource.rsplit("/", 1)[-1]
        row_b = self._query_single(
            client, cid,
            f"SELECT campaign_budget.amount_micros FROM campaign_budget "
            f"WHERE campaign_budget.id = {budget_id}",
        )
        before_micros = (
            int(getattr(getattr(row_b, "campaign_budget", None), "amount_micros", 0) or 0)
            if row_b else None
        )

        svc = client.get_service("CampaignBudgetService")
        op = client.get_type("CampaignBudgetOperation")
        op.update.resource_name = budget_resource
        op.update.amount_micros = new_amount_micros
        op.update_mask.paths.extend(["amount_micros"])
        resp = svc.mutate_campaign_budgets(customer_id=cid, operations=[op])

        return MutateResult(
            success=True,
            applied_value=new_budget,
            previous_value=_from_micros(before_micros) if before_micros is not None else None,
            resource_name=self._confirmed_resource_name(resp),
            extra={"amount_micros": new_amount_micros},
        )

    def _mutate_status(self, client: Any, cid: str, request: MutateRequest) -> MutateResult:
        campaign_id = request.campaign_id
        new_status = str(request.value["status"])
        new_status_name = "ENABLED" if new_status == "active" else "PAUSED"

        row = self._query_single(
            client, cid,
            f"SELECT campaign.status FROM campaign WHERE campaign.id = {campaign_id}",
        )
        if not row:
            raise PlatformError(f"Campaign not found: {campaign_id}")
        before_name = _enum_name(getattr(getattr(row, "campaign", None), "status", ""))
        before_status = {"ENABLED": "active", "PAUSED": "paused"}.get(before_name)

        svc = client.get_service("CampaignService")
        op = client.get_type("CampaignOperation")
        op.update.resource_name = f"customers/{cid}/campaigns/{campaign_id}"
        op.update.status = getattr(client.enums.CampaignStatusEnum, new_status_name)
        op.update_mask.paths.extend(["status"])
        resp = svc.mutate_campaigns(customer_id=cid, operations=[op])

        return MutateResult(
            success=True,
            applied_value=new_status,
            previous_value=before_status,
            resource_name=self._confirmed_resource_name(resp),
        )

    def _resolve_ad_group(self, client: Any, cid: str, campaign_id: str, keyword_id: str) -> tuple[str, str]:
        # "adGroupId~criterionId" avoids a lookup; bare criterion ids are resolved via keyword_view.
        if "~" in keyword_id:
            ad_group_id, criterion_id = keyword_id.split("~", 1)
            return ad_group_id.strip(), criterion_id.strip()
        row = self._query_single(
            client, cid,
            f"SELECT ad_group.id FROM keyword_view "
            f"WHERE ad_group_criterion.criterion_id = {keyword_id} "
            f"AND campaign.id = {campaign_id}",
        )
        ad_group_id = (
            str(getattr(getattr(row, "ad_group", None), "id", "") or "").strip() if row else ""
        )
        if not ad_group_id:
            raise PlatformError(f"Cannot resolve ad_group for keyword {keyword_id} in campaign {campaign_id}")
        return ad_group_id, keyword_id

    def _mutate_bid(self, client: Any, cid: str, request: MutateRequest) -> MutateResult:
        keyword_id = str(request.value["keyword_id"]).strip()
        new_bid = float(request.value["bid"])
        new_cpc_micros = _to_micros(new_bid)

        ad_group_id, criterion_id = self._resolve_ad_group(client, cid, request.campaign_id, keyword_id)
        row = self._query_single(
            client, cid,
            f"SELECT ad_group_criterion.cpc_bid_micros FROM ad_group_criterion "
            f"WHERE ad_group_criterion.criterion_id = {criterion_id} "
            f"AND ad_group.id = {ad_group_id}",
        )
        before_micros = (
            int(getattr(getattr(row, "ad_group_criterion", None), "cpc_bid_micros", 0) or 0)
            if row else None
        )

        resource_name = f"customers/{cid}/adGroupCriteria/{ad_group_id}~{criterion_id}"
        svc = client.get_service("AdGroupCriterionService")
        op = client.get_type("AdGroupCriterionOperation")
        op.update.resource_name = resource_name
        op.update.cpc_bid_micros = new_cpc_micros
        op.update_mask.paths.extend(["cpc_bid_micros"])
        resp = svc.mutate_ad_group_criteria(customer_id=cid, operations=[op])

        return MutateResult(
            success=True,
            applied_value={"keyword_id": keyword_id, "bid": new_bid},
            previous_value=(
                {"keyword_id": keyword_id, "bid": _from_micros(before_micros)}
                if before_micros is not None
                else {"keyword_id": keyword_id}
            ),
            resource_name=self._confirmed_resource_name(resp),
            extra={"cpc_bid_micros": new_cpc_micros},
        )

    def _mutate_negative_keyword(self, client: Any, cid: str, request: MutateRequest) -> MutateResult:
        text = str(request.value["keyword"]).strip()
        match_type = str(request.value.get("match_type") or "exact").upper()

        svc = client.get_service("CampaignCriterionService")
        op = client.get_type("CampaignCriterionOperation")
        c = op.create
        c.campaign = f"customers/{cid}/campaigns/{request.campaign_id}"
        c.negative = True
        c.keyword.text = text
        c.keyword.match_type = getattr(client.enums.KeywordMatchTypeEnum, match_type)
        resp = svc.mutate_campaign_criteria(customer_id=cid, operations=[op])

        return MutateResult(
            success=True,
            applied_value={"keyword": text, "match_type": match_type.lower(), "is_negative": True},
            previous_value=None,
            resource_name=self._confirmed_resource_name(resp),
        )

    def _remove_negative_keyword(self, client: Any, cid: str, request: MutateRequest) -> MutateResult:
        resource_name = str(request.value["resource_name"]).strip()
        svc = client.get_service("CampaignCriterionService")
        op = client.get_type("CampaignCriterionOperation")
        op.remove = resource_name
        resp = svc.mutate_campaign_criteria(customer_id=cid, operations=[op])
        return MutateResult(
            success=True,
            applied_value=None,
            previous_value=None,
            resource_name=self._confirmed_resource_name(resp),
        )

    def _mutate_api(self, credentials: Credentials, customer_id: str, request: MutateRequest) -> MutateResult:
        """Synchronous dispatcher for mutations. Called from asyncio.to_thread."""
        cid = normalize_customer_id(customer_id)
        if not cid:
            raise NotConfigured("Missing Google Ads customer ID")
        # Ids are interpolated into GAQL, so only numeric ids get this far.
        parse_campaign_id(request.campaign_id)
        if request.kind == "bid":
            parse_keyword_id(request.value.get("keyword_id"))
        client = self._google_client(credentials)

        if request.kind == "budget":
            return self._mutate_budget(client, cid, request)
        elif request.kind == "status":
            return self._mutate_status(client, cid, request)
        elif request.kind == "bid":
            return self._mutate_bid(client, cid, request)
        elif request.kind == "negativeKeyword":
            return self._mutate_negative_keyword(client, cid, request)
        elif request.kind == "removeNegativeKeyword":
            return self._remove_negative_keyword(client, cid, request)
        else:
            raise ValueError(f"Unsupported mutate kind for Google Ads: {request.kind!r}")

    async def mutate(self, credentials: Credentials, customer_id: str, request: MutateRequest) -> MutateResult:
        try:
            return await asyncio.to_thread(self._mutate_api, credentials, customer_id, request)
        except AdsError:
            raise
        except Exception as e:  # noqa: BLE001 - any SDK failure is a platform failure
            raise PlatformError(_describe_error(e)) from e
