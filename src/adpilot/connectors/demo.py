from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass, field
from typing import Any

from adpilot.connectors.base import (
    Credentials,
    MutateRequest,
    MutateResult,
    TokenGrant,
    TransportCapabilities,
)
from adpilot.errors import PlatformError
from adpilot.models import AccessibleAccount, CampaignSummary, KeywordSummary
from adpilot.util import normalize_customer_id


DEMO_ACCOUNTS = (
    AccessibleAccount(
        customer_id="1234567890",
        descriptive_name="Demo Manager",
        is_manager=True,
        can_manage_clients=True,
    ),
    AccessibleAccount(
        customer_id="9990001111",
        descriptive_name="Demo Plumbing Co",
    ),
    AccessibleAccount(
        customer_id="5550002222",
        descriptive_name="Demo Dental Group",
        currency_code="EUR",
        time_zone="Europe/Berlin",
    ),
)

DEMO_CAMPAIGNS = {
    "111": "Emergency Repairs",
    "222": "Water Heaters",
    "333": "Brand",
}

# campaign id -> criterion id -> (text, match type)
DEMO_KEYWORDS = {
    "111": {"501": ("emergency plumber", "phrase"), "502": ("burst pipe repair", "exact")},
    "222": {"601": ("water heater install", "broad")},
}


@dataclass
class DemoCampaign:
    budget: float = 50.0
    status: str = "active"
    bids: dict[str, float] = field(default_factory=dict)
    negatives: dict[str, dict[str, Any]] = field(default_factory=dict)


class DemoTransport:
    """
    In-memory ads platform so the OAuth, linking and apply flows can be exercised
    without real API keys.

    Unlike Google Ads it honours idempotency keys: replaying a key returns the
    first result without mutating again.
    """

    capabilities = TransportCapabilities(
        write_status=True,
        write_budget=True,
        write_bid=True,
        write_negatives=True,
        idempotency_keys=True,
    )

    def __init__(self, accounts: tuple[AccessibleAccount, ...] | list[AccessibleAccount] = DEMO_ACCOUNTS):
        self.accounts = list(accounts)
        self.campaigns: dict[tuple[str, str], DemoCampaign] = {}
        self.calls: list[tuple[str, Any]] = []
        self.revoked: list[str] = []
        self.fail_next: Exception | None = None
        self.delay_sec: float = 0.0
        self._results: dict[str, MutateResult] = {}

    def campaign(self, customer_id: str, campaign_id: str) -> DemoCampaign:
        key = (normalize_customer_id(customer_id), str(campaign_id))
        if key not in self.campaigns:
            self.campaigns[key] = DemoCampaign()
        return self.campaigns[key]

    def _maybe_fail(self) -> None:
        if self.fail_next is not None:
            err, self.fail_next = self.fail_next, None
            raise err

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        self.calls.append(("exchange_code", code))
        self._maybe_fail()
        if not code:
            raise PlatformError("OAuth error: invalid_grant")
        return TokenGrant(
            access_token=f"demo-access-{secrets.token_hex(4)}",
            refresh_token=f"demo-refresh-{secrets.token_hex(4)}",
            expires_in=3600,
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        self.calls.append(("refresh_access_token", refresh_token))
        self._maybe_fail()
        return TokenGrant(
            access_token=f"demo-access-{secrets.token_hex(4)}",
            refresh_token=refresh_token,
            expires_in=3600,
        )

    async def revoke_token(self, token: str) -> None:
        self.calls.append(("revoke_token", token))
        self._maybe_fail()
        self.revoked.append(token)

    async def list_accessible_accounts(self, credentials: Credentials) -> list[AccessibleAccount]:
        self.calls.append(("list_accessible_accounts", credentials.session_id))
        self._maybe_fail()
        return list(self.accounts)

    async def list_campaigns(self, credentials: Credentials, customer_id: str) -> list[CampaignSummary]:
        self.calls.append(("list_campaigns", customer_id))
        self._maybe_fail()
        out = []
        for campaign_id, name in DEMO_CAMPAIGNS.items():
            camp = self.campaign(customer_id, campaign_id)
            out.append(CampaignSummary(id=campaign_id, name=name, status=camp.status,
                                       channel_type="search", budget=camp.budget))
        return out

    async def list_keywords(
        self,
        credentials: Credentials,
        customer_id: str,
        campaign_id: str | None = None,
    ) -> list[KeywordSummary]:
        self.calls.append(("list_keywords", customer_id))
        self._maybe_fail()
        out = []
        for cmp_id, keywords in DEMO_KEYWORDS.items():
            if campaign_id and cmp_id != campaign_id:
                continue
            camp = self.campaign(customer_id, cmp_id)
            for criterion_id, (text, match_type) in keywords.items():
                out.append(KeywordSummary(
                    id=f"{cmp_id}0~{criterion_id}",
                    campaign_id=cmp_id,
                    text=text,
                    match_type=match_type,
                    status="active",
                    bid=camp.bids.get(criterion_id, 1.0),
                ))
        return out

    async def mutate(self, credentials: Credentials, customer_id: str, request: MutateRequest) -> MutateResult:
        self.calls.append(("mutate", request))
        if request.idempotency_key in self._results:
            return self._results[request.idempotency_key]
        if self.delay_sec:
            await asyncio.sleep(self.delay_sec)
        self._maybe_fail()

        camp = self.campaign(customer_id, request.campaign_id)
        value = request.value
        if request.kind == "budget":
            before, camp.budget = camp.budget, float(value["budget"])
            result = MutateResult(True, applied_value=camp.budget, previous_value=before,
                                  resource_name=f"customers/{customer_id}/campaignBudgets/{request.campaign_id}")
        elif request.kind == "status":
            before, camp.status = camp.status, str(value["status"])
            result = MutateResult(True, applied_value=camp.status, previous_value=before,
                                  resource_name=f"customers/{customer_id}/campaigns/{request.campaign_id}")
        elif request.kind == "bid":
            keyword_id = str(value["keyword_id"])
            criterion_id = keyword_id.rsplit("~", 1)[-1]
            before_bid = camp.bids.get(criterion_id, 1.0)
            camp.bids[criterion_id] = float(value["bid"])
            result = MutateResult(
                True,
                applied_value={"keyword_id": keyword_id, "bid": camp.bids[criterion_id]},
                previous_value={"keyword_id": keyword_id, "bid": before_bid},
                resource_name=f"customers/{customer_id}/adGroupCriteria/{request.campaign_id}0~{criterion_id}",
            )
        elif request.kind == "negativeKeyword":
            rn = f"customers/{customer_id}/campaignCriteria/{request.campaign_id}~{len(camp.negatives) + 1}"
            camp.negatives[rn] = {"keyword": value["keyword"], "match_type": value.get("match_type", "exact")}
            result = MutateResult(
                True,
                applied_value={**camp.negatives[rn], "is_negative": True},
                previous_value=None,
                resource_name=rn,
            )
        elif request.kind == "removeNegativeKeyword":
            rn = str(value["resource_name"])
            if rn not in camp.negatives:
                raise PlatformError(f"Criterion not found: {rn}")
            del camp.negatives[rn]
            result = MutateResult(True, resource_name=rn)
        else:
            raise PlatformError(f"Unsupported mutate kind: {request.kind!r}")

        self._results[request.idempotency_key] = result
        return result
