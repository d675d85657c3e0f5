from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from adpilot.models import AccessibleAccount, CampaignSummary, KeywordSummary
from adpilot.util import now_utc


@dataclass(frozen=True)
class TransportCapabilities:
    write_status: bool = False
    write_budget: bool = False
    write_bid: bool = False
    write_negatives: bool = False
    idempotency_keys: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "write_status": self.write_status,
            "write_budget": self.write_budget,
            "write_bid": self.write_bid,
            "write_negatives": self.write_negatives,
            "idempotency_keys": self.idempotency_keys,
        }


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: str | None
    expires_in: int = 3600

    def expires_at(self) -> datetime:
        return now_utc() + timedelta(seconds=int(self.expires_in or 0))


@dataclass(frozen=True)
class Credentials:
    """Authorization for one signed-in session. Never carries the OAuth client secret."""

    session_id: str
    access_token: str
    refresh_token: str | None
    expires_at: datetime
    customer_id: str = ""


@dataclass(frozen=True)
class MutateRequest:
    """
    One type-tagged mutation against a campaign.

    kind / value shapes:
      budget                {"budget": float}
      status                {"status": "active" | "paused"}
      bid                   {"keyword_id": str, "bid": float}
      negativeKeyword       {"keyword": str, "match_type": "broad" | "phrase" | "exact"}
      removeNegativeKeyword {"resource_name": str}
    """

    kind: str
    campaign_id: str
    value: dict[str, Any]
    idempotency_key: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "campaign_id": self.campaign_id,
            "value": dict(self.value),
            "idempotency_key": self.idempotency_key,
        }


@dataclass(frozen=True)
class MutateResult:
    success: bool
    applied_value: Any = None
    previous_value: Any = None
    resource_name: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class AdsPlatformTransport(Protocol):
    capabilities: TransportCapabilities

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        """OAuth authorization-code exchange. Raise PlatformError on failure."""

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token. Raise PlatformError on failure."""

    async def revoke_token(self, token: str) -> None:
        """Revoke a token with the platform. May raise; callers treat it as best-effort."""

    async def list_accessible_accounts(self, credentials: Credentials) -> list[AccessibleAccount]:
        """Accounts the credentials can access. Raise PlatformError on failure."""

    async def list_campaigns(self, credentials: Credentials, customer_id: str) -> list[CampaignSummary]:
        """Non-removed campaigns of one account. Raise PlatformError on failure."""

    async def list_keywords(
        self,
        credentials: Credentials,
        customer_id: str,
        campaign_id: str | None = None,
    ) -> list[KeywordSummary]:
        """Non-removed keywords, optionally of one campaign. Raise PlatformError on failure."""

    async def mutate(self, credentials: Credentials, customer_id: str, request: MutateRequest) -> MutateResult:
        """Apply one mutation. Must raise (or return success=False) unless the platform confirmed it."""
