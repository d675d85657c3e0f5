from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Any, ClassVar, Generic, Mapping, TypeVar, Union

from adpilot.errors import AdsError, InvalidRequest, UnsupportedChangeType
from adpilot.util import format_customer_id, now_utc_iso

T = TypeVar("T")

CHANGE_TYPES = ("budget", "status", "bid", "keyword", "targeting")
CAMPAIGN_STATUSES = ("active", "paused")
MATCH_TYPES = ("broad", "phrase", "exact")

# Google Ads ids are numeric; keyword ids may carry an "adGroupId~" prefix.
_CAMPAIGN_ID_RE = re.compile(r"\d+")
_KEYWORD_ID_RE = re.compile(r"\d+(~\d+)?")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Uniform `{success, data, error}` envelope returned by every public operation."""

    success: bool
    data: T | None = None
    error: str | None = None
    code: str | None = None

    @staticmethod
    def ok(data: T | None = None) -> "Result[T]":
        return Result(success=True, data=data)

    @staticmethod
    def fail(err: AdsError | str, code: str | None = None) -> "Result[T]":
        if isinstance(err, AdsError):
            return Result(success=False, error=str(err), code=err.code)
        return Result(success=False, error=str(err), code=code or "platform_error")

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            out["data"] = _jsonable(self.data)
        if self.error is not None:
            out["error"] = self.error
            out["code"] = self.code
        return out


def _jsonable(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return value


@dataclass(frozen=True)
class AccessibleAccount:
    customer_id: str
    descriptive_name: str
    currency_code: str = "USD"
    time_zone: str = "America/Los_Angeles"
    is_manager: bool = False
    can_manage_clients: bool = False
    status: str = "enabled"

    def to_dict(self) -> dict[str, Any]:
        return {
            "customer_id": format_customer_id(self.customer_id),
            "descriptive_name": self.descriptive_name,
            "currency_code": self.currency_code,
            "time_zone": self.time_zone,
            "is_manager": self.is_manager,
            "can_manage_clients": self.can_manage_clients,
            "status": self.status,
        }


@dataclass(frozen=True)
class LinkedAccount:
    id: str
    external_customer_id: str
    display_name: str
    currency_code: str
    time_zone: str
    is_manager: bool
    can_manage_clients: bool
    status: str
    linked_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "external_customer_id": format_customer_id(self.external_customer_id),
            "display_name": self.display_name,
            "currency_code": self.currency_code,
            "time_zone": self.time_zone,
            "is_manager": self.is_manager,
            "can_manage_clients": self.can_manage_clients,
            "status": self.status,
            "linked_at": self.linked_at,
        }


@dataclass(frozen=True)
class CampaignSummary:
    id: str
    name: str
    status: str
    channel_type: str = ""
    budget: float = 0.0
    impressions: int = 0
    clicks: int = 0
    conversions: float = 0.0
    cost: float = 0.0
    ctr: float = 0.0
    cpc: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "channel_type": self.channel_type,
            "budget": self.budget,
            "impressions": self.impressions,
            "clicks": self.clicks,
            "conversions": self.conversions,
            "cost": self.cost,
            "ctr": self.ctr,
            "cpc": self.cpc,
        }


@dataclass(frozen=True)
class KeywordSummary:
    """A search keyword. `id` is "adGroupId~criterionId", usable as a bid-change keyword id."""

    id: str
    campaign_id: str
    text: str
    match_type: str
    status: str
    bid: float = 0.0
    quality_score: int = 0
    impressions: int = 0
    clicks: int = 0
    conversions: float = 0.0
    cost: float = 0.0
    ctr: float = 0.0
    cpc: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "text": self.text,
            "match_type": self.match_type,
            "status": self.status,
            "bid": self.bid,
            "quality_score": self.quality_score,
            "impressions": self.impressions,
            "clicks": self.clicks,
            "conversions": self.conversions,
            "cost": self.cost,
            "ctr": self.ctr,
            "cpc": self.cpc,
        }


@dataclass(frozen=True)
class Change:
    """
    One mutation applied to the ads platform.

    Frozen: the only transition is applied -> reverted, done by the ledger
    through `reverted()` which returns a new record.
    """

    id: str
    customer_id: str
    campaign_id: str
    type: str
    previous_value: Any
    new_value: Any
    confidence: float
    reason: str
    applied_at: str
    status: str = "applied"
    resource_name: str | None = None
    idempotency_key: str | None = None
    reverted_at: str | None = None

    def reverted(self) -> "Change":
        if self.status == "reverted":
            return self
        if self.status != "applied":
            raise ValueError(f"cannot revert change in status {self.status!r}")
        return replace(self, status="reverted", reverted_at=now_utc_iso())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "campaign_id": self.campaign_id,
            "type": self.type,
            "previous_value": self.previous_value,
            "new_value": self.new_value,
            "confidence": self.confidence,
            "reason": self.reason,
            "applied_at": self.applied_at,
            "status": self.status,
            "resource_name": self.resource_name,
            "idempotency_key": self.idempotency_key,
            "reverted_at": self.reverted_at,
        }


# ------------------------------------------------------------------ #
# Recommendations                                                      #
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class BudgetRecommendation:
    type: ClassVar[str] = "budget"
    campaign_id: str
    budget: float
    confidence: float
    reason: str = ""


@dataclass(frozen=True)
class StatusRecommendation:
    type: ClassVar[str] = "status"
    campaign_id: str
    status: str
    confidence: float
    reason: str = ""


@dataclass(frozen=True)
class BidRecommendation:
    type: ClassVar[str] = "bid"
    campaign_id: str
    keyword_id: str
    bid: float
    confidence: float
    reason: str = ""


@dataclass(frozen=True)
class KeywordRecommendation:
    type: ClassVar[str] = "keyword"
    campaign_id: str
    keyword: str
    match_type: str
    confidence: float
    reason: str = ""


@dataclass(frozen=True)
class TargetingRecommendation:
    type: ClassVar[str] = "targeting"
    campaign_id: str
    value: Any
    confidence: float
    reason: str = ""


Recommendation = Union[
    BudgetRecommendation,
    StatusRecommendation,
    BidRecommendation,
    KeywordRecommendation,
    TargetingRecommendation,
]


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in raw and raw[k] is not None:
            return raw[k]
    return None


def parse_amount(raw: Any, *, what: str) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        raise InvalidRequest(f"{what} must be a number")
    try:
        v = float(raw)
    except ValueError as e:
        raise InvalidRequest(f"{what} must be a number") from e
    if v <= 0:
        raise InvalidRequest(f"{what} must be greater than 0")
    return v


def parse_campaign_id(raw: Any) -> str:
    s = str(raw or "").strip()
    if not s:
        raise InvalidRequest("campaignId is required")
    if not _CAMPAIGN_ID_RE.fullmatch(s):
        raise InvalidRequest(f"campaignId must be a numeric Google Ads id, got {s!r}")
    return s


def parse_keyword_id(raw: Any) -> str:
    s = str(raw or "").strip()
    if not s:
        raise InvalidRequest("keywordId is required for bid changes")
    if not _KEYWORD_ID_RE.fullmatch(s):
        raise InvalidRequest(f"keywordId must be a criterion id or adGroupId~criterionId, got {s!r}")
    return s


def parse_campaign_status(raw: Any) -> str:
    s = str(raw or "").strip().lower()
    if s == "enabled":
        s = "active"
    if s not in CAMPAIGN_STATUSES:
        raise InvalidRequest(f"status must be one of {', '.join(CAMPAIGN_STATUSES)}")
    return s


def parse_match_type(raw: Any) -> str:
    s = str(raw or "exact").strip().lower()
    if s not in MATCH_TYPES:
        raise InvalidRequest(f"match_type must be one of {', '.join(MATCH_TYPES)}")
    return s


def parse_recommendation(raw: Mapping[str, Any], *, confidence: float) -> Recommendation:
    """
    Build a typed recommendation from a raw `{campaignId, type, value, confidence, reason}` mapping.

    `confidence` is passed in already validated by the caller (the gate runs first).
    """
    if not isinstance(raw, Mapping):
        raise InvalidRequest("recommendation must be an object")

    rec_type = str(raw.get("type") or "").strip().lower()
    if rec_type not in CHANGE_TYPES:
        raise UnsupportedChangeType(rec_type or "<missing>")

    campaign_id = parse_campaign_id(_pick(raw, "campaignId", "campaign_id"))
    reason = str(raw.get("reason") or "")
    value = raw.get("value")

    if rec_type == "budget":
        if isinstance(value, Mapping):
            value = _pick(value, "budget", "amount")
        return BudgetRecommendation(
            campaign_id=campaign_id,
            budget=parse_amount(value, what="budget"),
            confidence=confidence,
            reason=reason,
        )
    if rec_type == "status":
        if isinstance(value, Mapping):
            value = value.get("status")
        return StatusRecommendation(
            campaign_id=campaign_id,
            status=parse_campaign_status(value),
            confidence=confidence,
            reason=reason,
        )
    if rec_type == "bid":
        if not isinstance(value, Mapping):
            raise InvalidRequest("bid value must be an object with keywordId and bid")
        keyword_id = parse_keyword_id(_pick(value, "keywordId", "keyword_id"))
        return BidRecommendation(
            campaign_id=campaign_id,
            keyword_id=keyword_id,
            bid=parse_amount(_pick(value, "bid", "amount"), what="bid"),
            confidence=confidence,
            reason=reason,
        )
    if rec_type == "keyword":
        if isinstance(value, str):
            value = {"keyword": value}
        if not isinstance(value, Mapping):
            raise InvalidRequest("keyword value must be an object with keyword and matchType")
        text = str(_pick(value, "keyword", "text") or "").strip()
        if not text:
            raise InvalidRequest("keyword text is required")
        return KeywordRecommendation(
            campaign_id=campaign_id,
            keyword=text,
            match_type=parse_match_type(_pick(value, "matchType", "match_type")),
            confidence=confidence,
            reason=reason,
        )
    return TargetingRecommendation(
        campaign_id=campaign_id,
        value=value,
        confidence=confidence,
        reason=reason,
    )
