from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Callable, Mapping

from adpilot.accounts import AccountRegistry
from adpilot.connectors.base import AdsPlatformTransport, MutateRequest, MutateResult
from adpilot.errors import (
    AdsError,
    InvalidRequest,
    NotConfigured,
    NotFound,
    PlatformError,
    UnsupportedChangeType,
)
from adpilot.gate import ConfidenceGate
from adpilot.ledger import ChangeLedger
from adpilot.models import (
    BidRecommendation,
    BudgetRecommendation,
    Change,
    Recommendation,
    Result,
    StatusRecommendation,
    parse_amount,
    parse_campaign_id,
    parse_campaign_status,
    parse_keyword_id,
    parse_match_type,
    parse_recommendation,
)
from adpilot.notify.sink import Notification, NotificationSink, failure_notification
from adpilot.repo import Repo
from adpilot.session import SessionStore
from adpilot.util import KeyedLock, format_customer_id, new_id, now_utc_iso

logger = logging.getLogger(__name__)

# Recommendation types routed to an operation; keyword and targeting stay manual.
AUTO_APPLY_TYPES = ("budget", "status", "bid")


class ChangeExecutor:
    """
    Apply gated changes to the selected Google Ads account and record them.

    Every public operation checks, in order: confidence gate, live session,
    developer token, selected account. Only then is a mutation sent. A
    `Change` is appended to the ledger only after the platform confirmed the
    mutation; failures leave just a failed attempt row behind, and a timeout
    leaves an `unknown` one that is settled once the platform call ends.
    Mutations are never retried automatically.
    """

    def __init__(
        self,
        *,
        gate: ConfidenceGate,
        session: SessionStore,
        registry: AccountRegistry,
        ledger: ChangeLedger,
        repo: Repo,
        transport: AdsPlatformTransport,
        notifier: NotificationSink | None = None,
        timeout_sec: float = 30.0,
        revert_compensates: bool = False,
    ):
        self.gate = gate
        self.session = session
        self.registry = registry
        self.ledger = ledger
        self.repo = repo
        self.transport = transport
        self.notifier = notifier
        self.timeout_sec = timeout_sec
        self.revert_compensates = revert_compensates
        self._locks = KeyedLock()

    # ------------------------------------------------------------------ #
    # Operations                                                           #
    # ------------------------------------------------------------------ #

    async def update_campaign_budget(
        self,
        campaign_id: str,
        budget: Any,
        confidence: Any,
        reason: str = "",
    ) -> Result[Change]:
        title = "Budget update"
        try:
            conf = self.gate.check(confidence)
            amount = parse_amount(budget, what="budget")
            change = await self._execute(
                change_type="budget",
                kind="budget",
                campaign_id=campaign_id,
                value={"budget": amount},
                new_value=amount,
                confidence=conf,
                reason=reason,
            )
        except AdsError as e:
            return await self._fail(f"{title} failed", e)
        await self._succeed(f"{title} applied", f"Campaign {campaign_id} budget set to {amount:.2f}.")
        return Result.ok(change)

    async def update_campaign_status(
        self,
        campaign_id: str,
        status: Any,
        confidence: Any,
        reason: str = "",
    ) -> Result[Change]:
        title = "Status update"
        try:
            conf = self.gate.check(confidence)
            new_status = parse_campaign_status(status)
            change = await self._execute(
                change_type="status",
                kind="status",
                campaign_id=campaign_id,
                value={"status": new_status},
                new_value=new_status,
                confidence=conf,
                reason=reason,
            )
        except AdsError as e:
            return await self._fail(f"{title} failed", e)
        await self._succeed(f"{title} applied", f"Campaign {campaign_id} is now {new_status}.")
        return Result.ok(change)

    async def update_keyword_bid(
        self,
        campaign_id: str,
        keyword_id: str,
        bid: Any,
        confidence: Any,
        reason: str = "",
    ) -> Result[Change]:
        title = "Bid update"
        try:
            conf = self.gate.check(confidence)
            amount = parse_amount(bid, what="bid")
            keyword_id = parse_keyword_id(keyword_id)
            value = {"keyword_id": keyword_id, "bid": amount}
            change = await self._execute(
                change_type="bid",
                kind="bid",
                campaign_id=campaign_id,
                value=value,
                new_value=value,
                confidence=conf,
                reason=reason,
            )
        except AdsError as e:
            return await self._fail(f"{title} failed", e)
        await self._succeed(f"{title} applied", f"Keyword {keyword_id} bid set to {amount:.2f}.")
        return Result.ok(change)

    async def add_negative_keyword(
        self,
        campaign_id: str,
        keyword: str,
        match_type: Any = "exact",
        confidence: Any = 100,
        reason: str = "",
    ) -> Result[Change]:
        title = "Negative keyword"
        try:
            conf = self.gate.check(confidence)
            text = str(keyword or "").strip()
            if not text:
                raise InvalidRequest("keyword text is required")
            mt = parse_match_type(match_type)
            change = await self._execute(
                change_type="keyword",
                kind="negativeKeyword",
                campaign_id=campaign_id,
                value={"keyword": text, "match_type": mt},
                new_value={"keyword": text, "match_type": mt, "is_negative": True},
                confidence=conf,
                reason=reason,
            )
        except AdsError as e:
            return await self._fail(f"{title} failed", e)
        await self._succeed(f"{title} added", f'"{text}" ({mt}) excluded from campaign {campaign_id}.')
        return Result.ok(change)

    async def apply_recommendation(self, rec: Recommendation | Mapping[str, Any]) -> Result[Change]:
        """
        Gate a recommendation, then route it to the matching operation.

        Keyword and targeting recommendations are not auto-applied.
        """
        try:
            if isinstance(rec, Mapping):
                conf = self.gate.check(rec.get("confidence"))
                rec_type = str(rec.get("type") or "").strip().lower()
                if rec_type not in AUTO_APPLY_TYPES:
                    raise UnsupportedChangeType(rec_type or "<missing>")
                parsed = parse_recommendation(rec, confidence=conf)
            else:
                self.gate.check(rec.confidence)
                parsed = rec
        except AdsError as e:
            return await self._fail("Recommendation rejected", e)

        if isinstance(parsed, BudgetRecommendation):
            return await self.update_campaign_budget(parsed.campaign_id, parsed.budget, parsed.confidence, parsed.reason)
        if isinstance(parsed, StatusRecommendation):
            return await self.update_campaign_status(parsed.campaign_id, parsed.status, parsed.confidence, parsed.reason)
        if isinstance(parsed, BidRecommendation):
            return await self.update_keyword_bid(
                parsed.campaign_id, parsed.keyword_id, parsed.bid, parsed.confidence, parsed.reason
            )
        return await self._fail("Recommendation rejected", UnsupportedChangeType(parsed.type))

    async def revert_change(self, change_id: str, compensate: bool | None = None) -> Result[Change]:
        """
        Mark an applied change as reverted.

        With `compensate` the inverse mutation is sent first; if that fails the
        change stays applied. Reverting twice returns the record unchanged.
        """
        if compensate is None:
            compensate = self.revert_compensates
        try:
            change = self.ledger.find(change_id)
            if change is None:
                raise NotFound(f"Change not found: {change_id}")
            if change.status == "reverted":
                return Result.ok(change)
            if change.status != "applied":
                raise InvalidRequest(f"Change {change_id} is {change.status}, only applied changes can be reverted")
            if compensate:
                await self._compensate(change)
            updated = self.ledger.mark_reverted(change_id)
            if updated is None:
                raise NotFound(f"Change not found: {change_id}")
        except AdsError as e:
            return await self._fail("Revert failed", e)

        how = "restored on Google Ads" if compensate else "marked as reverted"
        await self._succeed("Change reverted", f"{updated.type} change on campaign {updated.campaign_id} {how}.")
        return Result.ok(updated)

    # ------------------------------------------------------------------ #
    # Internals                                                            #
    # ------------------------------------------------------------------ #

    def _require_target(self) -> str:
        self.session.require_credentials()
        missing = self.session.missing_configuration()
        if missing:
            raise NotConfigured(missing)
        account = self.registry.selected_account()
        if account is None:
            raise NotConfigured("No Google Ads account selected. Link and select an account in Settings.")
        return account.external_customer_id

    async def _execute(
        self,
        *,
        change_type: str,
        kind: str,
        campaign_id: str,
        value: dict[str, Any],
        new_value: Any,
        confidence: float,
        reason: str,
    ) -> Change:
        campaign_id = parse_campaign_id(campaign_id)
        customer_id = self._require_target()
        request = MutateRequest(kind=kind, campaign_id=campaign_id, value=value, idempotency_key=new_id("idem"))

        def record(result: MutateResult) -> Change:
            change = Change(
                id=new_id("chg"),
                customer_id=customer_id,
                campaign_id=campaign_id,
                type=change_type,
                previous_value=result.previous_value,
                new_value=new_value,
                confidence=confidence,
                reason=reason,
                applied_at=now_utc_iso(),
                status="applied",
                resource_name=result.resource_name,
                idempotency_key=request.idempotency_key,
            )
            return self.ledger.append(change)

        change = await self._attempt(customer_id, change_type, request, record)
        logger.info(
            "Applied %s change %s to campaign %s on %s",
            change_type,
            change.id,
            campaign_id,
            format_customer_id(customer_id),
        )
        return change

    async def _attempt(
        self,
        customer_id: str,
        change_type: str,
        request: MutateRequest,
        record: Callable[[MutateResult], Change],
        *,
        change_id: str | None = None,
    ) -> Change:
        """
        Send one mutation under its campaign lock and track it as an attempt row.

        `record` runs inside the lock once the platform confirmed the mutation.
        When the caller stops waiting (timeout or cancellation) while the platform
        call is still running, the lock stays held until that call finishes, so
        at most one mutation per campaign is ever in flight.
        """
        lock = self._locks.for_key(f"{customer_id}:{request.campaign_id}")
        await lock.acquire()
        task: asyncio.Future[MutateResult] | None = None
        try:
            await self.session.valid_access_token()
            creds = self.session.require_credentials()
            attempt_id = self.repo.create_attempt(
                idempotency_key=request.idempotency_key,
                customer_id=customer_id,
                campaign_id=request.campaign_id,
                change_type=change_type,
                request=request.to_dict(),
            )
            task = asyncio.ensure_future(self.transport.mutate(creds, customer_id, request))
            try:
                result = await self._await_mutation(task)
            except PlatformError as e:
                status = "failed" if task.done() else "unknown"
                self.repo.finish_attempt(attempt_id, status=status, error=str(e), change_id=change_id)
                raise
            change = record(result)
            self.repo.finish_attempt(attempt_id, status="success", error=None, change_id=change.id)
            return change
        finally:
            if task is not None and not task.done():
                task.add_done_callback(functools.partial(self._finish_late, lock, attempt_id, change_id))
            else:
                lock.release()

    async def _await_mutation(self, task: asyncio.Future[MutateResult]) -> MutateResult:
        try:
            result = await asyncio.wait_for(asyncio.shield(task), timeout=self.timeout_sec)
        except asyncio.TimeoutError as e:
            raise PlatformError(
                f"Google Ads did not answer within {self.timeout_sec:g}s; "
                "the change was not recorded. Check the account before retrying."
            ) from e
        except PlatformError:
            raise
        except Exception as e:  # noqa: BLE001 - any transport failure is a platform failure
            raise PlatformError(f"{type(e).__name__}: {e}") from e
        if not result.success:
            raise PlatformError("Google Ads did not confirm the change")
        return result

    def _finish_late(
        self,
        lock: asyncio.Lock,
        attempt_id: str,
        change_id: str | None,
        task: asyncio.Future[MutateResult],
    ) -> None:
        try:
            if task.cancelled():
                status, error = "failed", "cancelled before Google Ads answered"
            elif task.exception() is not None:
                err = task.exception()
                status, error = "failed", f"{type(err).__name__}: {err}"
            elif not task.result().success:
                status, error = "failed", "Google Ads did not confirm the change"
            else:
                status, error = "unrecorded", "Google Ads applied the change after the caller stopped waiting"
                logger.warning("Attempt %s completed late; the change is live but not in the history", attempt_id)
            self.repo.finish_attempt(attempt_id, status=status, error=error, change_id=change_id)
        finally:
            lock.release()

    def _inverse_request(self, change: Change) -> MutateRequest:
        prev = change.previous_value
        key = new_id("idem")
        if change.type == "budget":
            if prev is None:
                raise InvalidRequest("No previous budget recorded; cannot restore it")
            return MutateRequest("budget", change.campaign_id, {"budget": float(prev)}, key)
        if change.type == "status":
            if prev is None:
                raise InvalidRequest("No previous status recorded; cannot restore it")
            return MutateRequest("status", change.campaign_id, {"status": parse_campaign_status(prev)}, key)
        if change.type == "bid":
            if not isinstance(prev, Mapping) or prev.get("bid") is None:
                raise InvalidRequest("No previous bid recorded; cannot restore it")
            keyword_id = prev.get("keyword_id") or (change.new_value or {}).get("keyword_id")
            return MutateRequest("bid", change.campaign_id, {"keyword_id": str(keyword_id), "bid": float(prev["bid"])}, key)
        if change.type == "keyword":
            if not change.resource_name:
                raise InvalidRequest("No criterion resource name recorded; cannot remove it")
            return MutateRequest("removeNegativeKeyword", change.campaign_id, {"resource_name": change.resource_name}, key)
        raise UnsupportedChangeType(change.type)

    async def _compensate(self, change: Change) -> None:
        self.session.require_credentials()
        missing = self.session.missing_configuration()
        if missing:
            raise NotConfigured(missing)

        request = self._inverse_request(change)
        await self._attempt(change.customer_id, change.type, request, lambda _: change, change_id=change.id)

    async def _succeed(self, title: str, message: str) -> None:
        await self._notify(Notification(type="success", title=title, message=message))

    async def _fail(self, title: str, err: AdsError) -> Result[Any]:
        if isinstance(err, PlatformError):
            logger.error("%s: %s", title, err)
        await self._notify(failure_notification(title, err))
        return Result.fail(err)

    async def _notify(self, notification: Notification) -> None:
        if self.notifier is not None:
            await self.notifier.send(notification)
