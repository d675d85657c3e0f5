from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlencode

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
import uvicorn

from adpilot.config import Settings
from adpilot.errors import InvalidRequest, NotAuthenticated
from adpilot.models import Result
from adpilot.service import AdsAutomationService


logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "not_authenticated": 401,
    "not_found": 404,
    "duplicate_account": 409,
    "not_configured": 409,
    "confidence_too_low": 422,
    "invalid_request": 422,
    "unsupported_change_type": 400,
    "platform_error": 502,
}


def _respond(result: Result[Any], status_code: int = 200) -> JSONResponse:
    if result.success:
        return JSONResponse(result.to_dict(), status_code=status_code)
    return JSONResponse(result.to_dict(), status_code=ERROR_STATUS.get(result.code or "", 500))


async def _json_body(request: Request, *, required: bool = True) -> dict[str, Any] | None:
    raw = await request.body()
    if not raw and not required:
        return {}
    try:
        payload = await request.json()
    except Exception:  # noqa: BLE001 - malformed body is a client error
        return None
    return payload if isinstance(payload, dict) else None


def _pick(payload: dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if payload.get(k) is not None:
            return payload[k]
    return None


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return False


def create_app(settings: Settings, service: AdsAutomationService | None = None) -> FastAPI:
    service = service or AdsAutomationService.from_settings(settings)

    app = FastAPI(title="adpilot")
    app.state.service = service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    bad_body = Result.fail(InvalidRequest("request body must be a JSON object"))

    def _unauthorized(request: Request) -> JSONResponse | None:
        if service.session.verify_session(request.headers.get("x-session-id")):
            return None
        return _respond(Result.fail(NotAuthenticated()))

    # Session

    @app.get("/api/health")
    def health():
        return _respond(service.health())

    @app.get("/api/oauth/url")
    def oauth_url():
        return _respond(service.authorization_url())

    @app.get("/oauth/callback")
    async def oauth_callback(code: str | None = None, state: str | None = None, error: str | None = None):
        target = f"{settings.frontend_url}/settings"
        if error:
            logger.warning("OAuth callback returned error: %s", error)
            return RedirectResponse(url=f"{target}?{urlencode({'error': error})}", status_code=302)
        result = await service.connect(code or "", state)
        if not result.success or result.data is None:
            return RedirectResponse(url=f"{target}?{urlencode({'error': result.error or 'oauth_failed'})}", status_code=302)
        params = {"connected": "true", "session": result.data.session_id}
        return RedirectResponse(url=f"{target}?{urlencode(params)}", status_code=302)

    @app.post("/api/disconnect")
    async def disconnect(request: Request):
        denied = _unauthorized(request)
        if denied is not None:
            return denied
        return _respond(await service.disconnect())

    # Accounts

    @app.get("/api/accounts")
    async def accessible_accounts(request: Request):
        denied = _unauthorized(request)
        if denied is not None:
            return denied
        return _respond(await service.fetch_accessible_accounts())

    @app.get("/api/linked-accounts")
    def linked_accounts(request: Request):
        denied = _unauthorized(request)
        if denied is not None:
            return denied
        return _respond(service.list_linked_accounts())

    @app.post("/api/linked-accounts")
    async def link_account(request: Request):
        denied = _unauthorized(request)
        if denied is not None:
            return denied
        payload = await _json_body(request)
        if payload is None:
            return _respond(bad_body)
        customer_id = str(_pick(payload, "customerId", "customer_id", "external_customer_id") or "")
        return _respond(await service.link_account(customer_id), status_code=201)

    @app.delete("/api/linked-accounts/{account_id}")
    async def unlink_account(account_id: str, request: Request):
        denied = _unauthorized(request)
        if denied is not None:
            return denied
        return _respond(await service.unlink_account(account_id))

    @app.post("/api/linked-accounts/{account_id}/select")
    async def select_account(account_id: str, request: Request):
        denied = _unauthorized(request)
        if denied is not None:
            return denied
        return _respond(await service.select_account(account_id))

    @app.get("/api/campaigns")
    async def campaigns(request: Request):
        denied = _unauthorized(request)
        if denied is not None:
            return denied
        return _respond(await service.list_campaigns())

    @app.get("/api/keywords")
    async def keywords(request: Request, campaign_id: str | None = None):
        denied = _unauthorized(request)
        if denied is not None:
            return denied
        return _respond(await service.list_keywords(campaign_id))

    # Changes

    @app.post("/api/recommendations/apply")
    async def apply_recommendation(request: Request):
        denied = _unauthorized(request)
        if denied is not None:
            return denied
        payload = await _json_body(request)
        if payload is None:
            return _respond(bad_body)
        return _respond(await service.apply_recommendation(payload))

    @app.patch("/api/campaigns/{campaign_id}/budget")
    async def update_budget(campaign_id: str, request: Request):
        denied = _unauthorized(request)
        if denied is not None:
            return denied
        payload = await _json_body(request)
        if payload is None:
            return _respond(bad_body)
        return _respond(await service.update_campaign_budget(
            campaign_id,
            _pick(payload, "budget", "amount"),
            payload.get("confidence"),
            str(payload.get("reason") or ""),
        ))

    @app.patch("/api/campaigns/{campaign_id}/status")
    async def update_status(campaign_id: str, request: Request):
        denied = _unauthorized(request)
        if denied is not None:
            return denied
        payload = await _json_body(request)
        if payload is None:
            return _respond(bad_body)
        return _respond(await service.update_campaign_status(
            campaign_id,
            payload.get("status"),
            payload.get("confidence"),
            str(payload.get("reason") or ""),
        ))

    @app.patch("/api/campaigns/{campaign_id}/keywords/{keyword_id}/bid")
    async def update_bid(campaign_id: str, keyword_id: str, request: Request):
        denied = _unauthorized(request)
        if denied is not None:
            return denied
        payload = await _json_body(request)
        if payload is None:
            return _respond(bad_body)
        return _respond(await service.update_keyword_bid(
            campaign_id,
            keyword_id,
            _pick(payload, "bid", "amount"),
            payload.get("confidence"),
            str(payload.get("reason") or ""),
        ))

    @app.post("/api/campaigns/{campaign_id}/negative-keywords")
    async def add_negative_keyword(campaign_id: str, request: Request):
        denied = _unauthorized(request)
        if denied is not None:
            return denied
        payload = await _json_body(request)
        if payload is None:
            return _respond(bad_body)
        return _respond(
            await service.add_negative_keyword(
                campaign_id,
                str(_pick(payload, "keyword", "text") or ""),
                _pick(payload, "matchType", "match_type") or "exact",
                payload.get("confidence"),
                str(payload.get("reason") or ""),
            ),
            status_code=201,
        )

    @app.get("/api/changes")
    def change_history(request: Request, limit: int | None = None):
        denied = _unauthorized(request)
        if denied is not None:
            return denied
        return _respond(service.get_change_history(limit=limit))

    @app.get("/api/changes/attempts")
    def change_attempts(request: Request, limit: int = 100):
        denied = _unauthorized(request)
        if denied is not None:
            return denied
        return _respond(service.get_change_attempts(limit=limit))

    @app.post("/api/changes/{change_id}/revert")
    async def revert_change(change_id: str, request: Request):
        denied = _unauthorized(request)
        if denied is not None:
            return denied
        payload = await _json_body(request, required=False)
        if payload is None:
            return _respond(bad_body)
        compensate = _to_bool(payload["compensate"]) if "compensate" in payload else None
        return _respond(await service.revert_change(change_id, compensate=compensate))

    # Notifications

    @app.get("/api/notifications")
    def notifications(unread: bool = False):
        return _respond(service.list_notifications(unread_only=unread))

    @app.post("/api/notifications/{notification_id}/read")
    def mark_notification_read(notification_id: str):
        return _respond(service.mark_notification_read(notification_id))

    return app


def run_web(settings: Settings) -> None:
    app = create_app(settings)
    uvicorn.run(app, host=settings.web_host, port=settings.web_port, log_level="info")
