from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import typer

from adpilot.config import Settings
from adpilot.db import AdsDB
from adpilot.models import Result
from adpilot.service import AdsAutomationService
from adpilot.util import format_customer_id
from adpilot.web.app import run_web

app = typer.Typer(no_args_is_help=True)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("db")
def db_cmd(
    action: str = typer.Argument(..., help="init"),
) -> None:
    settings = Settings.load()
    db = AdsDB(settings.db_path)
    if action == "init":
        db.init()
        typer.echo(f"OK db init: {settings.db_path} (schema v{db.schema_version()})")
        return
    raise typer.BadParameter("action must be: init")


@app.command("web")
def web_cmd() -> None:
    settings = Settings.load()
    run_web(settings)


@app.command("oauth-url")
def oauth_url_cmd() -> None:
    """Print the Google consent URL; the web app must be running to receive the callback."""
    settings = Settings.load()
    service = AdsAutomationService.from_settings(settings)
    res = service.authorization_url()
    _exit_on_failure(res)
    typer.echo(res.data["auth_url"])


@app.command("accounts")
def accounts_cmd() -> None:
    settings = Settings.load()
    service = AdsAutomationService.from_settings(settings)

    async def _run() -> Result[Any]:
        connected = await service.connect_with_refresh_token()
        if not connected.success:
            return connected
        return await service.fetch_accessible_accounts()

    res = asyncio.run(_run())
    _exit_on_failure(res)
    for a in res.data or []:
        flags = " [manager]" if a.is_manager else ""
        typer.echo(f"{format_customer_id(a.customer_id)}  {a.descriptive_name}  {a.currency_code}  {a.time_zone}{flags}")


@app.command("apply")
def apply_cmd(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON recommendation or list of them"),
    customer_id: str | None = typer.Option(None, help="Target account. Defaults to GOOGLE_ADS_CUSTOMER_ID."),
) -> None:
    """
    Apply recommendations from a JSON file to one account.

    Every recommendation still goes through the confidence gate; rejected ones
    are reported and the command exits with code 2.
    """
    settings = Settings.load()
    service = AdsAutomationService.from_settings(settings)
    try:
        payload = json.loads(file.read_text(encoding="utf-8"))
    except ValueError as e:
        typer.echo(f"ERROR: invalid json: {e}")
        raise typer.Exit(code=2) from e
    recs = payload if isinstance(payload, list) else [payload]

    async def _run() -> list[Result[Any]]:
        ready = await _connect_operator(service, customer_id or settings.google_ads_customer_id)
        if not ready.success:
            return [ready]
        return [await service.apply_recommendation(r if isinstance(r, dict) else {}) for r in recs]

    results = asyncio.run(_run())
    failed = 0
    for res in results:
        if res.success:
            typer.echo(f"OK {res.data.type} {res.data.campaign_id} -> {res.data.id}")
        else:
            failed += 1
            typer.echo(f"ERROR [{res.code}] {res.error}")
    if failed:
        raise typer.Exit(code=2)


@app.command("history")
def history_cmd(limit: int = typer.Option(20, help="Newest first.")) -> None:
    settings = Settings.load()
    service = AdsAutomationService.from_settings(settings)
    res = service.get_change_history(limit=limit)
    typer.echo(json_dumps(res.to_dict()["data"]))


@app.command("attempts")
def attempts_cmd(limit: int = typer.Option(20, help="Newest first.")) -> None:
    settings = Settings.load()
    service = AdsAutomationService.from_settings(settings)
    res = service.get_change_attempts(limit=limit)
    typer.echo(json_dumps(res.data))


@app.command("revert")
def revert_cmd(
    change_id: str = typer.Argument(..., help="changes.id"),
    compensate: bool | None = typer.Option(
        None,
        "--compensate/--no-compensate",
        help="Also restore the previous value on Google Ads. Defaults to ADPILOT_REVERT_COMPENSATES.",
    ),
) -> None:
    settings = Settings.load()
    service = AdsAutomationService.from_settings(settings)
    if compensate is None:
        compensate = settings.revert_compensates

    async def _run() -> Result[Any]:
        if compensate:
            change = service.ledger.find(change_id)
            target = change.customer_id if change else settings.google_ads_customer_id
            ready = await _connect_operator(service, target)
            if not ready.success:
                return ready
        return await service.revert_change(change_id, compensate=compensate)

    res = asyncio.run(_run())
    _exit_on_failure(res)
    typer.echo(f"OK reverted {res.data.id}")


async def _connect_operator(service: AdsAutomationService, customer_id: str | None) -> Result[Any]:
    """Connect with the stored refresh token, then link and select `customer_id`."""
    connected = await service.connect_with_refresh_token()
    if not connected.success:
        return connected
    if not customer_id:
        return Result.fail("Missing GOOGLE_ADS_CUSTOMER_ID (or pass --customer-id)", code="not_configured")
    linked = await service.link_account(customer_id)
    if not linked.success:
        return linked
    return await service.select_account(linked.data.id)


def _exit_on_failure(res: Result[Any]) -> None:
    if not res.success:
        typer.echo(f"ERROR [{res.code}] {res.error}")
        raise typer.Exit(code=2)


def json_dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=True, indent=2)
