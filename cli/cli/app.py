"""Billing operator CLI -- Typer-based interface to scheduled jobs.

Runs the same services as the API against a fresh database engine: the
monthly price job, the missing-price reminder check, bulk resume of paused
subscriptions, webhook replay, and price lookup.  Human-readable output
goes to *stderr* via Rich; ``--json`` writes machine-readable results to
*stdout* so that schedulers can compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import UTC, date, datetime
from typing import Any, TypeVar

import typer
from billing_core.errors import PriceUnavailableError
from billing_core.pricing import month_start
from billing_core.state.database import get_engine
from billing_core.state.repository import PlanRepository
from rich.console import Console
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings
from api.services.event_dispatcher import EventDispatcher
from api.services.event_log import EventLog, ReceiveResult, ReceiveStatus
from api.services.notification_service import NotificationService
from api.services.price_queue_service import PriceQueueService
from api.services.processor import ProcessorClientFactory
from api.services.resume_engine import SubscriptionResumeEngine
from cli.display import (
    display_apply_result,
    display_missing_price_result,
    display_price_resolution,
    display_replay_results,
    display_resume_result,
)

T = TypeVar("T")

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="billing",
    help="Billing operator CLI - scheduled pricing jobs and webhook remediation.",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None

_CLI_ACTOR = "cli"


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Database URL; defaults to API_DATABASE_URL.",
        envvar="API_DATABASE_URL",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log service activity to stderr."),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url
    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@dataclass
class _JobContext:
    settings: APISettings
    session_factory: async_sessionmaker[AsyncSession]
    processor: ProcessorClientFactory


def _load_settings() -> APISettings:
    settings = load_api_settings()
    if _database_url:
        settings = settings.model_copy(update={"database_url": _database_url})
    return settings


async def _with_context(job: Callable[[_JobContext], Awaitable[T]]) -> T:
    settings = _load_settings()
    engine = get_engine(settings.database_url)
    context = _JobContext(
        settings=settings,
        session_factory=async_sessionmaker(engine, expire_on_commit=False),
        processor=ProcessorClientFactory(
            api_key=settings.stripe_secret_key.get_secret_value(),
            webhook_secret=settings.stripe_webhook_secret.get_secret_value(),
            timeout=settings.stripe_request_timeout,
        ),
    )
    try:
        return await job(context)
    finally:
        await engine.dispose()


def _run(job: Callable[[_JobContext], Awaitable[T]]) -> T:
    """Run *job* on a fresh engine; unexpected errors exit with code 3."""
    try:
        return asyncio.run(_with_context(job))
    except typer.Exit:
        raise
    except Exception as exc:
        console.print(f"[red]{type(exc).__name__}: {exc}[/red]")
        raise typer.Exit(code=3) from exc


def _parse_date(value: str | None, label: str) -> date:
    """Parse a YYYY-MM-DD string into a :class:`date`; ``None`` means today (UTC)."""
    if value is None:
        return datetime.now(UTC).date()
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        console.print(f"[red]Invalid {label} date '{value}': {exc}[/red]")
        raise typer.Exit(code=3) from exc


def _parse_instant(value: str | None) -> datetime:
    """Parse an ISO date or datetime; naive values are taken as UTC."""
    if value is None:
        return datetime.now(UTC)
    try:
        instant = datetime.fromisoformat(value)
    except ValueError as exc:
        console.print(f"[red]Invalid --at value '{value}': {exc}[/red]")
        raise typer.Exit(code=3) from exc
    return instant if instant.tzinfo is not None else instant.replace(tzinfo=UTC)


def _emit_json(data: Any) -> None:
    typer.echo(json.dumps(data, sort_keys=True, default=str))


# ---------------------------------------------------------------------------
# Scheduled jobs
# ---------------------------------------------------------------------------


@app.command("apply-prices")
def apply_prices(
    on: str | None = typer.Option(None, "--date", help="Business date (YYYY-MM-DD); defaults to today."),
) -> None:
    """Mint Stripe prices for every scheduled month that has started."""
    today = _parse_date(on, "--date")

    async def _job(ctx: _JobContext) -> Any:
        async with ctx.session_factory() as session:
            result = await PriceQueueService(session, ctx.processor).apply_due(today)
            await session.commit()
            return result

    result = _run(_job)
    if _json_output:
        _emit_json(asdict(result))
    else:
        display_apply_result(console, result, today=today)
    if result.failed:
        raise typer.Exit(code=3)


@app.command("check-missing-prices")
def check_missing_prices(
    on: str | None = typer.Option(None, "--date", help="Business date (YYYY-MM-DD); defaults to today."),
) -> None:
    """Raise reminders for active dynamic plans with no price for next month."""
    today = _parse_date(on, "--date")

    async def _job(ctx: _JobContext) -> Any:
        async with ctx.session_factory() as session:
            result = await PriceQueueService(session).check_missing_prices(today)
            await session.commit()
            return result

    result = _run(_job)
    if _json_output:
        _emit_json(asdict(result))
    else:
        display_missing_price_result(console, result, today=today)


# ---------------------------------------------------------------------------
# Remediation
# ---------------------------------------------------------------------------


@app.command("resume-paused")
def resume_paused(
    plan_id: str = typer.Option(..., "--plan-id", help="Plan whose paused subscriptions to resume."),
) -> None:
    """Resume a plan's auto-paused subscriptions onto its current price."""

    async def _job(ctx: _JobContext) -> Any:
        async with ctx.session_factory() as session:
            plan = await PlanRepository(session).get(plan_id)
            if plan is None:
                console.print(f"[red]Plan '{plan_id}' not found.[/red]")
                raise typer.Exit(code=3)
            try:
                price_id = await PriceQueueService(session).current_price_id(plan)
            except PriceUnavailableError as exc:
                console.print(f"[red]{exc}[/red]")
                raise typer.Exit(code=3) from exc

            engine = SubscriptionResumeEngine(
                session,
                ctx.processor,
                item_timeout=ctx.settings.resume_item_timeout,
            )
            result = await engine.resume_plan(plan, price_id, actor=_CLI_ACTOR)
            await session.commit()
            return result

    result = _run(_job)
    if _json_output:
        payload = asdict(result)
        payload["errored"] = result.errored
        _emit_json(payload)
    else:
        display_resume_result(console, result)
    if result.errored:
        raise typer.Exit(code=3)


@app.command("replay-events")
def replay_events(
    event_id: str | None = typer.Option(None, "--event-id", help="Replay one stored event."),
    limit: int = typer.Option(100, "--limit", min=1, help="Maximum failed events to replay."),
) -> None:
    """Re-dispatch stored webhook events whose handler failed."""

    async def _job(ctx: _JobContext) -> list[ReceiveResult]:
        notifier: NotificationService | None = None
        if ctx.settings.notification_api_key.get_secret_value():
            notifier = NotificationService(
                api_url=ctx.settings.notification_api_url,
                api_key=ctx.settings.notification_api_key.get_secret_value(),
                sender=ctx.settings.notification_sender,
                timeout=ctx.settings.notification_timeout,
            )
        event_log = EventLog(ctx.session_factory, ctx.processor, EventDispatcher(ctx.processor, notifier))
        try:
            if event_id is None:
                return await event_log.replay_failed(limit)
            single = await event_log.replay(event_id)
            if single is None:
                console.print(f"[red]Event '{event_id}' not found.[/red]")
                raise typer.Exit(code=3)
            return [single]
        finally:
            if notifier is not None:
                await notifier.close()

    results = _run(_job)
    if _json_output:
        _emit_json([{**asdict(r), "status": r.status.value} for r in results])
    else:
        display_replay_results(console, results)
    if any(r.status == ReceiveStatus.FAILED for r in results):
        raise typer.Exit(code=3)


@app.command("resolve-price")
def resolve_price(
    plan_id: str = typer.Option(..., "--plan-id", help="Plan to resolve."),
    at: str | None = typer.Option(None, "--at", help="ISO date or datetime; defaults to now."),
) -> None:
    """Show the Stripe price that bills a plan at a point in time."""
    instant = _parse_instant(at)

    async def _job(ctx: _JobContext) -> dict[str, Any]:
        async with ctx.session_factory() as session:
            plan = await PlanRepository(session).get(plan_id)
            if plan is None:
                console.print(f"[red]Plan '{plan_id}' not found.[/red]")
                raise typer.Exit(code=3)
            try:
                price_id, amount = await PriceQueueService(session).price_at(plan, instant)
            except PriceUnavailableError as exc:
                console.print(f"[red]{exc}[/red]")
                raise typer.Exit(code=3) from exc
            return {
                "plan_id": plan.id,
                "pricing_type": plan.pricing_type,
                "month": month_start(instant),
                "price_id": price_id,
                "amount": amount,
                "currency": plan.currency,
            }

    resolution = _run(_job)
    if _json_output:
        _emit_json(resolution)
    else:
        display_price_resolution(console, **resolution)
