"""Rich output formatting for the billing CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from api.services.event_log import ReceiveResult
    from api.services.price_queue_service import ApplyDueResult, MissingPriceCheckResult
    from api.services.resume_engine import ResumeResult


# ---------------------------------------------------------------------------
# Status colour mapping
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "processed": "green",
    "resumed": "green",
    "ignored": "dim",
    "skipped": "dim",
    "duplicate": "yellow",
    "failed": "red",
    "errored": "red",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


def _format_amount(amount: int | None, currency: str) -> str:
    if amount is None:
        return "-"
    return f"{amount / 100:.2f} {currency.upper()}"


def _errors_table(title: str, errors: Sequence[dict[str, str]], key: str) -> Table:
    table = Table(title=title, show_lines=False, pad_edge=True, expand=False)
    table.add_column(key.replace("_", " ").title(), style="bold")
    table.add_column("Error", style="red")
    for error in errors:
        table.add_row(error.get(key, "?"), error.get("error", "?"))
    return table


# ---------------------------------------------------------------------------
# Scheduled jobs
# ---------------------------------------------------------------------------


def display_apply_result(console: Console, result: ApplyDueResult, *, today: date) -> None:
    """Render the outcome of the apply-due price job.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    result:
        Counters and per-item errors from the run.
    today:
        The business date the job ran for.
    """
    colour = "red" if result.failed else "green"
    console.print(
        Panel(
            "\n".join(
                [
                    f"[bold]Date:[/bold]       {today.isoformat()}",
                    f"[bold]Considered:[/bold] {result.considered}",
                    f"[bold]Applied:[/bold]    {result.applied}",
                    f"[bold]Failed:[/bold]     [{colour}]{result.failed}[/{colour}]",
                ]
            ),
            title="Scheduled Prices",
            border_style="blue",
        )
    )
    if result.errors:
        console.print(_errors_table("Failed Queue Items", result.errors, "item_id"))


def display_missing_price_result(console: Console, result: MissingPriceCheckResult, *, today: date) -> None:
    """Render the outcome of the missing next-month price check."""
    console.print(
        Panel(
            "\n".join(
                [
                    f"[bold]Date:[/bold]            {today.isoformat()}",
                    f"[bold]Plans checked:[/bold]   {result.plans_checked}",
                    f"[bold]Alerts raised:[/bold]   {result.alerts_raised}",
                    f"[bold]Alerts resolved:[/bold] {result.alerts_resolved}",
                ]
            ),
            title="Missing Dynamic Prices",
            border_style="yellow" if result.alerts_raised else "blue",
        )
    )


# ---------------------------------------------------------------------------
# Remediation
# ---------------------------------------------------------------------------


def display_resume_result(console: Console, result: ResumeResult) -> None:
    """Render a bulk resume run with one row per subscription."""
    console.print(
        f"Resumed [bold]{result.resumed}[/bold] of {result.considered} subscription(s) "
        f"onto [cyan]{result.price_id}[/cyan] "
        f"([green]{result.charged} charged[/green], [dim]{result.skipped} skipped[/dim], "
        f"[red]{result.errored} errored[/red])"
    )
    if not result.items:
        return

    table = Table(title="Subscriptions", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Subscription", style="bold")
    table.add_column("Outcome")
    table.add_column("Charged")
    table.add_column("Detail")
    for item in result.items:
        table.add_row(
            item.subscription_id,
            _coloured_status(item.outcome.value),
            "yes" if item.charged else "-",
            item.error or "",
        )
    console.print(table)


def display_replay_results(console: Console, results: Sequence[ReceiveResult]) -> None:
    """Render replayed webhook events."""
    if not results:
        console.print("[dim]No events to replay.[/dim]")
        return

    table = Table(title="Replayed Events", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Event", style="bold")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Error")
    for result in results:
        table.add_row(
            result.event_id,
            result.event_type,
            _coloured_status(result.status.value),
            result.error or "",
        )
    console.print(table)


def display_price_resolution(
    console: Console,
    *,
    plan_id: str,
    pricing_type: str,
    month: date,
    price_id: str,
    amount: int | None,
    currency: str,
) -> None:
    """Render the price that bills a plan in a given month."""
    console.print(
        Panel(
            "\n".join(
                [
                    f"[bold]Plan:[/bold]    {plan_id}",
                    f"[bold]Pricing:[/bold] {pricing_type}",
                    f"[bold]Month:[/bold]   {month:%Y-%m}",
                    f"[bold]Price:[/bold]   [cyan]{price_id}[/cyan]",
                    f"[bold]Amount:[/bold]  {_format_amount(amount, currency)}",
                ]
            ),
            title="Resolved Price",
            border_style="blue",
        )
    )
