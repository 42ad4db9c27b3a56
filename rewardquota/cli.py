"""Main CLI entry point."""

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from db.connection import get_session, init_database
from rewardquota.services.errors import QuotaError
from rewardquota.services.quota_engine import QuotaEngine
from rewardquota.services.quota_query import QuotaQueryService
from rewardquota.services.scope import scope_from_ids

app = typer.Typer(
    name="rewardquota",
    help="Reward Quota Engine CLI",
    add_completion=False,
)

console = Console()


def _fmt(value: object) -> str:
    return "-" if value is None else str(value)


@app.command()
def init_db():
    """Create any missing tables."""
    with console.status("Initializing database..."):
        created = init_database()
    if created:
        console.print(f"[green]Created tables: {', '.join(created)}[/green]")
    else:
        console.print("[green]Database already initialized[/green]")


@app.command()
def snapshot():
    """Show the quota state of every rule."""
    with get_session() as session:
        entries = QuotaQueryService(session).get_snapshot()

    table = Table(title="Quota Snapshot")
    table.add_column("Owner", style="cyan")
    table.add_column("Scope")
    table.add_column("Payment Method")
    table.add_column("%", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Used", justify="right")
    table.add_column("Adjust", justify="right")
    table.add_column("Remaining", justify="right", style="green")
    table.add_column("Next Refresh")

    for e in entries:
        table.add_row(
            e.owner_name,
            e.scope.kind.value,
            _fmt(e.scope.payment_method_id),
            str(e.percentage),
            _fmt(e.quota_limit),
            str(e.used_quota),
            str(e.manual_adjustment),
            _fmt(e.remaining_quota),
            _fmt(e.refresh_label),
        )

    console.print(table)
    if not entries:
        console.print("[yellow]No reward rules configured[/yellow]")


@app.command()
def refresh():
    """Roll over every tracking whose refresh point has passed."""
    with get_session() as session:
        refreshed = QuotaQueryService(session).refresh_due()
    console.print(f"[green]Refreshed {refreshed} tracking(s)[/green]")


@app.command()
def adjust(
    rule_id: str = typer.Option(..., "--rule", "-r", help="Reward rule id"),
    value: Optional[str] = typer.Option(None, "--value", help="Absolute adjustment; omit to clear"),
    scheme_id: Optional[str] = typer.Option(None, "--scheme", "-s", help="Scheme id"),
    payment_method_id: Optional[str] = typer.Option(
        None, "--payment-method", "-p", help="Payment method id"
    ),
):
    """Set the manual adjustment of one quota tracking."""
    try:
        with get_session() as session:
            scope = scope_from_ids(scheme_id, payment_method_id)
            tracking = QuotaEngine(session).set_manual_adjustment(scope, rule_id, value)
            remaining = tracking.remaining_quota
            adjustment = tracking.manual_adjustment
    except QuotaError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print(
        f"[green]Adjustment set to {adjustment}; remaining quota {_fmt(remaining)}[/green]"
    )


if __name__ == "__main__":
    app()
