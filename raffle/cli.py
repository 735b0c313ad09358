"""Operator CLI: schema init, armory, draws and one-shot job runs."""

from functools import lru_cache
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from raffle.services.container import RaffleContainer, build_container
from raffle.services.errors import CapacityExhaustedError, ConfigurationError, RaffleError

app = typer.Typer(
    name="raffle",
    help="Raffle strategy engine CLI",
    add_completion=False,
)

console = Console()


@lru_cache
def _container() -> RaffleContainer:
    return build_container()


def _ensure_armed(container: RaffleContainer, strategy_id: int) -> None:
    # the in-process cache starts empty in every CLI run
    if not container.dispatch.is_armed(strategy_id) and not container.armory.armory(strategy_id):
        console.print(f"[red]Strategy {strategy_id} has no drawable awards[/red]")
        raise typer.Exit(code=1)


@app.command()
def init_db(
    force: bool = typer.Option(False, "--force", "-f", help="Drop and recreate tables"),
):
    """Initialize the database schema on the main database and every partition."""
    from db.connection import drop_database, init_database

    with console.status("Initializing database..."):
        if force:
            drop_database()
            console.print("[yellow]Dropped existing tables[/yellow]")
        init_database()

    console.print("[green]Database initialized successfully[/green]")


@app.command()
def armory(
    strategy_id: Optional[int] = typer.Argument(None, help="Strategy to arm; omit with --all"),
    all_strategies: bool = typer.Option(False, "--all", "-a", help="Arm every strategy"),
):
    """Build lookup tables, seed stock counters and warm strategy config."""
    container: RaffleContainer = _container()
    if all_strategies:
        outcome: dict[int, bool] = container.armory.armory_all()
    elif strategy_id is not None:
        try:
            outcome = {strategy_id: container.armory.armory(strategy_id)}
        except ConfigurationError as exc:
            console.print(f"[red]Configuration error:[/red] {exc}")
            raise typer.Exit(code=1)
    else:
        raise typer.BadParameter("Pass a strategy id or --all")

    table = Table(title="Armory Results")
    table.add_column("Strategy", style="cyan")
    table.add_column("Armed", style="green")
    for sid, armed in outcome.items():
        table.add_row(str(sid), "yes" if armed else "[red]no[/red]")
    console.print(table)


@app.command()
def draw(
    user_id: str = typer.Option(..., "--user", "-u", help="User id"),
    strategy_id: int = typer.Option(..., "--strategy", "-s", help="Strategy id"),
    times: int = typer.Option(1, "--times", "-n", min=1, help="Number of draws"),
    order_id: Optional[str] = typer.Option(None, "--order-id", help="Idempotency key (single draw only)"),
):
    """Draw for a user and show the awards."""
    container: RaffleContainer = _container()
    _ensure_armed(container, strategy_id)

    table = Table(title=f"Draws for {user_id} in strategy {strategy_id}")
    table.add_column("#", style="dim")
    table.add_column("Award", style="cyan")
    table.add_column("Title", style="green")
    table.add_column("Rule Value")
    table.add_column("Order")

    for i in range(times):
        try:
            result = container.raffle.draw(user_id, strategy_id, order_id if times == 1 else None)
        except CapacityExhaustedError as exc:
            console.print(f"[yellow]{exc}[/yellow]")
            break
        except RaffleError as exc:
            console.print(f"[red]Draw failed:[/red] {exc}")
            raise typer.Exit(code=1)
        table.add_row(
            str(i + 1),
            str(result["award_id"]),
            result["award_title"],
            result["award_rule_value"] or "",
            result["order_id"] + (" (dup)" if result["duplicate"] else ""),
        )

    console.print(table)


@app.command()
def awards(
    strategy_id: int = typer.Option(..., "--strategy", "-s", help="Strategy id"),
    user_id: str = typer.Option(..., "--user", "-u", help="User id"),
):
    """List awards with their unlock state for a user."""
    container: RaffleContainer = _container()
    table = Table(title=f"Awards of strategy {strategy_id}")
    table.add_column("Award", style="cyan")
    table.add_column("Title", style="green")
    table.add_column("Unlock At")
    table.add_column("Unlocked")

    for item in container.raffle.query_award_list(strategy_id, user_id):
        threshold = item["unlock_threshold"]
        table.add_row(
            str(item["award_id"]),
            item["award_title"],
            str(threshold) if threshold is not None else "-",
            "yes" if item["unlocked"] else f"no ({item['remaining_draws_to_unlock']} left)",
        )
    console.print(table)


@app.command()
def weights(
    strategy_id: int = typer.Option(..., "--strategy", "-s", help="Strategy id"),
    user_id: str = typer.Option(..., "--user", "-u", help="User id"),
):
    """Show weight tiers and which ones a user has reached."""
    container: RaffleContainer = _container()
    tiers = container.raffle.query_rule_weight(strategy_id, user_id)
    if not tiers:
        console.print(f"[yellow]Strategy {strategy_id} has no weight tiers[/yellow]")
        return

    table = Table(title=f"Weight tiers of strategy {strategy_id}")
    table.add_column("Threshold", style="cyan")
    table.add_column("Awards")
    table.add_column("Reached", style="green")
    for tier in tiers:
        table.add_row(
            str(tier["threshold"]),
            ", ".join(a["award_title"] or str(a["award_id"]) for a in tier["awards"]),
            "yes" if tier["reached"] else "no",
        )
    console.print(table)


@app.command()
def sync_stock():
    """Run one reconciliation cycle of cache stock into the database."""
    result = _container().stock_sync.run_once()

    table = Table(title="Stock Sync Results")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Events Drained", str(result.events_drained))
    table.add_row("Keys Written", str(result.keys_written))
    table.add_row("Keys Skipped", str(result.keys_skipped))
    table.add_row("Units Subtracted", str(result.units_subtracted))
    table.add_row("Errors", str(len(result.errors)))
    console.print(table)


@app.command()
def compensate(
    show_pending: bool = typer.Option(False, "--show-pending", help="Only list pending tasks"),
):
    """Republish undelivered outbox tasks across all partitions."""
    container: RaffleContainer = _container()
    if show_pending:
        table = Table(title="Pending Outbox Tasks")
        table.add_column("Partition", style="dim")
        table.add_column("User", style="cyan")
        table.add_column("Message")
        table.add_column("State")
        table.add_column("Updated")
        for task in container.compensator.query_pending_tasks():
            table.add_row(
                str(task["partition"]),
                task["user_id"],
                task["message_id"],
                task["state"],
                task["updated_at"],
            )
        console.print(table)
        return

    result = container.compensator.run_once()
    console.print(
        f"Scanned {result.tasks_scanned} task(s) in {result.partitions_scanned} partition(s): "
        f"[green]{result.tasks_completed} completed[/green], [red]{result.tasks_failed} failed[/red]"
    )


if __name__ == "__main__":
    app()
