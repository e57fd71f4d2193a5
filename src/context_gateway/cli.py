"""Operator CLI for the context gateway using Typer + Rich."""

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import GatewayConfig
from .storage import RollbackManager, RollbackStatus

console = Console()
app = typer.Typer(
    name="context-gateway",
    help="Context gateway: rollback inspection and configuration",
    rich_markup_mode="rich",
    add_completion=False,
)
rollback_app = typer.Typer(help="Inspect and act on holistic update rollback records")
config_app = typer.Typer(help="Show gateway configuration")
app.add_typer(rollback_app, name="rollback")
app.add_typer(config_app, name="config")

STATUS_STYLES = {
    RollbackStatus.PENDING: "yellow",
    RollbackStatus.COMPLETED: "green",
    RollbackStatus.ROLLED_BACK: "blue",
    RollbackStatus.FAILED: "red",
}

ConfigOption = typer.Option(None, "--config", "-c", help="Path to config.json")


def _load(config_path: Path | None) -> tuple[GatewayConfig, RollbackManager]:
    config = GatewayConfig(config_path)
    manager = RollbackManager(config.rollback_dir, cleanup_config=config.rollback_cleanup_config())
    return config, manager


@rollback_app.command("list")
def list_rollbacks(
    status: RollbackStatus | None = typer.Option(None, "--status", "-s", help="Only show records in this state"),
    config_path: Path | None = ConfigOption,
):
    """List rollback records, oldest first."""
    _, manager = _load(config_path)
    states = asyncio.run(manager.list_rollback_states(status))

    if not states:
        console.print("[dim]No rollback records[/dim]")
        return

    table = Table(title="Rollback Records")
    table.add_column("Update ID", style="cyan")
    table.add_column("Status")
    table.add_column("Created", style="blue")
    table.add_column("Domains")

    for state in states:
        style = STATUS_STYLES.get(state.status, "white")
        table.add_row(
            state.update_id,
            f"[{style}]{state.status.value}[/{style}]",
            state.timestamp.isoformat(timespec="seconds"),
            ", ".join(state.affected_domains) or "-",
        )
    console.print(table)


@rollback_app.command("show")
def show_rollback(
    update_id: str = typer.Argument(..., help="Holistic update ID"),
    config_path: Path | None = ConfigOption,
):
    """Show one rollback record and its snapshot summary."""
    _, manager = _load(config_path)
    state = asyncio.run(manager.load_rollback_state(update_id))
    if state is None:
        console.print(f"❌ [red]No rollback record for {update_id}[/red]")
        raise typer.Exit(1)

    data = asyncio.run(manager.load_rollback_data(update_id))

    lines = [
        f"[bold]Status:[/bold] {state.status.value}",
        f"[bold]Created:[/bold] {state.timestamp.isoformat()}",
        f"[bold]Domains:[/bold] {', '.join(state.affected_domains) or '-'}",
    ]
    if state.failure_reason:
        lines.append(f"[bold red]Failure:[/bold red] {state.failure_reason}")
    if data is not None:
        for snapshot in data.snapshots:
            lines.append(f"  • {Path(snapshot.domain_path).parent.name}: {len(snapshot.files)} files")
    else:
        lines.append("[yellow]Snapshot file missing[/yellow]")

    console.print(Panel.fit("\n".join(lines), title=update_id))


@rollback_app.command("execute")
def execute_rollback(
    update_id: str = typer.Argument(..., help="Holistic update ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    config_path: Path | None = ConfigOption,
):
    """Restore the snapshot taken before an update."""
    _, manager = _load(config_path)

    if not asyncio.run(manager.validate_rollback_data(update_id)):
        console.print(f"❌ [red]Rollback data for {update_id} is missing or invalid[/red]")
        raise typer.Exit(1)

    if not yes and not typer.confirm(f"Restore context files for {update_id}?"):
        raise typer.Exit(0)

    if asyncio.run(manager.execute_holistic_rollback(update_id)):
        console.print(f"✅ [green]Rollback {update_id} executed[/green]")
    else:
        console.print(f"❌ [red]Rollback {update_id} failed, record marked failed[/red]")
        raise typer.Exit(1)


@rollback_app.command("validate")
def validate_rollback(
    update_id: str = typer.Argument(..., help="Holistic update ID"),
    config_path: Path | None = ConfigOption,
):
    """Check that a snapshot exists and records absolute paths only."""
    _, manager = _load(config_path)
    if asyncio.run(manager.validate_rollback_data(update_id)):
        console.print(f"✅ [green]{update_id} is valid[/green]")
    else:
        console.print(f"❌ [red]{update_id} is missing or invalid[/red]")
        raise typer.Exit(1)


@rollback_app.command("cleanup")
def cleanup_rollbacks(
    trigger: str = typer.Option("manual-cleanup", "--trigger", help="Cleanup trigger name"),
    older_than: float | None = typer.Option(None, "--older-than", help="Remove finished records older than N hours"),
    config_path: Path | None = ConfigOption,
):
    """Remove finished rollback records. Pending and failed records are kept."""
    _, manager = _load(config_path)

    if older_than is not None:
        result = asyncio.run(manager.cleanup_by_age(older_than, trigger=trigger))
    else:
        result = asyncio.run(manager.trigger_cleanup(trigger))

    console.print(f"🧹 Removed [bold]{result.removed_count}[/bold] records ({result.execution_time:.2f}s)")
    for error in result.errors:
        console.print(f"   [red]{error}[/red]")
    if result.errors:
        raise typer.Exit(1)


@rollback_app.command("stats")
def rollback_stats(config_path: Path | None = ConfigOption):
    """Show rollback record counts by status and age."""
    _, manager = _load(config_path)
    stats = asyncio.run(manager.get_cleanup_statistics())

    table = Table(title="Rollback Statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Total records", str(stats.total_records))
    table.add_row("Pending", str(stats.total_pending_rollbacks))
    for status, count in sorted(stats.by_status.items()):
        table.add_row(f"Status: {status}", str(count))
    table.add_row("< 1 hour", str(stats.rollbacks_by_age.less_than_1_hour))
    table.add_row("< 24 hours", str(stats.rollbacks_by_age.less_than_24_hours))
    table.add_row("> 24 hours", str(stats.rollbacks_by_age.more_than_24_hours))
    table.add_row("Oldest (hours)", f"{stats.oldest_rollback_age:.1f}")
    table.add_row("Max age (hours)", str(stats.cleanup_config.max_age_hours))

    console.print(table)


@config_app.command("show")
def show_config(config_path: Path | None = ConfigOption):
    """Print the effective configuration."""
    config = GatewayConfig(config_path)
    console.print(Panel.fit(json.dumps(config.config, indent=2), title=str(config.config_path)))


def main():
    app()


if __name__ == "__main__":
    main()
