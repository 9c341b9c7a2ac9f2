"""
capguard CLI
Operator commands for caps, suspensions and one-off sweeps.
"""

import json
import sys
from typing import NoReturn, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from capguard.errors import CapGuardError
from capguard.main import CapGuard, get_app
from capguard.suspension import SuspensionType

console = Console()


def load_app() -> CapGuard:
    """Get the application with its tables in place."""
    app = get_app()
    app.db_manager.init_db()
    return app


def fail(message: str) -> NoReturn:
    console.print(f"❌ [red]{message}[/red]")
    sys.exit(1)


@click.group()
def cli():
    """capguard - per-project hard caps and suspensions."""


@cli.command()
@click.argument("project_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def status(project_id: str, as_json: bool):
    """Show a project's suspension status."""
    try:
        info = load_app().suspensions.get_status(project_id)
    except CapGuardError as e:
        fail(str(e))

    if as_json:
        click.echo(json.dumps(info, indent=2))
        return

    suspension = info["suspension"]
    if suspension is None:
        console.print(f"✅ [green]{project_id} is active[/green]")
        return

    reason = suspension["reason"]
    console.print(
        Panel(
            f"Cause: {suspension['cap_exceeded']}\n"
            f"Value: {reason.get('current_value')} (limit {reason.get('limit_exceeded')})\n"
            f"Type: {suspension['suspension_type']}\n"
            f"Since: {suspension['suspended_at']}\n"
            f"Notes: {suspension['notes'] or '-'}",
            title=f"⛔ {project_id} is suspended",
            border_style="red",
        )
    )


@cli.command()
@click.argument("project_id")
@click.option("--cap-type", "-c", required=True, help="Cap, metric or pattern that was violated")
@click.option("--current-value", type=float, required=True, help="Observed value")
@click.option("--limit", "limit_exceeded", type=float, required=True, help="Limit that was crossed")
@click.option("--details", default=None, help="Human-readable explanation")
@click.option("--notes", default=None, help="Operator notes")
@click.option("--actor", default="cli", help="Name recorded in the audit trail")
def suspend(
    project_id: str,
    cap_type: str,
    current_value: float,
    limit_exceeded: float,
    details: Optional[str],
    notes: Optional[str],
    actor: str,
):
    """Manually suspend a project."""
    app = load_app()
    reason = {
        "cap_type": cap_type,
        "current_value": current_value,
        "limit_exceeded": limit_exceeded,
        "details": details,
    }
    try:
        result = app.suspensions.suspend(
            project_id, reason, notes=notes, suspension_type=SuspensionType.MANUAL, actor=actor
        )
    except CapGuardError as e:
        fail(str(e))
    finally:
        app.side_effects.drain(timeout=30)

    if result.applied:
        console.print(f"⛔ [red]Suspended {project_id}[/red]")
    else:
        console.print(f"⚠️ [yellow]No change: {result.outcome.value}[/yellow]")


@cli.command()
@click.argument("project_id")
@click.option("--notes", default=None, help="Operator notes")
@click.option("--actor", default="cli", help="Name recorded in the audit trail")
def unsuspend(project_id: str, notes: Optional[str], actor: str):
    """Lift a project's suspension."""
    app = load_app()
    try:
        result = app.suspensions.unsuspend(project_id, notes=notes, actor=actor)
    except CapGuardError as e:
        fail(str(e))
    finally:
        app.side_effects.drain(timeout=30)

    if result.applied:
        console.print(f"✅ [green]Unsuspended {project_id}[/green]")
    else:
        console.print(f"⚠️ [yellow]No change: {result.outcome.value}[/yellow]")


@cli.group()
def caps():
    """Inspect and change hard caps."""


@caps.command("show")
@click.argument("project_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def caps_show(project_id: str, as_json: bool):
    """Show every cap for a project with current usage."""
    app = load_app()
    stats = app.quota_store.get_quota_stats(project_id)

    if as_json:
        click.echo(json.dumps(stats, indent=2))
        return

    table = Table(title=f"Hard caps for {project_id}")
    table.add_column("Cap", style="cyan")
    table.add_column("Limit", justify="right")
    table.add_column("Usage", justify="right")
    table.add_column("Source")

    for stat in stats:
        check = app.enforcement.can_perform_operation(project_id, stat["cap_type"])
        ratio = check.usage_ratio
        color = "red" if not check.allowed else "yellow" if ratio > 0.8 else "green"
        table.add_row(
            stat["cap_type"],
            f"{stat['cap_value']:,}",
            f"[{color}]{check.current_usage:,.0f}[/{color}]",
            "default" if stat["is_default"] else "custom",
        )

    console.print(table)


@caps.command("set")
@click.argument("project_id")
@click.argument("cap_type")
@click.argument("value", type=int)
def caps_set(project_id: str, cap_type: str, value: int):
    """Set one cap value."""
    try:
        load_app().quota_store.set(project_id, cap_type, value)
    except CapGuardError as e:
        fail(str(e))
    console.print(f"✅ [green]{cap_type} = {value:,} for {project_id}[/green]")


@caps.command("reset")
@click.argument("project_id")
def caps_reset(project_id: str):
    """Restore the platform defaults for a project."""
    load_app().quota_store.reset(project_id)
    console.print(f"✅ [green]Caps reset to defaults for {project_id}[/green]")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def sweep(as_json: bool):
    """Run one suspension sweep now."""
    app = load_app()
    result = app.sweep.run_suspension_check()
    app.side_effects.drain(timeout=60)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        console.print(
            f"Checked {result.projects_checked} project(s) in {result.duration_ms}ms: "
            f"{result.suspensions_made} suspended, {result.projects_skipped} skipped, "
            f"{result.project_errors} error(s)"
        )
        for suspended in result.suspended_projects:
            console.print(f"  ⛔ {suspended['project_id']} ({suspended['cap_exceeded']})")

    if not result.success:
        fail(f"Sweep failed: {result.error}")


@cli.command()
@click.option("--hours", default=24, help="Look-back period for recent transitions")
def summary(hours: int):
    """Summarize current suspensions."""
    data = load_app().suspensions.get_summary(hours=hours)

    table = Table(title="Suspensions")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Active", str(data["active_suspensions"]))
    for stype, count in data["by_type"].items():
        table.add_row(f"  {stype}", str(count))
    for cause, count in data["by_cause"].items():
        table.add_row(f"  cause: {cause}", str(count))
    table.add_row(f"Suspended (last {hours}h)", str(data["suspended_in_period"]))
    table.add_row(f"Unsuspended (last {hours}h)", str(data["unsuspended_in_period"]))

    console.print(table)


if __name__ == "__main__":
    cli()
