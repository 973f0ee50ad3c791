"""CLI entry points for Cortex.

Commands:
    cortex run              — Run the engine with its sweep loop until interrupted
    cortex sweep            — Resume due runs and fire schedule ticks once
    cortex units ...        — List, add, pause, resume, disable, or remove units
    cortex runs ...         — List runs, show a run's steps, rerun a run
    cortex events ingest    — Ingest an event from a JSON file
    cortex config ...       — Show, initialize or edit the config file
"""

from __future__ import annotations

import asyncio
import json
import uuid
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cortex.automations.models import Event, Unit
from cortex.config import ConfigManager, CortexConfig
from cortex.errors import CortexError
from cortex.logging import setup_logging
from cortex.runtime import CortexRuntime
from cortex.storage.rules import RuleStore

console = Console()
app = typer.Typer(
    name="cortex",
    help="Event-driven automation engine.",
    no_args_is_help=True,
)
units_app = typer.Typer(help="Manage automation units.", no_args_is_help=True)
app.add_typer(units_app, name="units")

runs_app = typer.Typer(help="Inspect and rerun runs.", no_args_is_help=True)
app.add_typer(runs_app, name="runs")

events_app = typer.Typer(help="Ingest events.", no_args_is_help=True)
app.add_typer(events_app, name="events")

config_app = typer.Typer(help="Show or edit configuration.", no_args_is_help=True)
app.add_typer(config_app, name="config")

_STATUS_STYLES = {
    "active": "green",
    "paused": "yellow",
    "disabled": "dim",
    "pending": "cyan",
    "in_progress": "blue",
    "success": "green",
    "failed": "red",
    "running": "blue",
    "waiting": "yellow",
}


def _load_config() -> CortexConfig:
    return ConfigManager().load()


def _open_rules(config: CortexConfig) -> RuleStore:
    db_path = config.get_sqlite_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return RuleStore(db_path)


def _styled(status: str | None) -> str:
    if not status:
        return "[dim]-[/dim]"
    style = _STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _fmt_time(value: Any) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _read_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        console.print(f"[red]Cannot read {path}: {exc}[/red]")
        raise typer.Exit(1) from exc
    if not isinstance(data, dict):
        console.print(f"[red]{path} must contain a JSON object[/red]")
        raise typer.Exit(1)
    return data


# ------------------------------------------------------------------
# cortex run / sweep
# ------------------------------------------------------------------


@app.command()
def run(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Run the engine with its sweep loop until interrupted."""
    config = _load_config()
    setup_logging(
        log_file=config.get_log_path(),
        level="DEBUG" if verbose else config.cortex.log_level,
        console_level="DEBUG" if verbose else "INFO",
        fmt=config.cortex.log_format,
    )

    async def _serve() -> None:
        runtime = CortexRuntime(config)
        await runtime.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await runtime.stop()

    console.print("[bold cyan]Cortex running.[/bold cyan] Press Ctrl+C to stop.")
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")


@app.command()
def sweep() -> None:
    """Resume due paused runs and fire this minute's schedule ticks once."""
    config = _load_config()

    async def _sweep() -> dict[str, int]:
        runtime = CortexRuntime(config)
        await runtime.start(run_sweep=False)
        try:
            return await runtime.sweep()
        finally:
            await runtime.stop()

    counts = asyncio.run(_sweep())
    console.print(
        f"Resumed [cyan]{counts['resumed']}[/cyan] run(s), "
        f"started [cyan]{counts['scheduled']}[/cyan] scheduled run(s)."
    )


# ------------------------------------------------------------------
# cortex units
# ------------------------------------------------------------------


@units_app.command("list")
def units_list(
    owner: str | None = typer.Option(None, "--owner", help="Only units of this owner"),
    status: str | None = typer.Option(None, "--status", help="Only units in this status"),
) -> None:
    """List automation units."""
    rules = _open_rules(_load_config())
    try:
        units = rules.list_units(owner_id=owner, status=status)
    finally:
        rules.close()

    table = Table(title="Automation Units", border_style="cyan")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Owner")
    table.add_column("Trigger")
    table.add_column("Status")
    table.add_column("Runs", justify="right")
    table.add_column("Last Run", style="dim")

    for unit in units:
        table.add_row(
            unit.id,
            unit.name,
            unit.owner_id,
            unit.trigger.type,
            _styled(unit.status),
            str(unit.run_count),
            f"{_fmt_time(unit.last_run_at)} {unit.last_run_status or ''}".strip(),
        )

    console.print()
    console.print(table)
    if not units:
        console.print("[dim]No automation units configured.[/dim]")
    console.print()


@units_app.command("add")
def units_add(
    path: Path = typer.Argument(..., help="JSON file with the compiled unit"),
    owner: str | None = typer.Option(None, "--owner", help="Override the unit owner"),
) -> None:
    """Add (or replace) a unit from a JSON definition."""
    data = _read_json(path)
    if owner:
        data["owner_id"] = owner
    try:
        unit = Unit.from_dict(data)
    except CortexError as exc:
        console.print(f"[red]Invalid unit: {exc.message}[/red]")
        raise typer.Exit(1) from exc

    rules = _open_rules(_load_config())
    try:
        rules.add_unit(unit)
    finally:
        rules.close()
    console.print(f"[green]Unit saved:[/green] {unit.name} ({unit.id})")


def _set_status(unit_id: str, status: str) -> None:
    rules = _open_rules(_load_config())
    try:
        found = rules.set_unit_status(unit_id, status)
    finally:
        rules.close()
    if not found:
        console.print(f"[red]Unit not found: {unit_id}[/red]")
        raise typer.Exit(1)
    console.print(f"Unit {unit_id} is now {_styled(status)}.")


@units_app.command("pause")
def units_pause(unit_id: str = typer.Argument(..., help="Unit ID")) -> None:
    """Pause a unit; it stops matching new events."""
    _set_status(unit_id, "paused")


@units_app.command("resume")
def units_resume(unit_id: str = typer.Argument(..., help="Unit ID")) -> None:
    """Reactivate a paused or disabled unit."""
    _set_status(unit_id, "active")


@units_app.command("disable")
def units_disable(unit_id: str = typer.Argument(..., help="Unit ID")) -> None:
    """Disable a unit."""
    _set_status(unit_id, "disabled")


@units_app.command("remove")
def units_remove(unit_id: str = typer.Argument(..., help="Unit ID")) -> None:
    """Delete a unit. Its run history is kept."""
    rules = _open_rules(_load_config())
    try:
        removed = rules.remove_unit(unit_id)
    finally:
        rules.close()
    if not removed:
        console.print(f"[red]Unit not found: {unit_id}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Unit removed:[/green] {unit_id}")


# ------------------------------------------------------------------
# cortex runs
# ------------------------------------------------------------------


@runs_app.command("list")
def runs_list(
    unit: str | None = typer.Option(None, "--unit", help="Only runs of this unit"),
    status: str | None = typer.Option(None, "--status", help="Only runs in this status"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum runs to show"),
) -> None:
    """List recent runs, newest first."""
    rules = _open_rules(_load_config())
    try:
        runs = rules.list_runs(unit_id=unit, status=status, limit=limit)
    finally:
        rules.close()

    table = Table(title="Runs", border_style="cyan")
    table.add_column("ID", style="dim")
    table.add_column("Unit")
    table.add_column("Event", style="dim")
    table.add_column("Status")
    table.add_column("Step", justify="right")
    table.add_column("Started", style="dim")
    table.add_column("Error", style="red")

    for r in runs:
        table.add_row(
            r.id,
            r.unit_id,
            r.event_id,
            _styled(r.status),
            str(r.current_step),
            _fmt_time(r.started_at),
            escape(r.error or ""),
        )

    console.print()
    console.print(table)
    if not runs:
        console.print("[dim]No runs recorded.[/dim]")
    console.print()


@runs_app.command("show")
def runs_show(run_id: str = typer.Argument(..., help="Run ID")) -> None:
    """Show a run and its step trail."""
    rules = _open_rules(_load_config())
    try:
        found = rules.get_run(run_id)
        steps = rules.list_steps(run_id) if found else []
    finally:
        rules.close()
    if found is None:
        console.print(f"[red]Run not found: {run_id}[/red]")
        raise typer.Exit(1)

    console.print(f"\n[bold]Run {found.id}[/bold]  {_styled(found.status)}")
    console.print(f"  Unit:    {found.unit_id}")
    console.print(f"  Event:   {found.event_id}")
    console.print(f"  Started: {_fmt_time(found.started_at)}")
    if found.resume_at:
        console.print(f"  Resumes: {_fmt_time(found.resume_at)}")
    if found.completed_at:
        console.print(f"  Done:    {_fmt_time(found.completed_at)}")
    if found.error:
        console.print(f"  Error:   [red]{found.error}[/red]")

    table = Table(title="Steps", border_style="cyan")
    table.add_column("#", justify="right")
    table.add_column("Action")
    table.add_column("Status")
    table.add_column("Result / Error")
    for step in steps:
        detail = step.error or json.dumps(step.result, default=str)
        table.add_row(
            str(step.step_index), step.action_type, _styled(step.status), escape(detail[:80])
        )
    console.print()
    console.print(table)
    console.print()


@runs_app.command("rerun")
def runs_rerun(run_id: str = typer.Argument(..., help="Run ID")) -> None:
    """Execute a run's unit again on the event it originally saw."""
    config = _load_config()

    async def _rerun() -> Any:
        runtime = CortexRuntime(config)
        await runtime.start(run_sweep=False)
        try:
            return await runtime.rerun(run_id)
        finally:
            await runtime.stop()

    try:
        new_run = asyncio.run(_rerun())
    except CortexError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(1) from exc
    console.print(f"Rerun {new_run.id}: {_styled(new_run.status)}")


# ------------------------------------------------------------------
# cortex events ingest
# ------------------------------------------------------------------


@events_app.command("ingest")
def events_ingest(
    path: Path = typer.Argument(..., help="JSON file with the event"),
) -> None:
    """Ingest one event: dedup, match, and execute the resulting runs."""
    data = _read_json(path)
    data.setdefault("id", str(uuid.uuid4()))
    try:
        event = Event.from_dict(data)
    except KeyError as exc:
        console.print(f"[red]Event is missing field {exc}[/red]")
        raise typer.Exit(1) from exc

    config = _load_config()

    async def _ingest() -> Any:
        runtime = CortexRuntime(config)
        await runtime.start(run_sweep=False)
        try:
            return await runtime.process_event(event)
        finally:
            await runtime.stop()

    try:
        runs = asyncio.run(_ingest())
    except CortexError as exc:
        console.print(f"[red]Event dropped: {exc.message}[/red]")
        raise typer.Exit(1) from exc

    if not runs:
        console.print("[dim]No units matched (or duplicate event).[/dim]")
        return
    for r in runs:
        console.print(f"Run {r.id} for unit {r.unit_id}: {_styled(r.status)}")


# ------------------------------------------------------------------
# cortex config
# ------------------------------------------------------------------


@config_app.command("show")
def config_show() -> None:
    """Print the effective configuration."""
    config = _load_config()
    for section, values in config.model_dump().items():
        console.print(f"[bold cyan]{escape(f'[{section}]')}[/bold cyan]")
        for key, value in values.items():
            if key == "webhook_url" and value:
                value = value[:12] + "****"
            console.print(f"  {key} = {value!r}")


@config_app.command("path")
def config_path() -> None:
    """Print the config file path."""
    manager = ConfigManager()
    suffix = "" if manager.exists() else " [dim](not created)[/dim]"
    console.print(f"{manager.get_config_path()}{suffix}")


@config_app.command("init")
def config_init(
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config file"),
) -> None:
    """Write a config file with every default value."""
    manager = ConfigManager()
    if not manager.init(force=force):
        console.print(
            f"[yellow]Config already exists at {manager.get_config_path()}[/yellow] "
            "(use --force to overwrite)"
        )
        raise typer.Exit(1)
    console.print(f"Config written to {manager.get_config_path()}")


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Dotted key, e.g. store.kv_backend"),
    value: str = typer.Argument(..., help="New value"),
) -> None:
    """Set one config value in the config file."""
    manager = ConfigManager()
    try:
        manager.set_value(key, value)
    except CortexError as exc:
        console.print(f"[red]{escape(exc.message)}[/red]")
        raise typer.Exit(1) from exc
    except ValidationError as exc:
        console.print(f"[red]Invalid config: {escape(str(exc))}[/red]")
        raise typer.Exit(1) from exc
    console.print(f"{key} updated in {manager.get_config_path()}")
