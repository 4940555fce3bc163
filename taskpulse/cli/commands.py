"""taskpulse CLI — Typer-based command-line interface."""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from taskpulse import __version__

app = typer.Typer(
    name="taskpulse",
    help="taskpulse - recurring agent task scheduler",
    no_args_is_help=True,
)

console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"taskpulse v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=_version_callback, is_eager=True
    ),
) -> None:
    """taskpulse - recurring agent task scheduler."""


def _load(db: str | None = None):
    """Load config (with optional --db override) and open the store."""
    from taskpulse.core.config.loader import load_config
    from taskpulse.storage.store import ScheduleStore

    config = load_config(overrides={"database": {"path": db}} if db else None)
    return config, ScheduleStore(config.database.path)


def _controller(config, store):
    """Controller for one-off edits. No cycles run in this process."""
    from taskpulse.core.schedule.controller import ScheduleController
    from taskpulse.core.schedule.engine import ScheduleEngine

    engine = ScheduleEngine(store, invoker=None, config=config)
    return ScheduleController(store, engine)


def _fmt_interval(ms: int) -> str:
    seconds = ms // 1000
    for unit, size in (("d", 86_400), ("h", 3_600), ("m", 60)):
        if seconds >= size and seconds % size == 0:
            return f"{seconds // size}{unit}"
    return f"{ms}ms"


# ════════════════════════════════════════════════════════════
# run — start the scheduler
# ════════════════════════════════════════════════════════════


@app.command()
def run(
    invoker: str | None = typer.Option(
        None, "--invoker", "-i", help="Agent invoker import path (module:attr)"
    ),
    db: str | None = typer.Option(None, "--db", help="Database path"),
) -> None:
    """Run the scheduler until interrupted."""
    from taskpulse.agent.invoker import load_invoker
    from taskpulse.core.schedule.engine import ScheduleEngine

    config, store = _load(db)
    path = invoker or config.agent.invoker
    if not path:
        console.print("[red]No agent invoker configured[/red] (use --invoker or agent.invoker)")
        raise typer.Exit(code=1)
    if not config.scheduler.enabled:
        console.print("[yellow]Scheduler disabled in config (scheduler.enabled=false)[/yellow]")
        raise typer.Exit(code=0)

    engine = ScheduleEngine(store, load_invoker(path), config=config)

    def _announce(event) -> None:
        console.print(
            f"[red]Schedule disabled:[/red] {event.session_id} "
            f"after {event.error_count} failures ({event.last_error or 'no detail'})"
        )

    engine.subscribe(_announce)

    async def _serve() -> None:
        armed = await engine.start()
        console.print(f"[green]taskpulse running[/green] with {armed} schedules (Ctrl+C to stop)")
        try:
            await asyncio.Event().wait()
        finally:
            await engine.shutdown(wait=config.scheduler.shutdown_wait)

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        console.print("\nStopped.")


# ════════════════════════════════════════════════════════════
# status — config + DB info
# ════════════════════════════════════════════════════════════


@app.command()
def status(db: str | None = typer.Option(None, "--db", help="Database path")) -> None:
    """Show configuration and database status."""
    config, store = _load(db)
    schedules = store.list_schedules()
    enabled = sum(1 for c in schedules.values() if c.enabled)

    table = Table(title="taskpulse status")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("DB Path", config.database.path)
    table.add_row("Invoker", config.agent.invoker or "-")
    table.add_row("Cycle timeout", f"{config.scheduler.cycle_timeout_s}s")
    table.add_row("Schedules", str(len(schedules)))
    table.add_row("Enabled", str(enabled))
    table.add_row("Undelivered events", str(len(store.get_undelivered_events())))

    console.print(table)


# ════════════════════════════════════════════════════════════
# schedule — schedule management (sub-command group)
# ════════════════════════════════════════════════════════════

schedule_app = typer.Typer(
    help="Manage schedules (a running scheduler applies edits at the next fire, new schedules on restart)"
)
app.add_typer(schedule_app, name="schedule")


@schedule_app.command("list")
def schedule_list(db: str | None = typer.Option(None, "--db", help="Database path")) -> None:
    """List all schedules."""
    _, store = _load(db)
    schedules = store.list_schedules()

    if not schedules:
        console.print("[dim]No schedules found.[/dim]")
        return

    table = Table(title="Schedules")
    table.add_column("Session", style="cyan")
    table.add_column("Every", style="yellow")
    table.add_column("Policy", style="blue")
    table.add_column("Errors", style="red")
    table.add_column("Enabled", style="green")
    table.add_column("Last run", style="dim")
    table.add_column("Prompt", style="white")

    for session_id, cfg in schedules.items():
        table.add_row(
            session_id,
            _fmt_interval(cfg.interval_ms),
            cfg.permission_policy.value,
            f"{cfg.error_count}/{cfg.max_errors}",
            str(cfg.enabled),
            cfg.last_executed_at.isoformat(timespec="seconds") if cfg.last_executed_at else "-",
            cfg.prompt if len(cfg.prompt) <= 40 else cfg.prompt[:37] + "...",
        )

    console.print(table)


@schedule_app.command("show")
def schedule_show(
    session_id: str = typer.Argument(help="Session ID"),
    db: str | None = typer.Option(None, "--db", help="Database path"),
) -> None:
    """Show one schedule as JSON."""
    _, store = _load(db)
    cfg = store.get(session_id)
    if cfg is None:
        console.print(f"[red]Schedule not found:[/red] {session_id}")
        raise typer.Exit(code=1)
    console.print_json(cfg.model_dump_json())


@schedule_app.command("set")
def schedule_set(
    session_id: str = typer.Argument(help="Session ID"),
    prompt: str = typer.Option(..., "--prompt", "-p", help="Prompt sent every cycle"),
    interval_ms: int | None = typer.Option(None, "--interval-ms", help="Interval in milliseconds"),
    policy: str | None = typer.Option(
        None, "--policy", help="deny-all | allow-safe | allow-all"
    ),
    max_errors: int | None = typer.Option(None, "--max-errors", help="Failures before auto-disable"),
    disabled: bool = typer.Option(False, "--disabled", help="Save without enabling"),
    db: str | None = typer.Option(None, "--db", help="Database path"),
) -> None:
    """Create or update a schedule."""
    from taskpulse.core.schedule.types import ValidationError

    config, store = _load(db)
    defaults = config.scheduler
    data = {
        "enabled": not disabled,
        "prompt": prompt,
        "interval_ms": interval_ms if interval_ms is not None else defaults.default_interval_ms,
        "permission_policy": policy or defaults.default_policy,
        "max_errors": max_errors if max_errors is not None else defaults.default_max_errors,
    }
    try:
        saved = asyncio.run(_controller(config, store).set_schedule(session_id, data))
    except ValidationError as e:
        console.print(f"[red]Invalid schedule:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(
        f"[green]Saved schedule:[/green] {session_id} every {_fmt_interval(saved.interval_ms)} "
        f"({saved.permission_policy.value}, enabled={saved.enabled})"
    )


@schedule_app.command("remove")
def schedule_remove(
    session_id: str = typer.Argument(help="Session ID"),
    db: str | None = typer.Option(None, "--db", help="Database path"),
) -> None:
    """Remove a schedule."""
    config, store = _load(db)
    if asyncio.run(_controller(config, store).remove_schedule(session_id)):
        console.print(f"[green]Removed schedule:[/green] {session_id}")
    else:
        console.print(f"[red]Schedule not found:[/red] {session_id}")


@schedule_app.command("pause")
def schedule_pause(
    session_id: str = typer.Argument(help="Session ID"),
    db: str | None = typer.Option(None, "--db", help="Database path"),
) -> None:
    """Disable a schedule, keeping its error count."""
    config, store = _load(db)
    try:
        asyncio.run(_controller(config, store).pause(session_id))
    except KeyError:
        console.print(f"[red]Schedule not found:[/red] {session_id}")
        raise typer.Exit(code=1)
    console.print(f"[green]Paused:[/green] {session_id}")


@schedule_app.command("resume")
def schedule_resume(
    session_id: str = typer.Argument(help="Session ID"),
    reset_errors: bool = typer.Option(False, "--reset-errors", help="Also reset the error count"),
    db: str | None = typer.Option(None, "--db", help="Database path"),
) -> None:
    """Re-enable a schedule."""
    config, store = _load(db)
    try:
        cfg = asyncio.run(_controller(config, store).resume(session_id, reset_errors=reset_errors))
    except KeyError:
        console.print(f"[red]Schedule not found:[/red] {session_id}")
        raise typer.Exit(code=1)
    console.print(f"[green]Resumed:[/green] {session_id} (errors {cfg.error_count}/{cfg.max_errors})")


@schedule_app.command("log")
def schedule_log(
    session_id: str = typer.Argument(help="Session ID"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries"),
    db: str | None = typer.Option(None, "--db", help="Database path"),
) -> None:
    """Show recent cycles of a schedule."""
    _, store = _load(db)
    entries = store.get_execution_log(session_id, limit=limit)
    if not entries:
        console.print("[dim]No cycles recorded.[/dim]")
        return

    table = Table(title=f"Cycles for {session_id}")
    table.add_column("Started", style="dim")
    table.add_column("Status", style="green")
    table.add_column("Errors", style="red")
    table.add_column("Duration", style="yellow")
    table.add_column("Rejected", style="blue")
    table.add_column("Error", style="white")

    for e in entries:
        table.add_row(
            e["started_at"],
            e["status"],
            str(e["error_count"]),
            f"{e['duration_ms']}ms",
            ", ".join(e["rejected_actions"]) or "-",
            e["error"] or "-",
        )

    console.print(table)


# ════════════════════════════════════════════════════════════
# events — auto-disable notices
# ════════════════════════════════════════════════════════════


@app.command()
def events(
    ack: bool = typer.Option(False, "--ack", help="Mark listed events as delivered"),
    db: str | None = typer.Option(None, "--db", help="Database path"),
) -> None:
    """List undelivered schedule events."""
    _, store = _load(db)
    pending = store.get_undelivered_events()
    if not pending:
        console.print("[dim]No pending events.[/dim]")
        return

    table = Table(title="Schedule events")
    table.add_column("ID", style="cyan")
    table.add_column("Session", style="blue")
    table.add_column("Type", style="yellow")
    table.add_column("Detail", style="white")
    table.add_column("Created", style="dim")

    for ev in pending:
        payload = ev["payload"]
        detail = f"{payload.get('error_count')}/{payload.get('max_errors')}: {payload.get('last_error') or '-'}"
        table.add_row(str(ev["id"]), ev["session_id"], ev["event_type"], detail, ev["created_at"])

    console.print(table)

    if ack:
        store.mark_events_delivered([ev["id"] for ev in pending])
        console.print(f"[green]Marked {len(pending)} events delivered[/green]")
