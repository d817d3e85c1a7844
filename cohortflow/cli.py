from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from cohortflow import rounds, services
from cohortflow.config import get_settings
from cohortflow.db import init_db, session_scope

app = typer.Typer(help="Round lifecycle and communication workflows for evaluation programs")
console = Console()
log = logging.getLogger(__name__)


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=True)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    db_path: str | None = typer.Option(None, "--db-path", help="SQLite database file."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if db_path:
        os.environ["COHORTFLOW_DB_PATH"] = str(Path(db_path).expanduser().resolve())
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)
    init_db()


def _format_scalar(value: Any) -> str:
    if value is None:
        return "-"
    return str(value)


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if ctx.obj and ctx.obj.get("json_output"):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in payload.items():
        if isinstance(value, (dict, list)):
            value = json.dumps(value, ensure_ascii=False, default=str)
        table.add_row(key, _format_scalar(value))
    console.print(Panel(table, title=title, border_style="cyan"))


def _transition(ctx: typer.Context, title: str, result: rounds.RoundTransition) -> None:
    _print(title, services.transition_summary(result), ctx)
    if not result.ok:
        raise typer.Exit(code=1)


@app.command("init-db")
def init_db_command(ctx: typer.Context) -> None:
    _print("init-db", {"status": "ok", "database": str(get_settings().database_path)}, ctx)


@app.command("rounds")
def rounds_command(ctx: typer.Context) -> None:
    with session_scope() as session:
        payload = {r.name: services.round_summary(r) for r in rounds.list_rounds(session)}
    _print("rounds", payload, ctx)


@app.command("activate-round")
def activate_round_command(ctx: typer.Context, name: str = typer.Argument(..., help="screening or pitching")) -> None:
    with session_scope() as session:
        _transition(ctx, "activate-round", rounds.activate_round(session, name))


@app.command("complete-round")
def complete_round_command(ctx: typer.Context, name: str = typer.Argument(..., help="screening or pitching")) -> None:
    with session_scope() as session:
        _transition(ctx, "complete-round", rounds.complete_round(session, name))


@app.command("reopen-round")
def reopen_round_command(ctx: typer.Context, name: str = typer.Argument(..., help="screening or pitching")) -> None:
    with session_scope() as session:
        _transition(ctx, "reopen-round", rounds.reopen_round(session, name))


@app.command("trigger")
def trigger_command(
    ctx: typer.Context,
    participant_id: int = typer.Argument(...),
    participant_type: str = typer.Argument(..., help="juror or startup"),
    event_type: str = typer.Argument(..., help="e.g. assignments_created"),
    data: str = typer.Option("{}", "--data", help="JSON object merged into stage data."),
) -> None:
    try:
        event_data = json.loads(data)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"--data is not valid JSON: {exc}") from exc
    orchestrator = services.build_orchestrator()
    with session_scope() as session:
        result = asyncio.run(orchestrator.handle_event(
            session, participant_id, participant_type, event_type, event_data,
        ))
    _print("trigger", asdict(result), ctx)


@app.command("retry")
def retry_command(ctx: typer.Context, workflow_id: int = typer.Argument(...)) -> None:
    orchestrator = services.build_orchestrator()
    with session_scope() as session:
        result = asyncio.run(orchestrator.retry_communication(session, workflow_id))
    _print("retry", asdict(result), ctx)
    if not result.ok:
        raise typer.Exit(code=1)


@app.command("sweep")
def sweep_command(
    ctx: typer.Context,
    limit: int | None = typer.Option(None, help="Max attempts per sweep (defaults to settings)."),
    every: float = typer.Option(0, help="Repeat every N seconds; 0 runs once."),
) -> None:
    """Dispatch due pending attempts. Schedule with cron, or use --every."""
    orchestrator = services.build_orchestrator()
    while True:
        with session_scope() as session:
            report = asyncio.run(orchestrator.sweep(session, limit=limit))
        _print("sweep", asdict(report), ctx)
        if every <= 0:
            break
        time.sleep(every)


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1"),
    port: int = typer.Option(8001),
) -> None:
    import uvicorn
    uvicorn.run("cohortflow.app:app", host=host, port=port)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
