from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from grantflow import assignment, configuration, due_diligence, evaluation, reconcile
from grantflow.db import init_db, session_scope
from grantflow.outcomes import Outcome
from grantflow.schemas import Actor
from grantflow.services import configuration_summary, reviewer_summary
from grantflow.settings import get_policy, get_settings

app = typer.Typer(help="Grant application review pipeline")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.ERROR
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
    project_root: str | None = typer.Option(
        None,
        "--project-root",
        help="Directory holding config/policy.yaml and data/.",
    ),
    actor_id: str = typer.Option("system", "--actor", help="Admin id recorded on audit notes."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if project_root:
        os.environ["GRANTFLOW_HOME"] = str(Path(project_root).expanduser().resolve())
        get_settings.cache_clear()
        get_policy.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose, "actor": Actor(actor_id=actor_id, role="admin")}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _actor(ctx: typer.Context) -> Actor:
    return ctx.obj["actor"]


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    if value is None:
        return "-"
    return str(value)


def _render_table(title: str, rows: list[tuple[str, str]], *, border_style: str = "cyan") -> None:
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for field, value in rows:
        table.add_row(field, value)
    console.print(Panel(table, title=title, border_style=border_style))


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
        return

    scalar_rows: list[tuple[str, str]] = []
    nested_rows: list[tuple[str, Any]] = []
    for key, value in payload.items():
        if isinstance(value, (str, int, float, bool)) or value is None:
            scalar_rows.append((key, _format_scalar(value)))
        else:
            nested_rows.append((key, value))

    if scalar_rows:
        _render_table(title, scalar_rows)
    else:
        console.print(Panel(f"[bold]{title}[/bold]", border_style="cyan"))

    for key, value in nested_rows:
        if isinstance(value, dict):
            _render_table(
                f"{title} · {key}",
                [(nested_key, _format_scalar(nested_value)) for nested_key, nested_value in value.items()],
                border_style="magenta",
            )
        elif isinstance(value, list):
            _render_table(
                f"{title} · {key}",
                [("items", str(len(value))), ("preview", json.dumps(value[:3], ensure_ascii=False, default=str))],
                border_style="yellow",
            )


def _finish(title: str, outcome: Outcome, ctx: typer.Context, render=None) -> None:
    if outcome.error is not None:
        payload = outcome.error.to_dict()
        if _wants_json(ctx):
            typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
        else:
            console.print(Panel(f"[bold red]{outcome.error.message}[/bold red]", title=title, border_style="red"))
        raise typer.Exit(code=1)
    value = render(outcome.value) if render else outcome.value
    _print(title, value, ctx)


# ---------------------------------------------------------------------------
# Database & configuration
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db_command(
    ctx: typer.Context,
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
    seed: bool = typer.Option(True, "--seed/--no-seed", help="Seed the default scoring configuration."),
) -> None:
    init_db(db_url, seed=seed)
    _print("init-db", {"status": "ok", "database_url_override": db_url, "seeded": seed}, ctx)


@app.command("seed-config")
def seed_config_command(
    ctx: typer.Context,
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
    force: bool = typer.Option(False, "--force", help="Add and activate a fresh default rubric."),
) -> None:
    init_db(db_url, seed=False)
    with session_scope(db_url) as session:
        config = configuration.seed_default_configuration(session, force=force)
        session.flush()
        payload = configuration_summary(config)
    _print("seed-config", payload, ctx)


@app.command("set-threshold")
def set_threshold_command(
    ctx: typer.Context,
    threshold: float = typer.Option(..., "--threshold", help="New pass threshold (0-100)."),
    config_id: int | None = typer.Option(None, "--config-id", help="Defaults to the active configuration."),
    run_reconcile: bool = typer.Option(False, "--reconcile", help="Promote rejected applications afterwards."),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    with session_scope(db_url) as session:
        if config_id is None:
            active = configuration.get_active_configuration(session)
            if active is None:
                raise typer.BadParameter("No active configuration; pass --config-id")
            config_id = active.id
        outcome = configuration.set_pass_threshold(session, _actor(ctx), config_id, threshold)
        if outcome.ok and run_reconcile:
            change = outcome.value
            report = reconcile.reconcile_rejected_applications(
                session, _actor(ctx), change["new_threshold"], change["previous_threshold"],
            )
            if not report.ok:
                outcome = report
            else:
                outcome = Outcome(value={**change, "reconciliation": report.value})
    _finish("set-threshold", outcome, ctx)


@app.command("reconcile")
def reconcile_command(
    ctx: typer.Context,
    threshold: float | None = typer.Option(None, "--threshold", help="Defaults to the active pass threshold."),
    previous: float | None = typer.Option(None, "--previous", help="Previous threshold, for the audit note."),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    with session_scope(db_url) as session:
        outcome = reconcile.reconcile_rejected_applications(session, _actor(ctx), threshold, previous)
    _finish("reconcile", outcome, ctx)


@app.command("evaluate")
def evaluate_command(
    ctx: typer.Context,
    application_id: list[int] = typer.Option([], "--application-id", help="Repeatable. Defaults to every application."),
    config_id: int | None = typer.Option(None, "--config-id", help="Defaults to the active configuration."),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    with session_scope(db_url) as session:
        outcome = evaluation.reevaluate_applications(
            session, _actor(ctx), config_id=config_id, application_ids=application_id or None,
        )
    _finish("evaluate", outcome, ctx)


# ---------------------------------------------------------------------------
# Reviewers & assignment
# ---------------------------------------------------------------------------


@app.command("add-reviewer")
def add_reviewer_command(
    ctx: typer.Context,
    reviewer_id: str = typer.Option(..., "--reviewer-id"),
    role: str = typer.Option(..., "--role", help="reviewer_1, reviewer_2, technical_reviewer, oversight or admin"),
    display_name: str = typer.Option("", "--name"),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    with session_scope(db_url) as session:
        outcome = assignment.register_reviewer(session, _actor(ctx), reviewer_id, role, display_name)
        _finish("add-reviewer", outcome, ctx, render=reviewer_summary)


@app.command("assign")
def assign_command(
    ctx: typer.Context,
    tier: int = typer.Option(1, "--tier", min=1, max=2),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    with session_scope(db_url) as session:
        outcome = assignment.bulk_assign(session, _actor(ctx), tier)
    _finish("assign", outcome, ctx)


@app.command("redistribute")
def redistribute_command(
    ctx: typer.Context,
    tier: int = typer.Option(1, "--tier", min=1, max=2),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    with session_scope(db_url) as session:
        outcome = assignment.redistribute(session, _actor(ctx), tier)
    _finish("redistribute", outcome, ctx)


# ---------------------------------------------------------------------------
# Due diligence
# ---------------------------------------------------------------------------


@app.command("check-deadlines")
def check_deadlines_command(
    ctx: typer.Context,
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    with session_scope(db_url) as session:
        outcome = due_diligence.check_approval_deadlines(session, _actor(ctx))
    _finish("check-deadlines", outcome, ctx)


@app.command("dd-queue")
def dd_queue_command(
    ctx: typer.Context,
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    with session_scope(db_url) as session:
        outcome = due_diligence.dd_queue(session)
    if _wants_json(ctx) or not outcome.ok:
        _finish("dd-queue", outcome, ctx, render=lambda rows: {"applications": rows})
        return

    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    for column in ("Application", "Score", "R1", "R2", "Oversight", "DD status"):
        table.add_column(column)
    for row in outcome.value:
        dd = row["due_diligence"]
        table.add_row(
            str(row["application_id"]),
            _format_scalar(row["total_score"]),
            _format_scalar(row["reviewer1_score"]),
            _format_scalar(row["reviewer2_score"]),
            "yes" if row["oversight_recommended"] else "",
            dd["dd_status"] if dd else "not opened",
        )
    console.print(Panel(table, title="dd-queue", border_style="cyan"))


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


@app.command("serve")
def serve_command(
    host: str | None = typer.Option(None, "--host"),
    port: int | None = typer.Option(None, "--port"),
) -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("grantflow.app:app", host=host or settings.api_host, port=port or settings.api_port)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
