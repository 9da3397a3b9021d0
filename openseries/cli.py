"""Typer CLI for OpenSeries."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import sys
from datetime import date
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .errors import InvalidRecurrenceRule
from .expander import upcoming_occurrences
from .rrule import describe_rule, format_rule, parse_rule
from .scheduler import start_scheduler, stop_scheduler
from .seed import seed_fake_data
from .storage import init_db, upgrade_database
from .sweep import run_materialization_sweep, run_subscription_fanout, vacuum_database

app = typer.Typer(help="OpenSeries command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the SQLite database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        message = str(getattr(exc, "orig", exc)).lower()
        if "readonly" in message or "read-only" in message:
            typer.secho(
                "Unable to upgrade because the database is read-only. "
                f"Ensure write access to {settings.database_path}.",
                err=True,
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("sweep")
def sweep(
    workers: int | None = typer.Option(
        None, "--workers", min=1, help="Series to materialize in parallel"
    ),
    vacuum: bool = typer.Option(
        False,
        "--vacuum",
        help="Run SQLite VACUUM after the sweep completes",
    ),
) -> None:
    """Extend every active series to the rolling horizon."""
    init_db()
    stats = run_materialization_sweep(max_workers=workers)
    typer.echo(f"Sweep complete: {stats}")
    if vacuum:
        vacuum_database()
        typer.echo("Database vacuum complete.")


@app.command("fanout")
def fanout() -> None:
    """Create auto-RSVPs for instances created since the last run."""
    init_db()
    stats = run_subscription_fanout()
    typer.echo(f"Fan-out complete: {stats}")


@app.command("preview-rule")
def preview_rule(
    rule: str = typer.Argument(..., help="RRULE string, e.g. FREQ=WEEKLY;BYDAY=MO"),
    anchor: str | None = typer.Option(
        None, "--anchor", help="First occurrence as YYYY-MM-DD (default: today)"
    ),
    limit: int = typer.Option(10, "--limit", min=1, max=100),
) -> None:
    """Validate a rule and print its next occurrences."""
    try:
        parsed = parse_rule(rule, require_bound=settings.require_bounded_rules)
    except InvalidRecurrenceRule as exc:
        typer.secho(f"Invalid rule: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        anchor_date = date.fromisoformat(anchor) if anchor else date.today()
    except ValueError:
        typer.secho(f"Invalid anchor date {anchor!r}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.echo(format_rule(parsed))
    typer.echo(describe_rule(parsed))
    for occurrence in upcoming_occurrences(
        parsed, anchor_date, after=anchor_date, limit=limit
    ):
        typer.echo(f"- {occurrence.isoformat()} ({occurrence:%A})")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start FastAPI with APScheduler."""
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    config = uvicorn.Config(
        "openseries.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    try:
        typer.echo(f"Starting OpenSeries on {host}:{port}")
        server.run()
    finally:
        stop_scheduler()


@app.command("seed-data")
def seed_data(
    series: int = typer.Option(
        settings.seed_series, "--series", min=0, help="Number of series to create"
    ),
    max_subscribers: int = typer.Option(
        settings.seed_subscribers_per_series,
        "--max-subscribers",
        min=0,
        help="Maximum subscribers to attach to each series",
    ),
):
    """Populate the database with fake series for testing."""
    stats = seed_fake_data(
        series_count=series,
        max_subscribers_per_series=max_subscribers,
    )
    typer.echo(
        f"Seed complete: {stats['series']} series, {stats['instances']} instances, "
        f"{stats['subscriptions']} subscriptions created."
    )


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Print the effective configuration"
    ),
    civil_timezone: str | None = typer.Option(
        None, "--timezone", help="IANA zone or fixed offset for series wall clocks"
    ),
    horizon_days: int | None = typer.Option(
        None, "--horizon-days", min=1, help="Days ahead to materialize instances"
    ),
    max_occurrences: int | None = typer.Option(
        None,
        "--max-occurrences",
        min=1,
        help="Maximum instances created per series per run",
    ),
    require_bounded_rules: bool | None = typer.Option(
        None,
        "--require-bounded-rules/--allow-open-ended-rules",
        help="Require COUNT or UNTIL on every rule",
    ),
    default_duration: int | None = typer.Option(
        None, "--default-duration", min=1, help="Default instance length in minutes"
    ),
    sweep_interval: int | None = typer.Option(
        None, "--sweep-interval", min=1, help="Minutes between materialization sweeps"
    ),
    sweep_concurrency: int | None = typer.Option(
        None, "--sweep-concurrency", min=1, help="Parallel series per sweep"
    ),
    fanout_interval: int | None = typer.Option(
        None, "--fanout-interval", min=1, help="Minutes between auto-RSVP fan-outs"
    ),
    vacuum_hours: int | None = typer.Option(
        None, "--vacuum-hours", min=1, help="Hours between SQLite VACUUM runs"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None, "--config", help="Path to the configuration file"
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle background scheduler (sweep/fan-out/vacuum)",
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "civil_timezone": civil_timezone,
        "horizon_days": horizon_days,
        "max_occurrences_per_run": max_occurrences,
        "require_bounded_rules": require_bounded_rules,
        "default_duration_minutes": default_duration,
        "sweep_interval_minutes": sweep_interval,
        "sweep_concurrency": sweep_concurrency,
        "fanout_interval_minutes": fanout_interval,
        "sqlite_vacuum_hours": vacuum_hours,
        "app_host": host,
        "app_port": port,
        "enable_scheduler": enable_scheduler,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    settings_ref = settings
    target_path = config_path or settings.config_path
    if clean_updates:
        settings_ref = update_config_file(clean_updates, path=target_path)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


@app.command("test")
def run_tests(pytest_args: list[str] = typer.Argument(None, help="Extra pytest args")):
    """Run the test suite with helpful defaults."""
    env = os.environ.copy()
    env.setdefault("PYTHONPATH", ".")
    env.setdefault("UV_CACHE_DIR", ".uv-cache")
    uv_path = shutil.which("uv")
    if uv_path:
        cmd = [uv_path, "run", "pytest"]
    else:
        typer.echo("uv not found, falling back to python -m pytest")
        cmd = [sys.executable, "-m", "pytest"]
    if pytest_args:
        cmd.extend(pytest_args)
    typer.echo(f"Running tests: {' '.join(cmd)}")
    result = subprocess.run(cmd, env=env)
    raise typer.Exit(code=result.returncode)


if __name__ == "__main__":
    app()
