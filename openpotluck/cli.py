"""Typer CLI for OpenPotluck."""

from __future__ import annotations

import json
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
from .crud import get_event_by_code
from .database import get_session
from .scheduler import start_scheduler, stop_scheduler
from .seed import seed_fake_data
from .storage import init_db, upgrade_database, vacuum_database

app = typer.Typer(help="OpenPotluck command-line interface")


def _readonly_hint(exc: OperationalError, action: str) -> None:
    message = str(getattr(exc, "orig", exc)).lower()
    if "readonly" in message or "read-only" in message:
        typer.secho(
            f"Unable to {action} because the database is read-only. "
            f"Ensure write access to {settings.database_path}.",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


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
    """Create or upgrade the SQLite database schema."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        _readonly_hint(exc, "upgrade")
        raise

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("vacuum")
def vacuum() -> None:
    """Run SQLite VACUUM now."""
    try:
        vacuum_database()
    except OperationalError as exc:
        _readonly_hint(exc, "vacuum")
        raise
    typer.echo("Database vacuum complete.")


@app.command("show-event")
def show_event(
    event_code: str = typer.Argument(..., help="Event code, any casing or hyphenation"),
) -> None:
    """Resolve an event code and print the potluck with its items."""
    init_db()
    with get_session() as session:
        event = get_event_by_code(session, event_code)
        if not event:
            typer.secho(f"No potluck matches {event_code!r}", err=True, fg=typer.colors.RED)
            raise typer.Exit(code=1)
        typer.echo(f"{event.event_code}  {event.name}  {event.date.isoformat()}")
        for item in event.items:
            typer.echo(
                f"- {item.name}: {item.claimed_quantity}/{item.quantity} claimed"
            )


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
        "openpotluck.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    try:
        typer.echo(f"Starting OpenPotluck on {host}:{port}")
        server.run()
    finally:
        stop_scheduler()


@app.command("seed-data")
def seed_data(
    potlucks: int = typer.Option(
        settings.seed_potlucks, "--potlucks", min=0, help="Number of potlucks to create"
    ),
    max_items: int = typer.Option(
        settings.seed_items_per_potluck,
        "--max-items",
        min=1,
        help="Maximum items to add to each potluck",
    ),
    max_signups: int = typer.Option(
        settings.seed_signups_per_potluck,
        "--max-signups",
        min=0,
        help="Maximum signups to attach to each potluck",
    ),
):
    """Populate the database with fake potlucks for testing."""
    stats = seed_fake_data(
        potluck_count=potlucks,
        max_items_per_potluck=max_items,
        max_signups_per_potluck=max_signups,
    )
    typer.echo(
        f"Seed complete: {stats['potlucks']} potlucks, {stats['items']} items, "
        f"{stats['signups']} signups created."
    )


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    vacuum_hours: int | None = typer.Option(
        None, "--vacuum-hours", min=1, help="Hours between SQLite VACUUM runs"
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle background scheduler (vacuum)",
    ),
    public_base_url: str | None = typer.Option(
        None, "--public-base-url", help="Base URL used in emailed links"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    seed_potlucks: int | None = typer.Option(
        None, "--seed-potlucks", min=0, help="Default seed-data potlucks"
    ),
    seed_items_per_potluck: int | None = typer.Option(
        None, "--seed-items-per-potluck", min=1, help="Default seed-data items"
    ),
    seed_signups_per_potluck: int | None = typer.Option(
        None, "--seed-signups-per-potluck", min=0, help="Default seed-data signups"
    ),
    config_path: Path | None = typer.Option(
        None,
        "--config-path",
        help="Path to openpotluck.toml (default: ./openpotluck.toml)",
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "sqlite_vacuum_hours": vacuum_hours,
        "enable_scheduler": enable_scheduler,
        "public_base_url": public_base_url,
        "app_host": host,
        "app_port": port,
        "seed_potlucks": seed_potlucks,
        "seed_items_per_potluck": seed_items_per_potluck,
        "seed_signups_per_potluck": seed_signups_per_potluck,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

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


if __name__ == "__main__":
    app()
