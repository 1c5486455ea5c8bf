"""CLI entry point for Courier."""

from __future__ import annotations

import logging

import click

from courier.config import CourierConfig
from courier.models import EVENT_CATALOG


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Courier - webhook event delivery service."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = CourierConfig()


@cli.command()
@click.option("--host", help="Override server host")
@click.option("--port", type=int, help="Override server port")
@click.option("--log-level", help="Override logging level (DEBUG, INFO, ...)")
@click.pass_context
def serve(
    ctx: click.Context,
    host: str | None,
    port: int | None,
    log_level: str | None,
) -> None:
    """Run the HTTP API and delivery workers."""
    import uvicorn

    from courier.factory import create_app

    config: CourierConfig = ctx.obj["config"]
    overrides = {
        key: value
        for key, value in {"host": host, "port": port, "log_level": log_level}.items()
        if value is not None
    }
    if overrides:
        config = config.model_copy(update=overrides)

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )


@cli.command("init-db")
@click.option(
    "--database",
    "database_path",
    help="SQLite database path (default: COURIER_DATABASE_PATH)",
)
@click.pass_context
def init_db(ctx: click.Context, database_path: str | None) -> None:
    """Create the SQLite schema."""
    from courier.store import SQLiteWebhookStore

    config: CourierConfig = ctx.obj["config"]
    path = database_path or config.database_path
    store = SQLiteWebhookStore(path)
    store.close()
    click.echo(f"Initialized webhook database at {store.db_path or path}")


@cli.command("event-types")
@click.option("--category", help="Only show one category")
def event_types(category: str | None) -> None:
    """List the known event types."""
    for event_type, (event_category, description) in EVENT_CATALOG.items():
        if category and event_category != category:
            continue
        click.echo(f"{event_type.value:<36} {event_category:<11} {description}")


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
