"""CLI for wedsync: migrations, one-off syncs, the poller and the API server."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

import click

from wedsync.config import ConfigError, WedsyncConfig, load_config
from wedsync.core.logging import configure_logging

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    envvar="WEDSYNC_CONFIG",
    default=None,
    help="Path to wedsync.toml (defaults are used when omitted)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """wedsync: two-way wedding calendar sync with Google Calendar."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
    )
    ctx.obj = config


@cli.command()
@click.pass_obj
def migrate(config: WedsyncConfig) -> None:
    """Create the database if needed and apply the core migration chain."""
    db_name = asyncio.run(_migrate(config))
    click.echo(f"Migrations applied to database '{db_name}'")


async def _migrate(config: WedsyncConfig) -> str:
    from wedsync.db import Database
    from wedsync.migrations import run_migrations

    db = Database.from_config(config.database)
    await db.provision()
    await run_migrations(db.url)
    return db.db_name


@cli.command()
@click.argument("tenant_id")
@click.pass_obj
def sync(config: WedsyncConfig, tenant_id: str) -> None:
    """Run one reconciliation pass for TENANT_ID and print its summary."""
    result = asyncio.run(_sync_once(config, tenant_id))
    click.echo(json.dumps(result, indent=2))
    if not result["success"]:
        sys.exit(1)


async def _sync_once(config: WedsyncConfig, tenant_id: str) -> dict:
    from wedsync.daemon import CalendarRuntime

    runtime = CalendarRuntime(config)
    await runtime.start()
    try:
        assert runtime.engine is not None
        result = await runtime.engine.synchronize(tenant_id)
    finally:
        await runtime.shutdown()
    return result.model_dump(mode="json")


@cli.command()
@click.option("--once", is_flag=True, help="Sync every connected tenant once and exit")
@click.pass_obj
def poll(config: WedsyncConfig, once: bool) -> None:
    """Periodically sync every tenant with sync enabled."""
    if once:
        summaries = asyncio.run(_poll_once(config))
        for tenant_id, success in sorted(summaries.items()):
            click.echo(f"  {tenant_id}: {'ok' if success else 'failed'}")
        click.echo(f"Synced {len(summaries)} tenant(s)")
        return
    click.echo(f"Polling every {config.sync.poll_interval_minutes} minute(s)")
    asyncio.run(_poll_forever(config))


async def _poll_once(config: WedsyncConfig) -> dict[str, bool]:
    from wedsync.daemon import CalendarRuntime

    runtime = CalendarRuntime(config)
    await runtime.start()
    try:
        assert runtime.poller is not None
        results = await runtime.poller.run_once()
    finally:
        await runtime.shutdown()
    return {tenant_id: result.success for tenant_id, result in results.items()}


async def _poll_forever(config: WedsyncConfig) -> None:
    from wedsync.daemon import CalendarRuntime

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    runtime = CalendarRuntime(config)
    await runtime.start()
    try:
        assert runtime.poller is not None
        runtime.poller.start()
        await shutdown_event.wait()
    finally:
        await runtime.shutdown()


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to api.host)")
@click.option("--port", type=int, default=None, help="Port (defaults to api.port)")
@click.option("--with-poller", is_flag=True, help="Also run the sync poller in-process")
@click.pass_obj
def serve(config: WedsyncConfig, host: str | None, port: int | None, with_poller: bool) -> None:
    """Serve the calendar HTTP API with uvicorn."""
    import uvicorn

    from wedsync.api.app import create_app

    app = create_app(config, run_poller=with_poller)
    uvicorn.run(
        app,
        host=host or config.api.host,
        port=port or config.api.port,
        log_config=None,
    )


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
