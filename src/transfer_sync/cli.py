"""Command line interface for transfer-sync."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import click
import uvicorn
from pydantic import ValidationError
from rich.logging import RichHandler

from transfer_sync.api.app import create_app
from transfer_sync.config import Settings, get_settings
from transfer_sync.exceptions import SyncError
from transfer_sync.service import SyncService
from transfer_sync.storage.database import DatabaseManager

logger = logging.getLogger("transfer_sync")

EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2

_PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: int, *, rich: bool | None = None) -> None:
    """Install a single root handler: rich on a terminal, plain lines otherwise."""
    if rich is None:
        rich = sys.stderr.isatty()

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    if rich:
        root_logger.addHandler(RichHandler(show_path=False, rich_tracebacks=True))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))
        root_logger.addHandler(handler)
    root_logger.setLevel(level)


def group_options(*options):
    """Decorator to group multiple click options together"""

    def wrapper(function):
        for option in reversed(options):
            function = option(function)
        return function

    return wrapper


log_level_option = click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Override LOG_LEVEL from the environment",
)


def _load_settings(log_level: str | None) -> Settings:
    try:
        settings = get_settings()
    except ValidationError as e:
        click.echo(f"Invalid configuration:\n{e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    level = getattr(logging, log_level.upper()) if log_level else settings.get_logging_level()
    configure_logging(level)
    return settings


async def _run_service(service: SyncService) -> None:
    loop = asyncio.get_running_loop()
    pending: set[asyncio.Task[None]] = set()

    def _request_stop() -> None:
        logger.info("Shutdown signal received; finishing current batch")
        task = loop.create_task(service.request_stop())
        pending.add(task)
        task.add_done_callback(pending.discard)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop)
        except NotImplementedError:  # pragma: no cover - Windows
            pass

    await service.run()


@click.group()
@click.version_option(package_name="transfer-sync")
def cli():
    """Checkpointed ERC20 Transfer indexer and read API"""


@cli.command(name="run")
@group_options(log_level_option)
@click.option("--no-init-schema", is_flag=True, default=False, help="Do not create missing tables on start")
def run_command(log_level, no_init_schema):
    """
    Synchronize Transfer events until interrupted
    """
    settings = _load_settings(log_level)
    service = SyncService(settings, init_schema=not no_init_schema)
    try:
        asyncio.run(_run_service(service))
    except SyncError as e:
        logger.error("Sync terminated: %s", e)
        sys.exit(EXIT_FAILURE)
    except KeyboardInterrupt:
        pass


@cli.command(name="serve")
@group_options(log_level_option)
@click.option("--host", default=None, help="Bind address (default: API_HOST)")
@click.option("--port", type=int, default=None, help="Bind port (default: PORT)")
def serve_command(log_level, host, port):
    """
    Serve the read API
    """
    settings = _load_settings(log_level)
    db = DatabaseManager(settings.database.url, pool_size=settings.database.pool_size)
    app = create_app(db)
    uvicorn.run(
        app,
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_config=None,
    )


@cli.command(name="init-db")
@group_options(log_level_option)
def init_db_command(log_level):
    """
    Create the transfers and sync_progress tables
    """
    settings = _load_settings(log_level)

    async def _init() -> None:
        db = DatabaseManager(settings.database.url)
        try:
            await db.init_schema_async()
        finally:
            await db.dispose_async()

    asyncio.run(_init())
    click.echo("Database schema initialized")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
