"""CLI for calsync: run imports and manage Google Calendar connections."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click
from pydantic import BaseModel

from calsync.config import (
    CONFIG_FILE_NAME,
    CalsyncConfig,
    ConfigError,
    load_config,
    load_config_from_env,
)
from calsync.core.logging import configure_logging
from calsync.core.telemetry import init_telemetry
from calsync.errors import CalendarSyncError
from calsync.runtime import open_runtime
from calsync.service import CalendarConnectionService

_ResultT = TypeVar("_ResultT", bound=BaseModel)


def _load(config_path: Path | None) -> CalsyncConfig:
    if config_path is not None:
        return load_config(config_path)
    default_path = Path.cwd() / CONFIG_FILE_NAME
    if default_path.exists():
        return load_config(default_path)
    return load_config_from_env()


def _run_with_service(
    ctx: click.Context,
    action: Callable[[CalendarConnectionService], Awaitable[_ResultT]],
) -> None:
    config: CalsyncConfig = ctx.obj["config"]

    async def _main() -> _ResultT:
        async with open_runtime(config) as runtime:
            return await action(runtime.service)

    try:
        result = asyncio.run(_main())
    except CalendarSyncError as exc:
        click.echo(f"Error [{exc.code}]: {exc}", err=True)
        sys.exit(1)
    click.echo(result.model_dump_json(indent=2))


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help=f"Path to {CONFIG_FILE_NAME} (or its directory). Defaults to ./{CONFIG_FILE_NAME}, "
    "then GOOGLE_* / DATABASE_URL environment variables.",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calsync: one-way Google Calendar import engine."""
    try:
        config = _load(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)

    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
    )
    init_telemetry("calsync")
    ctx.obj = {"config": config}


@cli.command("authorize")
@click.argument("user_id")
@click.pass_context
def authorize_cmd(ctx: click.Context, user_id: str) -> None:
    """Print the Google authorization URL for USER_ID."""

    async def _action(service: CalendarConnectionService):
        return service.authorization_url(user_id)

    _run_with_service(ctx, _action)


@cli.command("import")
@click.argument("user_id")
@click.option(
    "--timeout",
    type=click.FloatRange(min=0),
    default=None,
    help="Run deadline in seconds (0 disables it)",
)
@click.pass_context
def import_cmd(ctx: click.Context, user_id: str, timeout: float | None) -> None:
    """Import Google Calendar events for USER_ID now."""

    async def _action(service: CalendarConnectionService):
        return await service.import_now(user_id, timeout=timeout)

    _run_with_service(ctx, _action)


@cli.command("status")
@click.argument("user_id")
@click.pass_context
def status_cmd(ctx: click.Context, user_id: str) -> None:
    """Show the Google Calendar connection status of USER_ID."""

    async def _action(service: CalendarConnectionService):
        return await service.status(user_id)

    _run_with_service(ctx, _action)


@cli.command("disconnect")
@click.argument("user_id")
@click.pass_context
def disconnect_cmd(ctx: click.Context, user_id: str) -> None:
    """Revoke and forget the Google Calendar connection of USER_ID."""

    async def _action(service: CalendarConnectionService):
        return await service.disconnect(user_id)

    _run_with_service(ctx, _action)


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to server.host)")
@click.option("--port", type=int, default=None, help="Bind port (defaults to server.port)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Serve the Google Calendar REST API with uvicorn."""
    import uvicorn

    from calsync.api.app import create_app

    config: CalsyncConfig = ctx.obj["config"]
    app = create_app(config)
    uvicorn.run(
        app,
        host=host or config.server.host,
        port=port or config.server.port,
        log_config=None,
    )


def main() -> None:
    cli()
