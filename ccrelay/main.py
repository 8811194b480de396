from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click
from pydantic import ValidationError

from ccrelay.channels.web import WebRelay
from ccrelay.config import RelaySettings, load_config
from ccrelay.core.logging import setup_logging

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG_PATH = "config/ccrelay.yaml"


def _resolve_settings(config_path: str, host: str | None, port: int | None) -> RelaySettings:
    path = Path(config_path)
    if path.exists():
        settings = load_config(path)
    elif config_path == _DEFAULT_CONFIG_PATH:
        settings = RelaySettings()
    else:
        raise click.ClickException(f"config file not found: {path}")

    overrides: dict[str, object] = {}
    if host is not None:
        overrides["host"] = host
    if port is not None:
        overrides["port"] = port
    if overrides:
        server = settings.server.model_validate(
            {**settings.server.model_dump(), **overrides},
        )
        settings = settings.model_copy(update={"server": server})
    return settings


@click.group()
def cli() -> None:
    """ccrelay: drive the Claude CLI over a WebSocket, one turn at a time."""


@cli.command("start")
@click.option("--config", "config_path", default=_DEFAULT_CONFIG_PATH, show_default=True)
@click.option("--host", default=None, help="Override server.host")
@click.option("--port", type=int, default=None, help="Override server.port")
def start_command(config_path: str, host: str | None, port: int | None) -> None:
    """Start the relay server."""
    try:
        settings = _resolve_settings(config_path, host, port)
    except (ValueError, ValidationError) as exc:
        raise click.ClickException(str(exc)) from exc

    setup_logging(settings.log_level, json_output=settings.json_logs)
    relay = WebRelay(settings)
    try:
        asyncio.run(relay.serve(log_level=settings.log_level.lower()))
    except KeyboardInterrupt:
        click.echo("Shutting down.")


__all__ = ["cli"]


if __name__ == "__main__":
    cli()
