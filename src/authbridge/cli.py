"""Command line interface for the authorization bridge."""

from __future__ import annotations

import sys
from typing import Annotated, Any

import cyclopts
import uvicorn
from rich import print

import authbridge
from authbridge.exceptions import ConfigurationError
from authbridge.server.app import require_credentials
from authbridge.settings import LOG_LEVEL
from authbridge.utilities.logging import configure_logging, get_logger

logger = get_logger(__name__)

app = cyclopts.App(
    name="authbridge",
    help="OAuth authorization bridge for MCP servers.",
    version=authbridge.__version__,
)


async def serve(
    host: str,
    port: int,
    log_level: str,
    uvicorn_config: dict[str, Any] | None = None,
) -> None:
    """Serve the bridge with uvicorn until interrupted."""
    bridge = authbridge.create_app()

    config_kwargs: dict[str, Any] = {
        "timeout_graceful_shutdown": 0,
        "log_level": log_level.lower(),
    }
    config_kwargs.update(uvicorn_config or {})

    config = uvicorn.Config(bridge, host=host, port=port, **config_kwargs)
    server = uvicorn.Server(config)
    logger.info(
        "Starting authorization bridge %r on http://%s:%d",
        authbridge.settings.server_name,
        host,
        port,
    )
    await server.serve()


@app.command
async def run(
    *,
    host: Annotated[str, cyclopts.Parameter(help="Interface to bind")] = "127.0.0.1",
    port: Annotated[int, cyclopts.Parameter(help="Port to listen on")] = 8000,
    log_level: Annotated[
        LOG_LEVEL | None, cyclopts.Parameter(help="Log level (defaults to settings)")
    ] = None,
) -> None:
    """Run the authorization bridge HTTP server."""
    level = log_level or authbridge.settings.log_level
    configure_logging(level)
    try:
        await serve(host, port, level)
    except ConfigurationError as e:
        print(f"[bold red]Configuration error:[/bold red] {e}")
        sys.exit(1)


@app.command
def check() -> None:
    """Validate configuration without starting the server or touching storage."""
    try:
        require_credentials(authbridge.settings)
    except ConfigurationError as e:
        print(f"[bold red]Configuration error:[/bold red] {e}")
        sys.exit(1)
    print(f"[green]Configuration OK[/green] for {authbridge.settings.base_url}")


if __name__ == "__main__":
    app()
