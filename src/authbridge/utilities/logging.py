"""Logging utilities for the authorization bridge."""

import logging
from typing import Any, Literal

from rich.console import Console
from rich.logging import RichHandler

import authbridge


def get_logger(name: str) -> logging.Logger:
    """Get a logger nested under the authbridge namespace.

    Args:
        name: the name of the logger, which will be prefixed with 'authbridge.'

    Returns:
        a configured logger instance
    """
    if name.startswith("authbridge."):
        return logging.getLogger(name=name)

    return logging.getLogger(name=f"authbridge.{name}")


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] | int = "INFO",
    logger: logging.Logger | None = None,
    enable_rich_tracebacks: bool | None = None,
    **rich_kwargs: Any,
) -> None:
    """
    Configure logging for the bridge.

    Args:
        logger: the logger to configure
        level: the log level to use
        rich_kwargs: the parameters to use for creating RichHandler
    """
    if not authbridge.settings.log_enabled:
        return

    if enable_rich_tracebacks is None:
        enable_rich_tracebacks = authbridge.settings.enable_rich_tracebacks

    if logger is None:
        logger = logging.getLogger("authbridge")

    formatter = logging.Formatter("%(message)s")

    # Don't propagate to the root logger
    logger.propagate = False
    logger.setLevel(level)

    handler = RichHandler(
        console=Console(stderr=True),
        **rich_kwargs,
    )
    handler.setFormatter(formatter)
    handler.addFilter(lambda record: record.exc_info is None)

    # Tracebacks get a compressed format: no path or level name, framework
    # frames suppressed, at most 3 frames
    import httpx
    import starlette

    traceback_handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        show_level=False,
        rich_tracebacks=enable_rich_tracebacks,
        tracebacks_max_frames=3,
        tracebacks_suppress=[starlette, httpx],
        **rich_kwargs,
    )
    traceback_handler.setFormatter(formatter)
    traceback_handler.addFilter(lambda record: record.exc_info is not None)

    # Remove any existing handlers to avoid duplicates on reconfiguration
    for hdlr in logger.handlers[:]:
        logger.removeHandler(hdlr)

    logger.addHandler(handler)
    logger.addHandler(traceback_handler)


def redact(value: str | None, keep: int = 8) -> str:
    """Shorten a secret-ish value (code, nonce) for debug logging."""
    if not value:
        return ""
    return value[:keep] + "..."
