"""Logging utilities for oauthmcp."""

import logging
from typing import Literal

from rich.console import Console
from rich.logging import RichHandler


def get_logger(name: str) -> logging.Logger:
    """Get a logger nested under the oauthmcp namespace.

    Args:
        name: the name of the logger, which will be prefixed with 'oauthmcp.'

    Returns:
        a configured logger instance
    """
    if name.startswith("oauthmcp."):
        return logging.getLogger(name)
    return logging.getLogger(f"oauthmcp.{name}")


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] | int = "INFO",
    logger: logging.Logger | None = None,
    enable_rich_tracebacks: bool = True,
) -> None:
    """
    Configure logging for oauthmcp.

    Args:
        logger: the logger to configure
        level: the log level to use
        enable_rich_tracebacks: whether to render tracebacks with rich
    """
    if logger is None:
        logger = logging.getLogger("oauthmcp")

    handler = RichHandler(
        console=Console(stderr=True),
        rich_tracebacks=enable_rich_tracebacks,
    )
    formatter = logging.Formatter("%(message)s")
    handler.setFormatter(formatter)

    logger.setLevel(level)

    # Remove any existing rich handlers so reconfiguring does not duplicate output
    for hdlr in logger.handlers[:]:
        if isinstance(hdlr, RichHandler):
            logger.removeHandler(hdlr)

    logger.addHandler(handler)


def redact(value: str | None, visible: int = 8) -> str:
    """Shorten a secret value (token, code, client secret) for log output."""
    if not value:
        return "<none>"
    return f"{value[:visible]}..."
