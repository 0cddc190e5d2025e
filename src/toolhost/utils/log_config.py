"""
Logging configuration for toolhost.

stdout carries the protocol, so every log record goes to stderr.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

stderr_console = Console(stderr=True)


def setup_logging(debug: bool = False) -> logging.Logger:
    """
    Route toolhost logs through rich on stderr.

    Args:
        debug: Log at DEBUG instead of INFO

    Returns:
        The ``toolhost`` package logger
    """
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=stderr_console, rich_tracebacks=True, show_path=debug)],
        force=True,
    )
    logger = logging.getLogger("toolhost")
    logger.setLevel(level)
    return logger
