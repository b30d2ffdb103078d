"""
Logging setup for MAO.

Rich console output so agent transitions, assignments and votes can be
followed live while the orchestrator runs.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(level: str = "INFO") -> None:
    """
    Configure logging for MAO.

    Args:
        level: The logging level (DEBUG, INFO, WARNING, ERROR).
    """
    console = Console(stderr=True)

    handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[handler],
        force=True,
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def set_debug(enabled: bool) -> None:
    """Switch the `mao` logger tree between DEBUG and its inherited level."""
    logging.getLogger("mao").setLevel(logging.DEBUG if enabled else logging.NOTSET)
