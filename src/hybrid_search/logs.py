"""
Structured logging setup.

Library modules only call ``structlog.get_logger(__name__)``; entry points
(CLI, server) call :func:`configure_logging` once at start-up.
"""

from __future__ import annotations

import logging
import os

import structlog


ENV_LOG_LEVEL = "HYBRID_SEARCH_LOG_LEVEL"
_DEFAULT_LEVEL = "INFO"


def configure_logging(level: str | None = None, *, json_output: bool = False) -> None:
    """Configure structlog processors and level filtering."""
    resolved = (level or os.getenv(ENV_LOG_LEVEL) or _DEFAULT_LEVEL).upper()
    numeric_level = logging.getLevelName(resolved)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    renderer: structlog.types.Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )


def preview(text: str, limit: int = 100) -> str:
    """Truncate user text before it goes into log context."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
