"""structlog configuration for porch.

Log lines go to stderr. Stdout is reserved for the instructions the
orchestrator prints for the calling agent.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog
from structlog.typing import Processor

LOG_LEVEL_ENV = "PORCH_LOG_LEVEL"
DEFAULT_LOG_LEVEL = "WARNING"


def _resolve_level(level: str | None) -> int:
    level_name = (os.getenv(LOG_LEVEL_ENV) or level or DEFAULT_LOG_LEVEL).upper()
    resolved = logging.getLevelName(level_name)
    return resolved if isinstance(resolved, int) else logging.WARNING


def configure_logging(level: str | None = None, fmt: str = "console") -> None:
    """Configure structlog once per process.

    Args:
        level: Minimum level name (``DEBUG``, ``INFO``, ...). ``PORCH_LOG_LEVEL``
            wins over this value when set.
        fmt: ``console`` for human-readable lines, ``json`` for one JSON
            object per line.
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if fmt == "json":
        final_processor: Processor = structlog.processors.JSONRenderer()
    else:
        final_processor = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[*shared_processors, final_processor],
        wrapper_class=structlog.make_filtering_bound_logger(_resolve_level(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
