"""Structured JSON logging for PulsePoint Relay.

Every module asks for a logger with ``get_logger(__name__)`` and logs
snake_case event names with keyword context::

    logger.info("run_complete", new_incidents=2, closed_incidents=1)

``configure_logging`` is called once by the entry points (API lifespan or
CLI).  Calling ``get_logger`` first is fine; the defaults apply until then.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

_configured = False


def configure_logging(log_level: str = "INFO") -> None:
    """Route structlog through stdlib logging and render one JSON line per event."""
    global _configured
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        stream=sys.stdout,
        format="%(message)s",
        force=True,
    )
    # Keep httpx request lines out of the event stream unless debugging
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str) -> Any:
    """Return a structlog logger bound to *name*."""
    if not _configured:
        configure_logging()
    return structlog.get_logger(name)
