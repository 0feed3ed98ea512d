"""Structured logging for hybrid search.

Every component logs through ``structlog`` under a ``search_service.<component>``
logger name, with sentence-case events and keyword context::

    logger.info("Search completed", index="articles", results_count=20)

The host application decides the output: call ``configure_logging`` (or
``configure_from_config`` with a settings object) once at startup to get JSON
lines for log shippers or a colored console format for local work.

Request context
- ``search_context(index=..., mode=...)`` binds fields to every line logged
  inside the block, including lines from concurrently running branches
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.stdlib import LoggerFactory, add_logger_name

LOGGER_PREFIX = "search_service"

# Client libraries that log every request or connection at INFO
CHATTY_LIBRARY_LOGGERS = ("httpx", "httpcore", "asyncpg")


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    log_format: str = "json",
) -> None:
    """Configure structured logging.

    Parameters
    - service_name: Identifier bound to each log line as ``service``
    - log_level: ``DEBUG``, ``INFO``, ``WARNING``, ``ERROR`` (case-insensitive)
    - log_format: ``json`` for production; ``console`` for local dev
    """
    level = getattr(logging, log_level.upper())

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    for name in CHATTY_LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_logger_name,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service_name)


def configure_from_config(config: Any, service_name: str = "hybrid-search") -> None:
    """Configure logging from ``search_log_level`` / ``search_log_format`` settings."""
    configure_logging(service_name, config.search_log_level, config.search_log_format)


def get_logger(component: str) -> structlog.BoundLogger:
    """Logger named ``search_service.<component>``."""
    return structlog.get_logger(f"{LOGGER_PREFIX}.{component}")


@contextmanager
def search_context(**context: Any) -> Iterator[None]:
    """Bind ``context`` to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(**context):
        yield


def log_performance(operation: str, duration_ms: float, **kwargs: Any) -> None:
    """Log the duration of a unit of work.

    Parameters
    - operation: Stable identifier for the measured work, e.g. ``index_batch``
    - duration_ms: Elapsed time in milliseconds
    - kwargs: Additional dimensions (index name, document count, ...)
    """
    get_logger("performance").info(
        "Operation completed",
        operation=operation,
        duration_ms=round(duration_ms, 3),
        **kwargs
    )
