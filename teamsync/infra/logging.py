"""Structured logging configuration using structlog.

Call setup_logging() once at process startup before any log calls. Every
event carries the client id, so logs from many event devices can be
merged and still be told apart.
"""

from __future__ import annotations

import logging

import structlog


def setup_logging(
    *,
    json_output: bool = True,
    log_level: str = "INFO",
    client_id: str | None = None,
) -> None:
    """Configure structlog for the engine host.

    Args:
        json_output: Render JSON lines (True) or dev-friendly console output.
        log_level: Minimum level emitted (DEBUG, INFO, WARNING, ERROR).
        client_id: Bound into every event as `client_id` when given.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if json_output:
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    if client_id:
        structlog.contextvars.bind_contextvars(client_id=client_id)
