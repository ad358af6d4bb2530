"""
Log setup for the harvester, the scheduler daemon and the search CLI.

Services log through structlog with keyword fields; storage and connector
modules use plain `logging` with formatted messages. Both end up in one
stdout handler whose ProcessorFormatter runs the same processor chain,
so a repository warning raised mid-harvest carries the bound source_id
and run_id just like the controller's own lines. Output is JSON in
production and colored key=value text elsewhere.

Usage:
    setup_logging()
    with log_context(connector="pubmed"):
        logger.info("Connector search done", results=12)
"""

import logging
import sys
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import Token
from typing import Any

import structlog
from structlog.types import Processor

from litharvest.config.settings import get_settings

# Chatty below WARNING: one line per HTTP request or per APScheduler job fire
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "apscheduler", "asyncpg")

_CONTEXT_KEYS = ("source_id", "run_id", "connector")


def _context_first(logger, method_name: str, event_dict: dict) -> dict:
    """Put harvest/search correlation keys right after the event name."""
    ordered = {"event": event_dict.pop("event", "")}
    for key in _CONTEXT_KEYS:
        if key in event_dict:
            ordered[key] = event_dict.pop(key)
    ordered.update(event_dict)
    return ordered


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        _context_first,
    ]


def setup_logging() -> None:
    """
    Configure structlog and the stdlib root logger from Settings.

    Safe to call more than once; the root handler is replaced, not stacked.
    """
    settings = get_settings()
    shared = _shared_processors()

    if settings.is_production:
        final: list[Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        final = [structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            *shared,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *final],
    ))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_context(**kwargs: Any) -> Mapping[str, Token]:
    """
    Bind fields to every log line emitted from the current task.

    Returns tokens for restore_context(), which puts back whatever was
    bound before, so nested binds (a manual run inside the daemon) are safe.
    """
    return structlog.contextvars.bind_contextvars(**kwargs)


def restore_context(tokens: Mapping[str, Token]) -> None:
    structlog.contextvars.reset_contextvars(**tokens)


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    tokens = bind_context(**kwargs)
    try:
        yield
    finally:
        restore_context(tokens)
