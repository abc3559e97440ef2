"""
Structured logging configuration using structlog.

Worker processes log one JSON object per event in production and colored
console lines in development. Every event carries the process's consumer
identity so logs from many workers in one consumer group can be told apart.
"""

import logging
import os
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from config.settings import get_settings

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("redis", "asyncio", "urllib3")


def _worker_identity(consumer_name: str) -> Processor:
    """Processor that stamps events with the worker's consumer name and pid."""
    pid = os.getpid()

    def add_identity(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("worker", consumer_name)
        event_dict.setdefault("pid", pid)
        return event_dict

    return add_identity


def setup_logging(level: str | None = None, log_format: str | None = None) -> None:
    """
    Configure structured logging for a worker process.

    Args:
        level: Log level override (defaults to settings.log_level)
        log_format: "json" or "console" override (defaults to settings.log_format)
    """
    settings = get_settings()
    level = (level or settings.log_level).upper()
    log_format = log_format or settings.log_format

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _worker_identity(settings.streams.consumer_name),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer: Processor
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
        event_processors = [structlog.processors.dict_tracebacks]
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
        event_processors = []

    structlog.configure(
        processors=[
            *shared_processors,
            *event_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # stdlib records (redis-py, asyncio) go through the same renderer
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, level))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LogContext:
    """
    Context manager binding temporary key/values to every log event.

    Nested contexts restore the outer values on exit rather than dropping
    the keys, so a recovery pass can bind a message id inside a stage
    context.
    """

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> "LogContext":
        self._tokens = structlog.contextvars.bind_contextvars(**self.kwargs)
        return self

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)


def log_context(**kwargs: Any) -> LogContext:
    """Add context to all logs within the context manager."""
    return LogContext(**kwargs)
