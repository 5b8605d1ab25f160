"""Structured logging for the API and worker processes.

Two kinds of callers share one output stream:

- most modules log through ``logging.getLogger(__name__)`` with ``%s`` args
- job lifecycle events use `get_logger` and pass fields as keywords, so
  ``job_id`` / ``kind`` / ``ref_id`` arrive as separate JSON keys

Records from both are rendered by a single structlog ``ProcessorFormatter``:
console output when ``REPOTRACK_DEBUG`` is set, JSON lines otherwise.
"""

import logging
import sys
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from repotrack_api.config import Settings

# Third-party loggers that log every request at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "aiosqlite", "redis")


def _pre_chain() -> list[structlog.types.Processor]:
    """Processors applied to every record before rendering."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]


def _renderer(debug: bool) -> list[structlog.types.Processor]:
    if debug:
        return [structlog.dev.ConsoleRenderer()]
    return [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]


def configure_logging(settings: "Settings") -> None:
    """Route stdlib and structlog records through one JSON/console handler.

    Safe to call more than once; the root handler is replaced each time.
    """
    level = logging.getLevelName(settings.log_level)

    structlog.configure(
        processors=[
            *_pre_chain(),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[*_pre_chain(), structlog.stdlib.ExtraAdder()],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *_renderer(settings.debug),
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Structured logger for key-value events."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]
