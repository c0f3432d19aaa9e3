"""structlog setup for the agent engine and per-turn log context."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

from nyaagent.config import get_settings

# Per-request lines from the HTTP client are only interesting at DEBUG.
_CHATTY_LOGGERS = ("httpx", "httpcore")


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Route stdlib logging through structlog's formatter on stderr.

    Args:
        level: Log level name; defaults to LOG_LEVEL.
        json_output: Force JSON output. If None, JSON when APP_ENV=prod or LOG_JSON is set.
    """
    settings = get_settings()
    log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    if json_output is None:
        json_output = settings.app_env == "prod" or bool(settings.log_json)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    quiet_level = logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)


@contextmanager
def log_context(**values: object) -> Iterator[None]:
    """Bind ``values`` to every log record emitted inside the block."""
    tokens = structlog.contextvars.bind_contextvars(**values)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
