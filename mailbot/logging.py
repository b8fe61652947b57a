"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import sys

import structlog

from .config import LogConfig

# Loggers whose chatter drowns out the bot's own events at DEBUG
_NOISY_LOGGERS = ("asyncio", "uvicorn.access")


def setup_logging(
    config: LogConfig | None = None,
    *,
    json: bool | None = None,
    level: str | None = None,
) -> None:
    """Configure structlog for the mail bot process.

    Parameters
    ----------
    config:
        Settings read from ``LOG_*`` env vars.  Defaults to ``LogConfig()``.
    json:
        Overrides ``config.json_output``.  JSON lines suit containers; set
        *False* for a human-friendly console renderer.
    level:
        Overrides ``config.level`` (e.g. ``"DEBUG"``, ``"INFO"``).
    """
    config = config or LogConfig()
    use_json = config.json_output if json is None else json
    level_name = (level or config.level).upper()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if use_json:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level_name)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.INFO, root.level))
