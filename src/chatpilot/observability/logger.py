"""
observability/logger.py — ChatPilot Structured Logger

structlog routed through stdlib logging, so the OpenAI and Telegram SDK
loggers end up in the same sinks as ChatPilot's own events:

  chatpilot.log   rotating file, always JSON
  stdout          coloured key=value lines, or JSON when json_format=True

Every line carries timestamp, level, logger and event. Lines emitted while
an inbound event is being handled also carry channel_id / user_id (see
bind_channel(), called by ChatTransport for each handler task).

Usage:
    from chatpilot.observability.logger import get_logger, setup_logging

    setup_logging(level="INFO", log_dir="./data/logs")   # once, in main.py
    log = get_logger(__name__)
    log.info("session.initialized", thread_id="thread_abc")
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any

import structlog

LOG_FILE_NAME = "chatpilot.log"

# Per-request INFO lines from the SDKs' HTTP clients
_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "telegram", "telegram.ext")

_PRE_CHAIN: list[Any] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def _formatter(renderer: Any) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=_PRE_CHAIN,
    )


def setup_logging(
    level: str = "INFO",
    log_dir: str | Path = "./data/logs",
    json_format: bool = True,
    console_output: bool = True,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Configure structlog + stdlib logging. Safe to call again (handlers are replaced).

    Args:
        level:          DEBUG | INFO | WARNING | ERROR | CRITICAL
        log_dir:        Directory for the rotating JSON log file.
        json_format:    Console renders JSON instead of coloured dev output.
        console_output: Emit to stdout at all (off for the console REPL).
        max_bytes:      Rotate the log file at this size.
        backup_count:   Rotated files to keep.
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    file_handler = logging.handlers.RotatingFileHandler(
        filename=log_path / LOG_FILE_NAME,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
    handlers: list[logging.Handler] = [file_handler]

    if console_output:
        console_renderer = (
            structlog.processors.JSONRenderer()
            if json_format
            else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
        )
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(_formatter(console_renderer))
        handlers.append(console_handler)

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    structlog.configure(
        processors=_PRE_CHAIN + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "chatpilot", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """Module logger, optionally with values bound to every line it emits."""
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


def bind_channel(channel_id: str, user_id: str | None = None) -> None:
    """
    Attach channel context to log lines of the current task.

    contextvars are copied into tasks created afterwards, so streamer tasks
    started while handling an event keep the event's channel_id.
    """
    values: dict[str, Any] = {"channel_id": channel_id}
    if user_id is not None:
        values["user_id"] = user_id
    structlog.contextvars.bind_contextvars(**values)


def clear_channel() -> None:
    structlog.contextvars.clear_contextvars()
