"""
observability/logger.py — DigitalSE Structured Logger

structlog on top of stdlib logging, configured from the `logging:` section
of config.yaml (LoggingConfig).

The rotating file under log_dir always receives JSON lines. The optional
stderr handler renders JSON or coloured text depending on json_format.
Every line carries timestamp, level, logger and event, plus session_id and
turn while a turn is in progress.

Usage:
    from digitalse.observability.logger import get_logger, setup_logging

    setup_logging(settings.logging)                 # once, at startup
    setup_logging(settings.logging, level="DEBUG")  # --log-level override
    log = get_logger(__name__)
    log.info("executor.step_started", tool="QueryDataFetcher", step=1)
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Optional

import structlog

from digitalse.config.settings import LoggingConfig

LOG_FILE_NAME = "digitalse.log"

# Raised to WARNING: chatty at INFO
_QUIET_LOGGERS = (
    "snowflake.connector",
    "snowflake.connector.connection",
    "snowflake.connector.network",
    "httpx",
    "httpcore",
)


def _pre_chain() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _formatter(json_format: bool) -> logging.Formatter:
    renderer = (
        structlog.processors.JSONRenderer()
        if json_format
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=_pre_chain(),
    )


def _handlers(config: LoggingConfig, level: int) -> list[logging.Handler]:
    log_dir = Path(config.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        filename=log_dir / LOG_FILE_NAME,
        maxBytes=config.max_file_size_mb * 1024 * 1024,
        backupCount=config.backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(_formatter(json_format=True))
    handlers: list[logging.Handler] = [file_handler]

    if config.console_output:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(_formatter(config.json_format))
        handlers.append(console)

    for handler in handlers:
        handler.setLevel(level)
    return handlers


def setup_logging(config: Optional[LoggingConfig] = None, level: Optional[str] = None) -> Path:
    """
    Configure structlog and stdlib logging. Call once at startup.

    Args:
        config: The `logging` section of Settings. Defaults apply when None.
        level:  Overrides config.level (the CLI's --log-level flag).

    Returns:
        Path of the JSON log file.
    """
    config = config or LoggingConfig()
    numeric_level = getattr(logging, (level or config.level).upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        handlers=_handlers(config, numeric_level),
        force=True,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    structlog.configure(
        processors=_pre_chain() + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return Path(config.log_dir) / LOG_FILE_NAME


def get_logger(name: str = "digitalse") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_session(session_id: str, turn: int) -> None:
    """Attach session_id and turn to every log line in the current async context."""
    structlog.contextvars.bind_contextvars(session_id=session_id, turn=turn)


def clear_session() -> None:
    structlog.contextvars.clear_contextvars()
