"""
Structured logging configuration for the ServiceBell backend.

Provides JSON-formatted logging with file rotation for production environments
and human-readable console logging for development.

Loggers:
- api: HTTP requests, responses, authentication failures
- services: Outbox, subscription registry and sync bookkeeping
- dispatch: Delivery dispatcher, push gateway calls, scheduler wake-ups
- changes: Change feed publishers and stream subscribers
- db: Database errors and maintenance runs
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional


LOGGER_NAMES = ["api", "services", "dispatch", "changes", "db"]

# Attributes present on every LogRecord; anything else came in through extra={...}
_RESERVED_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime", "taskName"}


class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per log record.

    Each record includes:
    - timestamp: ISO 8601 format (UTC)
    - level: Log level (INFO, ERROR, etc.)
    - logger: Logger name (servicebell.api, servicebell.dispatch, ...)
    - message: Log message
    - module / function / line: call site
    - exception: formatted traceback, when present
    - every field passed through ``extra={...}``
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS and key not in log_data:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable formatter for console output in development.

    Format: [TIMESTAMP] LEVEL - LOGGER - MESSAGE
    Example: [2026-03-02 10:30:45] INFO - servicebell.dispatch - Dispatch batch finished
    """

    def __init__(self):
        super().__init__(
            fmt="[%(asctime)s] %(levelname)s - %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )


def _get_log_level() -> int:
    """
    Get log level from environment variable.

    Environment Variables:
        SERVICEBELL_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR, CRITICAL (default INFO)
    """
    level_str = os.environ.get("SERVICEBELL_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_str, logging.INFO)


def _get_log_dir() -> Optional[Path]:
    """
    Get the log directory, if file logging was requested.

    Environment Variables:
        SERVICEBELL_LOG_DIR: Directory for rotating log files (unset = stdout only)
    """
    log_dir_str = os.environ.get("SERVICEBELL_LOG_DIR")
    if not log_dir_str:
        return None
    log_dir = Path(log_dir_str)
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def _use_json_format() -> bool:
    """
    Decide between JSON and console output.

    Environment Variables:
        SERVICEBELL_LOG_FORMAT: "json" or "console"
        SERVICEBELL_ENV: production defaults to json, anything else to console
    """
    fmt = os.environ.get("SERVICEBELL_LOG_FORMAT")
    if fmt:
        return fmt.lower() == "json"
    return os.environ.get("SERVICEBELL_ENV", "development").lower() == "production"


def configure_logging() -> Dict[str, logging.Logger]:
    """
    Configure structured logging for the ServiceBell backend.

    Behavior:
    - JSON format (production or SERVICEBELL_LOG_FORMAT=json), console otherwise
    - With SERVICEBELL_LOG_DIR set, one rotating file per logger
      (10MB max size, 5 backups); stdout otherwise

    Returns:
        Dictionary mapping short logger names to configured Logger instances

    Example:
        >>> loggers = configure_logging()
        >>> loggers["dispatch"].info("Intent sent", extra={"intent_id": 42})
    """
    log_level = _get_log_level()
    log_dir = _get_log_dir()
    formatter = JSONFormatter() if _use_json_format() else ConsoleFormatter()

    loggers = {}

    for logger_name in LOGGER_NAMES:
        logger = logging.getLogger(f"servicebell.{logger_name}")
        logger.setLevel(log_level)
        logger.propagate = False
        logger.handlers.clear()

        if log_dir is not None:
            handler = logging.handlers.RotatingFileHandler(
                log_dir / f"{logger_name}.log",
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8"
            )
        else:
            handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

        loggers[logger_name] = logger

    return loggers


_loggers: Optional[Dict[str, logging.Logger]] = None


def get_logger(name: str) -> logging.Logger:
    """
    Get a configured logger by name.

    Args:
        name: Logger name (api, services, dispatch, changes, db)

    Returns:
        Configured Logger instance

    Raises:
        ValueError: If logger name is not recognized
    """
    global _loggers

    if _loggers is None:
        _loggers = configure_logging()

    if name not in _loggers:
        raise ValueError(
            f"Unknown logger name: {name}. "
            f"Valid names: {', '.join(_loggers.keys())}"
        )

    return _loggers[name]


def init_logging() -> Dict[str, logging.Logger]:
    """
    Initialize logging configuration (called once before the app is built).

    Returns:
        Dictionary of configured loggers
    """
    global _loggers
    _loggers = configure_logging()
    return _loggers
