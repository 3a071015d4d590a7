"""
Structured JSON logging for the indexer process.

Every module logs through ``logging.getLogger(__name__)`` and attaches context
with ``extra={"event": "indexer.<name>", ...}``; the formatter installed here
turns those extras into top-level JSON fields so log shippers can filter on
``event``.

Usage:
    from mnee_indexer.logging_config import setup_logging

    setup_logging(level="INFO", log_file="/var/log/mnee/indexer.json")
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pythonjsonlogger import jsonlogger

ROOT_LOGGER_NAME = "mnee_indexer"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding timestamp, environment, service and source location."""

    def __init__(
        self,
        fmt: str = "%(timestamp)s %(level)s %(name)s %(message)s",
        environment: str | None = None,
        service_name: str = ROOT_LOGGER_NAME,
    ):
        super().__init__(fmt=fmt)
        self.environment = environment or "production"
        self.service_name = service_name

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        if not log_record.get("timestamp"):
            log_record["timestamp"] = (
                datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z")
            )
        log_record["environment"] = self.environment
        log_record["service"] = self.service_name
        if not log_record.get("level"):
            log_record["level"] = record.levelname.lower()
        log_record["source"] = {
            "function": record.funcName,
            "module": record.module,
            "line": record.lineno,
        }


def setup_logging(
    name: str = ROOT_LOGGER_NAME,
    log_file: str | None = None,
    level: str = "INFO",
    environment: str = "production",
    enable_console: bool = True,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Configure JSON logging on the package logger.

    Args:
        name: Logger to configure; children (``mnee_indexer.sync`` ...) inherit it
        log_file: Optional path for a rotating JSON log file
        level: Logging level name
        environment: Environment label stamped on every record
        enable_console: Whether to log to stdout
        max_bytes: Size at which the log file rotates
        backup_count: Number of rotated files to keep

    Returns:
        The configured logger
    """
    logger = logging.getLogger(name)
    numeric_level = getattr(logging, level.upper())
    logger.setLevel(numeric_level)
    logger.propagate = False

    # Reconfiguring must not duplicate output
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = CustomJsonFormatter(environment=environment, service_name=name.split(".")[0])

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        try:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                filename=log_file,
                maxBytes=max_bytes,
                backupCount=backup_count,
            )
            file_handler.setLevel(numeric_level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(
                "Could not create file handler for %s: %s",
                log_file,
                e,
                extra={"event": "logging.file_handler_failed"},
            )

    # web3 and asyncio are chatty at DEBUG
    for noisy in ("web3", "urllib3", "asyncio"):
        logging.getLogger(noisy).setLevel(max(numeric_level, logging.WARNING))

    return logger
