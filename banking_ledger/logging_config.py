"""
Structured Logging Configuration Module

JSON log lines for ledger operations. Every settled, failed or cancelled
transaction is logged with the acting user, the action and the record it
touched, so a transaction can be traced across log lines by its resource id.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Attributes log_action attaches to a record
CONTEXT_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")


class JSONFormatter(logging.Formatter):
    """One JSON object per record; empty context fields are left out"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(
    level: str = "INFO",
    logger_name: str = "banking_ledger",
    log_format: str = "json",
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Attach a single handler to the ledger's root logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Logger to configure; module loggers are its children
        log_format: "json" for structured output, "text" for plain lines
        log_file: Optional file path; logs go to stderr when omitted

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(logging.Formatter(TEXT_FORMAT) if log_format == "text" else JSONFormatter())

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    return logger


def setup_logging_from_config(cfg=None) -> logging.Logger:
    """Configure the ledger logger from LedgerConfig; call once at start-up"""
    if cfg is None:
        from .config import get_config
        cfg = get_config()
    return setup_logging(cfg.log_level, log_format=cfg.log_format, log_file=cfg.log_file)


def get_logger(name: str = "banking_ledger") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a ledger action with structured context.

    Args:
        logger: Logger instance
        level: Log level name (info, warning, error, ...)
        message: Human-readable message
        user_id: User on whose behalf the action ran
        action: Operation name, e.g. process_transaction
        resource: Affected record as "<kind>:<id>"
        correlation_id: Request id for tracing
        extra: Additional structured data
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    context = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra or None,
    }
    logger.log(levelno, message, extra={k: v for k, v in context.items() if v is not None})
