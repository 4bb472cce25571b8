"""
Structured Logging Configuration Module

JSON line logging for ledger, loan and DPS operations. Every engine logs
through ``log_action`` so each line carries the actor, the action name, the
entity acted upon and the caller's correlation id.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Optional, TextIO

# Structured attributes copied from a record onto the JSON line when present
CONTEXT_FIELDS = ("correlation_id", "user_id", "branch_id", "action", "resource", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record; empty context fields are omitted"""

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "bank_ledger",
                  log_format: str = "json", stream: Optional[TextIO] = None) -> logging.Logger:
    """
    Configure the engine's root logger.

    Replaces any handler installed by a previous call, so calling this again
    (for example after ``reload_config``) never duplicates lines.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Root logger of the engine; module loggers are its children
        log_format: "json" for structured lines, anything else for plain text
        stream: Output stream, stderr by default

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    formatter = JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT)
    handler.setFormatter(formatter)

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    return logger


def get_logger(name: str = "bank_ledger") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               branch_id: Optional[str] = None, extra: Optional[dict] = None):
    """
    Log one engine action with its structured context.

    Args:
        logger: Module logger
        level: Level name (info, warning, error, ...)
        message: Human readable summary
        user_id: Actor from the caller context
        action: Stable action name such as ``loan_disbursed``
        resource: Identifier of the account, loan, DPS or transaction
        correlation_id: Request correlation id from the caller context
        branch_id: Branch scope of the caller
        extra: Additional fields; amounts are passed as strings
    """
    context = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "branch_id": branch_id,
        "extra": extra or None,
    }
    logger.log(getattr(logging, level.upper()), message,
               extra={k: v for k, v in context.items() if v is not None})
