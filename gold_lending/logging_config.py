"""
Structured Logging Configuration Module

One JSON object per log line so that loan and payment activity can be
filtered by action, loan_id or user_id downstream.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


# Attributes that log_action() attaches to records
STRUCTURED_FIELDS = ("action", "resource", "loan_id", "user_id", "extra")

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(
    level: str = "INFO",
    logger_name: str = "gold_lending",
    log_format: str = "json"
) -> logging.Logger:
    """
    Attach a single stream handler to the lending logger

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        logger_name: Root of the hierarchy; service modules log beneath it
        log_format: "json" for log shippers, "text" for a terminal

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)

    # Calling twice must not duplicate output
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(TEXT_FORMAT) if log_format == "text" else JSONFormatter())
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False

    return logger


def get_logger(name: str = "gold_lending") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, resource: Optional[str] = None,
               loan_id: Optional[str] = None, user_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a lending action with its structured fields

    Args:
        logger: Module logger
        level: info, warning, error, ...
        message: Human-readable message
        action: Operation name, e.g. record_payment
        resource: loan, payment, gold_item
        loan_id: Loan the action concerns
        user_id: Staff user performing the action
        extra: Amounts, counts and other details
    """
    values = dict(action=action, resource=resource, loan_id=loan_id, user_id=user_id, extra=extra)
    fields = {name: value for name, value in values.items() if value}
    logger.log(getattr(logging, level.upper()), message, extra=fields)
