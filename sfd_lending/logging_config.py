"""
Structured Logging Configuration Module

JSON log lines for lending operations. Services log through
``log_action`` so every mutation carries the acting user, the action name
and the loan or grant it touched.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .config import LendingConfig


# Optional record attributes copied into the JSON line when set
STRUCTURED_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per log record"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.module,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "sfd_lending", log_format: str = "json") -> logging.Logger:
    """
    Attach a single console handler to the package logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Logger to configure; child loggers inherit it
        log_format: "json" for structured lines, anything else for plain text

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    return logger


def configure_logging(config: "LendingConfig") -> logging.Logger:
    """Set up the package logger from LendingConfig"""
    return setup_logging(config.log_level, log_format=config.log_format)


def get_logger(name: str = "sfd_lending") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a lending action with structured fields.

    Values in ``extra`` are stringified (Decimal amounts stay exact);
    None values are kept so a missing reference is visible in the line.
    """
    fields = {
        name: value for name, value in (
            ("user_id", user_id),
            ("action", action),
            ("resource", resource),
            ("correlation_id", correlation_id),
        ) if value
    }
    if extra:
        fields["extra"] = {key: None if value is None else str(value) for key, value in extra.items()}

    logger.log(getattr(logging, level.upper()), message, extra=fields)
