"""
Structured logging for the ledger and the API

Every module logs under the "nivalus" logger tree. ``log_action`` attaches the
acting account, the action name and the resource to a record, and
``JSONFormatter`` writes them out as one JSON object per line.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


ROOT_LOGGER = "nivalus"
TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Record attributes set by log_action, in output order
_CONTEXT_FIELDS = ("user_id", "action", "resource", "details")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, context fields only when set"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", log_format: str = "json") -> logging.Logger:
    """
    Point the "nivalus" logger tree at stderr.

    Calling it again replaces the handler instead of adding a second one.
    ``log_format`` is "json" or "text".
    """
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(TEXT_FORMAT) if log_format == "text" else JSONFormatter())
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[int] = None, action: Optional[str] = None,
               resource: Optional[str] = None, extra: Optional[dict] = None):
    """Log ``message`` with the acting account, action and resource attached"""
    context = {
        "user_id": user_id,
        "action": action or None,
        "resource": resource or None,
        "details": extra or None,
    }
    logger.log(logging.getLevelName(level.upper()), message, extra=context)
