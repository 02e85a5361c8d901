"""Structured JSON logging for the connection monitor."""

import json
import logging
from datetime import datetime, timezone


class JsonFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record):
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "component": record.name.replace("monitor.", ""),
            "level": record.levelname,
            "message": record.getMessage(),
        }
        if hasattr(record, "log_data"):
            entry["data"] = record.log_data
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def get_logger(
    component: str,
    log_file: str | None = None,
    level: int = logging.INFO,
) -> logging.Logger:
    """Return a named logger that emits structured JSON.

    Args:
        component: Short name for the component (e.g. "sweep").
        log_file: Optional path; writes JSON lines to this file instead of stderr.
        level: Logging level, defaults to INFO.

    Returns:
        A ``logging.Logger`` instance named ``monitor.<component>``.
    """
    logger = logging.getLogger(f"monitor.{component}")
    logger.setLevel(level)

    if not logger.handlers:
        if log_file:
            handler = logging.FileHandler(log_file)
        else:
            handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)

    return logger
