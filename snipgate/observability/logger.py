"""
snipgate.observability.logger — Structured JSON logging.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from snipgate.core.context import current_request_id
from snipgate.utils.config import ObservabilityConfig


class JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None) or current_request_id()
        if request_id:
            entry["request_id"] = request_id
        if hasattr(record, "fragment_id"):
            entry["fragment_id"] = record.fragment_id
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(config: ObservabilityConfig):
    """Configure the snipgate logger with a JSON file handler and a console handler.

    Only the package logger is touched; the host owns the root logger.
    """
    log_dir = Path(config.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    # File handler: structured JSON
    file_handler = logging.FileHandler(str(log_dir / config.log_file), encoding="utf-8")
    file_handler.setFormatter(JSONFormatter())
    file_handler.setLevel(logging.DEBUG)

    # Console handler: human readable
    console_handler = logging.StreamHandler()
    console_fmt = logging.Formatter(
        "%(asctime)s │ %(levelname)-7s │ %(name)-28s │ %(message)s",
        datefmt="%H:%M:%S",
    )
    console_handler.setFormatter(console_fmt)
    console_handler.setLevel(getattr(logging, config.console_level.upper(), logging.INFO))

    package_logger = logging.getLogger("snipgate")
    package_logger.setLevel(logging.DEBUG)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.addHandler(file_handler)
    package_logger.addHandler(console_handler)
    return package_logger
