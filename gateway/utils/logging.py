"""Logging configuration."""

from datetime import datetime, timezone
from typing import Any, Dict
import json
import logging
import sys

from gateway.core.config import Settings

TEXT_FORMAT = "%(asctime)s %(levelname)-8s [{service}] %(name)s: %(message)s"

# Libraries that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "motor", "pymongo")

_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, tagged with the service and environment.

    Anything passed through ``extra=`` is copied to the top level.
    """

    def __init__(self, service_name: str, environment: str):
        super().__init__()
        self.static_fields = {"service": service_name, "environment": environment}

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **self.static_fields,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update(
            (key, value) for key, value in vars(record).items()
            if key not in _RECORD_ATTRS
        )
        return json.dumps(entry, default=str)


def build_formatter(settings: Settings) -> logging.Formatter:
    if settings.log_format == "json":
        return JSONFormatter(settings.service_name, settings.environment)
    return logging.Formatter(TEXT_FORMAT.format(service=settings.service_name))


def setup_logging(settings: Settings) -> None:
    """Route every logger to stdout through the configured formatter."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_formatter(settings))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)

    for name in ("uvicorn", "fastapi"):
        logging.getLogger(name).setLevel(settings.log_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
