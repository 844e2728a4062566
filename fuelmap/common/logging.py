"""JSON logging with stable schema."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from fuelmap.common.constants import JSON_LOG_FIELDS
from fuelmap.common.time_utils import utc_timestamp_iso

ROOT_LOGGER_NAME = "fuelmap"


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": utc_timestamp_iso(),
            "level": record.levelname,
            "component": getattr(record, "component", None) or record.name,
            "event": getattr(record, "event", None),
            "status": getattr(record, "status", None),
            "source": getattr(record, "source", None),
            "table_id": getattr(record, "table_id", None),
            "attempt": getattr(record, "attempt", None),
            "duration_ms": getattr(record, "duration_ms", None),
            "rows_in": getattr(record, "rows_in", None),
            "rows_out": getattr(record, "rows_out", None),
            "error_code": getattr(record, "error_code", None),
            "message": record.getMessage(),
        }
        for field in JSON_LOG_FIELDS:
            payload.setdefault(field, None)
        return json.dumps(payload, ensure_ascii=False, default=str)


def get_logger(component: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{component}")


def _json_handler(handler: logging.Handler) -> logging.Handler:
    handler.setFormatter(JsonLineFormatter())
    return handler


def build_logger(level: str = "INFO", log_path: Path | None = None) -> logging.Logger:
    """Send every ``fuelmap.*`` logger to stderr, and to ``log_path`` when given, as JSON lines."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level.upper())
    logger.handlers.clear()
    logger.addHandler(_json_handler(logging.StreamHandler()))

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.addHandler(_json_handler(logging.FileHandler(log_path, encoding="utf-8")))
    return logger


def log_event(logger: logging.Logger, message: str, *, level: int = logging.INFO, **event_fields: Any) -> None:
    logger.log(level, message, extra=event_fields)
