"""
Single-line JSON logs for the engine.

Each HTTP request and each worker cycle runs under its own correlation id, so
one queue tick or one webhook can be followed across services. Queue, lead
and provider identifiers passed through `extra=` become top-level fields.
"""
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar("revive_correlation_id", default=None)

EXTRA_KEYS = ("lead_id", "account_id", "queue_item_id", "reason", "provider", "error_code")

NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "twilio.http_client")


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(cid: str) -> None:
    _correlation_id.set(cid)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex


def mask_phone(phone: Optional[str]) -> str:
    """Recipient numbers never appear in full: keep country and area code only."""
    if not phone:
        return "unknown"
    return phone[:6] + "***" if len(phone) > 6 else phone


class StructuredJsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "correlation_id": get_correlation_id(),
            "message": record.getMessage(),
        }
        entry.update(
            (key, getattr(record, key)) for key in EXTRA_KEYS if getattr(record, key, None) is not None
        )
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """Route the root logger through one JSON stream handler. Called once at startup."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
