"""
JSON logging for the webhook service.

One JSON object per line: timestamp, level, correlation_id, module, message,
plus whichever webhook fields the call passed in `extra`.

The correlation id lives in a ContextVar. CorrelationIdMiddleware sets it per
request. Dispatcher workers are long-lived tasks that never see the request
context, so each work item carries the submitter's id and the worker sets it
(or clears it) before running the item.
"""
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Webhook attributes copied from LogRecord extras into the JSON line
EXTRA_FIELDS = ("event_id", "event_type", "processing_status", "attempt", "dispatch_mode")

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx")


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: Optional[str]) -> None:
    """Bind cid to the current context; None clears it."""
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex


class StructuredJsonFormatter(logging.Formatter):
    """Render a record as a single JSON line tagged with the current correlation id."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        for key in EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value

        return json.dumps(entry, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """Route every logger through one stdout handler emitting JSON lines."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
