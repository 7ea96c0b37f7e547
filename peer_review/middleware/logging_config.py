"""
Structured logging configuration.

Gating decisions (COI overrides, checklist overrides, fieldwork completion,
CAP transitions) are logged with ``extra=`` context such as ``review_id``
and ``event_type``.  Both formatters surface that context so a log line can
be matched to its audit row.

- LOG_FORMAT "json": one JSON object per line, stamped with SERVICE_NAME
- LOG_FORMAT "readable": colored single line with the context appended
- Unset: readable under debug/testing, json otherwise
- Inside a request, ``request_id`` and ``actor_id`` are filled in from ``g``
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Extra attributes copied into log entries when present on the record
_EXTRA_KEYS = (
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    "request_id",
    "actor_id",
    "review_id",
    "reviewer_profile_id",
    "organization_id",
    "cap_id",
    "item_code",
    "event_type",
)

# Context shown on readable lines, in this order
_READABLE_KEYS = ("event_type", "review_id", "item_code", "cap_id", "reviewer_profile_id", "actor_id")


class RequestContextFilter(logging.Filter):
    """Attach the current request id and actor to records that lack them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            if getattr(record, "request_id", None) is None:
                record.request_id = getattr(g, "request_id", None)
            if getattr(record, "actor_id", None) is None:
                actor = getattr(g, "actor", None)
                record.actor_id = actor.id if actor is not None else None
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record for log aggregation."""

    def __init__(self, service: str = "peer-review-engine"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "service": self.service,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        for key in _EXTRA_KEYS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val
        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line formatter for local runs."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        context = " ".join(
            f"{key}={getattr(record, key)}" for key in _READABLE_KEYS
            if getattr(record, key, None) is not None
        )
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            context = f"{context} [{duration:.0f}ms]".strip()
        base = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}"
        if context:
            base += f" | {context}"
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + self.formatException(record.exc_info)
        return base


def resolve_format(app) -> str:
    fmt = (app.config.get("LOG_FORMAT") or "").lower()
    if fmt in ("json", "readable"):
        return fmt
    if app.config.get("DEBUG") or app.config.get("TESTING"):
        return "readable"
    return "json"


def configure_logging(app):
    """
    Set up structured logging for the Flask app.

    LOG_LEVEL comes from app config, then the environment (default: INFO for
    json output, DEBUG otherwise).
    """
    is_testing = app.config.get("TESTING", False)
    fmt = resolve_format(app)

    level_name = app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL") or (
        "INFO" if fmt == "json" else "DEBUG"
    )
    level = getattr(logging, level_name.upper(), logging.INFO)

    if fmt == "json":
        formatter = JSONFormatter(app.config.get("SERVICE_NAME", "peer-review-engine"))
    else:
        formatter = ReadableFormatter()

    # Single root stream handler; cleared first to avoid duplicates in tests
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine", "alembic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
