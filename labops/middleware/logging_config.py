"""
Structured logging configuration.

Two output formats, chosen by ``LOG_FORMAT`` (``auto`` picks by environment):
    readable  colored one-liners for development; ledger and workpackage ids
              passed via ``extra=`` are appended in brackets
    json      one JSON object per line for log aggregation

Every record emitted inside a request is stamped with the request id set by
the timing middleware and the acting user from ``X-Actor``.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context, request

# Attributes lifted from ``extra={...}`` into the JSON payload.
REQUEST_FIELDS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id", "actor")
DOMAIN_FIELDS = (
    "project_id",
    "workpackage_id",
    "account_id",
    "allocation_id",
    "order_id",
    "transaction_id",
    "event_type",
)


class RequestContextFilter(logging.Filter):
    """Attach ``request_id`` and ``actor`` to records logged during a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            if getattr(record, "request_id", None) is None:
                record.request_id = getattr(g, "request_id", None)
            if getattr(record, "actor", None) is None:
                record.actor = request.headers.get("X-Actor")
        return True


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production / log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        for key in REQUEST_FIELDS + DOMAIN_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val
        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Human-readable colored formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",      # cyan
        "INFO": "\033[32m",       # green
        "WARNING": "\033[33m",    # yellow
        "ERROR": "\033[31m",      # red
        "CRITICAL": "\033[35m",   # magenta
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        color, reset = (self.COLORS.get(record.levelname, ""), self.RESET) if self.color else ("", "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tags = " ".join(
            f"{key.removesuffix('_id')}={getattr(record, key)}"
            for key in DOMAIN_FIELDS
            if getattr(record, key, None) is not None
        )
        line = f"{color}{ts} {record.levelname:<8}{reset} {record.name}: {record.getMessage()}"
        if tags:
            line += f" [{tags}]"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" [{duration:.0f}ms]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _resolve_format(app, is_prod: bool) -> str:
    fmt = (app.config.get("LOG_FORMAT") or "auto").lower()
    if fmt not in ("auto", "json", "readable"):
        fmt = "auto"
    if fmt == "auto":
        return "json" if is_prod else "readable"
    return fmt


def configure_logging(app):
    """
    Set up structured logging for the Flask app.

    LOG_LEVEL defaults to DEBUG in development and INFO elsewhere.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = (app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL")
                  or ("INFO" if is_prod else "DEBUG")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = _resolve_format(app, is_prod)
    formatter = JSONFormatter() if fmt == "json" else ReadableFormatter(color=sys.stderr.isatty())

    # Cleared first so repeated app creation in tests does not stack handlers.
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
