"""
Structured logging configuration.

- Development / testing: human-readable colored lines
- Production: one JSON object per line (log aggregator compatible)
- Log level: LOG_LEVEL env variable

Every record emitted while a request is active is stamped with the
request id and the caller's org / user (see RequestContextFilter), so a
service-layer ``logger.info("Approval event %s", ...)`` can be joined to
the access line written by the timing middleware.

Ledger identifiers are passed through ``extra={...}``; the keys listed in
CONTEXT_FIELDS are the ones the JSON formatter promotes to top level.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

CONTEXT_FIELDS = (
    # request
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    # caller
    "org_id",
    "user_id",
    # ledger
    "commitment_id",
    "commitment_version",
    "change_request_id",
    "event_type",
    "action",
)

NOISY_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine", "alembic.runtime.migration")


class RequestContextFilter(logging.Filter):
    """Copy request id / org / user from ``flask.g`` onto records that lack them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not has_request_context():
            return True
        for attr, key in (("request_id", "request_id"), ("jwt_org_id", "org_id"), ("jwt_user_id", "user_id")):
            if getattr(record, key, None) is None:
                value = getattr(g, attr, None)
                if value is not None:
                    setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production / log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line formatter for local development."""

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
        request_id = getattr(record, "request_id", None)
        rid = f" [{request_id}]" if request_id else ""
        commitment_id = getattr(record, "commitment_id", None)
        version = getattr(record, "commitment_version", None)
        if commitment_id is not None:
            rid += f" c#{commitment_id}" + (f"v{version}" if version is not None else "")
        duration = getattr(record, "duration_ms", None)
        dur = f" ({duration:.0f}ms)" if duration is not None else ""

        line = f"{color}{ts} {record.levelname:<8}{self.RESET}{rid} {record.name}: {record.getMessage()}{dur}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install a single stderr handler on the root logger.

    Level: LOG_LEVEL env, else DEBUG outside production and INFO in it.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = (os.getenv("LOG_LEVEL") or ("INFO" if is_prod else "DEBUG")).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter())
    handler.setLevel(level)
    handler.addFilter(RequestContextFilter())

    root = logging.getLogger()
    # create_app runs once per test session; never stack handlers
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, "json" if is_prod else "readable")
