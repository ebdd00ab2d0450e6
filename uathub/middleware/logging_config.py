"""
Structured logging configuration.

Every record emitted while a request is being handled is stamped with the
request id and, on portal requests, the portal kind and actor type, so a
single tester's session can be followed through service-level log lines.

- LOG_FORMAT=json|readable overrides the per-environment default
  (readable in development/testing, JSON otherwise)
- LOG_LEVEL sets the level (DEBUG in development, INFO otherwise)
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Attributes copied from ``extra={...}`` / the request filter into output
CONTEXT_KEYS = (
    "request_id",
    "portal",
    "actor_type",
    "session_id",
    "item_id",
    "run_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
)

_LIBRARY_LOGGERS = ("werkzeug", "sqlalchemy.engine", "smtplib", "flask_limiter")


class RequestContextFilter(logging.Filter):
    """Fill request_id / portal / actor_type from ``g`` unless already set."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not has_request_context():
            return True
        if getattr(record, "request_id", None) is None:
            record.request_id = g.get("request_id")
        if getattr(record, "portal", None) is None:
            record.portal = g.get("portal")
        actor = g.get("actor")
        if actor is not None and getattr(record, "actor_type", None) is None:
            record.actor_type = actor.actor_type.value
        return True


def _context(record):
    return {
        key: getattr(record, key)
        for key in CONTEXT_KEYS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Coloured single-line output with a compact ``[rid portal actor]`` tag."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        ctx = _context(record)
        tag = " ".join(
            str(ctx[key]) for key in ("request_id", "portal", "actor_type") if key in ctx
        )
        line = "{color}{ts} {level:<8}{reset} {name}: {msg}".format(
            color=self.LEVEL_COLORS.get(record.levelno, ""),
            ts=datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
            level=record.levelname,
            reset=self.RESET,
            name=record.name,
            msg=record.getMessage(),
        )
        if "duration_ms" in ctx:
            line += f" ({ctx['duration_ms']:.0f}ms)"
        if tag:
            line += f" [{tag}]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _pick_format(app):
    forced = os.getenv("LOG_FORMAT", "").lower()
    if forced in ("json", "readable"):
        return forced
    if app.config.get("DEBUG") or app.config.get("TESTING"):
        return "readable"
    return "json"


def configure_logging(app):
    """Install one stderr handler on the root logger for this app."""
    fmt = _pick_format(app)
    default_level = "DEBUG" if app.config.get("DEBUG") else "INFO"
    level_name = os.getenv("LOG_LEVEL", default_level).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if fmt == "json" else ReadableFormatter())
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)

    root = logging.getLogger()
    # create_app() runs more than once per process under pytest
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not app.config.get("TESTING"):
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
