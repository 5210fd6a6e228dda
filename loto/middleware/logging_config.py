"""
Logging setup for the permit service.

JSON lines outside debug/testing, coloured one-line records otherwise.
``LOG_LEVEL`` and ``LOG_FORMAT`` (``json`` or ``readable``) override the
defaults.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Record attributes copied into JSON output when passed via ``extra=``.
EXTRA_FIELDS = (
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    "request_id",
    "permit_id",
    "identity",
    "role",
    "from_status",
    "to_status",
)

_LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
_RESET = "\033[0m"

_QUIET_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine")


def _has_exception(record: logging.LogRecord) -> bool:
    return bool(record.exc_info) and record.exc_info[0] is not None


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

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
        entry.update(
            (key, getattr(record, key))
            for key in EXTRA_FIELDS
            if getattr(record, key, None) is not None
        )
        if _has_exception(record):
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Coloured single-line output for a terminal."""

    def format(self, record: logging.LogRecord) -> str:
        color = _LEVEL_COLORS.get(record.levelno, "")
        parts = [
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:<8}{_RESET}",
            f"{record.name}: {record.getMessage()}",
        ]
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            parts.append(f"[{duration:.0f}ms]")
        request_id = getattr(record, "request_id", None)
        if request_id:
            parts.append(f"({request_id})")

        line = " ".join(parts)
        if _has_exception(record):
            line += "\n" + self.formatException(record.exc_info)
        return line


def _use_json(app) -> bool:
    chosen = os.getenv("LOG_FORMAT", "").strip().lower()
    if chosen in ("json", "readable"):
        return chosen == "json"
    return not (app.config.get("DEBUG") or app.config.get("TESTING"))


def configure_logging(app):
    """Install a single stderr handler on the root logger.

    Runs on every ``create_app``; whatever root handlers exist are replaced.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing
    as_json = _use_json(app)

    level_name = (os.getenv("LOG_LEVEL") or ("INFO" if is_prod else "DEBUG")).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if as_json else ReadableFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "json" if as_json else "readable")
