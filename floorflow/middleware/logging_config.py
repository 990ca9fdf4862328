"""
Structured logging configuration.

Two formatters share one view of a log record: the HTTP request fields set by
the timing middleware, and the workflow fields (pipeline, unit, event type,
collaborator) that services pass through ``extra=``.

- Development: one readable line, workflow scope in brackets
- Production: JSON, workflow fields nested under ``"workflow"``
- Log level: LOG_LEVEL env variable
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

REQUEST_KEYS = ("request_id", "method", "path", "status", "duration_ms", "remote_addr")
WORKFLOW_KEYS = ("pipeline_id", "project_id", "asset_type", "asset_id", "event_type", "collaborator")


def _collect(record: logging.LogRecord, keys) -> dict:
    return {key: getattr(record, key) for key in keys if getattr(record, key, None) is not None}


def workflow_scope(record: logging.LogRecord) -> str:
    """Compact ``pipeline=3 render/12 retry_started via generator`` label, or ''."""
    fields = _collect(record, WORKFLOW_KEYS)
    parts = []
    if "pipeline_id" in fields:
        parts.append(f"pipeline={fields['pipeline_id']}")
    if "asset_id" in fields:
        parts.append(f"{fields.get('asset_type', 'unit')}/{fields['asset_id']}")
    if "event_type" in fields:
        parts.append(fields["event_type"])
    if "collaborator" in fields:
        parts.append(f"via {fields['collaborator']}")
    return " ".join(parts)


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "line": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(_collect(record, REQUEST_KEYS))
        workflow = _collect(record, WORKFLOW_KEYS)
        if workflow:
            entry["workflow"] = workflow
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line output for development."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        line = (f"{color}{datetime.now():%H:%M:%S} {record.levelname:<8}{self.RESET} "
                f"{record.name}: {record.getMessage()}")
        scope = workflow_scope(record)
        if scope:
            line += f" [{scope}]"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install one stderr handler on the root logger.

    JSON outside debug/testing, readable otherwise. Default level is INFO in
    production and DEBUG elsewhere.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter())
    handler.setLevel(level)

    # replaced, not appended: tests build the app more than once
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "JSON" if is_prod else "readable")
