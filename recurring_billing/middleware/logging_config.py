"""
Structured logging configuration.

Two output formats, chosen by ``LOG_FORMAT``:

    readable   one line per record, engine identifiers appended as key=value
    json       one JSON object per record, for log aggregation

Engine modules pass identifiers through ``extra=`` (work_order_id,
period_id, invoice_id, event_type, reason), so a skipped or failed
billing can be followed per work order and period in either format.
"""

import json
import logging
import sys
from datetime import datetime, timezone

# Request-scoped fields set by the timing middleware
REQUEST_KEYS = ("request_id", "method", "path", "status", "duration_ms")

# Entity and event fields set by the engine services
ENGINE_KEYS = (
    "tenant_id",
    "work_order_id",
    "period_id",
    "task_id",
    "invoice_id",
    "event_type",
    "reason",
)


def _context(record: logging.LogRecord, keys) -> dict:
    return {k: getattr(record, k) for k in keys if getattr(record, k, None) is not None}


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(_context(record, REQUEST_KEYS))
        engine = _context(record, ENGINE_KEYS)
        if engine:
            entry["ctx"] = engine
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``12:00:01 WARNING  billing_trigger: Billing skipped ... [period_id=7 event_type=billing.skip]``"""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        name = record.name.rsplit(".", 1)[-1]
        line = f"{ts} {record.levelname:<8} {name}: {record.getMessage()}"
        ctx = _context(record, ENGINE_KEYS)
        if ctx:
            line += " [" + " ".join(f"{k}={v}" for k, v in ctx.items()) + "]"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger from app config."""
    level_name = (app.config.get("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    use_json = (app.config.get("LOG_FORMAT") or "readable").lower() == "json"

    # Cleared first so repeated create_app() calls do not stack handlers
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if use_json else ReadableFormatter())
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine", "alembic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not app.config.get("TESTING"):
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "json" if use_json else "readable")
