from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import structlog

from config.settings import settings


class ActivityLogger:
    """
    Structured activity log for one component of the bot.

    Every event is appended as a JSON line to ACTIVITY_LOG_PATH (the audit
    trail of who asked for which article and what happened to it) and
    echoed to stderr through structlog.

    Record schema:
    {
        "timestamp": "2025-01-01T00:00:00+00:00",
        "level":     "INFO",
        "event":     "conversation_started",
        "component": "workflow",
        "ticket_id": "TECH-456",   (optional)
        "run_id":    "uuid",       (optional, one per conversation)
        "thread":    "C123:17...", (from bound contextvars, optional)
        ...extra_fields
    }

    Fields bound with structlog.contextvars.bound_contextvars() are merged
    into every record written inside that block.
    """

    _write_lock = threading.Lock()

    def __init__(self, component: str, log_path: Optional[str] = None) -> None:
        self.component = component
        self._log_path = Path(log_path or settings.activity_log_path)
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._console = structlog.get_logger(component)

    def _write(self, level: str, event: str, **fields: Any) -> dict[str, Any]:
        record: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "component": self.component,
        }
        record.update(structlog.contextvars.get_contextvars())
        record.update({k: v for k, v in fields.items() if v is not None})

        line = json.dumps(record, default=str)
        with self._write_lock:
            with open(self._log_path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

        console_fields = {k: v for k, v in record.items() if k not in ("timestamp", "level", "event")}
        getattr(self._console, level.lower())(event, **console_fields)
        return record

    # ── Public interface ──────────────────────────────────────────────────────

    def debug(self, event: str, **fields: Any) -> None:
        if settings.log_level.upper() == "DEBUG":
            self._write("DEBUG", event, **fields)

    def info(self, event: str, **fields: Any) -> None:
        self._write("INFO", event, **fields)

    def warning(self, event: str, **fields: Any) -> None:
        self._write("WARNING", event, **fields)

    def error(self, event: str, exc: Optional[BaseException] = None, **fields: Any) -> None:
        if exc is not None:
            fields.setdefault("error_type", type(exc).__name__)
            fields.setdefault("error_message", str(exc))
        self._write("ERROR", event, **fields)
