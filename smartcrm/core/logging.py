"""Logging setup: stdout handler with a text or JSON format.

Modules log through ``logging.getLogger(__name__)``. The orchestrator passes
``request_id`` / ``provider`` / ``operation`` (and ``attempt`` on retry logs)
as ``extra``. The JSON format keeps them as top-level fields; the text format
appends them as ``key=value`` pairs.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from smartcrm.core.config import Settings, settings


# LogRecord extras copied into every log line
CONTEXT_FIELDS = ("request_id", "provider", "operation", "attempt")


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter for production."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = self.formatException(record.exc_info)
        for attr in CONTEXT_FIELDS:
            if hasattr(record, attr):
                log_data[attr] = getattr(record, attr)
        return json.dumps(log_data, ensure_ascii=False)


class ContextTextFormatter(logging.Formatter):
    """Human-readable format with request context appended."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = " ".join(f"{attr}={getattr(record, attr)}" for attr in CONTEXT_FIELDS if hasattr(record, attr))
        return f"{line} | {context}" if context else line


def setup_logging(cfg: Settings | None = None) -> None:
    """Configure logging for the entire application."""
    cfg = cfg or settings
    level = getattr(logging, cfg.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    # Remove existing handlers
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    if cfg.log_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            ContextTextFormatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root.addHandler(handler)

    # Suppress noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
