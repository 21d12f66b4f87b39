from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from termcolor import colored

_EXTRA_FIELDS = ("scope", "subscription_id", "assignment_id", "state", "reason")
_LEVEL_COLORS = {"WARNING": "yellow", "ERROR": "red", "CRITICAL": "red", "DEBUG": "cyan"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, carrying the orphansweep extra fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        for key in _EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        return json.dumps(entry)


class ColorFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        color = _LEVEL_COLORS.get(record.levelname)
        return colored(line, color) if color else line


def configure_logging(level: str = "INFO", *, json_format: bool = False) -> None:
    handler = logging.StreamHandler(sys.stderr)
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(ColorFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger("orphansweep")
    root.setLevel(getattr(logging, (level or "INFO").upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(handler)
    root.propagate = False
