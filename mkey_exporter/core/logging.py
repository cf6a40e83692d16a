"""Logging configuration for mkey-exporter.

Output goes to stdout in one of two shapes, picked by LOG_JSON:

  plain (default):
    2024-05-01T12:00:00.123Z INFO     mkey_exporter.services.refresh  Refreshed 5120 keys from cache-1:11211 in 41.2ms  host=cache-1:11211
    2024-05-01T12:01:00.007Z WARNING  mkey_exporter.services.refresh  Failed to connect to cache server cache-1:11211: ...  host=cache-1:11211  [refresh.py:128]

  json:
    {"timestamp": "2024-05-01T12:00:00.123Z", "level": "INFO", "logger": "...",
     "message": "Refreshed 5120 keys ...", "host": "cache-1:11211", "keys": 5120, "duration_ms": 41.2}

Timestamps are UTC.  The refresh loop and reconciler attach their context
with `extra=`; the fields listed in CONTEXT_FIELDS are picked up by both
formatters.
"""

from __future__ import annotations

import json
import logging
import sys
import time

CONTEXT_FIELDS = ("host", "rule_group", "keys", "label_sets", "deleted", "duration_ms")

# Only these are repeated on plain lines; the numbers are already in the message.
_PLAIN_CONTEXT = ("host", "rule_group")

_QUIET_LOGGERS = ("uvicorn", "uvicorn.access", "uvicorn.error", "asyncio")


def _context(record: logging.LogRecord, fields: tuple[str, ...]) -> dict[str, object]:
    values = {}
    for key in fields:
        value = getattr(record, key, None)
        if value is not None:
            values[key] = value
    return values


class _UtcFormatter(logging.Formatter):
    converter = time.gmtime

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        base = time.strftime("%Y-%m-%dT%H:%M:%S", self.converter(record.created))
        return f"{base}.{int(record.msecs):03d}Z"


class _ContainerFormatter(_UtcFormatter):
    """One line per record.  WARNING and above end with [file:line]."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-8s %(name)s  %(message)s")

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        for key, value in _context(record, _PLAIN_CONTEXT).items():
            line += f"  {key}={value}"
        if record.levelno >= logging.WARNING:
            line += f"  [{record.filename}:{record.lineno}]"
        return line


class _JsonFormatter(_UtcFormatter):
    """JSON Lines; context fields become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_context(record, CONTEXT_FIELDS))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level_name: str, *, json_format: bool = False) -> None:
    """Send everything to stdout at `level_name`; uvicorn stays at WARNING or above."""
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter() if json_format else _ContainerFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
