"""rugsim.core.log

Logging setup for the ``rugsim`` logger tree.

Modules log snake_case event names with structured ``extra`` fields:

    logger.warning("exposure_clamped", extra={"strategy_id": sid, "value": v})

The JSON formatter keeps those fields; the text formatter appends them.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any

from rugsim.core.config import LoggingConfig
from rugsim.core.events import canonical_json

ROOT_LOGGER = "rugsim"

# Attributes every LogRecord carries. Anything else came in through `extra`.
_RESERVED = frozenset(
    vars(logging.LogRecord("x", logging.INFO, "x", 0, "x", None, None)).keys()
) | {"message", "asctime", "taskName"}


def record_extras(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _RESERVED}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        doc: dict[str, Any] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        doc.update(record_extras(record))
        if record.exc_info:
            doc["exc"] = self.formatException(record.exc_info)
        return canonical_json(json.loads(json.dumps(doc, default=str)))


class TextFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__(fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = record_extras(record)
        if extras:
            line += " " + " ".join(f"{k}={v}" for k, v in sorted(extras.items()))
        return line


def configure_logging(cfg: LoggingConfig, *, stream: Any = None) -> logging.Logger:
    """Install one handler on the ``rugsim`` logger. Safe to call repeatedly."""

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(str(cfg.level).upper())
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter() if cfg.json_output else TextFormatter())
    logger.addHandler(handler)
    return logger
