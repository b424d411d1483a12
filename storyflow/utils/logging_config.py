"""
Structured JSON logging configuration for Storyflow.

All log records are emitted as single-line JSON objects to the configured log
file, and WARNING and above to stderr.

Usage::

    from storyflow.utils.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("job finished", extra={"generation_id": gid, "duration_ms": 812})

For code that runs on behalf of one generation job::

    from storyflow.utils.logging_config import get_logger, GenerationAdapter

    raw = get_logger("storyflow.lifecycle")
    logger = GenerationAdapter(raw, generation_id="gen-1718-ab12")
    logger.info("backend call started")   # automatically includes generation_id
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, MutableMapping


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------

class JSONFormatter(logging.Formatter):
    """Emits each record as a single-line JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Merge extra fields (generation_id, event_type, etc.)
        for key in ("generation_id", "event_type", "agent", "action",
                     "duration_ms", "project_id", "metadata"):
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


# ---------------------------------------------------------------------------
# GenerationAdapter — attaches generation_id to every log call
# ---------------------------------------------------------------------------

class GenerationAdapter(logging.LoggerAdapter):
    """Logger adapter that injects ``generation_id`` into every record."""

    def __init__(self, logger: logging.Logger, generation_id: str, **extra: Any):
        super().__init__(logger, {"generation_id": generation_id, **extra})

    def process(
        self,
        msg: str,
        kwargs: MutableMapping[str, Any],
    ) -> tuple[str, MutableMapping[str, Any]]:
        extra = kwargs.setdefault("extra", {})
        extra.update(self.extra)
        return msg, kwargs


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

_CONFIGURED = False


def setup_logging(log_file: str | None = None, level: int | str | None = None) -> None:
    """Configure the root ``storyflow`` logger with JSON handlers.

    Safe to call multiple times; only the first call has effect.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return
    _CONFIGURED = True

    from storyflow.config import get_settings

    settings = get_settings()
    log_file = log_file or settings.log_file
    level = level or settings.log_level

    root = logging.getLogger("storyflow")
    root.setLevel(level)
    root.propagate = False

    formatter = JSONFormatter()

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setFormatter(formatter)
    root.addHandler(fh)

    # Stderr handler for docker / systemd journal visibility
    sh = logging.StreamHandler(sys.stderr)
    sh.setFormatter(formatter)
    sh.setLevel(logging.WARNING)
    root.addHandler(sh)


def get_logger(name: str = "storyflow") -> logging.Logger:
    """Return a child logger under the ``storyflow`` namespace.

    Automatically calls :func:`setup_logging` on first use.
    """
    setup_logging()
    if name.startswith("storyflow"):
        return logging.getLogger(name)
    return logging.getLogger(f"storyflow.{name}")
