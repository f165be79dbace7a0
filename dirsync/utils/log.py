"""Logging setup for dirsync.

Everything logs under the ``dirsync`` logger hierarchy. Structured fields go
in ``extra={"context": {...}}``; the JSON formatter emits them as a nested
object and the console handler appends them as ``key=value`` pairs.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from rich.logging import RichHandler

ROOT_LOGGER = "dirsync"


@dataclass(frozen=True)
class LoggingOptions:
    level: str = "INFO"
    format: str = "text"  # text | json
    file: Optional[str] = None


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context is not None:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ContextFormatter(logging.Formatter):
    """Plain-text formatter that appends the structured context."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        context = getattr(record, "context", None)
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in context.items())
            text = f"{text} [{pairs}]"
        return text


def get_logger(name: str) -> logging.Logger:
    """Return a logger below the ``dirsync`` root (``dirsync.<name>``)."""
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def load_logging_options_from_env(defaults: LoggingOptions | None = None) -> LoggingOptions:
    """Overlay ``DIRSYNC_LOG_LEVEL`` / ``DIRSYNC_LOG_FORMAT`` / ``DIRSYNC_LOG_FILE``."""
    base = defaults or LoggingOptions()
    return LoggingOptions(
        level=os.getenv("DIRSYNC_LOG_LEVEL", base.level),
        format=os.getenv("DIRSYNC_LOG_FORMAT", base.format),
        file=os.getenv("DIRSYNC_LOG_FILE", base.file or "") or None,
    )


def configure_logging(options: LoggingOptions) -> None:
    """Configure the ``dirsync`` logger hierarchy.

    Text output goes through rich's console handler, JSON output is one
    object per line on stderr. An optional rotating file handler mirrors
    whichever format is selected.
    """
    fmt = options.format.strip().lower()
    if fmt not in {"text", "json"}:
        raise ValueError(f"Invalid log format: {options.format}")

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, options.level.strip().upper(), logging.INFO))
    logger.handlers.clear()
    logger.propagate = False

    if fmt == "json":
        handler: logging.Handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
    else:
        handler = RichHandler(show_path=False, rich_tracebacks=True)
        handler.setFormatter(ContextFormatter("%(message)s"))
    logger.addHandler(handler)

    if options.file:
        file_handler = RotatingFileHandler(
            options.file,
            maxBytes=10 * 1024 * 1024,
            backupCount=3,
        )
        if fmt == "json":
            file_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(
                ContextFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
            )
        logger.addHandler(file_handler)
