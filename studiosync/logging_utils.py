"""Logging helpers for the studiosync runtime."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
from typing import Optional, Union

LOG_SUBPATH = Path("logs") / "studiosync.log"
STRUCTURED_LOG_SUBPATH = Path("logs") / "studiosync.jsonl"
MAX_BYTES = 5 * 1024 * 1024  # 5 MB per log segment
BACKUP_COUNT = 3
REPO_ROOT = Path(__file__).resolve().parent.parent
FALLBACK_ROOT = REPO_ROOT / ".studiosync_runtime"

_CONTEXT_FIELDS = ("entity_type", "entity_id", "op_id")


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value
        return json.dumps(log_entry)


def setup_logging(
    home_dir: Path,
    level: Union[str, int] = logging.WARNING,
    structured: bool = False,
    console: bool = True,
) -> Path:
    """Configure studiosync logging with optional structured JSON output.

    Args:
        home_dir: The studiosync home; logs go under ``logs/``.
        level: Logging level (string name or int constant).
        structured: Whether to also write JSON lines.
        console: Whether to echo records to stderr.

    Returns:
        Path to the primary (text) log file.
    """
    log_path = _resolve_log_path(home_dir, LOG_SUBPATH)

    resolved_level = _resolve_level(level)
    text_formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(text_formatter)

    logger = logging.getLogger("studiosync")
    _reset_handlers(logger)
    logger.setLevel(resolved_level)
    logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(text_formatter)
        logger.addHandler(console_handler)

    if structured:
        json_path = _resolve_log_path(home_dir, STRUCTURED_LOG_SUBPATH)
        json_handler = RotatingFileHandler(
            json_path,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        json_handler.setFormatter(JSONFormatter())
        logger.addHandler(json_handler)

    logger.propagate = False
    return log_path


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.WARNING)
    return int(level)


def _resolve_log_path(home_dir: Path, subpath: Path) -> Path:
    primary = home_dir / subpath
    try:
        primary.parent.mkdir(parents=True, exist_ok=True)
        return primary
    except PermissionError:
        fallback = FALLBACK_ROOT / subpath
        fallback.parent.mkdir(parents=True, exist_ok=True)
        print(
            f"[config] Unable to write logs under '{home_dir}'; "
            f"falling back to '{fallback.parent}'.",
            file=sys.stderr,
        )
        return fallback


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def shutdown_logging() -> None:
    """Close studiosync handlers so log files are released."""
    _reset_handlers(logging.getLogger("studiosync"))


__all__ = [
    "FALLBACK_ROOT",
    "JSONFormatter",
    "LOG_SUBPATH",
    "STRUCTURED_LOG_SUBPATH",
    "setup_logging",
    "shutdown_logging",
]
