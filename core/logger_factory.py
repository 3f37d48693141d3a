#!/usr/bin/env python3
"""
Logger Factory - Structured JSONL Logging with Rotation

Provides specialized loggers for different event types:
- SYNC_LOG: Channel events, dedup drops, pulls, reconciliation outcomes
- ASSIGN_LOG: Assignment intents, confirmations, overlay expiry
- AUDIT_LOG: Store resets, forced overwrites, retries, uncaught exceptions

Features:
- Automatic correlation ID injection from ContextVars
- JSONL output with mandatory fields
- Daily rotation with gzip compression

Usage:
    from core.logger_factory import SYNC_LOG, log_event

    log_event(
        SYNC_LOG(),
        "event_deduplicated",
        order_id="ord_1",
        state="PICKED",
    )
"""

import gzip
import json
import logging
import os
import shutil
import time
from logging.handlers import TimedRotatingFileHandler
from typing import Any, Dict, Tuple

import config
from core.trace_context import (
    client_id_var,
    order_id_var,
    intent_token_var,
    partner_id_var,
)

# Correlation fields copied from the active Trace into every line
_CONTEXT_FIELDS = (
    ("client_id", client_id_var),
    ("order_id", order_id_var),
    ("intent_token", intent_token_var),
    ("partner_id", partner_id_var),
)


class JsonlFormatter(logging.Formatter):
    """
    One JSON object per line: ts_ns, level, component, event, message, the
    correlation ids that are set, then the event's own fields. Event fields
    override context ids of the same name; None values are omitted.
    """

    def format(self, record: logging.LogRecord) -> str:
        line: Dict[str, Any] = {
            "ts_ns": time.time_ns(),
            "level": record.levelname,
            "component": record.name.rsplit(".", 1)[-1],
            "event": getattr(record, "event", None),
            "message": record.getMessage(),
        }
        for field_name, var in _CONTEXT_FIELDS:
            line[field_name] = var.get()
        line.update(getattr(record, "extra_fields", {}))

        return json.dumps({k: v for k, v in line.items() if v is not None},
                          ensure_ascii=False, default=str)


class GzTimedHandler(TimedRotatingFileHandler):
    """Rotates at UTC midnight and gzips the rotated file."""

    def rotation_filename(self, default_name: str) -> str:
        return f"{default_name}.gz"

    def rotate(self, source: str, dest: str) -> None:
        if not os.path.exists(source):
            return
        with open(source, "rb") as plain, gzip.open(dest, "wb") as packed:
            shutil.copyfileobj(plain, packed)
        os.remove(source)


_logger_cache: Dict[Tuple[str, str], logging.Logger] = {}


def _make_handler(file_path: str, backup_count: int) -> logging.Handler:
    os.makedirs(os.path.dirname(file_path), exist_ok=True)
    handler = GzTimedHandler(file_path, when="midnight", backupCount=backup_count,
                             utc=True, encoding="utf-8")
    handler.setFormatter(JsonlFormatter())
    handler.setLevel(logging.DEBUG)
    return handler


def get_logger(name: str, file_path: str, backup_count: int = config.LOG_BACKUP_DAYS) -> logging.Logger:
    """
    JSONL logger writing to `file_path`, created once per (name, file_path).

    Args:
        name: Logger name (e.g., "sync", "assign")
        file_path: Path to log file
        backup_count: Number of daily backups to keep
    """
    logger = _logger_cache.get((name, file_path))
    if logger is None:
        logger = logging.getLogger(f"jsonl.{name}")
        logger.setLevel(logging.INFO)
        logger.propagate = False
        logger.addHandler(_make_handler(file_path, backup_count))
        _logger_cache[(name, file_path)] = logger
    return logger


def _log_path(*parts: str) -> str:
    return os.path.join(config.get_config("LOG_DIR"), *parts)


def SYNC_LOG() -> logging.Logger:
    """Get sync logger (channel events, pulls, reconciliation)."""
    return get_logger("sync", _log_path("sync", "sync.jsonl"))


def ASSIGN_LOG() -> logging.Logger:
    """Get assignment logger (intents, confirmations, overlays)."""
    return get_logger("assign", _log_path("assign", "assign.jsonl"))


def AUDIT_LOG() -> logging.Logger:
    """Get audit logger (resets, overwrites, retries, exceptions)."""
    return get_logger("audit", _log_path("audit", "audit.jsonl"))


def log_event(
    logger: logging.Logger,
    event: str,
    message: str = "",
    level: int = logging.INFO,
    **fields: Any
) -> None:
    """
    Log a structured event.

    Args:
        logger: Logger instance (from SYNC_LOG(), ASSIGN_LOG(), ...)
        event: Event type (e.g., "intent_forwarded")
        message: Human-readable message (optional)
        level: Log level (default: INFO)
        **fields: Event-specific fields
    """
    logger.log(
        level,
        message or event,
        extra={
            "event": event,
            "extra_fields": fields
        }
    )


def setup_logging(level: str = config.LOG_LEVEL) -> None:
    """Configure the console logger for module loggers (call once at startup)."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


def install_global_excepthook() -> None:
    """
    Log uncaught exceptions to AUDIT_LOG, then defer to the default hook.
    """
    import sys
    import traceback

    def _excepthook(exc_type, exc_value, exc_traceback):
        stacktrace = "".join(
            traceback.format_exception(exc_type, exc_value, exc_traceback)
        )

        log_event(
            AUDIT_LOG(),
            "uncaught_exception",
            message=f"Uncaught exception: {exc_type.__name__}: {exc_value}",
            level=logging.ERROR,
            exception_class=exc_type.__name__,
            exception_message=str(exc_value),
            stacktrace=stacktrace,
        )

        sys.__excepthook__(exc_type, exc_value, exc_traceback)

    sys.excepthook = _excepthook
