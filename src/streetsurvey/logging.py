"""Structured JSON logging for the street survey publisher.

Provides audit-friendly logging with contextual fields for capture storage,
upload attempts, session state changes and crash recovery. Tokens and image
payloads are never logged.

Usage:
    from streetsurvey.logging import setup_logging, get_logger

    setup_logging("INFO")
    log = get_logger("streetsurvey.publish")
    log.info("publish_started", extra={"session_id": "session_1", "total": 42})
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from functools import lru_cache
from logging.handlers import RotatingFileHandler
from pathlib import Path

from pythonjsonlogger import jsonlogger

from streetsurvey import __version__

# Device identifier included in every record when set
_device_id: str | None = None


class SurveyJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that adds publisher context to all log records."""

    def add_fields(
        self,
        log_record: dict,
        record: logging.LogRecord,
        message_dict: dict,
    ) -> None:
        """Add standard fields to every log record."""
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = self.formatTime(record)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["version"] = __version__
        if _device_id:
            log_record["device_id"] = _device_id

        if "message" not in log_record and record.getMessage():
            log_record["message"] = record.getMessage()

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        """Format time as ISO 8601."""
        return datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    device_id: str | None = None,
    max_bytes: int = 10_000_000,  # 10MB
    backup_count: int = 5,
) -> None:
    """Configure the root logger with JSON formatting.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path for a rotating file handler
        device_id: Identifier of this recording device
        max_bytes: Max size per log file for rotation
        backup_count: Number of backup files to keep
    """
    if device_id:
        set_device_id(device_id)

    formatter = SurveyJsonFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # JSON to stderr keeps stdout free for command output
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


@lru_cache(maxsize=32)
def get_logger(name: str) -> logging.Logger:
    """Get a named logger.

    Args:
        name: Logger name (e.g., 'streetsurvey.publish')

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def set_device_id(device_id: str) -> None:
    """Set the device identifier for log context."""
    global _device_id
    _device_id = device_id


def recovery_logger() -> logging.Logger:
    """Get logger for crash recovery events."""
    return get_logger("streetsurvey.recovery")


# --- Audit Event Functions ---


def log_capture_saved(
    logger: logging.Logger,
    session_id: str,
    sequence_num: int,
    size_bytes: int,
) -> None:
    """Log a capture persisted by the store.

    Args:
        logger: Logger instance
        session_id: Owning session
        sequence_num: Sequence number of the capture
        size_bytes: Image payload size
    """
    logger.debug(
        "Capture saved",
        extra={
            "event": "capture_saved",
            "session_id": session_id,
            "sequence_num": sequence_num,
            "size_bytes": size_bytes,
        },
    )


def log_upload_success(
    logger: logging.Logger,
    path: str,
    attempts: int,
    skipped: bool = False,
) -> None:
    """Log a successful (or already satisfied) upload.

    Args:
        logger: Logger instance
        path: Remote path of the item
        attempts: Number of attempts used
        skipped: True when the item already existed remotely
    """
    logger.info(
        "Upload skipped, already present" if skipped else "Upload successful",
        extra={
            "event": "upload_success",
            "path": path,
            "attempts": attempts,
            "skipped": skipped,
        },
    )


def log_upload_failed(
    logger: logging.Logger,
    path: str,
    error: str,
    attempt_count: int,
) -> None:
    """Log a failed upload attempt.

    Args:
        logger: Logger instance
        path: Remote path of the item
        error: Error message (no tokens or payloads)
        attempt_count: Which attempt this was
    """
    logger.warning(
        "Upload failed",
        extra={
            "event": "upload_failed",
            "path": path,
            "error": error,
            "attempt_count": attempt_count,
        },
    )


def log_state_change(
    logger: logging.Logger,
    session_id: str,
    old_state: str,
    new_state: str,
    trigger: str | None = None,
) -> None:
    """Log a session status transition.

    Args:
        logger: Logger instance
        session_id: Session whose status changed
        old_state: Previous status
        new_state: New status
        trigger: What triggered the change
    """
    extra = {
        "event": "state_change",
        "session_id": session_id,
        "old_state": old_state,
        "new_state": new_state,
    }
    if trigger:
        extra["trigger"] = trigger
    logger.info("State changed", extra=extra)


def log_session_recovered(
    logger: logging.Logger,
    session_id: str,
    previous_status: str,
    missed_frames: int,
    gap_count: int,
) -> None:
    """Log a session recovered after an unclean shutdown.

    Args:
        logger: Logger instance
        session_id: Recovered session
        previous_status: Status found at startup
        missed_frames: Total frames missing from sequence gaps
        gap_count: Number of gaps found
    """
    logger.warning(
        "Session recovered",
        extra={
            "event": "session_recovered",
            "session_id": session_id,
            "previous_status": previous_status,
            "missed_frames": missed_frames,
            "gap_count": gap_count,
        },
    )


def log_publish_finished(
    logger: logging.Logger,
    session_id: str,
    completed: int,
    failed: int,
    total: int,
) -> None:
    """Log the end of a publish job.

    Args:
        logger: Logger instance
        session_id: Published session
        completed: Items uploaded or already present
        failed: Items that failed permanently
        total: Items queued for the job
    """
    logger.info(
        "Publish finished",
        extra={
            "event": "publish_finished",
            "session_id": session_id,
            "completed": completed,
            "failed": failed,
            "total": total,
        },
    )


def log_config_change(
    logger: logging.Logger,
    key: str,
    old_value: str | None,
    new_value: str | None,
) -> None:
    """Log a change to a stored setting.

    Args:
        logger: Logger instance
        key: Setting that changed
        old_value: Previous value (None if new key)
        new_value: New value (None if removed)

    Note: Do NOT pass sensitive values like tokens; mask them first.
    """
    logger.info(
        "Configuration changed",
        extra={
            "event": "config_change",
            "key": key,
            "old_value": old_value,
            "new_value": new_value,
        },
    )
