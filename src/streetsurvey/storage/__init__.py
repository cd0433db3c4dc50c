"""Storage module for sessions, captures and crash recovery."""

from streetsurvey.storage.models import (
    Capture,
    GpsFix,
    MotionReading,
    PublishState,
    RecoveryInfo,
    SequenceGap,
    Session,
    SessionStatus,
    StorageQuota,
)
from streetsurvey.storage.recovery import RecoveryScanner, find_sequence_gaps
from streetsurvey.storage.store import CaptureStore

__all__ = [
    "Capture",
    "CaptureStore",
    "GpsFix",
    "MotionReading",
    "PublishState",
    "RecoveryInfo",
    "RecoveryScanner",
    "SequenceGap",
    "Session",
    "SessionStatus",
    "StorageQuota",
    "find_sequence_gaps",
]
