"""Data model for recording sessions, captures and publish progress."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class SessionStatus(str, Enum):
    """Lifecycle status of a recording session."""

    RECORDING = "recording"
    PAUSED = "paused"
    STOPPED = "stopped"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    PARTIALLY_PUBLISHED = "partially_published"


# Statuses that mean a process was doing something with the session when it died
ACTIVE_STATUSES = (SessionStatus.RECORDING, SessionStatus.PUBLISHING)

DEFAULT_CAPTURE_SETTINGS: dict[str, Any] = {
    "capture_interval": 2000,  # milliseconds between captures
    "image_quality": 0.7,
    "image_max_width": 1280,
}


@dataclass
class GpsFix:
    """A position fix attached to a capture."""

    lat: float
    lng: float
    accuracy: float | None = None
    stale: bool = False
    timestamp: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GpsFix":
        return cls(
            lat=data["lat"],
            lng=data["lng"],
            accuracy=data.get("accuracy"),
            stale=bool(data.get("stale", False)),
            timestamp=data.get("timestamp"),
        )


@dataclass
class MotionReading:
    """Accelerometer reading, rounded to two decimals by the producer."""

    x: float
    y: float
    z: float

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MotionReading":
        return cls(x=data["x"], y=data["y"], z=data["z"])


@dataclass
class SequenceGap:
    """A hole in the capture sequence numbers of a session."""

    after: int
    before: int
    missing: int


@dataclass
class RecoveryInfo:
    """What the recovery scanner found for a session interrupted by a crash."""

    potential_missed_frames: int
    last_capture_time: str | None
    gaps: list[SequenceGap] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecoveryInfo":
        return cls(
            potential_missed_frames=data["potential_missed_frames"],
            last_capture_time=data.get("last_capture_time"),
            gaps=[SequenceGap(**gap) for gap in data.get("gaps", [])],
        )


@dataclass
class Session:
    """A recording session and its running aggregates.

    capture_count and total_bytes always match the captures persisted for
    the session; the store updates them in the same transaction as each
    capture insert.
    """

    id: str
    name: str
    created_at: str
    status: SessionStatus
    start_time: float
    capture_count: int = 0
    total_bytes: int = 0
    avg_image_size: float = 0.0
    duration: int = 0  # seconds since start_time at the last capture
    last_capture_time: str | None = None
    settings: dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_CAPTURE_SETTINGS))
    recovery_info: RecoveryInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class Capture:
    """One captured frame with its sensor readings.

    A capture is written once by the producer; afterwards only the
    published flag and URL change.
    """

    session_id: str
    sequence_num: int
    timestamp: str
    image_bytes: bytes = b""
    image_size_bytes: int = 0
    gps: GpsFix | None = None
    accel: MotionReading | None = None
    timezone_offset: int | None = None
    published: bool = False
    published_url: str | None = None
    id: int | None = None

    @property
    def has_payload(self) -> bool:
        """Check whether the capture carries image bytes to upload."""
        return bool(self.image_bytes)


@dataclass
class PublishState:
    """Durable progress record of the publish job for one session."""

    session_id: str
    publish_started: str
    total_to_upload: int
    completed: int = 0
    failed: int = 0
    in_progress: bool = True
    completed_at: str | None = None


@dataclass
class StorageQuota:
    """Disk usage of the volume holding the capture database."""

    used_bytes: int
    free_bytes: int
    total_bytes: int
    percent_used: float
    status: str  # ok, warning, critical
