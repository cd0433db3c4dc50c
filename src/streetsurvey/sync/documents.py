"""Remote layout and the per-session CSV and metadata documents."""

import csv
import io
import json
import platform
from datetime import datetime, timezone
from typing import Any

from streetsurvey import __version__
from streetsurvey.storage.models import Capture, Session

COVERAGE_INDEX_PATH = "coverage-index.geojson"

CSV_HEADER = [
    "sequence",
    "timestamp",
    "gps_lat",
    "gps_lng",
    "gps_accuracy",
    "gps_stale",
    "image_url",
    "accel_x",
    "accel_y",
    "accel_z",
]


def session_prefix(session_id: str) -> str:
    return f"sessions/{session_id}"


def image_path(session_id: str, sequence_num: int) -> str:
    """Deterministic remote path of a capture image."""
    return f"{session_prefix(session_id)}/images/{sequence_num:06d}.jpg"


def csv_path(session_id: str) -> str:
    return f"{session_prefix(session_id)}/data.csv"


def metadata_path(session_id: str) -> str:
    return f"{session_prefix(session_id)}/metadata.json"


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_session_csv(captures: list[Capture]) -> str:
    """Render one CSV row per capture, missing values as empty fields.

    Args:
        captures: All captures of the session, ordered by sequence number

    Returns:
        CSV text with a fixed header row
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)

    for capture in captures:
        gps = capture.gps
        accel = capture.accel
        writer.writerow(
            [
                _cell(capture.sequence_num),
                _cell(capture.timestamp),
                _cell(gps.lat if gps else None),
                _cell(gps.lng if gps else None),
                _cell(gps.accuracy if gps else None),
                _cell(gps.stale if gps else None),
                _cell(capture.published_url),
                _cell(accel.x if accel else None),
                _cell(accel.y if accel else None),
                _cell(accel.z if accel else None),
            ]
        )
    return buffer.getvalue()


def device_description() -> str:
    """Describe the publishing device for the metadata document."""
    return f"streetsurvey/{__version__} ({platform.system()} {platform.machine()})"


def build_metadata(
    session: Session,
    captures: list[Capture],
    failed: int,
    contributor: str = "",
    device: str | None = None,
    end_time: str | None = None,
) -> dict[str, Any]:
    """Build the metadata document of a published session.

    Args:
        session: The session being published
        captures: All captures of the session
        failed: Items that failed in the publish job
        contributor: Name credited for the data
        device: Device descriptor (defaults to this host)
        end_time: ISO timestamp of the end of publishing (defaults to now)
    """
    return {
        "sessionId": session.id,
        "name": session.name,
        "device": device or device_description(),
        "startTime": session.created_at,
        "endTime": end_time or datetime.now(timezone.utc).isoformat(),
        "totalCaptures": len(captures),
        "publishedCaptures": sum(1 for capture in captures if capture.published),
        "failedCaptures": failed,
        "settings": session.settings,
        "contributor": contributor or "anonymous",
    }


def encode_json(document: dict[str, Any]) -> bytes:
    """Serialize a document the way it is stored remotely."""
    return json.dumps(document, indent=2).encode("utf-8")
