"""Local export of a session as a ZIP archive or a bare CSV file."""

import logging
import zipfile
from pathlib import Path
from typing import Callable

from streetsurvey.errors import StorageError
from streetsurvey.storage.store import CaptureStore
from streetsurvey.sync.documents import build_metadata, build_session_csv, encode_json

logger = logging.getLogger(__name__)


def export_session_archive(
    store: CaptureStore,
    session_id: str,
    output: Path,
    contributor: str = "",
    on_progress: Callable[[int, int], None] | None = None,
) -> Path:
    """Write a session to a ZIP archive.

    The archive holds images/<sequence>.jpg for every capture with a
    payload, plus data.csv and metadata.json in the same format as the
    published copies.

    Args:
        store: Capture store holding the session
        session_id: Session to export
        output: Archive path to write
        contributor: Name recorded in the metadata
        on_progress: Called with (written, total) after each image

    Returns:
        The archive path

    Raises:
        StorageError: If the session doesn't exist
    """
    session = store.get_session(session_id)
    if session is None:
        raise StorageError(f"Session not found: {session_id}")

    captures = store.get_session_captures(session_id)
    with_payload = [c for c in captures if c.has_payload]

    output.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(output, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for written, capture in enumerate(with_payload, start=1):
            archive.writestr(f"images/{capture.sequence_num:06d}.jpg", capture.image_bytes)
            if on_progress:
                on_progress(written, len(with_payload))

        archive.writestr("data.csv", build_session_csv(captures))
        unpublished = sum(1 for c in captures if not c.published)
        metadata = build_metadata(session, captures, failed=unpublished, contributor=contributor)
        archive.writestr("metadata.json", encode_json(metadata))

    logger.info(
        "Session exported: session_id=%s, images=%d, path=%s", session_id, len(with_payload), output
    )
    return output


def export_session_csv(store: CaptureStore, session_id: str, output: Path) -> Path:
    """Write the capture table of a session to a CSV file."""
    if store.get_session(session_id) is None:
        raise StorageError(f"Session not found: {session_id}")

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(build_session_csv(store.get_session_captures(session_id)), encoding="utf-8")
    return output
