"""SQLite-backed transactional store for sessions, captures and publish state."""

import json
import logging
import shutil
import sqlite3
import threading
import time
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from streetsurvey.errors import StorageError
from streetsurvey.logging import log_capture_saved
from streetsurvey.storage.models import (
    DEFAULT_CAPTURE_SETTINGS,
    Capture,
    GpsFix,
    MotionReading,
    PublishState,
    RecoveryInfo,
    Session,
    SessionStatus,
    StorageQuota,
)

logger = logging.getLogger(__name__)

_SESSION_COLUMNS = """
    id, name, created_at, status, start_time, capture_count, total_bytes,
    avg_image_size, duration, last_capture_time, settings_json, recovery_json
"""

_CAPTURE_COLUMNS = """
    id, session_id, sequence_num, timestamp, gps_json, accel_json, image_data,
    image_size_bytes, timezone_offset, published, published_url
"""


class CaptureStore:
    """Durable local store for recording sessions and their captures.

    This is the only component that touches persistence. Every operation
    that changes more than one record runs in a single SQLite transaction,
    so a failure never leaves a partial mutation visible. Failures surface
    as StorageError.
    """

    WARNING_THRESHOLD = 75.0  # percent of disk used
    CRITICAL_THRESHOLD = 90.0

    def __init__(self, db_path: Path) -> None:
        """Open (and create if needed) the capture store.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

        try:
            # Autocommit mode; transactions are opened explicitly in _transaction()
            self._conn = sqlite3.connect(
                str(db_path), check_same_thread=False, isolation_level=None
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._create_tables()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open capture store at {db_path}: {e}") from e

    def _create_tables(self) -> None:
        """Create the schema if it doesn't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                created_at TEXT NOT NULL,
                status TEXT NOT NULL,
                start_time REAL NOT NULL,
                capture_count INTEGER NOT NULL DEFAULT 0,
                total_bytes INTEGER NOT NULL DEFAULT 0,
                avg_image_size REAL NOT NULL DEFAULT 0,
                duration INTEGER NOT NULL DEFAULT 0,
                last_capture_time TEXT,
                settings_json TEXT NOT NULL DEFAULT '{}',
                recovery_json TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions (status);
            CREATE INDEX IF NOT EXISTS idx_sessions_start ON sessions (start_time);

            CREATE TABLE IF NOT EXISTS captures (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL
                    REFERENCES sessions (id) ON DELETE CASCADE,
                sequence_num INTEGER NOT NULL,
                timestamp TEXT NOT NULL,
                gps_json TEXT,
                accel_json TEXT,
                image_data BLOB,
                image_size_bytes INTEGER NOT NULL DEFAULT 0,
                timezone_offset INTEGER,
                published INTEGER NOT NULL DEFAULT 0,
                published_url TEXT,
                UNIQUE (session_id, sequence_num)
            );
            CREATE INDEX IF NOT EXISTS idx_captures_session_published
                ON captures (session_id, published);

            CREATE TABLE IF NOT EXISTS publish_state (
                session_id TEXT PRIMARY KEY
                    REFERENCES sessions (id) ON DELETE CASCADE,
                publish_started TEXT NOT NULL,
                total_to_upload INTEGER NOT NULL,
                completed INTEGER NOT NULL DEFAULT 0,
                failed INTEGER NOT NULL DEFAULT 0,
                in_progress INTEGER NOT NULL DEFAULT 1,
                completed_at TEXT
            );

            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL
            );
        """)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements as one atomic write transaction."""
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(f"Failed to begin transaction: {e}") from e

            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback()
                raise StorageError(str(e)) from e
            except BaseException:
                self._rollback()
                raise

    def _rollback(self) -> None:
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        """Run a read-only query and return all rows."""
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    # --- Sessions ---

    def create_session(
        self,
        name: str | None = None,
        settings: dict[str, Any] | None = None,
    ) -> Session:
        """Create a new session in the recording state.

        Args:
            name: Display name (defaults to "Session <date>")
            settings: Capture settings snapshot, merged over the defaults

        Returns:
            The persisted Session
        """
        now = time.time()
        session = Session(
            id=f"session_{int(now * 1000)}_{uuid.uuid4().hex[:6]}",
            name=name or f"Session {datetime.now().strftime('%Y-%m-%d')}",
            created_at=datetime.now(timezone.utc).isoformat(),
            status=SessionStatus.RECORDING,
            start_time=now,
            settings={**DEFAULT_CAPTURE_SETTINGS, **(settings or {})},
        )

        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO sessions ({_SESSION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._session_params(session),
            )

        logger.info("Session created: session_id=%s, name=%s", session.id, session.name)
        return session

    def get_session(self, session_id: str) -> Session | None:
        """Get a session by id, or None if it doesn't exist."""
        rows = self._query(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?", (session_id,)
        )
        return self._row_to_session(rows[0]) if rows else None

    def update_session(self, session: Session) -> Session:
        """Replace the stored record of a session with the given one.

        The last writer wins; there is no version check.

        Raises:
            StorageError: If the session doesn't exist
        """
        params = self._session_params(session)
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE sessions
                SET name = ?, created_at = ?, status = ?, start_time = ?,
                    capture_count = ?, total_bytes = ?, avg_image_size = ?,
                    duration = ?, last_capture_time = ?, settings_json = ?,
                    recovery_json = ?
                WHERE id = ?
                """,
                params[1:] + params[:1],
            )
            if cursor.rowcount == 0:
                raise StorageError(f"Session not found: {session.id}")
        return session

    def list_sessions(self) -> list[Session]:
        """Return all sessions, newest first."""
        rows = self._query(
            f"SELECT {_SESSION_COLUMNS} FROM sessions ORDER BY start_time DESC, rowid DESC"
        )
        return [self._row_to_session(row) for row in rows]

    def get_sessions_by_status(
        self, statuses: Iterable[SessionStatus | str]
    ) -> list[Session]:
        """Return sessions in any of the given statuses, newest first."""
        values = [SessionStatus(s).value for s in statuses]
        if not values:
            return []
        placeholders = ", ".join("?" for _ in values)
        rows = self._query(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE status IN ({placeholders}) "
            "ORDER BY start_time DESC, rowid DESC",
            tuple(values),
        )
        return [self._row_to_session(row) for row in rows]

    def delete_session(self, session_id: str) -> None:
        """Delete a session together with its captures and publish state."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM publish_state WHERE session_id = ?", (session_id,))
            conn.execute("DELETE FROM captures WHERE session_id = ?", (session_id,))
            conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        logger.info("Session deleted: session_id=%s", session_id)

    def delete_all_sessions(self) -> int:
        """Delete every session, capture and publish state.

        Returns:
            Number of sessions removed
        """
        with self._transaction() as conn:
            conn.execute("DELETE FROM publish_state")
            conn.execute("DELETE FROM captures")
            cursor = conn.execute("DELETE FROM sessions")
            count = cursor.rowcount
        logger.info("All sessions deleted: count=%d", count)
        return count

    # --- Captures ---

    def save_capture(self, capture: Capture) -> int:
        """Persist a capture and update its session's aggregates atomically.

        Args:
            capture: Capture produced by the recorder (id is assigned here)

        Returns:
            The store-assigned capture id

        Raises:
            StorageError: If the session doesn't exist or the sequence
                number is already taken; nothing is persisted in that case
        """
        size = capture.image_size_bytes or len(capture.image_bytes)
        now = time.time()

        with self._transaction() as conn:
            cursor = conn.execute(
                f"INSERT INTO captures ({_CAPTURE_COLUMNS}) "
                "VALUES (NULL, ?, ?, ?, ?, ?, ?, ?, ?, 0, NULL)",
                (
                    capture.session_id,
                    capture.sequence_num,
                    capture.timestamp,
                    json.dumps(asdict(capture.gps)) if capture.gps else None,
                    json.dumps(asdict(capture.accel)) if capture.accel else None,
                    capture.image_bytes,
                    size,
                    capture.timezone_offset,
                ),
            )
            capture_id = cursor.lastrowid

            # Right-hand sides see the pre-update row values
            updated = conn.execute(
                """
                UPDATE sessions
                SET capture_count = capture_count + 1,
                    total_bytes = total_bytes + ?,
                    avg_image_size = (total_bytes + ?) * 1.0 / (capture_count + 1),
                    last_capture_time = ?,
                    duration = CAST(? - start_time AS INTEGER)
                WHERE id = ?
                """,
                (size, size, capture.timestamp, now, capture.session_id),
            )
            if updated.rowcount == 0:
                raise StorageError(f"Session not found: {capture.session_id}")

        capture.id = capture_id
        capture.image_size_bytes = size
        log_capture_saved(logger, capture.session_id, capture.sequence_num, size)
        return capture_id

    def get_session_captures(self, session_id: str) -> list[Capture]:
        """Return all captures of a session ordered by sequence number."""
        rows = self._query(
            f"SELECT {_CAPTURE_COLUMNS} FROM captures WHERE session_id = ? "
            "ORDER BY sequence_num ASC",
            (session_id,),
        )
        return [self._row_to_capture(row) for row in rows]

    def get_unpublished_captures(self, session_id: str) -> list[Capture]:
        """Return the captures not yet published, ordered by sequence number."""
        rows = self._query(
            f"SELECT {_CAPTURE_COLUMNS} FROM captures "
            "WHERE session_id = ? AND published = 0 ORDER BY sequence_num ASC",
            (session_id,),
        )
        return [self._row_to_capture(row) for row in rows]

    def get_session_capture_count(self, session_id: str) -> int:
        """Count the captures persisted for a session."""
        rows = self._query(
            "SELECT COUNT(*) AS count FROM captures WHERE session_id = ?", (session_id,)
        )
        return rows[0]["count"]

    def mark_capture_published(self, capture_id: int, url: str | None) -> Capture:
        """Flag a capture as published and record where it lives remotely.

        Raises:
            StorageError: If the capture doesn't exist
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE captures SET published = 1, published_url = ? WHERE id = ?",
                (url, capture_id),
            )
            if cursor.rowcount == 0:
                raise StorageError(f"Capture not found: {capture_id}")
            row = conn.execute(
                f"SELECT {_CAPTURE_COLUMNS} FROM captures WHERE id = ?", (capture_id,)
            ).fetchone()
        return self._row_to_capture(row)

    # --- Publish state ---

    def save_publish_state(self, state: PublishState) -> None:
        """Insert or replace the publish progress record of a session."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO publish_state (
                    session_id, publish_started, total_to_upload, completed,
                    failed, in_progress, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    state.session_id,
                    state.publish_started,
                    state.total_to_upload,
                    state.completed,
                    state.failed,
                    int(state.in_progress),
                    state.completed_at,
                ),
            )

    def get_publish_state(self, session_id: str) -> PublishState | None:
        """Get the publish progress record of a session, if any."""
        rows = self._query(
            "SELECT * FROM publish_state WHERE session_id = ?", (session_id,)
        )
        if not rows:
            return None
        row = rows[0]
        return PublishState(
            session_id=row["session_id"],
            publish_started=row["publish_started"],
            total_to_upload=row["total_to_upload"],
            completed=row["completed"],
            failed=row["failed"],
            in_progress=bool(row["in_progress"]),
            completed_at=row["completed_at"],
        )

    def list_publish_states(self, in_progress_only: bool = False) -> list[PublishState]:
        """Return stored publish states, optionally only unfinished ones."""
        sql = "SELECT session_id FROM publish_state"
        if in_progress_only:
            sql += " WHERE in_progress = 1"
        rows = self._query(sql + " ORDER BY publish_started DESC")
        states = [self.get_publish_state(row["session_id"]) for row in rows]
        return [state for state in states if state is not None]

    # --- Settings ---

    def save_setting(self, key: str, value: Any) -> None:
        """Store a JSON-serializable setting value."""
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO settings (key, value_json) VALUES (?, ?)",
                (key, json.dumps(value)),
            )

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get a stored setting value, or default if it isn't set."""
        rows = self._query("SELECT value_json FROM settings WHERE key = ?", (key,))
        return json.loads(rows[0]["value_json"]) if rows else default

    def get_all_settings(self) -> dict[str, Any]:
        """Return all stored settings as a dictionary."""
        rows = self._query("SELECT key, value_json FROM settings ORDER BY key")
        return {row["key"]: json.loads(row["value_json"]) for row in rows}

    def delete_setting(self, key: str) -> None:
        """Remove a stored setting."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM settings WHERE key = ?", (key,))

    # --- Quota ---

    def check_storage_quota(self) -> StorageQuota:
        """Report disk usage of the volume holding the database.

        Returns:
            StorageQuota with status "ok", "warning" (>75% used) or
            "critical" (>90% used)
        """
        usage = shutil.disk_usage(self.db_path.parent)
        used_bytes = sum(
            path.stat().st_size
            for path in self.db_path.parent.glob(f"{self.db_path.name}*")
            if path.is_file()
        )
        percent = (usage.used / usage.total * 100) if usage.total else 0.0

        if percent > self.CRITICAL_THRESHOLD:
            status = "critical"
        elif percent > self.WARNING_THRESHOLD:
            status = "warning"
        else:
            status = "ok"

        return StorageQuota(
            used_bytes=used_bytes,
            free_bytes=usage.free,
            total_bytes=usage.total,
            percent_used=round(percent, 1),
            status=status,
        )

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    # --- Row mapping ---

    @staticmethod
    def _session_params(session: Session) -> tuple:
        return (
            session.id,
            session.name,
            session.created_at,
            SessionStatus(session.status).value,
            session.start_time,
            session.capture_count,
            session.total_bytes,
            session.avg_image_size,
            session.duration,
            session.last_capture_time,
            json.dumps(session.settings),
            json.dumps(session.recovery_info.to_dict()) if session.recovery_info else None,
        )

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            name=row["name"],
            created_at=row["created_at"],
            status=SessionStatus(row["status"]),
            start_time=row["start_time"],
            capture_count=row["capture_count"],
            total_bytes=row["total_bytes"],
            avg_image_size=row["avg_image_size"],
            duration=row["duration"],
            last_capture_time=row["last_capture_time"],
            settings=json.loads(row["settings_json"]),
            recovery_info=(
                RecoveryInfo.from_dict(json.loads(row["recovery_json"]))
                if row["recovery_json"]
                else None
            ),
        )

    @staticmethod
    def _row_to_capture(row: sqlite3.Row) -> Capture:
        return Capture(
            id=row["id"],
            session_id=row["session_id"],
            sequence_num=row["sequence_num"],
            timestamp=row["timestamp"],
            gps=GpsFix.from_dict(json.loads(row["gps_json"])) if row["gps_json"] else None,
            accel=(
                MotionReading.from_dict(json.loads(row["accel_json"]))
                if row["accel_json"]
                else None
            ),
            image_bytes=bytes(row["image_data"]) if row["image_data"] is not None else b"",
            image_size_bytes=row["image_size_bytes"],
            timezone_offset=row["timezone_offset"],
            published=bool(row["published"]),
            published_url=row["published_url"],
        )
