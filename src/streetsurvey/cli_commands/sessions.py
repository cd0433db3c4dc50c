"""Session management CLI commands."""

import json
from dataclasses import asdict
from pathlib import Path

import typer

from streetsurvey.config import get_settings
from streetsurvey.errors import StorageError
from streetsurvey.storage.export import export_session_archive, export_session_csv
from streetsurvey.storage.models import SessionStatus
from streetsurvey.storage.recovery import RecoveryScanner
from streetsurvey.storage.store import CaptureStore

sessions_app = typer.Typer(
    name="sessions",
    help="Session management - list, inspect, export and delete recordings.",
    no_args_is_help=True,
)


def _open_store() -> CaptureStore:
    return CaptureStore(get_settings().db_path)


def _output(data: dict | list, as_json: bool, human_lines: list[str]) -> None:
    """Output data as JSON or human-readable format."""
    if as_json:
        typer.echo(json.dumps(data))
    else:
        for line in human_lines:
            typer.echo(line)


def _format_bytes(size: float) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


@sessions_app.command(name="list")
def list_sessions(
    status: list[SessionStatus] = typer.Option(
        None,
        "--status",
        "-s",
        help="Only show sessions in this status (repeatable)",
    ),
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """List sessions, newest first."""
    store = _open_store()
    try:
        sessions = store.get_sessions_by_status(status) if status else store.list_sessions()
    finally:
        store.close()

    lines = []
    for session in sessions:
        lines.append(
            f"{session.id}  {session.status.value:<20} {session.capture_count:>6} captures  "
            f"{_format_bytes(session.total_bytes):>10}  {session.name}"
        )
    if not sessions:
        lines.append("No sessions found.")

    _output([s.to_dict() for s in sessions], output_json, lines)


@sessions_app.command()
def show(
    session_id: str = typer.Argument(..., help="Session to show"),
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Show a session with its publish progress and recovery info."""
    store = _open_store()
    try:
        session = store.get_session(session_id)
        if session is None:
            _output(
                {"status": "error", "message": f"Session not found: {session_id}"},
                output_json,
                [f"Session not found: {session_id}"],
            )
            raise typer.Exit(1)
        unpublished = len(store.get_unpublished_captures(session_id))
        publish_state = store.get_publish_state(session_id)
    finally:
        store.close()

    data = session.to_dict()
    data["unpublished"] = unpublished
    data["publish_state"] = asdict(publish_state) if publish_state else None

    lines = [
        "",
        f"Session {session.id}",
        "-" * (8 + len(session.id)),
        f"Name: {session.name}",
        f"Status: {session.status.value}",
        f"Created: {session.created_at}",
        f"Captures: {session.capture_count} ({unpublished} unpublished)",
        f"Size: {_format_bytes(session.total_bytes)} (avg {_format_bytes(session.avg_image_size)})",
        f"Duration: {session.duration}s",
    ]
    if publish_state:
        lines.append(
            f"Publish: {publish_state.completed}/{publish_state.total_to_upload} uploaded, "
            f"{publish_state.failed} failed"
            + (" (in progress)" if publish_state.in_progress else "")
        )
    if session.recovery_info:
        info = session.recovery_info
        lines.append(
            f"Recovered: {info.potential_missed_frames} missed frames in {len(info.gaps)} gaps"
        )
    lines.append("")

    _output(data, output_json, lines)


@sessions_app.command()
def delete(
    session_id: str = typer.Argument(..., help="Session to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
) -> None:
    """Delete a session with all its captures."""
    store = _open_store()
    try:
        if store.get_session(session_id) is None:
            typer.echo(f"Session not found: {session_id}")
            raise typer.Exit(1)
        if not yes:
            typer.confirm(f"Delete session {session_id} and all its captures?", abort=True)
        store.delete_session(session_id)
    finally:
        store.close()
    typer.echo(f"Deleted session {session_id}")


@sessions_app.command()
def clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
) -> None:
    """Delete every session and capture."""
    if not yes:
        typer.confirm("Delete ALL sessions and captures?", abort=True)
    store = _open_store()
    try:
        count = store.delete_all_sessions()
    finally:
        store.close()
    typer.echo(f"Deleted {count} session{'s' if count != 1 else ''}")


@sessions_app.command()
def recover(
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Pause sessions left recording or publishing by a crash.

    Only run this when no recorder or publisher is running.
    """
    store = _open_store()
    try:
        recovered = RecoveryScanner(store).scan()
    finally:
        store.close()

    lines = [
        f"Recovered {s.id}: {s.recovery_info.potential_missed_frames} missed frames"
        for s in recovered
    ] or ["No interrupted sessions found."]
    _output([s.to_dict() for s in recovered], output_json, lines)


@sessions_app.command()
def export(
    session_id: str = typer.Argument(..., help="Session to export"),
    output: Path = typer.Option(
        None,
        "--output",
        "-o",
        help="Output file (default: <session_id>.zip or .csv in the current directory)",
    ),
    csv_only: bool = typer.Option(False, "--csv-only", help="Export only the CSV data"),
) -> None:
    """Export a session as a ZIP archive (images, CSV, metadata) or CSV."""
    settings = get_settings()
    target = output or Path(f"{session_id}.{'csv' if csv_only else 'zip'}")

    store = _open_store()
    try:
        if csv_only:
            export_session_csv(store, session_id, target)
        else:
            contributor = store.get_setting("contributor") or settings.contributor
            export_session_archive(store, session_id, target, contributor=contributor)
    except StorageError as e:
        typer.echo(f"Export failed: {e}")
        raise typer.Exit(1)
    finally:
        store.close()

    typer.echo(f"Exported {session_id} to {target}")
