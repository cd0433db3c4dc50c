"""Status command for the streetsurvey CLI."""

import json
from collections import Counter

import typer

from streetsurvey.cli_commands.publish import _get_running_pid
from streetsurvey.config import get_settings
from streetsurvey.storage.models import SessionStatus
from streetsurvey.storage.store import CaptureStore


def _collect(db_path) -> dict:
    """Read session counts, publish states and quota from the store."""
    store = CaptureStore(db_path)
    try:
        counts = Counter(session.status.value for session in store.list_sessions())
        publishing = store.list_publish_states(in_progress_only=True)
        quota = store.check_storage_quota()
    finally:
        store.close()

    return {
        "sessions": {status.value: counts.get(status.value, 0) for status in SessionStatus},
        "publishing": [
            {
                "session_id": state.session_id,
                "completed": state.completed,
                "failed": state.failed,
                "total": state.total_to_upload,
            }
            for state in publishing
        ],
        "storage": {
            "used_bytes": quota.used_bytes,
            "free_bytes": quota.free_bytes,
            "percent_used": quota.percent_used,
            "status": quota.status,
        },
    }


def status_command(
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Show publisher status.

    Displays whether a publisher is running, session counts by status,
    unfinished publish jobs and local storage usage.
    """
    settings = get_settings()
    pid = _get_running_pid(settings.pid_path)

    status_data = {"running": pid is not None, "pid": pid}
    if settings.db_path.exists():
        status_data.update(_collect(settings.db_path))
    else:
        status_data.update({"sessions": {}, "publishing": [], "storage": None})

    if output_json:
        typer.echo(json.dumps(status_data))
        return

    typer.echo("")
    typer.echo("Street Survey Status")
    typer.echo("--------------------")
    typer.echo(f"Publisher: running (PID: {pid})" if pid else "Publisher: not running")

    sessions = {k: v for k, v in status_data["sessions"].items() if v}
    if sessions:
        typer.echo("Sessions: " + ", ".join(f"{count} {name}" for name, count in sessions.items()))
    else:
        typer.echo("Sessions: none")

    for state in status_data["publishing"]:
        typer.echo(
            f"Publishing {state['session_id']}: {state['completed']}/{state['total']} "
            f"({state['failed']} failed)"
        )

    storage = status_data["storage"]
    if storage:
        typer.echo(f"Storage: {storage['percent_used']:.1f}% used ({storage['status']})")
        if storage["status"] != "ok":
            typer.echo("Consider publishing or exporting sessions to free space.")
    typer.echo("")
