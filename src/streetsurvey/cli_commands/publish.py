"""Publish management CLI commands."""

import asyncio
import json
import os
import signal
from pathlib import Path

import typer

from streetsurvey.config import Settings, get_settings
from streetsurvey.engine.publisher import (
    PublishCoordinator,
    PublishProgress,
    PublishResult,
    format_duration,
)
from streetsurvey.engine.runtime import SurveyRuntime
from streetsurvey.errors import PublishError, RemoteError, StorageError, ValidationError
from streetsurvey.logging import setup_logging
from streetsurvey.sync.github import PublishCredentials

publish_app = typer.Typer(
    name="publish",
    help="Publishing - upload sessions to the survey repository, pause, resume, cancel.",
    no_args_is_help=True,
)


def _get_running_pid(pid_path: Path) -> int | None:
    """Get the PID of the running publisher, if any."""
    if not pid_path.exists():
        return None

    try:
        pid = int(pid_path.read_text().strip())
        os.kill(pid, 0)
        return pid
    except (ValueError, OSError):
        # Stale PID file
        pid_path.unlink(missing_ok=True)
        return None


def _write_pid(pid_path: Path) -> None:
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    pid_path.write_text(str(os.getpid()))


def _output(data: dict, as_json: bool, human_message: str) -> None:
    """Output data as JSON or human-readable format."""
    if as_json:
        typer.echo(json.dumps(data))
    else:
        typer.echo(human_message)


def _print_progress(progress: PublishProgress, as_json: bool) -> None:
    eta = format_duration(progress.estimated_seconds_remaining)
    _output(
        {"event": "progress", **progress.to_dict()},
        as_json,
        f"[{progress.completed + progress.failed}/{progress.total}] {progress.percent:>3}%  "
        f"{progress.status}  (failed: {progress.failed}, ETA: {eta})",
    )


def _error_payload(error: Exception) -> dict:
    data = {"status": "error", "error": type(error).__name__, "message": str(error)}
    if isinstance(error, ValidationError):
        data["reasons"] = error.reasons
    return data


def _report_error(error: Exception, as_json: bool) -> None:
    if isinstance(error, ValidationError):
        lines = ["Cannot publish:"] + [f"  - {reason}" for reason in error.reasons]
        _output(_error_payload(error), as_json, "\n".join(lines))
    else:
        _output(_error_payload(error), as_json, f"Error: {error}")


def _install_signal_handlers(coordinator: PublishCoordinator) -> None:
    """SIGUSR1 pauses, SIGUSR2 resumes, SIGINT/SIGTERM cancel the job."""
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGUSR1, coordinator.pause_publish)
    loop.add_signal_handler(signal.SIGUSR2, coordinator.resume_publish)

    def cancel() -> None:
        loop.create_task(coordinator.cancel_publish())

    loop.add_signal_handler(signal.SIGINT, cancel)
    loop.add_signal_handler(signal.SIGTERM, cancel)


async def _run_publish(
    runtime: SurveyRuntime,
    session_id: str,
    credentials: PublishCredentials,
    as_json: bool,
) -> PublishResult | None:
    coordinator = runtime.coordinator
    outcome: dict[str, PublishResult] = {}

    coordinator.on_progress(lambda p: _print_progress(p, as_json))
    coordinator.on_complete(lambda r: outcome.update(result=r))
    coordinator.on_error(
        lambda e, c: _output(
            {**_error_payload(e), "sequence": c.sequence_num if c else None},
            as_json,
            f"Failed image {c.sequence_num}: {e}" if c else f"Error: {e}",
        )
    )

    _install_signal_handlers(coordinator)
    await runtime.publish(session_id, credentials)
    await coordinator.wait_until_finished()
    return outcome.get("result")


def _start_runtime(settings: Settings, as_json: bool) -> SurveyRuntime:
    runtime = SurveyRuntime(settings)
    for session in runtime.start():
        _output(
            {"event": "recovered", "session_id": session.id},
            as_json,
            f"Recovered interrupted session {session.id} "
            f"({session.recovery_info.potential_missed_frames} missed frames)",
        )
    return runtime


def _print_result(result: PublishResult, as_json: bool) -> None:
    _output(
        {"event": "complete", **result.to_dict()},
        as_json,
        f"Published {result.completed}/{result.total} images "
        f"({result.failed} failed) - session is {result.status.value}",
    )


@publish_app.command()
def run(
    session_id: str = typer.Argument(..., help="Session to publish"),
    token: str = typer.Option(None, "--token", help="GitHub token (default: stored or env)"),
    repo: str = typer.Option(None, "--repo", "-r", help="Target repository as owner/name"),
    branch: str = typer.Option(None, "--branch", "-b", help="Target branch"),
    contributor: str = typer.Option(None, "--contributor", "-c", help="Name credited for the data"),
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format (one object per line)",
    ),
) -> None:
    """Publish a session and wait until it is done.

    Use 'streetsurvey publish pause/resume/cancel' from another terminal,
    or Ctrl+C to cancel.
    """
    settings = get_settings()
    existing_pid = _get_running_pid(settings.pid_path)
    if existing_pid:
        _output(
            {"status": "error", "message": "Publisher already running", "pid": existing_pid},
            output_json,
            f"Publisher already running (PID: {existing_pid}).",
        )
        raise typer.Exit(1)

    setup_logging(settings.log_level, settings.log_file, settings.device_id)
    runtime = _start_runtime(settings, output_json)
    credentials = runtime.credentials(
        github_token=token, github_repo=repo, github_branch=branch, contributor=contributor
    )

    _write_pid(settings.pid_path)
    try:
        result = asyncio.run(_run_publish(runtime, session_id, credentials, output_json))
    except (PublishError, StorageError) as e:
        _report_error(e, output_json)
        raise typer.Exit(1)
    finally:
        settings.pid_path.unlink(missing_ok=True)
        runtime.close()

    if result is None:
        _output(
            {"status": "incomplete", "session_id": session_id},
            output_json,
            "Publishing did not complete (cancelled or finishing failed).",
        )
        raise typer.Exit(1)

    _print_result(result, output_json)


@publish_app.command()
def finish(
    session_id: str = typer.Argument(..., help="Session whose finishing step to re-run"),
    token: str = typer.Option(None, "--token", help="GitHub token (default: stored or env)"),
    repo: str = typer.Option(None, "--repo", "-r", help="Target repository as owner/name"),
    branch: str = typer.Option(None, "--branch", "-b", help="Target branch"),
    contributor: str = typer.Option(None, "--contributor", "-c", help="Name credited for the data"),
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Re-upload the session CSV and metadata and update the coverage index."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file, settings.device_id)
    runtime = _start_runtime(settings, output_json)
    credentials = runtime.credentials(
        github_token=token, github_repo=repo, github_branch=branch, contributor=contributor
    )

    try:
        result = asyncio.run(runtime.finish(session_id, credentials))
    except (PublishError, RemoteError, StorageError) as e:
        _report_error(e, output_json)
        raise typer.Exit(1)
    finally:
        runtime.close()

    _print_result(result, output_json)


def _signal_publisher(sig: signal.Signals, action: str, output_json: bool) -> None:
    settings = get_settings()
    pid = _get_running_pid(settings.pid_path)
    if not pid:
        _output({"status": "not_running"}, output_json, "No publisher is currently running.")
        raise typer.Exit(1)

    try:
        os.kill(pid, sig)
    except OSError as e:
        _output(
            {"status": "error", "message": str(e)},
            output_json,
            f"Failed to signal publisher: {e}",
        )
        raise typer.Exit(1)

    _output({"status": action, "pid": pid}, output_json, f"Publisher {action} (PID: {pid}).")


@publish_app.command()
def pause(
    output_json: bool = typer.Option(False, "--json", "-j", help="Output in JSON format"),
) -> None:
    """Pause the running publisher after the current image."""
    _signal_publisher(signal.SIGUSR1, "pausing", output_json)


@publish_app.command()
def resume(
    output_json: bool = typer.Option(False, "--json", "-j", help="Output in JSON format"),
) -> None:
    """Resume a paused publisher."""
    _signal_publisher(signal.SIGUSR2, "resuming", output_json)


@publish_app.command()
def cancel(
    output_json: bool = typer.Option(False, "--json", "-j", help="Output in JSON format"),
) -> None:
    """Cancel the running publisher; the session is marked stopped."""
    _signal_publisher(signal.SIGTERM, "cancelling", output_json)
