"""Configuration management CLI commands."""

import json

import typer
import yaml

from streetsurvey.config import CREDENTIAL_KEYS, get_settings
from streetsurvey.logging import get_logger, log_config_change
from streetsurvey.storage.models import DEFAULT_CAPTURE_SETTINGS
from streetsurvey.storage.store import CaptureStore

config_app = typer.Typer(
    name="config",
    help="Configuration management - view and modify settings.",
    no_args_is_help=True,
)

logger = get_logger("streetsurvey.config")


def _output(data: dict, as_json: bool, human_lines: list[str]) -> None:
    """Output data as JSON or human-readable format."""
    if as_json:
        typer.echo(json.dumps(data))
    else:
        for line in human_lines:
            typer.echo(line)


def _mask(key: str, value):
    if key == "github_token" and value:
        return f"{value[:4]}..." if len(value) > 8 else "***"
    return value


def _check_key(key: str) -> None:
    if key not in CREDENTIAL_KEYS:
        typer.echo(f"Unknown key: {key}")
        typer.echo(f"Valid keys: {', '.join(CREDENTIAL_KEYS)}")
        raise typer.Exit(1)


@config_app.command()
def show(
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Show current configuration."""
    settings = get_settings()
    store = CaptureStore(settings.db_path)
    try:
        stored = store.get_all_settings()
    finally:
        store.close()

    config_data = {
        "github_api_url": settings.github_api_url,
        "github_token": _mask("github_token", settings.github_token),
        "github_repo": settings.github_repo,
        "github_branch": settings.github_branch,
        "contributor": settings.contributor,
        "max_upload_attempts": settings.max_upload_attempts,
        "rate_limit_cooldown": settings.rate_limit_cooldown,
        "min_rate_limit_remaining": settings.min_rate_limit_remaining,
        "data_dir": str(settings.data_path),
        "capture_defaults_file": str(settings.capture_defaults_path),
        "log_level": settings.log_level,
        "stored": {key: _mask(key, value) for key, value in stored.items()},
    }

    if output_json:
        typer.echo(json.dumps(config_data, indent=2))
    else:
        typer.echo("")
        typer.echo("Street Survey Configuration")
        typer.echo("---------------------------")
        typer.echo(f"GitHub API: {settings.github_api_url}")
        typer.echo(f"Repository: {settings.github_repo or '(not set)'}")
        typer.echo(f"Branch: {settings.github_branch}")
        typer.echo(f"Token: {config_data['github_token'] or '(not set)'}")
        typer.echo(f"Contributor: {settings.contributor or '(not set)'}")
        typer.echo(f"Max upload attempts: {settings.max_upload_attempts}")
        typer.echo(f"Rate limit cooldown: {settings.rate_limit_cooldown}s")
        typer.echo(f"Data directory: {settings.data_path}")
        typer.echo(f"Capture defaults file: {settings.capture_defaults_path}")
        typer.echo(f"Log level: {settings.log_level}")
        if stored:
            typer.echo("")
            typer.echo("Stored (override environment):")
            for key, value in sorted(stored.items()):
                typer.echo(f"  {key}: {_mask(key, value)}")
        typer.echo("")
        typer.echo("Set values using environment variables with STREETSURVEY_ prefix")
        typer.echo("Example: STREETSURVEY_GITHUB_REPO=org/survey-data")


@config_app.command(name="get")
def get_config(
    key: str = typer.Argument(..., help="Stored key to read"),
) -> None:
    """Print a value stored in the capture database."""
    _check_key(key)
    store = CaptureStore(get_settings().db_path)
    try:
        value = store.get_setting(key)
    finally:
        store.close()

    if value is None:
        typer.echo(f"{key} is not set")
        raise typer.Exit(1)
    typer.echo(_mask(key, value))


@config_app.command(name="set")
def set_config(
    key: str = typer.Argument(..., help="Configuration key to set"),
    value: str = typer.Argument(..., help="Value to set"),
) -> None:
    """Store a publish credential; stored values take precedence over the environment."""
    _check_key(key)
    if key == "github_repo" and (value.count("/") != 1 or not all(value.split("/"))):
        typer.echo("github_repo must look like 'owner/name'")
        raise typer.Exit(1)

    store = CaptureStore(get_settings().db_path)
    try:
        old_value = store.get_setting(key)
        store.save_setting(key, value)
    finally:
        store.close()

    log_config_change(logger, key, _mask(key, old_value), _mask(key, value))
    typer.echo(f"Set {key}={_mask(key, value)}")


@config_app.command(name="unset")
def unset_config(
    key: str = typer.Argument(..., help="Configuration key to remove"),
) -> None:
    """Remove a stored value so the environment applies again."""
    _check_key(key)
    store = CaptureStore(get_settings().db_path)
    try:
        old_value = store.get_setting(key)
        store.delete_setting(key)
    finally:
        store.close()

    if old_value is not None:
        log_config_change(logger, key, _mask(key, old_value), None)
    typer.echo(f"Unset {key}")


# Capture defaults subcommand group
capture_app = typer.Typer(
    name="capture",
    help="Manage capture defaults for new sessions.",
    no_args_is_help=True,
)
config_app.add_typer(capture_app, name="capture")


@capture_app.command(name="show")
def show_capture_defaults(
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Show capture defaults applied to new sessions."""
    settings = get_settings()
    defaults = settings.load_capture_defaults()

    _output(
        defaults,
        output_json,
        [
            "",
            "Capture Defaults",
            "----------------",
            f"Capture interval: {defaults['capture_interval']}ms",
            f"Image quality: {defaults['image_quality']}",
            f"Max image width: {defaults['image_max_width']}px",
            "",
            f"File: {settings.capture_defaults_path}",
        ],
    )


@capture_app.command(name="set")
def set_capture_default(
    key: str = typer.Argument(..., help="capture_interval, image_quality or image_max_width"),
    value: str = typer.Argument(..., help="Value to set"),
) -> None:
    """Write a capture default to the YAML file."""
    if key not in DEFAULT_CAPTURE_SETTINGS:
        typer.echo(f"Unknown key: {key}")
        typer.echo(f"Valid keys: {', '.join(DEFAULT_CAPTURE_SETTINGS)}")
        raise typer.Exit(1)

    kind = type(DEFAULT_CAPTURE_SETTINGS[key])
    try:
        parsed = kind(value)
    except ValueError:
        typer.echo(f"{key} must be a {kind.__name__}")
        raise typer.Exit(1)

    settings = get_settings()
    path = settings.capture_defaults_path
    defaults = settings.load_capture_defaults()
    old_value = defaults[key]
    defaults[key] = parsed

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(defaults, f, default_flow_style=False)

    log_config_change(logger, f"capture.{key}", str(old_value), str(parsed))
    typer.echo(f"Set {key}={parsed} in {path}")
