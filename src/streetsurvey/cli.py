"""streetsurvey CLI - Command-line interface for the survey publisher."""

import typer

from streetsurvey import __version__
from streetsurvey.cli_commands import config_app, publish_app, sessions_app, status_command

app = typer.Typer(
    name="streetsurvey",
    help="Street Survey - publish recorded survey sessions to a GitHub repository.",
    no_args_is_help=True,
)

# Register subcommands
app.add_typer(sessions_app, name="sessions")
app.add_typer(publish_app, name="publish")
app.add_typer(config_app, name="config")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"streetsurvey {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """Street Survey - resilient publishing of street-level recordings."""
    pass


# Register status as a direct command on the main app
app.command(name="status")(status_command)


if __name__ == "__main__":
    app()
