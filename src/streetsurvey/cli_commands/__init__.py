"""CLI command modules for the street survey publisher."""

from streetsurvey.cli_commands.config import config_app
from streetsurvey.cli_commands.publish import publish_app
from streetsurvey.cli_commands.sessions import sessions_app
from streetsurvey.cli_commands.status import status_command

__all__ = ["config_app", "publish_app", "sessions_app", "status_command"]
