"""Street survey configuration settings using pydantic-settings."""

import logging
import platform
from functools import cached_property
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from streetsurvey.storage.models import DEFAULT_CAPTURE_SETTINGS
from streetsurvey.sync.github import PublishCredentials

# Keys under which credentials may be saved in the capture store
CREDENTIAL_KEYS = ("github_token", "github_repo", "github_branch", "contributor")


class Settings(BaseSettings):
    """Configuration settings for the street survey publisher.

    Settings are loaded from environment variables with the STREETSURVEY_
    prefix. For example, STREETSURVEY_GITHUB_REPO=org/survey-data sets
    github_repo.
    """

    model_config = SettingsConfigDict(
        env_prefix="STREETSURVEY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Remote repository
    github_api_url: str = "https://api.github.com"
    github_token: str = ""
    github_repo: str = ""  # owner/name
    github_branch: str = "main"
    contributor: str = ""

    # Publish behaviour
    max_upload_attempts: int = 5
    rate_limit_cooldown: float = 60.0  # seconds to wait after a rate-limit response
    backoff_base: float = 1.0  # seconds, doubled per transient failure
    backoff_cap: float = 60.0
    item_delay: float = 0.5  # pause between items to stay under secondary limits
    min_rate_limit_remaining: int = 100
    cancel_timeout: float = 5.0
    request_timeout: float = 30.0

    # File paths
    capture_defaults_file: Path = Path("~/.config/streetsurvey/capture.yaml")
    data_dir: Path = Path("~/.local/share/streetsurvey")
    log_file: Path | None = None

    # Logging
    log_level: str = "INFO"
    device_id: str = Field(default_factory=platform.node)  # tags every log record

    @field_validator("max_upload_attempts")
    @classmethod
    def validate_max_upload_attempts(cls, v: int) -> int:
        """Ensure at least one attempt is made per item."""
        if v < 1:
            raise ValueError("max_upload_attempts must be at least 1")
        return v

    @field_validator(
        "rate_limit_cooldown", "backoff_base", "backoff_cap", "item_delay", "cancel_timeout"
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        """Ensure delays are not negative."""
        if v < 0:
            raise ValueError("delays must not be negative")
        return v

    @field_validator("github_repo")
    @classmethod
    def validate_github_repo(cls, v: str) -> str:
        """Ensure the repository is given as owner/name."""
        if v and (v.count("/") != 1 or not all(v.split("/"))):
            raise ValueError("github_repo must look like 'owner/name'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v.upper()

    @cached_property
    def data_path(self) -> Path:
        """Return expanded data directory path."""
        return self.data_dir.expanduser()

    @cached_property
    def capture_defaults_path(self) -> Path:
        """Return expanded capture defaults file path."""
        return self.capture_defaults_file.expanduser()

    @cached_property
    def db_path(self) -> Path:
        """Return the capture store database path."""
        return self.data_path / "streetsurvey.db"

    @cached_property
    def pid_path(self) -> Path:
        """Return the PID file of a running publisher."""
        return self.data_path / "publish.pid"

    def load_capture_defaults(self) -> dict[str, Any]:
        """Load capture settings for new sessions from YAML.

        Known keys in the file (capture_interval, image_quality,
        image_max_width) override the built-in defaults; unknown keys are
        ignored. If the file doesn't exist or can't be parsed, the
        defaults are returned.
        """
        defaults = dict(DEFAULT_CAPTURE_SETTINGS)

        if not self.capture_defaults_path.exists():
            return defaults

        try:
            with open(self.capture_defaults_path) as f:
                user_defaults = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logging.warning(
                "Failed to load capture defaults from %s: %s", self.capture_defaults_path, e
            )
            return defaults

        if not isinstance(user_defaults, dict):
            logging.warning("Ignoring capture defaults file %s: not a mapping", self.capture_defaults_path)
            return defaults

        defaults.update({k: v for k, v in user_defaults.items() if k in defaults})
        return defaults

    def publish_credentials(
        self,
        stored: dict[str, Any] | None = None,
        **overrides: str | None,
    ) -> PublishCredentials:
        """Resolve the credentials for a publish job.

        Explicit overrides win over values saved in the capture store,
        which win over the environment.

        Args:
            stored: Settings saved in the capture store
            **overrides: github_token, github_repo, github_branch, contributor

        Returns:
            PublishCredentials for the target repository
        """
        stored = stored or {}
        resolved = {}
        for key in CREDENTIAL_KEYS:
            resolved[key] = overrides.get(key) or stored.get(key) or getattr(self, key)

        return PublishCredentials(
            token=resolved["github_token"],
            repo=resolved["github_repo"],
            branch=resolved["github_branch"] or "main",
            contributor=resolved["contributor"],
        )
