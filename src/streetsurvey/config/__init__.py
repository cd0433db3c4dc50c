"""Street survey configuration module.

Provides centralized configuration management using pydantic-settings.

Usage:
    from streetsurvey.config import get_settings

    settings = get_settings()
    print(settings.github_repo)
    print(settings.load_capture_defaults())
"""

from functools import lru_cache

from streetsurvey.config.settings import CREDENTIAL_KEYS, Settings

__all__ = ["CREDENTIAL_KEYS", "Settings", "get_settings"]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance.

    To reload settings, call get_settings.cache_clear() first.

    Returns:
        Settings instance loaded from environment variables.
    """
    return Settings()
