"""Environment-driven engine settings."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings

from chatflow.version import __version__


class EngineSettings(BaseSettings):
    """Runtime limits and defaults, read from ``CHATFLOW_*`` variables."""

    max_steps_per_event: int = 1000
    io_timeout_seconds: float = 30.0
    webhook_timeout_seconds: float = 300.0
    http_user_agent: str = f"chatflow/{__version__}"
    log_level: str = "INFO"

    model_config = {"env_prefix": "CHATFLOW_", "env_file": ".env", "extra": "ignore"}


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Process-wide settings, loaded once."""
    return EngineSettings()
