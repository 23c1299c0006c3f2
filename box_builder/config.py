"""Configuration settings for box_builder.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the BOX_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="BOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Engine connection
    docker_host: str | None = Field(
        default=None,
        description="Engine endpoint (uses DOCKER_HOST environment if not set)",
    )
    docker_api_version: str = Field(
        default="auto",
        description="Engine API version to negotiate",
    )
    docker_timeout: int = Field(
        default=60,
        ge=1,
        description="Timeout for ordinary engine calls in seconds",
    )

    # Build behavior
    use_cache: bool = Field(
        default=True,
        description="Consult the image cache before executing steps",
    )
    tty: bool = Field(
        default=False,
        description="Allocate a TTY for run steps and render live pull progress",
    )
    stdin: bool = Field(
        default=False,
        description="Forward local stdin into run steps",
    )

    # Stream handling (in seconds)
    wait_poll_interval: float = Field(
        default=0.5,
        gt=0,
        description="How often the exit-status wait checks for cancellation",
    )
    copy_poll_interval: float = Field(
        default=0.1,
        gt=0,
        description="How often stream copy loops check their stop signal",
    )
    output_drain_timeout: float = Field(
        default=5.0,
        ge=0,
        description="Grace period for output copying after a clean exit",
    )

    # Paths
    tmp_dir: Path | None = Field(
        default=None,
        description="Directory for layer spool files (uses system default if not set)",
    )
    archive_debug_path: Path | None = Field(
        default=None,
        description="Mirror every streamed image archive to this file",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
