"""Configuration settings for svc_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default cache directory."""
    return Path.home() / ".cache" / "svc-imagegen"


def _default_artifacts_dir() -> Path:
    """Return the default artifacts directory."""
    return Path.home() / ".local" / "share" / "svc-imagegen" / "builds"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "svc-imagegen" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the SVC_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="SVC_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for locks and staged build contexts",
    )
    artifacts_dir: Path = Field(
        default_factory=_default_artifacts_dir,
        description="Root directory for build logs, Dockerfiles and manifests",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )
    tmp_dir: Path | None = Field(
        default=None,
        description="Temporary directory for staging (uses system default if not set)",
    )

    # Operational
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    docker_bin: str = Field(
        default="docker",
        description="Container build tool executable",
    )
    keep_context: bool = Field(
        default=False,
        description="Keep the staged build context after a build",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for each build stage",
    )
    run_timeout: int = Field(
        default=120,
        ge=5,
        description="Timeout for smoke-test container runs and inspections",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: object) -> object:
        """Accept log levels in any case."""
        return v.upper() if isinstance(v, str) else v

    @property
    def lock_dir(self) -> Path:
        """Directory holding one lock file per build cache key."""
        return self.cache_dir / ".locks"


def get_settings() -> Settings:
    """Get the application settings singleton.

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
