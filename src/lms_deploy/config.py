"""Runtime settings with pydantic-settings.

Every field can be overridden with an ``LMS_`` prefixed environment variable
or from a ``.env`` file in the working directory, e.g. ``LMS_APP_DIR=/srv/lms``.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Provisioner settings."""

    model_config = SettingsConfigDict(
        env_prefix="LMS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === Filesystem layout ===
    app_dir: Path = Field(default=Path("/opt/lms-app"), description="Application directory")
    backup_dir: Path = Field(default=Path("/opt/lms-backups"), description="Backup directory")
    log_file: Path = Field(
        default=Path("/var/log/lms-install.log"),
        description="Install log file (skipped when not writable)",
    )
    cli_path: Path = Field(
        default=Path("/usr/local/bin/lms"),
        description="Location of the management CLI wrapper",
    )
    nginx_dir: Path = Field(default=Path("/etc/nginx"), description="Nginx configuration root")
    letsencrypt_dir: Path = Field(
        default=Path("/etc/letsencrypt/live"),
        description="Certificate client live directory",
    )

    # === Stack ===
    docker_image: str = Field(default="bariqid/vajar_lms_image:latest")
    app_port: int = Field(default=8080, ge=1, le=65535)
    operator_user: str = Field(
        default="ubuntu",
        description="Non-root operator account created by the cloud profile",
    )

    # === Timing ===
    probe_interval: float = Field(default=5, ge=0, description="Readiness poll interval")
    probe_max_attempts: int = Field(default=30, ge=1, description="Readiness attempt ceiling")
    start_settle_seconds: float = Field(default=30, ge=0)
    settle_seconds: float = Field(default=15, ge=0, description="Wait after a mode switch")
    command_timeout: int = Field(default=1800, ge=1, description="Per-command timeout")

    # === Backups ===
    backup_retention: int = Field(default=7, ge=1)

    # === Logging ===
    log_format: Literal["json", "console"] = Field(default="console")
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v

    @property
    def env_file(self) -> Path:
        return self.app_dir / ".env"

    @property
    def credentials_file(self) -> Path:
        return self.app_dir / "CREDENTIALS.txt"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
