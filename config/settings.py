"""Deployment settings and configuration."""

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Deployment settings loaded from ``AURA_DEPLOY_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="AURA_DEPLOY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(default=None)
    log_dir: Path = Field(default=Path("./logs"))

    # Inputs
    manifest_path: Optional[Path] = Field(default=None)
    workspace_dir: Path = Field(default=Path("."))

    # Outputs
    output_dir: Path = Field(default=Path("./dist"))
    staging_dir: Path = Field(default=Path("./build/staging"))
    install_root: Path = Field(default=Path("/"))

    # Service verification
    poll_interval: float = Field(default=1.0, gt=0)
    start_timeout: float = Field(default=30.0, ge=0)
    run_timeout: Optional[float] = Field(default=None, gt=0)
    command_timeout: Optional[float] = Field(default=None, gt=0)

    # Run mode
    parallel: bool = Field(default=False)
    package_only: bool = Field(default=False)
    host_signal: Optional[str] = Field(default=None)
    winsw_path: str = Field(default="winsw")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def validate_timeouts(self) -> "Settings":
        if self.start_timeout and self.poll_interval > self.start_timeout:
            raise ValueError(
                f"poll_interval ({self.poll_interval}) must not exceed "
                f"start_timeout ({self.start_timeout})"
            )
        return self

