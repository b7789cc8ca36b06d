"""Configuration management for Branch Deployer."""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """Deployer configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Target layout
    state_filename: str = Field(
        ".branch-deployer.json",
        description="Branch state file stored in the target root",
    )
    config_filename: str = Field(
        "deployer.json",
        description="Per-target middleware configuration file",
    )
    temp_dirname: str = Field(".deploying", description="Namespace directory holding temp targets")
    rollback_dirname: str = Field(".rollback", description="Namespace directory holding rollback targets")

    # Run behaviour
    prune_deleted: bool = Field(True, description="Remove live targets of deleted branches")
    keep_failed_temp: bool = Field(
        False,
        description="Preserve the temp directory of a failed branch for inspection",
    )

    # External tools
    git_bin: str = Field("git", description="git executable")
    java_bin: str = Field("java", description="JVM executable used by the compiler")
    closure_root: Optional[str] = Field(None, description="Closure Compiler install root")

    # Restart proxy
    proxy_host: str = Field("localhost", description="Restart proxy host")
    proxy_port: Optional[int] = Field(None, description="Restart proxy port")

    # Observability
    log_level: str = Field("INFO")
    log_format: str = Field("console")

    @field_validator("temp_dirname", "rollback_dirname")
    @classmethod
    def validate_namespace_dirname(cls, v: str) -> str:
        """Git refuses ref components starting with a dot, so these never clash with branches."""
        if not v.startswith(".") or v in (".", "..") or "/" in v:
            raise ValueError(f"Invalid namespace directory name: {v!r}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}, got {v!r}")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in ("json", "console"):
            raise ValueError(f"log_format must be 'json' or 'console', got {v!r}")
        return v

    @property
    def proxy_base_url(self) -> Optional[str]:
        """Base URL of the restart proxy, or None when no port is configured."""
        if not self.proxy_port:
            return None
        return f"http://{self.proxy_host}:{self.proxy_port}"
