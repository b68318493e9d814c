"""
Global settings from environment variables.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SourcePermSettings(BaseSettings):
    """
    Global configuration loaded from environment variables.

    Environment variables should be prefixed with SOURCEPERM_
    Example: SOURCEPERM_DISCOVERY_TIMEOUT=5, SOURCEPERM_LOG_FORMAT=json
    """

    model_config = SettingsConfigDict(
        env_prefix="SOURCEPERM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core settings
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["console", "json"] = "console"

    # Workspace layout: <workspaces_root>/<workspace_id>/sources/<slug>/
    workspaces_root: Path = Field(
        default_factory=lambda: Path.home() / ".sourceperm" / "workspaces"
    )

    # Capability discovery
    discovery_timeout: float = Field(default=10.0, gt=0)  # seconds
    mcp_protocol_version: str = "2025-03-26"
    client_name: str = "sourceperm"

    # Source folder watching
    watch_debounce: float = Field(default=0.5, ge=0)  # seconds


# Global settings instance (singleton)
settings = SourcePermSettings()


def get_settings() -> SourcePermSettings:
    """Get the global settings instance."""
    return settings


__all__ = ["SourcePermSettings", "settings", "get_settings"]
