"""Configuration management for casc-source."""

from __future__ import annotations

import json
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, field_validator

from casc_source.core.types import LocaleFlags

logger = structlog.get_logger()


class CacheConfig(BaseModel):
    """Cache configuration."""

    cache_dir: Path = Field(
        default=Path.home() / ".cache" / "casc-source",
        description="Cache directory"
    )
    enabled: bool = Field(
        default=True,
        description="Whether archive indices are cached on disk"
    )


class CDNSettings(BaseModel):
    """Remote CDN settings."""

    patch_host: str = Field(
        default="http://{region}.patch.battle.net:1119/",
        description="Patch server URL template, formatted with the region"
    )
    version_config_path: str = Field(default="/versions", description="Version config path")
    server_config_path: str = Field(default="/cdns", description="Server (CDN) config path")
    timeout: float = Field(default=30.0, description="Request timeout in seconds")
    ping_timeout: float = Field(default=5.0, description="Host ping timeout in seconds")
    max_concurrent_indices: int = Field(
        default=50,
        description="Maximum simultaneous archive index downloads"
    )
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")

    def get_patch_host(self, region: str) -> str:
        """Get the patch server base URL for a region."""
        return self.patch_host.format(region=region)

    @field_validator("timeout", "ping_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeout value."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @field_validator("max_concurrent_indices")
    @classmethod
    def validate_max_concurrent(cls, v: int) -> int:
        """Validate fan-out limit."""
        if v < 1:
            raise ValueError("max_concurrent_indices must be at least 1")
        return v


class AppConfig(BaseModel):
    """Application configuration."""

    config_dir: Path = Field(
        default=Path.home() / ".config" / "casc-source",
        description="Configuration directory"
    )
    region: str = Field(default="us", description="Default CDN region")
    locale: int = Field(default=int(LocaleFlags.enUS), description="Active locale flags")
    listfile_url: str = Field(
        default="https://github.com/wowdev/wow-listfile/releases/latest/download/community-listfile.csv",
        description="Listfile CSV source"
    )
    tact_keys_url: str = Field(
        default="https://raw.githubusercontent.com/wowdev/TACTKeys/master/WoW.txt",
        description="TACT key list source"
    )
    cache: CacheConfig = Field(default_factory=CacheConfig)
    cdn: CDNSettings = Field(default_factory=CDNSettings)
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    @classmethod
    def load(cls, config_file: Path | None = None) -> AppConfig:
        """Load configuration from file.

        Args:
            config_file: Path to config file, uses default if None

        Returns:
            Application configuration
        """
        if config_file is None:
            config_file = Path.home() / ".config" / "casc-source" / "config.json"

        if config_file.exists():
            with open(config_file) as f:
                data = json.load(f)
                return cls(**data)

        return cls()

    def save(self, config_file: Path | None = None) -> None:
        """Save configuration to file.

        Args:
            config_file: Path to config file, uses default if None
        """
        if config_file is None:
            config_file = self.config_dir / "config.json"

        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

        logger.info("config_saved", path=str(config_file))

    @field_validator("locale")
    @classmethod
    def validate_locale(cls, v: int) -> int:
        """Reject locale masks that select nothing."""
        if v <= 0:
            raise ValueError("Locale flags must select at least one locale")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Valid levels: {valid_levels}")
        return v
