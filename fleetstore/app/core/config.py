"""
Configuration settings for the Fleet Telemetry Store.

This module handles application configuration using Pydantic settings.
"""

from datetime import timedelta
from typing import Optional

from pydantic_settings import BaseSettings

from fleetstore.app.core.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings."""

    # Application
    app_name: str = "Fleet Telemetry Store"
    api_version: str = "v1"
    debug: bool = False
    log_level: str = "INFO"

    # Catalog database
    database_url: str = "sqlite+aiosqlite:///./fleetstore.db"
    db_echo: bool = False
    db_pool_size: int = 5
    db_max_overflow: int = 10

    # Point store
    partition_width_seconds: int = 86400
    strict_ordering: bool = False
    grace_window_seconds: int = 3600

    # Compaction and retention
    compact_after_seconds: int = 7 * 86400
    retention_seconds: Optional[int] = None
    compaction_interval_seconds: int = 3600

    # Rollups
    refresh_interval_seconds: int = 3600
    refresh_lag_seconds: int = 3600

    # Spatial index
    spatial_cell_degrees: float = 0.5

    # Background work
    maintenance_enabled: bool = True
    catalog_sync_enabled: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def partition_width(self) -> timedelta:
        return timedelta(seconds=self.partition_width_seconds)

    @property
    def grace_window(self) -> timedelta:
        return timedelta(seconds=self.grace_window_seconds)

    @property
    def compact_after(self) -> timedelta:
        return timedelta(seconds=self.compact_after_seconds)

    @property
    def retention(self) -> Optional[timedelta]:
        if self.retention_seconds is None:
            return None
        return timedelta(seconds=self.retention_seconds)

    @property
    def refresh_lag(self) -> timedelta:
        return timedelta(seconds=self.refresh_lag_seconds)

    def validate_storage(self) -> None:
        """
        Check storage settings before anything is built from them.

        Raises:
            ConfigurationError: On any setting the store cannot run with
        """
        positive = {
            "partition_width_seconds": self.partition_width_seconds,
            "compact_after_seconds": self.compact_after_seconds,
            "compaction_interval_seconds": self.compaction_interval_seconds,
            "refresh_interval_seconds": self.refresh_interval_seconds,
            "spatial_cell_degrees": self.spatial_cell_degrees,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive", {name: value})

        if self.grace_window_seconds < 0:
            raise ConfigurationError(
                "grace_window_seconds must not be negative",
                {"grace_window_seconds": self.grace_window_seconds},
            )
        if self.refresh_lag_seconds < 0:
            raise ConfigurationError(
                "refresh_lag_seconds must not be negative",
                {"refresh_lag_seconds": self.refresh_lag_seconds},
            )
        if self.retention_seconds is not None and self.retention_seconds < self.compact_after_seconds:
            raise ConfigurationError(
                "retention_seconds must not be shorter than compact_after_seconds",
                {
                    "retention_seconds": self.retention_seconds,
                    "compact_after_seconds": self.compact_after_seconds,
                },
            )


settings = Settings()
