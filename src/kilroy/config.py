"""
Runtime configuration using pydantic-settings.

Every component takes its tunables as constructor arguments; these
settings only provide defaults for wiring an application together.
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class KilroySettings(BaseSettings):
    """Settings loaded from ``KILROY_*`` environment variables."""

    # Spatial index
    grid_resolution_deg: float = Field(default=0.0005, gt=0)  # ~50 m cells
    discovery_radius_m: float = Field(default=50.0, ge=0)
    movement_threshold_m: float = Field(default=10.0, ge=0)
    geohash_precision: int = Field(default=6, ge=1, le=12)

    # Cloud photo provider
    cloud_photos_api_base: str = "https://photoslibrary.googleapis.com/v1"
    cloud_photos_access_token: Optional[str] = None
    cloud_photos_page_size: int = Field(default=100, ge=1, le=100)
    cloud_photos_max_items: int = Field(default=5000, ge=1)

    # Local storage
    pin_store_path: str = "memories.json"
    device_id: Optional[str] = None

    # HTTP
    request_timeout_s: float = 30.0
    max_retries: int = Field(default=3, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="KILROY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )


@lru_cache
def get_settings() -> KilroySettings:
    """Get cached settings instance."""
    return KilroySettings()
