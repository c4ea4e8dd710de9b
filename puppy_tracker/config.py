"""
Configuration and settings for the tracker.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from puppy_tracker.errors import ConfigurationError


class Settings(BaseSettings):
    """Environment-backed settings for the tracker service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    api_prefix: str = Field(default="/api")

    # Hosted backend (Supabase project)
    supabase_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL"),
    )
    supabase_anon_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "SUPABASE_ANON_KEY", "NEXT_PUBLIC_SUPABASE_ANON_KEY"
        ),
    )

    # Empirically tuned; not tied to any SLA.
    session_init_timeout_seconds: float = Field(default=8.0, gt=0)
    profile_fetch_timeout_seconds: float = Field(default=5.0, gt=0)
    http_timeout_seconds: float = Field(default=15.0, gt=0)

    # Photo storage
    photo_bucket: str = Field(default="puppy-photos")
    storage_region: str = Field(default="us-east-1")
    max_photo_bytes: int = Field(default=5 * 1024 * 1024, gt=0)

    display_timezone: str = Field(default="UTC")

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "PUPPY_TRACKER_USE_IN_MEMORY_BACKENDS", "USE_IN_MEMORY_BACKENDS"
        ),
    )

    def require_remote(self) -> tuple[str, str]:
        """Return the service URL and public key, or fail loudly."""
        if not self.supabase_url or not self.supabase_anon_key:
            raise ConfigurationError(
                "SUPABASE_URL and SUPABASE_ANON_KEY must be set to reach the backend"
            )
        return self.supabase_url.rstrip("/"), self.supabase_anon_key


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
