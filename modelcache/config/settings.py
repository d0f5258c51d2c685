"""Unified configuration settings for modelcache.

Settings are read from the environment (prefix ``MODELCACHE_``) or an
optional ``.env`` file in the working directory:
    from modelcache.config.settings import get_settings
    settings = get_settings()
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """Library settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MODELCACHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== Logging ====================
    log_level: str = Field(
        default="INFO",
        description="Minimum loguru level used by configure_logging()"
    )

    # ==================== Store ====================
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL; when unset an in-process memory store is used"
    )
    key_prefix: str = Field(
        default="cache",
        min_length=1,
        description="Prefix of rendered store keys"
    )
    key_digest_length: int = Field(
        default=32,
        ge=8,
        le=64,
        description="Hex characters of the SHA-256 digest kept in rendered keys"
    )
    default_expires_in: Optional[int] = Field(
        default=None,
        ge=1,
        description="Expiry in seconds applied when an operation sets none"
    )

    # ==================== Debugging ====================
    debug_keys: bool = Field(
        default=False,
        description="Log every composed cache key, as if debug=True everywhere"
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        """Accept level names in any case."""
        level = str(v).upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance (singleton pattern)."""
    return Settings()
