"""Application configuration."""

from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

GIB = 1024**3


class EvictionPolicy(str, Enum):
    """Order in which cached entries are chosen for eviction."""

    RECENCY = "recency"
    FREQUENCY = "frequency"
    EXPIRATION = "expiration"


class SpeedUnit(str, Enum):
    """Unit the download speed limit is expressed in."""

    BPS = "Bps"
    KBPS = "KBps"
    MBPS = "MBps"

    @property
    def multiplier(self) -> int:
        return {SpeedUnit.BPS: 1, SpeedUnit.KBPS: 1024, SpeedUnit.MBPS: 1024**2}[self]


class CacheSettings(BaseModel):
    """Immutable snapshot of the settings the cache core reads.

    Components receive a ``Callable[[], CacheSettings]`` accessor and read it
    on every operation, so a new snapshot takes effect on the next call.
    """

    model_config = ConfigDict(frozen=True)

    budget_bytes: int = 100 * GIB
    eviction_policy: EvictionPolicy = EvictionPolicy.RECENCY
    max_age: timedelta = timedelta(days=30)
    recency_ledger_fallback: bool = True
    max_concurrent_fetches: int = Field(default=10, ge=1)
    throughput_cap_bytes: int = Field(default=0, ge=0)
    fetch_attempts: int = Field(default=3, ge=1)
    fetch_backoff: float = Field(default=1.0, ge=0)
    fetch_timeout: float = Field(default=60.0, gt=0)


SettingsProvider = Callable[[], CacheSettings]


class Settings(BaseSettings):
    """
    Application settings.

    Environment variables will be loaded and validated using Pydantic.
    """

    app_name: str = "Blobsync"
    version: str = "0.1.0"

    # Cache Settings
    CACHE_PATH: Path | None = None
    MAX_LOCAL_CACHE_GIB: float = Field(default=100, ge=0)
    EVICTION_POLICY: EvictionPolicy = EvictionPolicy.RECENCY
    CACHE_MAX_AGE_DAYS: int = Field(default=30, ge=0)
    RECENCY_LEDGER_FALLBACK: bool = True
    EVICTION_SWEEP_INTERVAL: int = Field(default=600, gt=0)  # seconds

    # Transfer Settings
    FILE_SERVER_URL: str = "http://localhost:6000"
    MAX_CONCURRENT_FETCHES: int = Field(default=10, ge=1)
    DOWNLOAD_SPEED_LIMIT: int = Field(default=0, ge=0)  # 0 = unlimited
    DOWNLOAD_SPEED_UNIT: SpeedUnit = SpeedUnit.MBPS
    FETCH_ATTEMPTS: int = Field(default=3, ge=1)
    FETCH_BACKOFF: float = Field(default=1.0, ge=0)  # seconds, multiplied by attempt
    FETCH_TIMEOUT: float = Field(default=60.0, gt=0)  # seconds per attempt

    # Logging Settings
    LOG_LEVEL: str = "INFO"
    JSON_LOGS: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow",  # Allow extra fields in environment
    )

    @model_validator(mode="after")
    def normalize_log_level(self) -> "Settings":
        """Normalize log level casing."""
        self.LOG_LEVEL = self.LOG_LEVEL.upper()
        return self

    @property
    def budget_bytes(self) -> int:
        return int(self.MAX_LOCAL_CACHE_GIB * GIB)

    @property
    def throughput_cap_bytes(self) -> int:
        return self.DOWNLOAD_SPEED_LIMIT * self.DOWNLOAD_SPEED_UNIT.multiplier

    def snapshot(self) -> CacheSettings:
        """Freeze the current values into a ``CacheSettings``."""
        return CacheSettings(
            budget_bytes=self.budget_bytes,
            eviction_policy=self.EVICTION_POLICY,
            max_age=timedelta(days=self.CACHE_MAX_AGE_DAYS),
            recency_ledger_fallback=self.RECENCY_LEDGER_FALLBACK,
            max_concurrent_fetches=self.MAX_CONCURRENT_FETCHES,
            throughput_cap_bytes=self.throughput_cap_bytes,
            fetch_attempts=self.FETCH_ATTEMPTS,
            fetch_backoff=self.FETCH_BACKOFF,
            fetch_timeout=self.FETCH_TIMEOUT,
        )


# Create settings instance
settings = Settings()
