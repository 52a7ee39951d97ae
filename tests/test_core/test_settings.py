"""Tests for application settings."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from blobsync.core.config import GIB, CacheSettings, EvictionPolicy, Settings, SpeedUnit

ENV_VARS = [
    "CACHE_PATH",
    "MAX_LOCAL_CACHE_GIB",
    "EVICTION_POLICY",
    "CACHE_MAX_AGE_DAYS",
    "MAX_CONCURRENT_FETCHES",
    "DOWNLOAD_SPEED_LIMIT",
    "DOWNLOAD_SPEED_UNIT",
    "LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env) -> None:
    settings = Settings(_env_file=None)

    assert settings.CACHE_PATH is None
    assert settings.budget_bytes == 100 * GIB
    assert settings.EVICTION_POLICY is EvictionPolicy.RECENCY
    assert settings.MAX_CONCURRENT_FETCHES == 10
    assert settings.throughput_cap_bytes == 0


def test_environment_overrides(clean_env) -> None:
    clean_env.setenv("MAX_LOCAL_CACHE_GIB", "2")
    clean_env.setenv("EVICTION_POLICY", "frequency")
    clean_env.setenv("DOWNLOAD_SPEED_LIMIT", "5")
    clean_env.setenv("DOWNLOAD_SPEED_UNIT", "KBps")
    clean_env.setenv("LOG_LEVEL", "debug")

    settings = Settings(_env_file=None)

    assert settings.budget_bytes == 2 * GIB
    assert settings.EVICTION_POLICY is EvictionPolicy.FREQUENCY
    assert settings.DOWNLOAD_SPEED_UNIT is SpeedUnit.KBPS
    assert settings.throughput_cap_bytes == 5 * 1024
    assert settings.LOG_LEVEL == "DEBUG"


def test_rejects_zero_concurrency(clean_env) -> None:
    clean_env.setenv("MAX_CONCURRENT_FETCHES", "0")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_snapshot_is_frozen(clean_env) -> None:
    clean_env.setenv("CACHE_MAX_AGE_DAYS", "7")
    snapshot = Settings(_env_file=None).snapshot()

    assert isinstance(snapshot, CacheSettings)
    assert snapshot.max_age == timedelta(days=7)
    with pytest.raises(ValidationError):
        snapshot.budget_bytes = 1  # type: ignore[misc]


@pytest.mark.parametrize(
    "unit,multiplier",
    [(SpeedUnit.BPS, 1), (SpeedUnit.KBPS, 1024), (SpeedUnit.MBPS, 1024 * 1024)],
)
def test_speed_unit_multiplier(unit: SpeedUnit, multiplier: int) -> None:
    assert unit.multiplier == multiplier
