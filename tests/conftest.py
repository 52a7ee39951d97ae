"""Test configuration."""

import os
from pathlib import Path
from typing import List

import pytest
from pytest import Config

from blobsync.core.logging import configure_logging

fixture = pytest.fixture

# Never let a developer's .env point the tests at a real cache
os.environ.pop("CACHE_PATH", None)


@fixture(scope="session")
def project_root() -> Path:
    """Get the project root directory."""
    return Path(__file__).parent.parent


pytest_plugins: List[str] = [
    "tests.fixtures.content_store",
    "tests.fixtures.transfer",
]


def pytest_configure(config: Config) -> None:
    """Configure pytest.

    Args:
        config: Pytest configuration object
    """
    configure_logging(testing=True)
