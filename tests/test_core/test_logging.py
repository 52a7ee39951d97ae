"""Tests for logging configuration."""

import logging
from types import SimpleNamespace

import pytest
import structlog
from structlog.stdlib import BoundLogger
from structlog.testing import LogCapture
from structlog.types import BindableLogger

from blobsync.core.logging import (
    add_component_metadata,
    configure_logging,
    get_logger,
    get_run_logger,
)


@pytest.fixture
def log_output() -> LogCapture:
    """Fixture to capture log output."""
    return LogCapture()


@pytest.fixture(autouse=True)
def setup_logging(log_output: LogCapture):
    """Configure logging for tests."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S.%f"),
            log_output,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )
    yield
    configure_logging(testing=True)


def _renderer_names() -> list[str]:
    return [p.__class__.__name__ for p in structlog.get_config()["processors"]]


def test_configure_logging_renders_json() -> None:
    """Production configuration ends in a JSON renderer."""
    configure_logging()
    assert "JSONRenderer" in _renderer_names()


def test_configure_logging_in_tests_renders_key_values() -> None:
    configure_logging(testing=True)
    names = _renderer_names()
    assert "KeyValueRenderer" in names
    assert "JSONRenderer" not in names


def test_configure_logging_sets_package_level() -> None:
    configure_logging(testing=True, level="DEBUG")
    assert logging.getLogger("blobsync").level == logging.DEBUG

    configure_logging(testing=True, level="nonsense")
    assert logging.getLogger("blobsync").level == logging.INFO


def test_get_logger() -> None:
    """Test get_logger returns a configured logger."""
    logger = get_logger("blobsync.tests")
    assert isinstance(logger, BoundLogger | BindableLogger)


def test_get_run_logger_binds_run_id(log_output: LogCapture) -> None:
    logger = get_run_logger("run-42")
    logger.info("transfer_run_started", wanted=3)

    assert len(log_output.entries) == 1
    entry = log_output.entries[0]
    assert entry["event"] == "transfer_run_started"
    assert entry["run_id"] == "run-42"
    assert entry["wanted"] == 3


def test_get_run_logger_without_run_id(log_output: LogCapture) -> None:
    get_run_logger().info("no_run")
    assert "run_id" not in log_output.entries[0]


def test_add_component_metadata() -> None:
    processor = add_component_metadata("ledger")
    wrapped = SimpleNamespace(name="blobsync.ledger")

    event = processor(wrapped, "info", {"event": "usage_recorded"})

    assert event["component"] == "ledger"
    assert event["logger_name"] == "blobsync.ledger"


def test_add_component_metadata_keeps_explicit_component() -> None:
    processor = add_component_metadata("ledger")
    event = processor(SimpleNamespace(), "info", {"event": "x", "component": "store"})
    assert event["component"] == "store"
    assert event["logger_name"] is None
