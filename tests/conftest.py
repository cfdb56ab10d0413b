"""
Shared pytest fixtures for Bucket tests.
"""
import logging

import pytest
import structlog
from unittest.mock import AsyncMock, MagicMock
from prometheus_client import CollectorRegistry

from bucket.core.logging import ServerLogger
from bucket.services.metrics import MetricsEmitter


@pytest.fixture(autouse=True)
def reset_structlog():
    """Restore structlog defaults and drop root handlers after each test."""
    yield
    structlog.reset_defaults()
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


@pytest.fixture
def mock_config():
    """Mock ConfigManager for unit tests."""
    config = MagicMock()
    config.get.return_value = None
    return config


@pytest.fixture
def mock_monitor():
    """Mock DatabaseMonitor for unit tests."""
    monitor = MagicMock()
    monitor.record_query = MagicMock()
    monitor.record_error = MagicMock()
    return monitor


@pytest.fixture
def mock_logger():
    """Mock ServerLogger recording every call."""
    return MagicMock(spec=ServerLogger)


@pytest.fixture
def metrics_emitter():
    """MetricsEmitter with an isolated registry."""
    return MetricsEmitter(registry=CollectorRegistry())


@pytest.fixture
def recorded_sleeps():
    """Injectable sleep recording requested delays (seconds) without waiting."""
    delays: list[float] = []

    async def sleep(seconds: float) -> None:
        delays.append(seconds)

    sleep.delays = delays
    return sleep


@pytest.fixture
def healthy_probe():
    return AsyncMock(return_value=None)
