"""Fixtures for unit tests."""

from unittest.mock import Mock

import pytest

from surebackup.catalog.client import CatalogClient
from surebackup.config import RunConfig
from surebackup.context import RunContext
from surebackup.models.restore import TestEnvironment
from surebackup.testing.factories import TestEnvironmentFactory
from surebackup.testing.platform import FakePlatform


@pytest.fixture
def run_config() -> RunConfig:
    """Run configuration with near-zero waits."""
    return RunConfig(
        test_region="westeurope",
        poll_interval_seconds=0.01,
        heartbeat_wait_seconds=0.01,
        boot_timeout_minutes=0.01,
    )


@pytest.fixture
def catalog_mock() -> Mock:
    """Create mock catalog client."""
    return Mock(spec=CatalogClient)


@pytest.fixture
def platform() -> FakePlatform:
    """Create fake platform whose VMs are running."""
    return FakePlatform()


@pytest.fixture
def environment() -> TestEnvironment:
    """Create a provisioned test environment."""
    return TestEnvironmentFactory.build()


@pytest.fixture
def context(
    catalog_mock: Mock, platform: FakePlatform, environment: TestEnvironment
) -> RunContext:
    """Create run context with a provisioned environment."""
    return RunContext(catalog=catalog_mock, platform=platform, environment=environment)
