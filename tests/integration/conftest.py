"""
Pytest configuration and fixtures for integration tests.
"""

import logging
import pytest

from histmarket.monitoring.logger import PACKAGE_LOGGER


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: Integration tests that drive the store end to end"
    )


@pytest.fixture(autouse=True)
def setup_logging(caplog):
    """
    Setup logging for all tests.

    Captures the package loggers at INFO and removes any handlers the
    entry point installed, so one test's console handler never leaks
    into the next.
    """
    caplog.set_level(logging.INFO)

    logging.getLogger('histmarket.data').setLevel(logging.INFO)
    logging.getLogger('histmarket.connectors.backfill_client').setLevel(logging.INFO)

    yield

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.NOTSET)


def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to handle integration test markers.

    This automatically marks all tests in the integration directory
    as 'integration' tests.
    """
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
