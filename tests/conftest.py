"""
Shared pytest fixtures.
"""

import pytest

from tests.fakes import BASE, DAY, FakeBackfillClient, FakeClock


@pytest.fixture
def fake_client():
    return FakeBackfillClient()


@pytest.fixture
def old_clock():
    """Clock 30 days after BASE, so data at BASE is outside the recent window."""
    return FakeClock(BASE + 30 * DAY)


@pytest.fixture
def recent_clock():
    """Clock one hour after BASE, so data at BASE is inside the recent window."""
    return FakeClock(BASE + 3600)
