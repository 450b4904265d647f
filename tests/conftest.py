"""Shared pytest fixtures for hotelbook tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from tests.helpers import NOW, FakeProvider, FixedClock, make_services  # noqa: E402


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def services(clock, provider):
    """In-memory lifecycle wired to the fake provider and a fixed clock."""
    return make_services(clock=clock, provider=provider)


@pytest.fixture
def lifecycle(services):
    return services.lifecycle


@pytest.fixture
def ledger(services):
    return services.ledger
