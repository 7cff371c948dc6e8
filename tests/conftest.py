"""Pytest configuration and fixtures."""

import pytest

from factories import EXCHANGE, WHALE, FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def whale_address() -> str:
    return WHALE


@pytest.fixture
def exchange_address() -> str:
    return EXCHANGE
