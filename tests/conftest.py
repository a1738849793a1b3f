"""Shared pytest fixtures for chatvault tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from .helpers import FakeScheduler, FakeTransport, InMemoryStore  # noqa: E402


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def scheduler():
    return FakeScheduler()
