"""Shared fixtures: every test starts with a fresh in-memory counter store."""

import pytest

from filehub.app.core.store import InMemoryStore, get_store, reset_store
from filehub.app.services.rate_limit import reset_rate_limiter


class FakeClock:
    """Settable clock in epoch milliseconds."""

    def __init__(self, start: int = 0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture(autouse=True)
def memory_store():
    reset_store()
    reset_rate_limiter()
    store = get_store(backend="memory", force_new=True)
    yield store
    reset_store()
    reset_rate_limiter()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore()
