"""Shared pytest fixtures."""

from collections.abc import AsyncIterator

import pytest

from dkan_query import QueryClient


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def client(clock: FakeClock) -> AsyncIterator[QueryClient]:
    """A QueryClient without retries on a fake clock, closed after the test."""
    query_client = QueryClient(retry=0, clock=clock)
    yield query_client
    await query_client.close()
