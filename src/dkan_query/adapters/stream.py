"""Async-iterator binding: the reactive-framework way of consuming the cache.

    async with stream_query(client, key, fetch) as results:
        async for result in results:
            if result.is_success:
                render(result.data)

Slow consumers do not queue up snapshots: each iteration yields the
latest result at the time it is read.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from dkan_query.client import QueryClient, QueryObserver
from dkan_query.types import QueryResult


class QueryStream:
    """Async iterator over a key's results, collapsing bursts to the latest."""

    def __init__(self, observer: QueryObserver[Any]) -> None:
        self._observer = observer
        self._changed = asyncio.Event()
        self._changed.set()  # the first iteration yields the current result
        self._closed = False
        self._unsubscribe = observer.subscribe(self._on_result)

    @property
    def observer(self) -> QueryObserver[Any]:
        return self._observer

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._unsubscribe()
        self._observer.close()
        self._changed.set()  # wake a pending __anext__

    async def aclose(self) -> None:
        self.close()

    def __aiter__(self) -> QueryStream:
        return self

    async def __anext__(self) -> QueryResult[Any]:
        if self._closed:
            raise StopAsyncIteration
        await self._changed.wait()
        if self._closed:
            raise StopAsyncIteration
        self._changed.clear()
        return self._observer.result

    async def __aenter__(self) -> QueryStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    def _on_result(self, result: QueryResult[Any]) -> None:
        self._changed.set()


def stream_query(
    client: QueryClient,
    key: Iterable[Any],
    fn: Callable[[], Awaitable[Any]],
    **options: Any,
) -> QueryStream:
    """Observe key and expose its results as an async iterator."""
    observer = QueryObserver(client, key, fn, **options)
    stream = QueryStream(observer)
    observer.start()
    return stream
