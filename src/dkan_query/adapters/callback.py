"""Callback bindings: the plain-widget way of consuming the cache.

    binding = bind_query(client, ("datasets", "single", id), fetch, render)
    ...
    binding.close()
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from dkan_query.client import QueryClient, QueryObserver
from dkan_query.mutations import MutationObserver
from dkan_query.types import MutationState, QueryResult

logger = logging.getLogger(__name__)


class CallbackBinding:
    """Calls on_change with every new result until closed."""

    def __init__(
        self,
        observer: QueryObserver[Any],
        on_change: Callable[[QueryResult[Any]], None],
    ) -> None:
        self._observer = observer
        self._on_change = on_change
        self._closed = False
        self._unsubscribe = observer.subscribe(self._deliver)

    @property
    def observer(self) -> QueryObserver[Any]:
        return self._observer

    @property
    def result(self) -> QueryResult[Any]:
        return self._observer.result

    @property
    def closed(self) -> bool:
        return self._closed

    def set_options(self, **options: Any) -> None:
        """Forwarded to QueryObserver.set_options (toggle enabled, change key)."""
        self._observer.set_options(**options)

    async def refetch(self) -> QueryResult[Any]:
        return await self._observer.refetch()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._unsubscribe()
        self._observer.close()

    def _deliver(self, result: QueryResult[Any]) -> None:
        if self._closed:
            return
        try:
            self._on_change(result)
        except Exception:
            logger.exception("on_change callback raised for %r", self._observer)


def bind_query(
    client: QueryClient,
    key: Iterable[Any],
    fn: Callable[[], Awaitable[Any]],
    on_change: Callable[[QueryResult[Any]], None],
    **options: Any,
) -> CallbackBinding:
    """Observe key and call on_change with the current result, then every change."""
    observer = QueryObserver(client, key, fn, **options)
    binding = CallbackBinding(observer, on_change)
    observer.start()
    binding._deliver(observer.result)
    return binding


class MutationBinding:
    """Calls on_change with every mutation state until closed."""

    def __init__(
        self,
        observer: MutationObserver[Any, Any],
        on_change: Callable[[MutationState[Any]], None],
    ) -> None:
        self._observer = observer
        self._on_change = on_change
        self._closed = False
        self._unsubscribe = observer.subscribe(self._deliver)

    @property
    def observer(self) -> MutationObserver[Any, Any]:
        return self._observer

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._unsubscribe()

    def _deliver(self, state: MutationState[Any]) -> None:
        if not self._closed:
            self._on_change(state)


def bind_mutation(
    observer: MutationObserver[Any, Any],
    on_change: Callable[[MutationState[Any]], None],
) -> MutationBinding:
    """Mirror a mutation observer's state into on_change."""
    return MutationBinding(observer, on_change)
