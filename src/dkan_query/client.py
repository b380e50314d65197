"""QueryClient - the entry point binding adapters and applications use.

Provides:
- observe(): reactive read registration returning a QueryObserver
- fetch_query() / prefetch_query(): awaitable reads sharing in-flight calls
- register_mutation(): write registration returning a MutationObserver
- invalidate() / remove() / set_query_data(): manual cache control
- close(): teardown (also via ``async with``)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Generic, TypeVar

from dkan_query.duration import parse_duration
from dkan_query.fetcher import FetchCoordinator, FetchOptions
from dkan_query.keys import normalize_key, serialize_key
from dkan_query.mutations import (
    InvalidationRule,
    Mutation,
    MutationExecutor,
    MutationObserver,
    OptimisticFn,
)
from dkan_query.store import Clock, QueryStore
from dkan_query.types import CacheEntry, Duration, MutationResult, QueryKey, QueryResult

logger = logging.getLogger(__name__)

T = TypeVar("T")
V = TypeVar("V")
R = TypeVar("R")


class QueryObserver(Generic[T]):
    """A consumer's live view of one query key.

    The observer keeps no data of its own: ``result`` is read from the
    store on every access, and listeners receive results built from the
    snapshot the store just committed.
    """

    def __init__(
        self,
        client: QueryClient,
        key: Iterable[Any],
        fn: Callable[[], Awaitable[T]],
        *,
        stale_time: Duration | None = None,
        enabled: bool = True,
        refetch_interval: Duration | None = None,
        retry: int | None = None,
    ) -> None:
        self._client = client
        self._key = normalize_key(key)
        self._fn = fn
        self._stale_time = stale_time
        self._enabled = enabled
        self._refetch_interval = refetch_interval
        self._retry = retry
        self._listeners: list[Callable[[QueryResult[T]], None]] = []
        self._stop: Callable[[], None] | None = None

    @property
    def key(self) -> QueryKey:
        return self._key

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def is_active(self) -> bool:
        return self._stop is not None

    @property
    def result(self) -> QueryResult[T]:
        return self._client.get_query_state(self._key)

    def start(self) -> QueryObserver[T]:
        """Begin observing. Idempotent."""
        if self._stop is None:
            self._stop = self._client.coordinator.observe(
                self._key,
                self._on_entry,
                self._options(),
                enabled=self._enabled,
            )
        return self

    def close(self) -> None:
        """Stop observing; listeners are not called after this returns."""
        stop, self._stop = self._stop, None
        if stop is not None:
            stop()

    def subscribe(self, listener: Callable[[QueryResult[T]], None]) -> Callable[[], None]:
        """Register a listener called with every new result."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_options(
        self,
        *,
        key: Iterable[Any] | None = None,
        fn: Callable[[], Awaitable[T]] | None = None,
        stale_time: Duration | None = None,
        enabled: bool | None = None,
        refetch_interval: Duration | None = None,
    ) -> None:
        """Change what is observed; re-enters the read path when active."""
        if key is not None:
            self._key = normalize_key(key)
        if fn is not None:
            self._fn = fn
        if stale_time is not None:
            self._stale_time = stale_time
        if enabled is not None:
            self._enabled = enabled
        if refetch_interval is not None:
            self._refetch_interval = refetch_interval
        if self._stop is not None:
            self.close()
            self.start()
            self._emit(self.result)

    async def refetch(self) -> QueryResult[T]:
        """Fetch now regardless of staleness; errors land in the result."""
        if self._stop is None or not self._enabled:
            return self.result
        future = self._client.coordinator.refetch(self._key)
        if future is not None:
            try:
                await asyncio.shield(future)
            except Exception:
                logger.debug("Refetch of %s failed", serialize_key(self._key))
        return self.result

    def _options(self) -> FetchOptions:
        return self._client.coordinator.options(
            self._fn,
            stale_time=self._stale_time,
            retry=self._retry,
            refetch_interval=self._refetch_interval,
        )

    def _on_entry(self, entry: CacheEntry[Any]) -> None:
        self._emit(QueryResult.from_entry(self._key, entry, self._client.store.now()))

    def _emit(self, result: QueryResult[T]) -> None:
        for listener in list(self._listeners):
            listener(result)

    def __enter__(self) -> QueryObserver[T]:
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"QueryObserver({serialize_key(self._key)}, status={self.result.status.value})"


class QueryClient:
    """Cache, fetch coordination and mutation execution for one application.

    Create one per application (or per test) and pass it to every binding
    adapter; close it when done:

        async with QueryClient(stale_time="30s") as client:
            observer = client.observe(["datasets", "single", id], fetch)
    """

    def __init__(
        self,
        *,
        stale_time: Duration = 0,
        retry: int = 3,
        retry_delay: Duration = 1000,
        gc_time: Duration = "5m",
        clock: Clock | None = None,
    ) -> None:
        self._store = QueryStore(clock=clock)
        self._coordinator = FetchCoordinator(
            self._store,
            stale_time=stale_time,
            retry=retry,
            retry_delay=retry_delay,
        )
        self._executor = MutationExecutor(self._coordinator)
        self._gc_time = parse_duration(gc_time)
        self._gc_handles: dict[QueryKey, asyncio.TimerHandle] = {}
        self._store.on_idle(self._schedule_gc)
        self._closed = False

    @property
    def store(self) -> QueryStore:
        """Escape hatch to the raw store."""
        return self._store

    @property
    def coordinator(self) -> FetchCoordinator:
        return self._coordinator

    @property
    def executor(self) -> MutationExecutor:
        return self._executor

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def observe(
        self,
        key: Iterable[Any],
        fn: Callable[[], Awaitable[T]],
        *,
        stale_time: Duration | None = None,
        enabled: bool = True,
        refetch_interval: Duration | None = None,
        retry: int | None = None,
    ) -> QueryObserver[T]:
        """Start observing key. Must be called from a running event loop."""
        observer = QueryObserver(
            self,
            key,
            fn,
            stale_time=stale_time,
            enabled=enabled,
            refetch_interval=refetch_interval,
            retry=retry,
        )
        return observer.start()

    async def fetch_query(
        self,
        key: Iterable[Any],
        fn: Callable[[], Awaitable[T]],
        *,
        stale_time: Duration | None = None,
        retry: int | None = None,
    ) -> T:
        """Return fresh data for key, fetching (once) if needed."""
        options = self._coordinator.options(fn, stale_time=stale_time, retry=retry)
        try:
            return await self._coordinator.fetch(key, options)
        finally:
            self._schedule_gc_if_idle(normalize_key(key))

    async def prefetch_query(
        self,
        key: Iterable[Any],
        fn: Callable[[], Awaitable[Any]],
        *,
        stale_time: Duration | None = None,
    ) -> None:
        """Warm the cache; failures are recorded on the entry, not raised."""
        try:
            await self.fetch_query(key, fn, stale_time=stale_time)
        except Exception as exc:
            logger.debug("Prefetch of %s failed: %r", serialize_key(normalize_key(key)), exc)

    def get_query_data(self, key: Iterable[Any]) -> Any | None:
        entry = self._store.get(key)
        return entry.data if entry is not None else None

    def get_query_state(self, key: Iterable[Any]) -> QueryResult[Any]:
        key = normalize_key(key)
        return QueryResult.from_entry(key, self._store.get(key), self._store.now())

    # -------------------------------------------------------------------------
    # Manual cache control
    # -------------------------------------------------------------------------

    def set_query_data(self, key: Iterable[Any], value: Any) -> Any:
        """Seed or overwrite cached data.

        A callable value is treated as an updater receiving the current data.
        """
        key = normalize_key(key)
        if callable(value):
            value = value(self.get_query_data(key))
        self._store.set(key, value)
        self._schedule_gc_if_idle(key)
        return value

    def invalidate(
        self, prefix: Iterable[Any] | None = None, *, refetch: bool = True
    ) -> list[QueryKey]:
        """Mark every key under prefix (default: all) stale; observed keys refetch."""
        keys = self._store.mark_stale(prefix or ())
        if refetch:
            self._coordinator.refetch_observed(keys)
        return keys

    def remove(self, prefix: Iterable[Any] | None = None) -> list[QueryKey]:
        """Evict every key under prefix (default: all); observed keys refetch."""
        keys = self._store.remove(prefix or ())
        self._coordinator.refetch_observed(keys)
        return keys

    def clear(self) -> None:
        self._store.clear()

    def collect_garbage(self) -> int:
        """Evict entries that have been unobserved for at least gc_time."""
        return self._store.collect_garbage(self._gc_time)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def register_mutation(
        self,
        fn: Callable[[V], Awaitable[R | MutationResult[R]]] | Mutation[V, R],
        invalidates: InvalidationRule = (),
        *,
        optimistic: OptimisticFn | None = None,
    ) -> MutationObserver[V, R]:
        """Register a write; the rule is validated now, not at first use."""
        if isinstance(fn, Mutation):
            mutation = fn
        else:
            mutation = Mutation(fn=fn, invalidates=invalidates, optimistic=optimistic)
        return MutationObserver(self._executor, mutation, clock=self._store.now)

    async def mutate(self, mutation: Mutation[V, R], variables: V) -> R:
        """Run a mutation once without a long-lived observer."""
        return await self._executor.execute(mutation, variables)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Cancel polling, in-flight fetches and pending collections."""
        if self._closed:
            return
        self._closed = True
        for handle in self._gc_handles.values():
            handle.cancel()
        self._gc_handles.clear()
        await self._coordinator.close()

    async def __aenter__(self) -> QueryClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _schedule_gc_if_idle(self, key: QueryKey) -> None:
        entry = self._store.get(key)
        if entry is not None and not entry.subscriber_count:
            self._schedule_gc(key)

    def _schedule_gc(self, key: QueryKey) -> None:
        if self._closed or self._gc_time == float("inf"):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop: collect_garbage() must be called explicitly
        previous = self._gc_handles.pop(key, None)
        if previous is not None:
            previous.cancel()
        self._gc_handles[key] = loop.call_later(
            self._gc_time / 1000, self._collect, key
        )

    def _collect(self, key: QueryKey) -> None:
        self._gc_handles.pop(key, None)
        entry = self._store.get(key)
        if entry is None or entry.subscriber_count:
            return
        if entry.is_fetching:
            self._schedule_gc(key)
            return
        if self._store.evict(key):
            logger.debug("Garbage collected %s", serialize_key(key))
