"""Fetch coordination: deduplication, stale-time policy, retries and polling."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from dkan_query.broker import Listener
from dkan_query.duration import parse_duration
from dkan_query.keys import is_key_complete, normalize_key, serialize_key
from dkan_query.store import QueryStore
from dkan_query.types import CacheEntry, Duration, QueryKey

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class FetchOptions:
    """How to fetch one key."""

    fn: Callable[[], Awaitable[Any]]
    stale_time: float
    retry: int
    retry_delay: float
    refetch_interval: float | None = None


class Watch:
    """An enabled observation of a key: the fetcher may refetch on its behalf."""

    __slots__ = ("key", "options")

    def __init__(self, key: QueryKey, options: FetchOptions) -> None:
        self.key = key
        self.options = options


def _consume_exception(future: asyncio.Future[Any]) -> None:
    # Background reads capture errors in the store; nobody may await them
    if not future.cancelled():
        future.exception()


class FetchCoordinator:
    """Decides when a read hits the network and shares in-flight requests.

    At most one fetch per key is outstanding. A fetch settles by writing
    into the store; the in-flight table is cleared before the write, so a
    subscriber reacting to the write can start a new fetch.

    Invalidation while a fetch is in flight: a result for a key that was
    marked stale meanwhile is written but stays flagged stale; a result
    for a key that was removed meanwhile is not written. Either way, an
    observed key is fetched again straight away.
    """

    def __init__(
        self,
        store: QueryStore,
        *,
        stale_time: Duration = 0,
        retry: int = 3,
        retry_delay: Duration = 1000,
        sleep: Sleep | None = None,
    ) -> None:
        if retry < 0:
            raise ValueError("retry must be >= 0")
        self._store = store
        self._default_stale_time = parse_duration(stale_time)
        self._default_retry = retry
        self._default_retry_delay = parse_duration(retry_delay)
        self._sleep = sleep or asyncio.sleep
        self._in_flight: dict[QueryKey, asyncio.Future[Any]] = {}
        self._watches: dict[QueryKey, list[Watch]] = {}
        self._pollers: dict[QueryKey, tuple[float, asyncio.Task[None]]] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()
        store.on_idle(self._stop_polling)

    @property
    def store(self) -> QueryStore:
        return self._store

    def options(
        self,
        fn: Callable[[], Awaitable[Any]],
        *,
        stale_time: Duration | None = None,
        retry: int | None = None,
        retry_delay: Duration | None = None,
        refetch_interval: Duration | None = None,
    ) -> FetchOptions:
        """Build fetch options, filling in client defaults."""
        interval = None
        if refetch_interval is not None:
            interval = parse_duration(refetch_interval)
            if interval <= 0:
                raise ValueError("refetch_interval must be positive")
        return FetchOptions(
            fn=fn,
            stale_time=(
                self._default_stale_time
                if stale_time is None
                else parse_duration(stale_time)
            ),
            retry=self._default_retry if retry is None else retry,
            retry_delay=(
                self._default_retry_delay
                if retry_delay is None
                else parse_duration(retry_delay)
            ),
            refetch_interval=interval,
        )

    def is_fetching(self, key: Iterable[Any]) -> bool:
        return normalize_key(key) in self._in_flight

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def read(
        self,
        key: Iterable[Any],
        options: FetchOptions,
        *,
        enabled: bool = True,
    ) -> CacheEntry[Any] | None:
        """Return the current entry and start a fetch if it is missing or stale.

        A disabled read, or a read whose key has a missing segment, never
        fetches. Must be called from a running event loop.
        """
        key = normalize_key(key)
        entry = self._store.get(key)
        if not enabled or not is_key_complete(key):
            logger.debug("Read of %s skipped (disabled)", serialize_key(key))
            return entry
        self._store.ensure(key, stale_time=options.stale_time)
        if entry is not None and entry.is_fresh(self._store.now(), options.stale_time):
            logger.debug("Cache hit for %s", serialize_key(key))
            return entry
        self._start(key, options)
        return self._store.get(key)

    async def fetch(self, key: Iterable[Any], options: FetchOptions) -> Any:
        """Awaitable read: fresh cached data, or the result of the shared fetch.

        Raises whatever the fetch raised once retries are exhausted.
        """
        key = normalize_key(key)
        entry = self._store.ensure(key, stale_time=options.stale_time)
        if entry.is_fresh(self._store.now(), options.stale_time):
            logger.debug("Cache hit for %s", serialize_key(key))
            return entry.data
        future = self._start(key, options)
        # A cancelled waiter must not cancel the fetch other callers share
        return await asyncio.shield(future)

    def refetch(self, key: Iterable[Any]) -> asyncio.Future[Any] | None:
        """Fetch an observed key regardless of staleness."""
        key = normalize_key(key)
        watch = self._latest_watch(key)
        if watch is None:
            return None
        return self._start(key, watch.options)

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def observe(
        self,
        key: Iterable[Any],
        callback: Listener,
        options: FetchOptions,
        *,
        enabled: bool = True,
    ) -> Callable[[], None]:
        """Subscribe callback to key and keep it fetched while observed.

        Returns the function that ends the observation.
        """
        key = normalize_key(key)
        unsubscribe = self._store.subscribe(key, callback)
        watch: Watch | None = None
        if enabled and is_key_complete(key):
            watch = Watch(key, options)
            self._watches.setdefault(key, []).append(watch)
            self._sync_poller(key)
        self.read(key, options, enabled=watch is not None)

        def stop() -> None:
            if watch is not None:
                self._unwatch(watch)
            unsubscribe()

        return stop

    def refetch_observed(self, keys: Iterable[QueryKey]) -> None:
        """Send invalidated keys that are being observed back to the network."""
        for key in keys:
            entry = self._store.get(key)
            if entry is None or not entry.subscriber_count:
                continue
            self.refetch(key)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Stop polling and cancel in-flight work."""
        for _, task in list(self._pollers.values()):
            task.cancel()
        self._pollers.clear()
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._watches.clear()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _start(self, key: QueryKey, options: FetchOptions) -> asyncio.Future[Any]:
        existing = self._in_flight.get(key)
        if existing is not None:
            logger.debug("Joining in-flight fetch for %s", serialize_key(key))
            # The entry may have been re-created since the fetch started
            self._store.set_fetching(key, True)
            return existing

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        future.add_done_callback(_consume_exception)
        self._in_flight[key] = future
        mark = self._store.mark_of(key)
        self._store.set_fetching(key, True)
        logger.debug("Fetching %s", serialize_key(key))

        task = asyncio.create_task(self._run(key, options, mark, future))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return future

    async def _run(
        self,
        key: QueryKey,
        options: FetchOptions,
        mark: int,
        future: asyncio.Future[Any],
    ) -> None:
        try:
            data = await self._call_with_retry(key, options)
        except asyncio.CancelledError:
            self._in_flight.pop(key, None)
            if key in self._store:
                self._store.set_fetching(key, False)
            else:
                self._store.forget_marks(key)
            future.cancel()
            raise
        except Exception as exc:
            self._in_flight.pop(key, None)
            logger.debug("Fetch of %s failed: %r", serialize_key(key), exc)
            if self._store.removed_since(key, mark):
                self._after_removal(key)
            else:
                self._store.set_error(key, exc)
            future.set_exception(exc)
            return

        self._in_flight.pop(key, None)
        if self._store.removed_since(key, mark):
            logger.debug("Discarding result for removed key %s", serialize_key(key))
            self._after_removal(key)
        elif self._store.mark_of(key) != mark:
            logger.debug("Result for %s arrived after invalidation", serialize_key(key))
            self._store.set(key, data, invalidated=True, fetching=False)
            self.refetch_observed([key])
        else:
            self._store.set(key, data, fetching=False)
        future.set_result(data)

    def _after_removal(self, key: QueryKey) -> None:
        entry = self._store.get(key)
        if entry is None:
            self._store.forget_marks(key)
            return
        if entry.subscriber_count and self._latest_watch(key) is not None:
            self.refetch(key)
        else:
            self._store.set_fetching(key, False)

    async def _call_with_retry(self, key: QueryKey, options: FetchOptions) -> Any:
        attempt = 0
        while True:
            try:
                return await options.fn()
            except Exception as exc:
                if attempt >= options.retry:
                    raise
                attempt += 1
                delay = options.retry_delay * attempt
                logger.warning(
                    "Fetch of %s failed (%r), retry %d/%d in %.0fms",
                    serialize_key(key),
                    exc,
                    attempt,
                    options.retry,
                    delay,
                )
                await self._sleep(delay / 1000)

    def _latest_watch(self, key: QueryKey) -> Watch | None:
        watches = self._watches.get(key)
        return watches[-1] if watches else None

    def _unwatch(self, watch: Watch) -> None:
        watches = self._watches.get(watch.key)
        if watches is None or watch not in watches:
            return
        watches.remove(watch)
        if not watches:
            del self._watches[watch.key]
        self._sync_poller(watch.key)

    def _sync_poller(self, key: QueryKey) -> None:
        """Run one poller per key at the shortest requested interval."""
        intervals = [
            w.options.refetch_interval
            for w in self._watches.get(key, ())
            if w.options.refetch_interval is not None
        ]
        interval = min(intervals) if intervals else None
        current = self._pollers.get(key)
        if current is not None and current[0] == interval:
            return
        self._stop_polling(key)
        if interval is None:
            return
        task = asyncio.create_task(self._poll(key, interval))
        self._pollers[key] = (interval, task)
        logger.debug("Polling %s every %.0fms", serialize_key(key), interval)

    def _stop_polling(self, key: QueryKey) -> None:
        current = self._pollers.pop(key, None)
        if current is not None:
            current[1].cancel()
            logger.debug("Stopped polling %s", serialize_key(key))

    async def _poll(self, key: QueryKey, interval: float) -> None:
        while True:
            await self._sleep(interval / 1000)
            entry = self._store.get(key)
            watch = self._latest_watch(key)
            if entry is None or not entry.subscriber_count or watch is None:
                self._pollers.pop(key, None)
                return
            self._start(key, watch.options)
