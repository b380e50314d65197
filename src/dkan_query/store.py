"""In-memory query store - the single source of truth for cached data."""

from __future__ import annotations

import itertools
import logging
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from typing import Any

from dkan_query.broker import Listener, SubscriptionBroker
from dkan_query.keys import is_key_prefix, normalize_key, serialize_key
from dkan_query.types import CacheEntry, QueryKey, QueryStatus

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def wall_clock() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * 1000)


class QueryStore:
    """Map from query keys to cache entries.

    All operations are synchronous and complete before any subscriber is
    notified. Writes that change observable state (data, error, status,
    fetching flag, staleness) notify the exact-key subscribers through the
    broker; subscriber bookkeeping does not.
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._entries: dict[QueryKey, CacheEntry[Any]] = {}
        self._clock = clock or wall_clock
        self._broker = SubscriptionBroker(self._entries.get)
        self._seq = itertools.count(1)
        self._stale_marks: dict[QueryKey, int] = {}
        self._remove_marks: dict[QueryKey, int] = {}
        self._clear_mark = 0
        self._idle_since: dict[QueryKey, int] = {}
        self._idle_listeners: list[Callable[[QueryKey], None]] = []

    def now(self) -> int:
        return self._clock()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, key: Iterable[Any]) -> CacheEntry[Any] | None:
        """Pure lookup, no side effects."""
        return self._entries.get(normalize_key(key))

    def find_all(self, prefix: Iterable[Any] = ()) -> list[CacheEntry[Any]]:
        """All entries whose key starts with prefix."""
        prefix = normalize_key(prefix, allow_empty=True)
        return [
            entry for key, entry in self._entries.items() if is_key_prefix(prefix, key)
        ]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def ensure(self, key: QueryKey, *, stale_time: float | None = None) -> CacheEntry[Any]:
        """Return the entry for key, creating an idle one if needed."""
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key, stale_time=stale_time or 0)
            self._entries[key] = entry
            self._idle_since[key] = self.now()
        elif stale_time is not None and entry.stale_time != stale_time:
            entry = replace(entry, stale_time=stale_time)
            self._entries[key] = entry
        return entry

    def set(
        self,
        key: Iterable[Any],
        data: Any,
        *,
        invalidated: bool = False,
        fetching: bool | None = None,
    ) -> CacheEntry[Any]:
        """Store data: status becomes SUCCESS and the error is cleared.

        The fetching flag is left alone unless given; only a settling fetch
        clears it, so a manual or optimistic write never hides one in flight.
        """
        key = normalize_key(key)
        entry = self.ensure(key)
        return self._write(
            replace(
                entry,
                data=data,
                error=None,
                status=QueryStatus.SUCCESS,
                fetched_at=self.now(),
                is_fetching=entry.is_fetching if fetching is None else fetching,
                is_invalidated=invalidated,
                error_count=0,
            )
        )

    def set_error(self, key: Iterable[Any], error: BaseException) -> CacheEntry[Any]:
        """Record a failed fetch, keeping last-known-good data."""
        key = normalize_key(key)
        entry = self.ensure(key)
        return self._write(
            replace(
                entry,
                error=error,
                status=QueryStatus.ERROR,
                is_fetching=False,
                error_count=entry.error_count + 1,
            )
        )

    def set_fetching(self, key: Iterable[Any], fetching: bool) -> CacheEntry[Any]:
        """Flag a fetch as started or finished.

        Status only moves to LOADING when there is no data yet; existing data
        stays visible while it is revalidated. A new attempt over a failed,
        empty entry clears the previous error (error_count is kept).
        """
        key = normalize_key(key)
        entry = self.ensure(key)
        status = entry.status
        error = entry.error
        if fetching and not entry.has_data:
            status = QueryStatus.LOADING
            error = None
        elif not fetching and status is QueryStatus.LOADING:
            status = QueryStatus.IDLE
        if entry.is_fetching == fetching and entry.status is status and entry.error is error:
            return entry
        return self._write(
            replace(entry, is_fetching=fetching, status=status, error=error)
        )

    def mark_stale(self, prefix: Iterable[Any] = ()) -> list[QueryKey]:
        """Force the next read of every matching key to refetch.

        Data is kept. Returns the keys that matched.
        """
        prefix = normalize_key(prefix, allow_empty=True)
        matched: list[QueryKey] = []
        with self.batch():
            for key, entry in list(self._entries.items()):
                if not is_key_prefix(prefix, key):
                    continue
                matched.append(key)
                self._stale_marks[key] = next(self._seq)
                if not entry.is_invalidated:
                    self._write(replace(entry, is_invalidated=True))
        logger.debug(
            "Marked %d entries stale under %s", len(matched), serialize_key(prefix)
        )
        return matched

    def remove(self, prefix: Iterable[Any] = ()) -> list[QueryKey]:
        """Delete every matching entry.

        Entries that still have subscribers are reset to an empty idle entry
        instead, so their subscriber bookkeeping survives.
        """
        prefix = normalize_key(prefix, allow_empty=True)
        matched: list[QueryKey] = []
        with self.batch():
            for key, entry in list(self._entries.items()):
                if not is_key_prefix(prefix, key):
                    continue
                matched.append(key)
                self._remove_marks[key] = next(self._seq)
                self._reset_or_delete(entry)
        logger.debug("Removed %d entries under %s", len(matched), serialize_key(prefix))
        return matched

    def restore(self, key: QueryKey, snapshot: CacheEntry[Any] | None) -> None:
        """Put back a snapshot taken earlier, keeping live bookkeeping."""
        current = self._entries.get(key)
        if snapshot is None:
            if current is not None:
                self._reset_or_delete(current)
            return
        live = current or snapshot
        self._write(
            replace(
                snapshot,
                subscriber_count=live.subscriber_count,
                is_fetching=live.is_fetching,
            )
        )

    def evict(self, key: QueryKey) -> bool:
        """Garbage-collect an idle entry. Never evicts observed or fetching keys."""
        entry = self._entries.get(key)
        if entry is None or entry.subscriber_count or entry.is_fetching:
            return False
        del self._entries[key]
        self._idle_since.pop(key, None)
        self._stale_marks.pop(key, None)
        self._remove_marks.pop(key, None)
        return True

    def collect_garbage(self, max_idle: float) -> int:
        """Evict every entry idle for at least max_idle ms."""
        now = self.now()
        evicted = 0
        for key in list(self._entries):
            idle_since = self._idle_since.get(key)
            if idle_since is None or now - idle_since < max_idle:
                continue
            if self.evict(key):
                evicted += 1
        if evicted:
            logger.debug("Garbage collected %d idle entries", evicted)
        return evicted

    def clear(self) -> None:
        """Drop every entry; observed entries are reset."""
        self._clear_mark = next(self._seq)
        self._stale_marks.clear()
        self._remove_marks.clear()
        with self.batch():
            for entry in list(self._entries.values()):
                self._reset_or_delete(entry)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, key: Iterable[Any], callback: Listener) -> Callable[[], None]:
        """Register a subscriber for key; returns an idempotent unsubscribe."""
        key = normalize_key(key)
        entry = self.ensure(key)
        self._entries[key] = replace(entry, subscriber_count=entry.subscriber_count + 1)
        self._idle_since.pop(key, None)
        subscription = self._broker.add(key, callback)

        def unsubscribe() -> None:
            if not subscription.active:
                return
            self._broker.discard(subscription)
            current = self._entries.get(key)
            if current is None:
                return
            count = max(0, current.subscriber_count - 1)
            self._entries[key] = replace(current, subscriber_count=count)
            if count == 0:
                self._idle_since[key] = self.now()
                for listener in list(self._idle_listeners):
                    listener(key)

        return unsubscribe

    def on_idle(self, listener: Callable[[QueryKey], None]) -> None:
        """Call listener whenever a key's subscriber count drops to zero."""
        self._idle_listeners.append(listener)

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Apply several writes as one transaction for subscribers."""
        with self._broker.batch():
            yield

    # -------------------------------------------------------------------------
    # Invalidation bookkeeping for in-flight fetches
    # -------------------------------------------------------------------------

    def mark_of(self, key: QueryKey) -> int:
        """Sequence number of the last invalidation that touched key."""
        return max(
            self._stale_marks.get(key, 0),
            self._remove_marks.get(key, 0),
            self._clear_mark,
        )

    def removed_since(self, key: QueryKey, mark: int) -> bool:
        return max(self._remove_marks.get(key, 0), self._clear_mark) > mark

    def forget_marks(self, key: QueryKey) -> None:
        """Drop invalidation bookkeeping for a key that is no longer cached."""
        if key not in self._entries:
            self._stale_marks.pop(key, None)
            self._remove_marks.pop(key, None)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _write(self, entry: CacheEntry[Any]) -> CacheEntry[Any]:
        self._entries[entry.key] = entry
        self._broker.notify(entry.key)
        return entry

    def _reset_or_delete(self, entry: CacheEntry[Any]) -> None:
        if entry.subscriber_count:
            self._write(
                CacheEntry(
                    key=entry.key,
                    status=QueryStatus.LOADING if entry.is_fetching else QueryStatus.IDLE,
                    stale_time=entry.stale_time,
                    subscriber_count=entry.subscriber_count,
                    is_fetching=entry.is_fetching,
                )
            )
        else:
            del self._entries[entry.key]
            self._idle_since.pop(entry.key, None)
            if not entry.is_fetching:
                self.forget_marks(entry.key)
