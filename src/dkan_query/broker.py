"""Subscription broker: delivers entry snapshots to exact-key observers."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from dkan_query.keys import serialize_key
from dkan_query.types import CacheEntry, QueryKey

logger = logging.getLogger(__name__)

Listener = Callable[[CacheEntry[Any]], None]


class Subscription:
    """A (key, callback) pair registered with the broker."""

    __slots__ = ("active", "callback", "key")

    def __init__(self, key: QueryKey, callback: Listener) -> None:
        self.key = key
        self.callback = callback
        self.active = True

    def __repr__(self) -> str:
        state = "active" if self.active else "closed"
        return f"Subscription({serialize_key(self.key)}, {state})"


class SubscriptionBroker:
    """Tracks subscriptions per exact key and notifies them in order.

    Notifications raised inside batch() are queued and delivered once the
    outermost batch exits, each key at most once, with the snapshot that
    is current at delivery time. That is what makes a multi-key write
    atomic from a subscriber's point of view.
    """

    def __init__(self, lookup: Callable[[QueryKey], CacheEntry[Any] | None]) -> None:
        self._lookup = lookup
        self._subscriptions: dict[QueryKey, list[Subscription]] = {}
        self._pending: dict[QueryKey, None] = {}
        self._depth = 0

    def add(self, key: QueryKey, callback: Listener) -> Subscription:
        subscription = Subscription(key, callback)
        self._subscriptions.setdefault(key, []).append(subscription)
        return subscription

    def discard(self, subscription: Subscription) -> None:
        """Deactivate a subscription. Safe to call more than once."""
        subscription.active = False
        subscriptions = self._subscriptions.get(subscription.key)
        if subscriptions is None:
            return
        if subscription in subscriptions:
            subscriptions.remove(subscription)
        if not subscriptions:
            del self._subscriptions[subscription.key]

    def count(self, key: QueryKey) -> int:
        return len(self._subscriptions.get(key, ()))

    def notify(self, key: QueryKey) -> None:
        """Deliver the current snapshot of key to its subscribers."""
        if self._depth:
            self._pending[key] = None
            return
        self._deliver(key)

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Defer notifications until the outermost batch completes."""
        self._depth += 1
        try:
            yield
        finally:
            self._depth -= 1
            if not self._depth:
                self._flush()

    def _flush(self) -> None:
        while self._pending:
            pending = list(self._pending)
            self._pending.clear()
            for key in pending:
                self._deliver(key)

    def _deliver(self, key: QueryKey) -> None:
        subscriptions = self._subscriptions.get(key)
        if not subscriptions:
            return
        entry = self._lookup(key)
        if entry is None:
            return
        for subscription in list(subscriptions):
            # Unsubscribed during this delivery round
            if not subscription.active:
                continue
            try:
                subscription.callback(entry)
            except Exception:
                logger.exception(
                    "Subscriber for %s raised during notification",
                    serialize_key(key),
                )
