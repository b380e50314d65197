"""Tests for the subscription broker."""

import logging

import pytest

from dkan_query.broker import SubscriptionBroker
from dkan_query.types import CacheEntry

KEY_A = ("a",)
KEY_B = ("b",)


@pytest.fixture
def entries() -> dict:
    return {KEY_A: CacheEntry(key=KEY_A, data=1), KEY_B: CacheEntry(key=KEY_B, data=2)}


@pytest.fixture
def broker(entries: dict) -> SubscriptionBroker:
    return SubscriptionBroker(entries.get)


class TestSubscriptionBroker:
    def test_notify_delivers_current_snapshot(
        self, broker: SubscriptionBroker, entries: dict
    ) -> None:
        seen: list = []
        broker.add(KEY_A, seen.append)
        broker.notify(KEY_A)
        assert seen == [entries[KEY_A]]

    def test_exact_key_only(self, broker: SubscriptionBroker) -> None:
        seen: list = []
        broker.add(KEY_A, seen.append)
        broker.notify(KEY_B)
        assert seen == []

    def test_discard_stops_delivery(self, broker: SubscriptionBroker) -> None:
        seen: list = []
        subscription = broker.add(KEY_A, seen.append)
        broker.discard(subscription)
        broker.discard(subscription)
        broker.notify(KEY_A)
        assert seen == []
        assert broker.count(KEY_A) == 0

    def test_batch_defers_and_coalesces(
        self, broker: SubscriptionBroker, entries: dict
    ) -> None:
        seen: list = []
        broker.add(KEY_A, seen.append)
        with broker.batch():
            broker.notify(KEY_A)
            entries[KEY_A] = CacheEntry(key=KEY_A, data=10)
            broker.notify(KEY_A)
            assert seen == []
        assert [e.data for e in seen] == [10]

    def test_nested_batches_flush_once_at_outermost(
        self, broker: SubscriptionBroker
    ) -> None:
        seen: list = []
        broker.add(KEY_A, seen.append)
        with broker.batch():
            with broker.batch():
                broker.notify(KEY_A)
            assert seen == []
        assert len(seen) == 1

    def test_unsubscribe_during_delivery_skips_later_subscriber(
        self, broker: SubscriptionBroker
    ) -> None:
        seen: list = []
        second = None

        def first(entry: CacheEntry) -> None:
            broker.discard(second)

        broker.add(KEY_A, first)
        second = broker.add(KEY_A, seen.append)
        broker.notify(KEY_A)
        assert seen == []

    def test_raising_subscriber_is_logged_and_others_still_run(
        self, broker: SubscriptionBroker, caplog: pytest.LogCaptureFixture
    ) -> None:
        seen: list = []

        def boom(entry: CacheEntry) -> None:
            raise RuntimeError("boom")

        broker.add(KEY_A, boom)
        broker.add(KEY_A, seen.append)
        with caplog.at_level(logging.ERROR, logger="dkan_query.broker"):
            broker.notify(KEY_A)
        assert len(seen) == 1
        assert "raised during notification" in caplog.text
