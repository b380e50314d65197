"""Tests for the in-memory query store."""

import pytest
from conftest import FakeClock

from dkan_query import QueryStatus, QueryStore

DATASET = ("datasets", "single", "abc")
ALL = ("datasets", "all")
SCHEMAS = ("metastore", "schemas")


@pytest.fixture
def store(clock: FakeClock) -> QueryStore:
    return QueryStore(clock=clock)


class TestWrites:
    def test_get_missing_returns_none(self, store: QueryStore) -> None:
        assert store.get(DATASET) is None
        assert DATASET not in store

    def test_set_records_success(self, store: QueryStore, clock: FakeClock) -> None:
        entry = store.set(DATASET, {"title": "A"})
        assert entry.status is QueryStatus.SUCCESS
        assert entry.data == {"title": "A"}
        assert entry.fetched_at == clock.now
        assert store.get(["datasets", "single", "abc"]) is entry

    def test_entries_are_replaced_not_mutated(self, store: QueryStore) -> None:
        first = store.set(DATASET, 1)
        store.set(DATASET, 2)
        assert first.data == 1
        assert store.get(DATASET).data == 2

    def test_set_error_keeps_last_good_data(self, store: QueryStore) -> None:
        store.set(DATASET, "good")
        error = RuntimeError("down")
        entry = store.set_error(DATASET, error)
        assert entry.status is QueryStatus.ERROR
        assert entry.error is error
        assert entry.data == "good"
        assert entry.error_count == 1
        assert store.set(DATASET, "again").error is None

    def test_fetching_without_data_is_loading(self, store: QueryStore) -> None:
        entry = store.set_fetching(DATASET, True)
        assert entry.status is QueryStatus.LOADING
        assert entry.is_fetching
        assert store.set_fetching(DATASET, False).status is QueryStatus.IDLE

    def test_fetching_with_data_stays_success(self, store: QueryStore) -> None:
        store.set(DATASET, "cached")
        entry = store.set_fetching(DATASET, True)
        assert entry.status is QueryStatus.SUCCESS
        assert entry.is_fetching
        assert entry.data == "cached"

    def test_new_attempt_clears_error_of_empty_entry(self, store: QueryStore) -> None:
        store.set_error(DATASET, RuntimeError("down"))
        entry = store.set_fetching(DATASET, True)
        assert entry.status is QueryStatus.LOADING
        assert entry.error is None
        assert entry.error_count == 1

    def test_set_leaves_fetching_flag_alone(self, store: QueryStore) -> None:
        store.set_fetching(DATASET, True)
        assert store.set(DATASET, "manual").is_fetching
        assert not store.set(DATASET, "fetched", fetching=False).is_fetching

    def test_find_all_by_prefix(self, store: QueryStore) -> None:
        store.set(DATASET, 1)
        store.set(ALL, 2)
        store.set(SCHEMAS, 3)
        assert {e.key for e in store.find_all(("datasets",))} == {DATASET, ALL}
        assert len(store.find_all()) == 3


class TestFreshness:
    def test_fresh_within_stale_time(self, store: QueryStore, clock: FakeClock) -> None:
        store.ensure(DATASET, stale_time=1000)
        store.set(DATASET, 1)
        clock.advance(999)
        assert store.get(DATASET).is_fresh(clock.now)
        clock.advance(1)
        assert not store.get(DATASET).is_fresh(clock.now)

    def test_zero_stale_time_is_never_fresh(self, store: QueryStore, clock: FakeClock) -> None:
        store.set(DATASET, 1)
        assert not store.get(DATASET).is_fresh(clock.now)

    def test_error_entry_is_not_fresh(self, store: QueryStore, clock: FakeClock) -> None:
        store.set(DATASET, 1)
        store.set_error(DATASET, RuntimeError())
        assert not store.get(DATASET).is_fresh(clock.now, 10_000)


class TestInvalidation:
    def test_mark_stale_keeps_data(self, store: QueryStore, clock: FakeClock) -> None:
        store.ensure(DATASET, stale_time=float("inf"))
        store.set(DATASET, "data")
        store.set(SCHEMAS, "schemas")

        matched = store.mark_stale(("datasets",))

        assert matched == [DATASET]
        entry = store.get(DATASET)
        assert entry.is_invalidated
        assert entry.data == "data"
        assert not entry.is_fresh(clock.now)
        assert not store.get(SCHEMAS).is_invalidated

    def test_set_clears_invalidation(self, store: QueryStore) -> None:
        store.set(DATASET, 1)
        store.mark_stale(DATASET)
        assert not store.set(DATASET, 2).is_invalidated

    def test_remove_deletes_unobserved(self, store: QueryStore) -> None:
        store.set(DATASET, 1)
        store.set(ALL, 2)
        assert sorted(store.remove(("datasets",))) == sorted([DATASET, ALL])
        assert len(store) == 0

    def test_remove_resets_observed_entry(self, store: QueryStore) -> None:
        store.set(DATASET, 1)
        store.subscribe(DATASET, lambda entry: None)
        store.remove(DATASET)
        entry = store.get(DATASET)
        assert entry is not None
        assert entry.status is QueryStatus.IDLE
        assert entry.data is None
        assert entry.subscriber_count == 1

    def test_invalidation_marks(self, store: QueryStore) -> None:
        store.set(DATASET, 1)
        mark = store.mark_of(DATASET)
        store.mark_stale(DATASET)
        assert store.mark_of(DATASET) > mark
        assert not store.removed_since(DATASET, mark)
        store.set_fetching(DATASET, True)
        store.remove(DATASET)
        assert store.removed_since(DATASET, mark)

    def test_removing_idle_entry_drops_its_marks(self, store: QueryStore) -> None:
        store.set(DATASET, 1)
        store.mark_stale(DATASET)
        assert store.mark_of(DATASET) > 0
        store.remove(DATASET)
        assert store.mark_of(DATASET) == 0
        assert not store._stale_marks
        assert not store._remove_marks

    def test_clear_counts_as_removal(self, store: QueryStore) -> None:
        store.set(DATASET, 1)
        mark = store.mark_of(DATASET)
        store.clear()
        assert len(store) == 0
        assert store.removed_since(DATASET, mark)


class TestSubscriptions:
    def test_subscriber_sees_writes(self, store: QueryStore) -> None:
        seen: list = []
        store.subscribe(DATASET, seen.append)
        store.set(DATASET, 1)
        store.set(DATASET, 2)
        assert [e.data for e in seen] == [1, 2]

    def test_subscriber_count_and_idempotent_unsubscribe(self, store: QueryStore) -> None:
        first = store.subscribe(DATASET, lambda e: None)
        second = store.subscribe(DATASET, lambda e: None)
        assert store.get(DATASET).subscriber_count == 2
        first()
        first()
        assert store.get(DATASET).subscriber_count == 1
        second()
        assert store.get(DATASET).subscriber_count == 0

    def test_idle_listener_called_at_zero(self, store: QueryStore) -> None:
        idle: list = []
        store.on_idle(idle.append)
        unsubscribe = store.subscribe(DATASET, lambda e: None)
        unsubscribe()
        assert idle == [DATASET]

    def test_multi_key_write_is_atomic_for_subscribers(self, store: QueryStore) -> None:
        store.set(DATASET, 1)
        store.set(ALL, 2)
        observed: list = []

        def on_dataset(entry) -> None:
            observed.append((entry.is_invalidated, store.get(ALL).is_invalidated))

        store.subscribe(DATASET, on_dataset)
        store.mark_stale(("datasets",))
        assert observed == [(True, True)]

    def test_batch_delivers_each_key_once(self, store: QueryStore) -> None:
        seen: list = []
        store.subscribe(DATASET, seen.append)
        with store.batch():
            store.set(DATASET, 1)
            store.set(DATASET, 2)
        assert [e.data for e in seen] == [2]


class TestRestoreAndEviction:
    def test_restore_snapshot_keeps_live_subscribers(self, store: QueryStore) -> None:
        snapshot = store.set(DATASET, "before")
        store.subscribe(DATASET, lambda e: None)
        store.set(DATASET, "optimistic")
        store.restore(DATASET, snapshot)
        entry = store.get(DATASET)
        assert entry.data == "before"
        assert entry.subscriber_count == 1

    def test_restore_nothing_removes_entry(self, store: QueryStore) -> None:
        store.set(DATASET, "optimistic")
        store.restore(DATASET, None)
        assert store.get(DATASET) is None

    def test_evict_skips_observed_entries(self, store: QueryStore) -> None:
        store.set(DATASET, 1)
        store.subscribe(DATASET, lambda e: None)
        assert not store.evict(DATASET)
        assert store.get(DATASET) is not None

    def test_evict_skips_entry_with_fetch_in_flight(self, store: QueryStore) -> None:
        store.set_fetching(DATASET, True)
        store.set(DATASET, "manual")
        assert not store.evict(DATASET)
        assert store.get(DATASET).data == "manual"

    def test_collect_garbage_after_idle_period(
        self, store: QueryStore, clock: FakeClock
    ) -> None:
        store.set(DATASET, 1)
        unsubscribe = store.subscribe(ALL, lambda e: None)
        clock.advance(1000)
        assert store.collect_garbage(1000) == 1
        assert store.get(DATASET) is None
        assert store.get(ALL) is not None
        unsubscribe()
        assert store.collect_garbage(1000) == 0
