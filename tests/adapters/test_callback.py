"""Tests for callback bindings."""

import asyncio

from dkan_query import Binding, QueryClient, bind_mutation, bind_query
from dkan_query.types import MutationStatus

KEY = ("datasets", "single", "abc")


async def settle() -> None:
    await asyncio.sleep(0.01)


async def fetch_dataset() -> dict:
    return {"identifier": "abc"}


class TestBindQuery:
    async def test_delivers_current_then_changes(self, client: QueryClient) -> None:
        seen: list = []
        binding = bind_query(client, KEY, fetch_dataset, seen.append)
        assert isinstance(binding, Binding)
        assert seen[0].is_loading
        await settle()
        assert seen[-1].is_success
        assert seen[-1].data == {"identifier": "abc"}
        binding.close()

    async def test_close_tears_down_observation(self, client: QueryClient) -> None:
        seen: list = []
        binding = bind_query(client, KEY, fetch_dataset, seen.append)
        await settle()
        binding.close()
        binding.close()
        count = len(seen)
        client.set_query_data(KEY, {"identifier": "changed"})
        assert len(seen) == count
        assert binding.closed
        assert client.store.get(KEY).subscriber_count == 0

    async def test_callback_errors_do_not_break_binding(self, client: QueryClient) -> None:
        calls = 0

        def on_change(result) -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError("render failed")

        binding = bind_query(client, KEY, fetch_dataset, on_change)
        await settle()
        assert calls >= 2
        assert binding.result.is_success
        binding.close()

    async def test_enabled_toggle(self, client: QueryClient) -> None:
        seen: list = []
        fetch_count = 0

        async def fetch() -> int:
            nonlocal fetch_count
            fetch_count += 1
            return fetch_count

        binding = bind_query(client, KEY, fetch, seen.append, enabled=False)
        await settle()
        assert fetch_count == 0
        binding.set_options(enabled=True)
        await settle()
        assert fetch_count == 1
        assert seen[-1].data == 1
        binding.close()


class TestBindMutation:
    async def test_mirrors_state(self, client: QueryClient) -> None:
        async def write(variables):
            return variables

        states: list = []
        observer = client.register_mutation(write)
        binding = bind_mutation(observer, states.append)
        await observer.mutate_async("x")
        assert [s.status for s in states] == [MutationStatus.PENDING, MutationStatus.SUCCESS]
        binding.close()
        observer.reset()
        assert len(states) == 2
