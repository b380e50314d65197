"""Mutations: remote writes followed by declarative cache invalidation.

A Mutation pairs an async write with an invalidation rule. The rule is a
sequence of Invalidation targets whose key prefixes may contain Arg and
Result placeholders, filled from the mutation's variables and result:

    update_dataset = Mutation(
        fn=lambda v: api.update_dataset(v["identifier"], v["dataset"]),
        invalidates=[
            stale("datasets", "single", Arg("identifier")),
            stale("datasets", "search"),
        ],
    )

Every target is resolved before any is applied, and all of them are
applied inside one store transaction, so subscribers never observe a
partially invalidated cache.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from dkan_query.errors import InvalidationRuleError
from dkan_query.keys import normalize_key, serialize_key
from dkan_query.types import (
    CacheEntry,
    MutationResult,
    MutationState,
    MutationStatus,
    QueryKey,
)

if TYPE_CHECKING:
    from dkan_query.fetcher import FetchCoordinator

logger = logging.getLogger(__name__)

V = TypeVar("V")
R = TypeVar("R")

_MISSING = object()


class InvalidationPolicy(str, Enum):
    """What happens to matching entries once a mutation succeeds."""

    STALE = "stale"  # this changed, refetch it
    REMOVE = "remove"  # this no longer exists


@dataclass(frozen=True, slots=True)
class Arg:
    """Key segment taken from the mutation variables.

    With no name, the variables themselves are the segment. A dotted name
    walks nested mappings/attributes ("dataset.identifier").
    """

    name: str | None = None

    def resolve(self, variables: Any, result: Any) -> Any:
        return _lookup(variables, self.name, "variables")


@dataclass(frozen=True, slots=True)
class Result:
    """Key segment taken from the mutation result."""

    name: str | None = None

    def resolve(self, variables: Any, result: Any) -> Any:
        return _lookup(result, self.name, "result")


def _lookup(source: Any, name: str | None, label: str) -> Any:
    if name is None:
        value = source
    else:
        value = source
        for part in name.split("."):
            if isinstance(value, Mapping):
                value = value.get(part, _MISSING)
            else:
                value = getattr(value, part, _MISSING)
            if value is _MISSING:
                break
    if value is _MISSING or value is None or value == "":
        where = f"{label}.{name}" if name else label
        raise InvalidationRuleError(f"Invalidation segment {where} is missing")
    return value


@dataclass(frozen=True, slots=True)
class Invalidation:
    """One invalidation target: a key prefix and a policy."""

    prefix: tuple[Any, ...]
    policy: InvalidationPolicy = InvalidationPolicy.STALE

    def __post_init__(self) -> None:
        if isinstance(self.prefix, str) or not isinstance(self.prefix, tuple):
            raise InvalidationRuleError(
                f"Invalidation prefix must be a tuple of segments, got {self.prefix!r}"
            )
        if not self.prefix:
            raise InvalidationRuleError("Invalidation prefix must not be empty")
        for segment in self.prefix:
            if isinstance(segment, (Arg, Result)) and segment.name == "":
                raise InvalidationRuleError(
                    f"Invalid placeholder name in {self.prefix!r}"
                )

    def resolve(self, variables: Any, result: Any) -> QueryKey:
        segments = [
            s.resolve(variables, result) if isinstance(s, (Arg, Result)) else s
            for s in self.prefix
        ]
        return normalize_key(segments)


def stale(*segments: Any) -> Invalidation:
    """Mark every key under the prefix stale once the mutation succeeds."""
    return Invalidation(tuple(segments), InvalidationPolicy.STALE)


def remove(*segments: Any) -> Invalidation:
    """Evict every key under the prefix once the mutation succeeds."""
    return Invalidation(tuple(segments), InvalidationPolicy.REMOVE)


RuleFn = Callable[[Any, Any], Iterable[Invalidation]]
InvalidationRule = Sequence[Invalidation] | RuleFn
Updater = Callable[[Any], Any]
OptimisticFn = Callable[[Any], Iterable[tuple[Iterable[Any], Updater]]]


def _as_invalidation(target: Any) -> Invalidation:
    if isinstance(target, Invalidation):
        return target
    if isinstance(target, (tuple, list)):
        return Invalidation(tuple(target))
    raise InvalidationRuleError(f"Not an invalidation target: {target!r}")


@dataclass(frozen=True)
class Mutation(Generic[V, R]):
    """A write against the remote API and the cache keys it affects.

    Stateless; created once per mutation type.
    """

    fn: Callable[[V], Awaitable[R | MutationResult[R]]]
    invalidates: InvalidationRule = ()
    optimistic: OptimisticFn | None = None
    name: str | None = None
    _targets: tuple[Invalidation, ...] = field(default=(), init=False, repr=False)

    def __post_init__(self) -> None:
        if not callable(self.fn):
            raise InvalidationRuleError(f"Mutation function is not callable: {self.fn!r}")
        if callable(self.invalidates):
            return
        if isinstance(self.invalidates, str):
            raise InvalidationRuleError(
                f"Invalidation rule must be a sequence of targets, got {self.invalidates!r}"
            )
        targets = tuple(_as_invalidation(t) for t in self.invalidates)
        object.__setattr__(self, "_targets", targets)

    def resolve(self, variables: V, result: R, extra: Iterable[Any] = ()) -> list[
        tuple[QueryKey, InvalidationPolicy]
    ]:
        """Evaluate the rule for one invocation. Raises InvalidationRuleError."""
        if callable(self.invalidates):
            targets = [_as_invalidation(t) for t in self.invalidates(variables, result)]
        else:
            targets = list(self._targets)
        targets.extend(_as_invalidation(t) for t in extra)
        return [(t.resolve(variables, result), t.policy) for t in targets]


@dataclass(slots=True)
class _OptimisticWrite:
    key: QueryKey
    previous: CacheEntry[Any] | None
    written: CacheEntry[Any]


class MutationExecutor:
    """Runs mutations and applies their invalidations."""

    def __init__(self, coordinator: FetchCoordinator) -> None:
        self._coordinator = coordinator
        self._store = coordinator.store

    async def execute(self, mutation: Mutation[V, R], variables: V) -> R:
        """Run one invocation: optimistic write, remote call, invalidation.

        On failure optimistic writes are rolled back and the error is
        re-raised; mutations are never retried here.
        """
        writes = self._apply_optimistic(mutation, variables)
        try:
            outcome = await mutation.fn(variables)
        except BaseException:
            self._rollback(writes)
            raise

        if isinstance(outcome, MutationResult):
            result, extra = outcome.result, outcome.invalidates
        else:
            result, extra = outcome, []

        try:
            targets = mutation.resolve(variables, result, extra)
        except InvalidationRuleError:
            logger.exception(
                "Invalidation rule of mutation %s could not be resolved",
                mutation.name or getattr(mutation.fn, "__name__", "?"),
            )
            raise
        self.apply(targets)
        return result

    def apply(self, targets: Sequence[tuple[QueryKey, InvalidationPolicy]]) -> list[QueryKey]:
        """Apply a resolved invalidation set atomically, then refetch observers."""
        affected: dict[QueryKey, None] = {}
        with self._store.batch():
            for prefix, policy in targets:
                logger.debug("Invalidating %s (%s)", serialize_key(prefix), policy.value)
                if policy is InvalidationPolicy.REMOVE:
                    keys = self._store.remove(prefix)
                else:
                    keys = self._store.mark_stale(prefix)
                affected.update(dict.fromkeys(keys))
        self._coordinator.refetch_observed(affected)
        return list(affected)

    def _apply_optimistic(
        self, mutation: Mutation[V, R], variables: V
    ) -> list[_OptimisticWrite]:
        if mutation.optimistic is None:
            return []
        writes: list[_OptimisticWrite] = []
        with self._store.batch():
            for raw_key, updater in mutation.optimistic(variables):
                key = normalize_key(raw_key)
                previous = self._store.get(key)
                current = previous.data if previous is not None and previous.has_data else None
                written = self._store.set(key, updater(current))
                writes.append(_OptimisticWrite(key, previous, written))
        return writes

    def _rollback(self, writes: list[_OptimisticWrite]) -> None:
        if not writes:
            return
        with self._store.batch():
            for write in reversed(writes):
                current = self._store.get(write.key)
                if current is not None and current.data is write.written.data:
                    self._store.restore(write.key, write.previous)
                else:
                    # Someone wrote after us; let the server settle it
                    self._store.mark_stale(write.key)
        logger.debug("Rolled back %d optimistic writes", len(writes))


class MutationObserver(Generic[V, R]):
    """A registered mutation as seen by one consumer.

    Each call is an independent invocation (no deduplication); state
    tracks the most recent one.
    """

    def __init__(
        self,
        executor: MutationExecutor,
        mutation: Mutation[V, R],
        *,
        clock: Callable[[], int],
    ) -> None:
        self._executor = executor
        self._mutation = mutation
        self._clock = clock
        self._state: MutationState[R] = MutationState()
        self._listeners: list[Callable[[MutationState[R]], None]] = []
        self._invocations = 0
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def mutation(self) -> Mutation[V, R]:
        return self._mutation

    @property
    def state(self) -> MutationState[R]:
        return self._state

    @property
    def status(self) -> MutationStatus:
        return self._state.status

    def subscribe(self, listener: Callable[[MutationState[R]], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def mutate_async(self, variables: V) -> R:
        """Run the mutation and return its result; errors propagate."""
        self._invocations += 1
        invocation = self._invocations
        submitted_at = self._clock()
        self._update(
            invocation,
            MutationState(
                status=MutationStatus.PENDING,
                variables=variables,
                submitted_at=submitted_at,
            ),
        )
        try:
            result = await self._executor.execute(self._mutation, variables)
        except Exception as exc:
            self._update(
                invocation,
                MutationState(
                    status=MutationStatus.ERROR,
                    error=exc,
                    variables=variables,
                    submitted_at=submitted_at,
                ),
            )
            raise
        self._update(
            invocation,
            MutationState(
                status=MutationStatus.SUCCESS,
                data=result,
                variables=variables,
                submitted_at=submitted_at,
            ),
        )
        return result

    def mutate(self, variables: V) -> asyncio.Task[R | None]:
        """Fire-and-forget: errors end up in state, never raised."""

        async def run() -> R | None:
            try:
                return await self.mutate_async(variables)
            except Exception:
                return None

        task = asyncio.create_task(run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def reset(self) -> None:
        self._invocations += 1
        self._update(self._invocations, MutationState())

    def _update(self, invocation: int, state: MutationState[R]) -> None:
        if invocation != self._invocations:
            return  # superseded by a newer invocation
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Mutation listener raised")
