"""Core types for dkan_query."""

from collections.abc import Hashable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")

# Normalized query key - see keys.normalize_key
QueryKey = tuple[Hashable, ...]

# Duration type alias
Duration = str | int | float  # "30s", "5m", "2h", "1d", "forever" or milliseconds


class QueryStatus(str, Enum):
    """Lifecycle status of a cache entry."""

    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class MutationStatus(str, Enum):
    """Lifecycle status of a single mutation invocation."""

    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    """A cached query with metadata.

    Entries are immutable snapshots; the store replaces them on every
    change, so a snapshot handed to a subscriber never changes underneath it.
    """

    key: QueryKey
    data: T | None = None
    error: BaseException | None = None
    status: QueryStatus = QueryStatus.IDLE
    fetched_at: int | None = None  # Unix timestamp ms of the last successful write
    stale_time: float = 0  # ms
    subscriber_count: int = 0
    is_fetching: bool = False
    is_invalidated: bool = False
    error_count: int = 0

    @property
    def has_data(self) -> bool:
        return self.fetched_at is not None

    def is_fresh(self, now: int, stale_time: float | None = None) -> bool:
        """Whether data can be served without a network round-trip."""
        if self.status is not QueryStatus.SUCCESS or self.is_invalidated:
            return False
        if self.fetched_at is None:
            return False
        window = self.stale_time if stale_time is None else stale_time
        return now - self.fetched_at < window


@dataclass(frozen=True, slots=True)
class QueryResult(Generic[T]):
    """What a reactive consumer sees for an observed key."""

    key: QueryKey
    data: T | None
    error: BaseException | None
    status: QueryStatus
    is_fetching: bool
    fetched_at: int | None
    is_stale: bool

    @property
    def is_idle(self) -> bool:
        return self.status is QueryStatus.IDLE

    @property
    def is_loading(self) -> bool:
        return self.status is QueryStatus.LOADING

    @property
    def is_success(self) -> bool:
        return self.status is QueryStatus.SUCCESS

    @property
    def is_error(self) -> bool:
        return self.status is QueryStatus.ERROR

    @classmethod
    def from_entry(
        cls, key: QueryKey, entry: "CacheEntry[T] | None", now: int
    ) -> "QueryResult[T]":
        if entry is None:
            return cls(
                key=key,
                data=None,
                error=None,
                status=QueryStatus.IDLE,
                is_fetching=False,
                fetched_at=None,
                is_stale=True,
            )
        return cls(
            key=key,
            data=entry.data,
            error=entry.error,
            status=entry.status,
            is_fetching=entry.is_fetching,
            fetched_at=entry.fetched_at,
            is_stale=not entry.is_fresh(now),
        )


@dataclass(frozen=True, slots=True)
class MutationState(Generic[T]):
    """State of the most recent invocation of a registered mutation."""

    status: MutationStatus = MutationStatus.IDLE
    data: T | None = None
    error: BaseException | None = None
    variables: Any = None
    submitted_at: int | None = None

    @property
    def is_idle(self) -> bool:
        return self.status is MutationStatus.IDLE

    @property
    def is_pending(self) -> bool:
        return self.status is MutationStatus.PENDING

    @property
    def is_success(self) -> bool:
        return self.status is MutationStatus.SUCCESS

    @property
    def is_error(self) -> bool:
        return self.status is MutationStatus.ERROR


@dataclass(frozen=True, slots=True)
class MutationResult(Generic[T]):
    """Result of a mutation with extra keys to invalidate."""

    result: T
    invalidates: list[Any] = field(default_factory=list)
