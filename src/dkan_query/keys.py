"""Query key definition and utilities.

Keys are tuples of segments compared structurally. Every key that enters
the cache goes through normalize_key() first, so equality and hashing are
defined once, here.
"""

from collections.abc import Callable, Hashable, Iterable, Mapping, Set
from typing import Any

from dkan_query.types import QueryKey


def _freeze(segment: Any) -> Hashable:
    """Convert a key segment into a hashable, structurally comparable value."""
    if isinstance(segment, (str, bytes, int, float, bool)) or segment is None:
        return segment
    if isinstance(segment, Mapping):
        # Option objects with unset fields hash the same as without them
        return frozenset(
            (name, _freeze(value))
            for name, value in segment.items()
            if value is not None
        )
    if isinstance(segment, (list, tuple)):
        return tuple(_freeze(part) for part in segment)
    if isinstance(segment, Set):
        return frozenset(_freeze(part) for part in segment)
    if isinstance(segment, Hashable):
        return segment
    raise TypeError(f"Unhashable query key segment: {segment!r}")


def normalize_key(key: Iterable[Any] | str, *, allow_empty: bool = False) -> QueryKey:
    """Normalize a key or prefix into its canonical tuple form.

    A bare string is a one-segment key. Empty keys are only meaningful as
    "match everything" prefixes and must be allowed explicitly.
    """
    if isinstance(key, str):
        parts: tuple[Hashable, ...] = (key,)
    else:
        parts = tuple(_freeze(segment) for segment in key)
    if not parts and not allow_empty:
        raise ValueError("Query key must have at least one segment")
    return parts


def is_key_prefix(prefix: QueryKey, key: QueryKey) -> bool:
    """Check if prefix matches key segment by segment (for invalidation)."""
    if len(prefix) > len(key):
        return False
    return key[: len(prefix)] == prefix


def is_key_complete(key: QueryKey) -> bool:
    """A key with a missing (None or empty) segment must not be fetched."""
    return all(segment is not None and segment != "" for segment in key)


def serialize_key(key: QueryKey) -> str:
    """Render a key for logs and reprs."""

    def render(part: Hashable) -> str:
        if isinstance(part, frozenset):
            return "{" + ",".join(sorted(repr(p) for p in part)) + "}"
        return str(part)

    return "/".join(render(p) for p in key)


def define_keys(
    definitions: dict[str, Callable[..., Iterable[Any]]],
) -> dict[str, Callable[..., QueryKey]]:
    """
    Define all query keys in a centralized location.

    Example:
        keys = define_keys({
            "dataset": lambda id: ("datasets", "single", id),
            "search": lambda options: ("datasets", "search", options),
        })

        keys["dataset"]("abc-123")   # ("datasets", "single", "abc-123")
    """
    result: dict[str, Callable[..., QueryKey]] = {}
    for name, fn in definitions.items():

        def make_key(
            *args: Any, _fn: Callable[..., Iterable[Any]] = fn, **kwargs: Any
        ) -> QueryKey:
            return normalize_key(_fn(*args, **kwargs))

        result[name] = make_key
    return result
