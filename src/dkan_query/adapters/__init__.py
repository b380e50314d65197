"""Binding adapters connecting consumers to a QueryClient."""

from dkan_query.adapters.base import Binding
from dkan_query.adapters.callback import (
    CallbackBinding,
    MutationBinding,
    bind_mutation,
    bind_query,
)
from dkan_query.adapters.stream import QueryStream, stream_query

__all__ = [
    "Binding",
    "CallbackBinding",
    "MutationBinding",
    "QueryStream",
    "bind_mutation",
    "bind_query",
    "stream_query",
]
