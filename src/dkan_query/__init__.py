"""dkan_query - Reactive query cache and declarative invalidation for DKAN catalogs."""

# Binding adapters
from dkan_query.adapters import (
    Binding,
    QueryStream,
    bind_mutation,
    bind_query,
    stream_query,
)

# Catalog layer
from dkan_query.catalog import CatalogKeys, CatalogMutations, CatalogQuery, DkanClient

# Client API
from dkan_query.client import QueryClient, QueryObserver

# Duration parsing
from dkan_query.duration import parse_duration
from dkan_query.errors import DkanQueryError, InvalidationRuleError, RemoteApiError

# Keys
from dkan_query.keys import define_keys, is_key_prefix, normalize_key

# Mutations
from dkan_query.mutations import (
    Arg,
    Invalidation,
    InvalidationPolicy,
    Mutation,
    MutationObserver,
    Result,
    remove,
    stale,
)
from dkan_query.remote import CatalogApi, HttpCatalogApi
from dkan_query.store import QueryStore

# Core types
from dkan_query.types import (
    CacheEntry,
    Duration,
    MutationResult,
    MutationState,
    MutationStatus,
    QueryKey,
    QueryResult,
    QueryStatus,
)

__version__ = "0.1.0"

__all__ = [
    "Arg",
    "Binding",
    "CacheEntry",
    "CatalogApi",
    "CatalogKeys",
    "CatalogMutations",
    "CatalogQuery",
    "DkanClient",
    "DkanQueryError",
    "Duration",
    "HttpCatalogApi",
    "Invalidation",
    "InvalidationPolicy",
    "InvalidationRuleError",
    "Mutation",
    "MutationObserver",
    "MutationResult",
    "MutationState",
    "MutationStatus",
    "QueryClient",
    "QueryKey",
    "QueryObserver",
    "QueryResult",
    "QueryStatus",
    "QueryStore",
    "QueryStream",
    "RemoteApiError",
    "Result",
    "bind_mutation",
    "bind_query",
    "define_keys",
    "is_key_prefix",
    "normalize_key",
    "parse_duration",
    "remove",
    "stale",
    "stream_query",
]
