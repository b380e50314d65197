"""The DKAN catalog on top of QueryClient.

CatalogKeys names every cached read; DkanClient pairs each read with the
remote call that fills it and each write with the keys it invalidates.

    dkan = DkanClient(HttpCatalogApi("https://data.example.gov"))
    observer = dkan.observe(dkan.dataset("abc-123"))
    update = dkan.register(dkan.mutations.update_dataset)
    await update.mutate_async({"identifier": "abc-123", "dataset": {...}})
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from dkan_query.client import QueryClient, QueryObserver
from dkan_query.keys import define_keys
from dkan_query.mutations import (
    Arg,
    Invalidation,
    Mutation,
    MutationObserver,
    remove,
    stale,
)
from dkan_query.remote import CatalogApi
from dkan_query.types import Duration, QueryKey

CatalogKeys = define_keys(
    {
        "dataset": lambda identifier: ("datasets", "single", identifier),
        "all_datasets": lambda: ("datasets", "all"),
        "search": lambda options=None: ("datasets", "search", options or {}),
        "facets": lambda: ("datasets", "facets"),
        "datastore_query": lambda dataset_id, index=0, options=None: (
            "datastore",
            "query",
            dataset_id,
            index,
            options or {},
        ),
        "datastore_schema": lambda dataset_id, index=0: (
            "datastore",
            "schema",
            dataset_id,
            index,
        ),
        "sql": lambda query, show_db_columns=False: (
            "datastore",
            "sql",
            query,
            show_db_columns,
        ),
        "imports": lambda: ("datastore", "imports"),
        "statistics": lambda identifier: ("datastore", "statistics", identifier),
        "schemas": lambda: ("metastore", "schemas"),
        "schema_items": lambda schema_id: ("metastore", "schema-items", schema_id),
        "revisions": lambda schema_id, identifier: (
            "metastore",
            "revisions",
            schema_id,
            identifier,
        ),
        "revision": lambda schema_id, identifier, revision_id: (
            "metastore",
            "revision",
            schema_id,
            identifier,
            revision_id,
        ),
        "data_dictionaries": lambda: ("data-dictionary", "list"),
        "data_dictionary": lambda identifier: ("data-dictionary", "single", identifier),
        "harvest_plans": lambda: ("harvest", "plans"),
        "harvest_plan": lambda plan_id: ("harvest", "plan", plan_id),
        "harvest_runs": lambda plan_id: ("harvest", "runs", plan_id),
        "harvest_run": lambda run_id, plan_id: ("harvest", "run", run_id, plan_id),
        "dataset_properties": lambda: ("dataset-properties", "list"),
        "property_values": lambda prop: ("dataset-properties", "values", prop),
    }
)

FACETS_STALE_TIME = "5m"
PROPERTIES_STALE_TIME = "5m"
SCHEMAS_STALE_TIME = "forever"


@dataclass(frozen=True, slots=True)
class CatalogQuery:
    """A catalog read: its cache key, how to fetch it and its default stale time."""

    key: QueryKey
    fn: Callable[[], Awaitable[Any]]
    stale_time: Duration | None = None


def compute_facets(datasets: list[dict[str, Any]]) -> dict[str, list[str]]:
    """Distinct themes, keywords and publisher names across datasets, sorted."""
    themes: set[str] = set()
    keywords: set[str] = set()
    publishers: set[str] = set()
    for dataset in datasets:
        themes.update(dataset.get("theme") or ())
        keywords.update(dataset.get("keyword") or ())
        publisher = dataset.get("publisher") or {}
        if isinstance(publisher, dict) and publisher.get("name"):
            publishers.add(publisher["name"])
    return {
        "theme": sorted(themes),
        "keyword": sorted(keywords),
        "publisher": sorted(publishers),
    }


def _revision_rule(variables: dict[str, Any], result: Any) -> list[Invalidation]:
    targets = [
        stale("metastore", "revisions", Arg("schema"), Arg("identifier")),
    ]
    if variables.get("schema") == "dataset":
        targets.append(stale("datasets"))
    return targets


def _merge(patch: dict[str, Any]) -> Callable[[Any], Any]:
    def update(current: Any) -> Any:
        if not isinstance(current, dict):
            return current
        return {**current, **patch}

    return update


@dataclass(frozen=True)
class CatalogMutations:
    """Every catalog write, with the cache keys it affects."""

    create_dataset: Mutation[dict[str, Any], dict[str, Any]]
    update_dataset: Mutation[dict[str, Any], dict[str, Any]]
    patch_dataset: Mutation[dict[str, Any], dict[str, Any]]
    delete_dataset: Mutation[str, dict[str, Any]]
    trigger_import: Mutation[dict[str, Any], dict[str, Any]]
    delete_datastore: Mutation[str, dict[str, Any]]
    register_harvest_plan: Mutation[dict[str, Any], dict[str, Any]]
    run_harvest: Mutation[str, dict[str, Any]]
    create_revision: Mutation[dict[str, Any], dict[str, Any]]
    change_dataset_state: Mutation[dict[str, Any], dict[str, Any]]
    create_data_dictionary: Mutation[dict[str, Any], dict[str, Any]]
    update_data_dictionary: Mutation[dict[str, Any], dict[str, Any]]
    delete_data_dictionary: Mutation[str, dict[str, Any]]

    @classmethod
    def for_api(cls, api: CatalogApi) -> CatalogMutations:
        return cls(
            create_dataset=Mutation(
                fn=api.create_dataset,
                invalidates=[stale("datasets"), stale("metastore")],
                name="create_dataset",
            ),
            update_dataset=Mutation(
                fn=lambda v: api.update_dataset(v["identifier"], v["dataset"]),
                invalidates=[
                    stale("datasets", "single", Arg("identifier")),
                    stale("datasets", "all"),
                    stale("datasets", "search"),
                    stale("datasets", "facets"),
                ],
                optimistic=lambda v: [
                    (CatalogKeys["dataset"](v["identifier"]), lambda _: v["dataset"])
                ],
                name="update_dataset",
            ),
            patch_dataset=Mutation(
                fn=lambda v: api.patch_dataset(v["identifier"], v["patch"]),
                invalidates=[
                    stale("datasets", "single", Arg("identifier")),
                    stale("datasets", "all"),
                    stale("datasets", "search"),
                ],
                optimistic=lambda v: [
                    (CatalogKeys["dataset"](v["identifier"]), _merge(v["patch"]))
                ],
                name="patch_dataset",
            ),
            delete_dataset=Mutation(
                fn=api.delete_dataset,
                invalidates=[
                    remove("datasets", "single", Arg()),
                    stale("datasets"),
                    stale("metastore"),
                ],
                name="delete_dataset",
            ),
            trigger_import=Mutation(
                fn=api.trigger_datastore_import,
                invalidates=[stale("datastore", "imports"), stale("datastore", "query")],
                name="trigger_import",
            ),
            delete_datastore=Mutation(
                fn=api.delete_datastore,
                invalidates=[
                    stale("datastore", "imports"),
                    stale("datastore", "query"),
                    remove("datastore", "statistics", Arg()),
                ],
                name="delete_datastore",
            ),
            register_harvest_plan=Mutation(
                fn=api.register_harvest_plan,
                invalidates=[stale("harvest", "plans")],
                name="register_harvest_plan",
            ),
            run_harvest=Mutation(
                fn=api.run_harvest,
                invalidates=[stale("harvest", "runs", Arg()), stale("datasets")],
                name="run_harvest",
            ),
            create_revision=Mutation(
                fn=lambda v: api.create_revision(
                    v["schema"], v["identifier"], v["revision"]
                ),
                invalidates=_revision_rule,
                name="create_revision",
            ),
            change_dataset_state=Mutation(
                fn=lambda v: api.create_revision(
                    "dataset",
                    v["identifier"],
                    {"state": v["state"], "message": v.get("message", "")},
                ),
                invalidates=[
                    stale("metastore", "revisions", "dataset", Arg("identifier")),
                    stale("datasets"),
                ],
                name="change_dataset_state",
            ),
            create_data_dictionary=Mutation(
                fn=api.create_data_dictionary,
                invalidates=[stale("data-dictionary", "list")],
                name="create_data_dictionary",
            ),
            update_data_dictionary=Mutation(
                fn=lambda v: api.update_data_dictionary(v["identifier"], v["dictionary"]),
                invalidates=[
                    stale("data-dictionary", "list"),
                    stale("data-dictionary", "single", Arg("identifier")),
                ],
                name="update_data_dictionary",
            ),
            delete_data_dictionary=Mutation(
                fn=api.delete_data_dictionary,
                invalidates=[
                    stale("data-dictionary", "list"),
                    remove("data-dictionary", "single", Arg()),
                ],
                name="delete_data_dictionary",
            ),
        )


class DkanClient:
    """Cached access to a DKAN catalog.

    Reads are described by CatalogQuery values (``dkan.dataset(id)``) and
    consumed through observe(), fetch() or prefetch(). Writes live on
    ``dkan.mutations`` and are run with register() or mutate().
    """

    def __init__(
        self,
        api: CatalogApi,
        client: QueryClient | None = None,
        **client_options: Any,
    ) -> None:
        if client is not None and client_options:
            raise ValueError("Pass either a QueryClient or client options, not both")
        self._api = api
        self._client = client or QueryClient(**client_options)
        self._mutations = CatalogMutations.for_api(api)

    @property
    def api(self) -> CatalogApi:
        return self._api

    @property
    def client(self) -> QueryClient:
        return self._client

    @property
    def mutations(self) -> CatalogMutations:
        return self._mutations

    # -------------------------------------------------------------------------
    # Consuming reads
    # -------------------------------------------------------------------------

    def observe(
        self,
        query: CatalogQuery,
        *,
        stale_time: Duration | None = None,
        enabled: bool = True,
        refetch_interval: Duration | None = None,
    ) -> QueryObserver[Any]:
        return self._client.observe(
            query.key,
            query.fn,
            stale_time=query.stale_time if stale_time is None else stale_time,
            enabled=enabled,
            refetch_interval=refetch_interval,
        )

    async def fetch(self, query: CatalogQuery) -> Any:
        return await self._client.fetch_query(
            query.key, query.fn, stale_time=query.stale_time
        )

    async def prefetch(self, query: CatalogQuery) -> None:
        await self._client.prefetch_query(query.key, query.fn, stale_time=query.stale_time)

    # -------------------------------------------------------------------------
    # Running writes
    # -------------------------------------------------------------------------

    def register(self, mutation: Mutation[Any, Any]) -> MutationObserver[Any, Any]:
        return self._client.register_mutation(mutation)

    async def mutate(self, mutation: Mutation[Any, Any], variables: Any) -> Any:
        return await self._client.mutate(mutation, variables)

    # -------------------------------------------------------------------------
    # Datasets
    # -------------------------------------------------------------------------

    def dataset(self, identifier: str) -> CatalogQuery:
        return CatalogQuery(
            CatalogKeys["dataset"](identifier),
            lambda: self._api.get_dataset(identifier),
        )

    def all_datasets(self) -> CatalogQuery:
        return CatalogQuery(CatalogKeys["all_datasets"](), self._api.list_datasets)

    def search(self, options: dict[str, Any] | None = None) -> CatalogQuery:
        options = dict(options or {})
        return CatalogQuery(
            CatalogKeys["search"](options),
            lambda: self._api.search_datasets(options),
        )

    def facets(self) -> CatalogQuery:
        async def fetch_facets() -> dict[str, list[str]]:
            return compute_facets(await self._api.list_datasets())

        return CatalogQuery(CatalogKeys["facets"](), fetch_facets, FACETS_STALE_TIME)

    # -------------------------------------------------------------------------
    # Datastore
    # -------------------------------------------------------------------------

    def datastore_query(
        self,
        dataset_id: str,
        index: int = 0,
        options: dict[str, Any] | None = None,
    ) -> CatalogQuery:
        options = dict(options or {})
        return CatalogQuery(
            CatalogKeys["datastore_query"](dataset_id, index, options),
            lambda: self._api.query_datastore(dataset_id, index, options),
        )

    def datastore_schema(self, dataset_id: str, index: int = 0) -> CatalogQuery:
        return CatalogQuery(
            CatalogKeys["datastore_schema"](dataset_id, index),
            lambda: self._api.get_datastore_schema(dataset_id, index),
        )

    def sql(self, query: str, show_db_columns: bool = False) -> CatalogQuery:
        return CatalogQuery(
            CatalogKeys["sql"](query, show_db_columns),
            lambda: self._api.query_sql(query, show_db_columns),
        )

    def imports(self) -> CatalogQuery:
        return CatalogQuery(
            CatalogKeys["imports"](), self._api.list_datastore_imports, 0
        )

    def statistics(self, identifier: str) -> CatalogQuery:
        return CatalogQuery(
            CatalogKeys["statistics"](identifier),
            lambda: self._api.get_datastore_statistics(identifier),
        )

    # -------------------------------------------------------------------------
    # Metastore
    # -------------------------------------------------------------------------

    def schemas(self) -> CatalogQuery:
        return CatalogQuery(
            CatalogKeys["schemas"](), self._api.list_schemas, SCHEMAS_STALE_TIME
        )

    def schema_items(self, schema_id: str) -> CatalogQuery:
        return CatalogQuery(
            CatalogKeys["schema_items"](schema_id),
            lambda: self._api.get_schema_items(schema_id),
        )

    def revisions(self, schema_id: str, identifier: str) -> CatalogQuery:
        return CatalogQuery(
            CatalogKeys["revisions"](schema_id, identifier),
            lambda: self._api.get_revisions(schema_id, identifier),
        )

    def revision(self, schema_id: str, identifier: str, revision_id: str) -> CatalogQuery:
        return CatalogQuery(
            CatalogKeys["revision"](schema_id, identifier, revision_id),
            lambda: self._api.get_revision(schema_id, identifier, revision_id),
        )

    # -------------------------------------------------------------------------
    # Data dictionaries
    # -------------------------------------------------------------------------

    def data_dictionaries(self) -> CatalogQuery:
        return CatalogQuery(
            CatalogKeys["data_dictionaries"](), self._api.list_data_dictionaries
        )

    def data_dictionary(self, identifier: str) -> CatalogQuery:
        return CatalogQuery(
            CatalogKeys["data_dictionary"](identifier),
            lambda: self._api.get_data_dictionary(identifier),
        )

    # -------------------------------------------------------------------------
    # Harvest
    # -------------------------------------------------------------------------

    def harvest_plans(self) -> CatalogQuery:
        return CatalogQuery(CatalogKeys["harvest_plans"](), self._api.list_harvest_plans)

    def harvest_plan(self, plan_id: str) -> CatalogQuery:
        return CatalogQuery(
            CatalogKeys["harvest_plan"](plan_id),
            lambda: self._api.get_harvest_plan(plan_id),
        )

    def harvest_runs(self, plan_id: str) -> CatalogQuery:
        return CatalogQuery(
            CatalogKeys["harvest_runs"](plan_id),
            lambda: self._api.list_harvest_runs(plan_id),
            0,
        )

    def harvest_run(self, run_id: str, plan_id: str) -> CatalogQuery:
        return CatalogQuery(
            CatalogKeys["harvest_run"](run_id, plan_id),
            lambda: self._api.get_harvest_run(run_id, plan_id),
        )

    # -------------------------------------------------------------------------
    # Dataset properties
    # -------------------------------------------------------------------------

    def dataset_properties(self) -> CatalogQuery:
        return CatalogQuery(
            CatalogKeys["dataset_properties"](),
            self._api.get_dataset_properties,
            PROPERTIES_STALE_TIME,
        )

    def property_values(self, prop: str) -> CatalogQuery:
        return CatalogQuery(
            CatalogKeys["property_values"](prop),
            lambda: self._api.get_property_values(prop),
            PROPERTIES_STALE_TIME,
        )

    async def close(self) -> None:
        await self._client.close()

    async def __aenter__(self) -> DkanClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
