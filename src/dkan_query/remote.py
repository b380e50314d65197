"""Remote catalog API contract and its HTTP implementation."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import httpx

from dkan_query.errors import RemoteApiError


@runtime_checkable
class CatalogApi(Protocol):
    """Async remote catalog interface consumed by the catalog layer."""

    # Metastore: datasets
    async def get_dataset(self, identifier: str) -> dict[str, Any]: ...

    async def list_datasets(self) -> list[dict[str, Any]]: ...

    async def search_datasets(self, options: dict[str, Any]) -> dict[str, Any]: ...

    async def create_dataset(self, dataset: dict[str, Any]) -> dict[str, Any]: ...

    async def update_dataset(
        self, identifier: str, dataset: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def patch_dataset(
        self, identifier: str, patch: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def delete_dataset(self, identifier: str) -> dict[str, Any]: ...

    # Metastore: schemas and revisions
    async def list_schemas(self) -> list[str]: ...

    async def get_schema_items(self, schema_id: str) -> list[Any]: ...

    async def get_revisions(self, schema_id: str, identifier: str) -> list[Any]: ...

    async def get_revision(
        self, schema_id: str, identifier: str, revision_id: str
    ) -> dict[str, Any]: ...

    async def create_revision(
        self, schema_id: str, identifier: str, revision: dict[str, Any]
    ) -> dict[str, Any]: ...

    # Data dictionaries
    async def list_data_dictionaries(self) -> list[dict[str, Any]]: ...

    async def get_data_dictionary(self, identifier: str) -> dict[str, Any]: ...

    async def create_data_dictionary(
        self, dictionary: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def update_data_dictionary(
        self, identifier: str, dictionary: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def delete_data_dictionary(self, identifier: str) -> dict[str, Any]: ...

    # Datastore
    async def query_datastore(
        self, dataset_id: str, index: int, options: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def get_datastore_schema(self, dataset_id: str, index: int) -> dict[str, Any]: ...

    async def query_sql(self, query: str, show_db_columns: bool) -> list[Any]: ...

    async def list_datastore_imports(self) -> dict[str, Any]: ...

    async def trigger_datastore_import(self, options: dict[str, Any]) -> dict[str, Any]: ...

    async def get_datastore_statistics(self, identifier: str) -> dict[str, Any]: ...

    async def delete_datastore(self, identifier: str) -> dict[str, Any]: ...

    # Harvest
    async def list_harvest_plans(self) -> list[str]: ...

    async def get_harvest_plan(self, plan_id: str) -> dict[str, Any]: ...

    async def register_harvest_plan(self, plan: dict[str, Any]) -> dict[str, Any]: ...

    async def list_harvest_runs(self, plan_id: str) -> list[Any]: ...

    async def get_harvest_run(self, run_id: str, plan_id: str) -> dict[str, Any]: ...

    async def run_harvest(self, plan_id: str) -> dict[str, Any]: ...

    # Dataset properties
    async def get_dataset_properties(self) -> list[str]: ...

    async def get_property_values(self, prop: str) -> list[str]: ...


def _as_list(data: Any) -> list[Any]:
    """DKAN list endpoints answer with either a list or an id-keyed object."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return list(data.values())
    return []


class HttpCatalogApi:
    """CatalogApi over the DKAN REST API."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make a request and decode the JSON body."""
        try:
            response = await self._client.request(method, path, json=body, params=params)
        except httpx.HTTPError as exc:
            raise RemoteApiError(str(exc) or type(exc).__name__) from exc
        if not response.is_success:
            raise RemoteApiError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
                body=response.text,
            )
        if not response.content:
            return None
        return response.json()

    # Metastore: datasets

    async def get_dataset(self, identifier: str) -> dict[str, Any]:
        return await self._request(
            "GET", f"/api/1/metastore/schemas/dataset/items/{identifier}"
        )

    async def list_datasets(self) -> list[dict[str, Any]]:
        return _as_list(await self._request("GET", "/api/1/metastore/schemas/dataset/items"))

    async def search_datasets(self, options: dict[str, Any]) -> dict[str, Any]:
        params = {k: v for k, v in options.items() if v is not None}
        data = await self._request("GET", "/api/1/search", params=params or None) or {}
        total = data.get("total", 0)
        return {
            "total": int(total) if isinstance(total, str) else total,
            "results": _as_list(data.get("results")),
            "facets": data.get("facets"),
        }

    async def create_dataset(self, dataset: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST", "/api/1/metastore/schemas/dataset/items", body=dataset
        )

    async def update_dataset(
        self, identifier: str, dataset: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._request(
            "PUT", f"/api/1/metastore/schemas/dataset/items/{identifier}", body=dataset
        )

    async def patch_dataset(
        self, identifier: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._request(
            "PATCH", f"/api/1/metastore/schemas/dataset/items/{identifier}", body=patch
        )

    async def delete_dataset(self, identifier: str) -> dict[str, Any]:
        return await self._request(
            "DELETE", f"/api/1/metastore/schemas/dataset/items/{identifier}"
        )

    # Metastore: schemas and revisions

    async def list_schemas(self) -> list[str]:
        data = await self._request("GET", "/api/1/metastore/schemas")
        return list(data) if isinstance(data, dict) else _as_list(data)

    async def get_schema_items(self, schema_id: str) -> list[Any]:
        return _as_list(
            await self._request("GET", f"/api/1/metastore/schemas/{schema_id}/items")
        )

    async def get_revisions(self, schema_id: str, identifier: str) -> list[Any]:
        return await self._request(
            "GET", f"/api/1/metastore/schemas/{schema_id}/items/{identifier}/revisions"
        )

    async def get_revision(
        self, schema_id: str, identifier: str, revision_id: str
    ) -> dict[str, Any]:
        return await self._request(
            "GET",
            f"/api/1/metastore/schemas/{schema_id}/items/{identifier}"
            f"/revisions/{revision_id}",
        )

    async def create_revision(
        self, schema_id: str, identifier: str, revision: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/api/1/metastore/schemas/{schema_id}/items/{identifier}/revisions",
            body=revision,
        )

    # Data dictionaries

    async def list_data_dictionaries(self) -> list[dict[str, Any]]:
        return _as_list(
            await self._request("GET", "/api/1/metastore/schemas/data-dictionary/items")
        )

    async def get_data_dictionary(self, identifier: str) -> dict[str, Any]:
        return await self._request(
            "GET", f"/api/1/metastore/schemas/data-dictionary/items/{identifier}"
        )

    async def create_data_dictionary(self, dictionary: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST", "/api/1/metastore/schemas/data-dictionary/items", body=dictionary
        )

    async def update_data_dictionary(
        self, identifier: str, dictionary: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._request(
            "PUT",
            f"/api/1/metastore/schemas/data-dictionary/items/{identifier}",
            body=dictionary,
        )

    async def delete_data_dictionary(self, identifier: str) -> dict[str, Any]:
        return await self._request(
            "DELETE", f"/api/1/metastore/schemas/data-dictionary/items/{identifier}"
        )

    # Datastore

    async def query_datastore(
        self, dataset_id: str, index: int, options: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._request(
            "POST", f"/api/1/datastore/query/{dataset_id}/{index}", body=options
        )

    async def get_datastore_schema(self, dataset_id: str, index: int) -> dict[str, Any]:
        return await self._request(
            "GET",
            f"/api/1/datastore/query/{dataset_id}/{index}",
            params={"schema": "true"},
        )

    async def query_sql(self, query: str, show_db_columns: bool) -> list[Any]:
        return await self._request(
            "POST",
            "/api/1/datastore/sql",
            body={"query": query, "show_db_columns": show_db_columns},
        )

    async def list_datastore_imports(self) -> dict[str, Any]:
        return await self._request("GET", "/api/1/datastore/imports")

    async def trigger_datastore_import(self, options: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/api/1/datastore/imports", body=options)

    async def get_datastore_statistics(self, identifier: str) -> dict[str, Any]:
        return await self._request("GET", f"/api/1/datastore/imports/{identifier}")

    async def delete_datastore(self, identifier: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/api/1/datastore/imports/{identifier}")

    # Harvest

    async def list_harvest_plans(self) -> list[str]:
        return await self._request("GET", "/api/1/harvest/plans")

    async def get_harvest_plan(self, plan_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/api/1/harvest/plans/{plan_id}")

    async def register_harvest_plan(self, plan: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/api/1/harvest/plans", body=plan)

    async def list_harvest_runs(self, plan_id: str) -> list[Any]:
        return await self._request("GET", "/api/1/harvest/runs", params={"plan": plan_id})

    async def get_harvest_run(self, run_id: str, plan_id: str) -> dict[str, Any]:
        return await self._request(
            "GET", f"/api/1/harvest/runs/{run_id}", params={"plan": plan_id}
        )

    async def run_harvest(self, plan_id: str) -> dict[str, Any]:
        return await self._request("POST", "/api/1/harvest/runs", body={"plan_id": plan_id})

    # Dataset properties

    async def get_dataset_properties(self) -> list[str]:
        return await self._request("GET", "/api/1/properties")

    async def get_property_values(self, prop: str) -> list[str]:
        return await self._request("GET", f"/api/1/properties/{prop}")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
