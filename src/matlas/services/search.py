"""Atlas Search and Vector Search index service."""

from __future__ import annotations

from typing import Any, cast

from ..atlas_api import path_segment
from ..errors import NotFoundError
from ..models import (
    ProjectRef,
    Resource,
    ResourceKind,
    SearchIndexSpec,
    SearchIndexType,
    make_resource,
)
from ..validation import check, require, validate_cluster_name
from .base import AtlasService


def search_index_from_api(project: ProjectRef, cluster: str, item: dict[str, Any]) -> Resource:
    """Map a search index.

    The server reports the definition being served as ``latestDefinition``;
    older payloads carry it as ``definition``. Analyzers and synonyms stay
    inside the definition so that it compares equal to
    :meth:`SearchIndexSpec.effective_definition`.
    """
    definition = dict(item.get("latestDefinition") or item.get("definition") or {})
    spec = SearchIndexSpec(
        project_name=project.name,
        cluster_name=cluster,
        database_name=item["database"],
        collection_name=item["collectionName"],
        index_name=item["name"],
        index_type=SearchIndexType(item.get("type", SearchIndexType.SEARCH.value)),
        definition=definition,
    )
    return make_resource(
        ResourceKind.SEARCH_INDEX,
        item["name"],
        spec,
        resource_id=item.get("indexID") or item.get("indexId"),
        attributes={"status": item.get("status"), "queryable": item.get("queryable")},
    )


class SearchIndexService(AtlasService):
    """Search indexes live under a cluster and are addressed by index id."""

    def _indexes_path(self, project: ProjectRef, cluster: str, index_id: str = "") -> str:
        require(cluster_name=cluster)
        check(validate_cluster_name, cluster)
        suffix = f"/clusters/{path_segment(cluster)}/search/indexes"
        if index_id:
            suffix += f"/{path_segment(index_id)}"
        return self._group_path(project, suffix)

    async def list(self, project: ProjectRef, cluster: str) -> list[Resource]:
        path = self._indexes_path(project, cluster)
        items = await self._call(lambda: self.api.get(path), "list search indexes")
        return [search_index_from_api(project, cluster, i) for i in items or []]

    async def get(self, project: ProjectRef, cluster: str, index_id: str) -> Resource:
        require(index_id=index_id)
        path = self._indexes_path(project, cluster, index_id)
        item = await self._call(lambda: self.api.get(path), "get search index")
        return search_index_from_api(project, cluster, item)

    async def find(self, project: ProjectRef, spec: SearchIndexSpec) -> Resource:
        """Look up an index by ``(database, collection, name)``.

        Raises:
            NotFoundError: If no such index exists on the cluster.
        """
        for index in await self.list(project, spec.cluster_name):
            live = cast(SearchIndexSpec, index.spec)
            if (live.database_name, live.collection_name, live.index_name) == (
                spec.database_name,
                spec.collection_name,
                spec.index_name,
            ):
                return index
        raise NotFoundError(
            f"search index {spec.index_name!r} not found on "
            f"{spec.cluster_name}/{spec.database_name}.{spec.collection_name}"
        )

    async def create(self, project: ProjectRef, spec: SearchIndexSpec) -> Resource:
        path = self._indexes_path(project, spec.cluster_name)
        body = {
            "name": spec.index_name,
            "database": spec.database_name,
            "collectionName": spec.collection_name,
            "type": spec.index_type.value,
            "definition": spec.effective_definition(),
        }
        item = await self._call(lambda: self.api.post(path, body), "create search index")
        return search_index_from_api(project, spec.cluster_name, item)

    async def update(self, project: ProjectRef, index_id: str, spec: SearchIndexSpec) -> Resource:
        require(index_id=index_id)
        path = self._indexes_path(project, spec.cluster_name, index_id)
        body = {"definition": spec.effective_definition()}
        item = await self._call(lambda: self.api.patch(path, body), "update search index")
        return search_index_from_api(project, spec.cluster_name, item)

    async def delete(self, project: ProjectRef, cluster: str, index_id: str) -> None:
        require(index_id=index_id)
        path = self._indexes_path(project, cluster, index_id)
        await self._call(lambda: self.api.delete(path), "delete search index")
