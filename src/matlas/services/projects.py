"""Project service."""

from __future__ import annotations

from typing import Any

from ..atlas_api import path_segment
from ..models import (
    ORG_ID_LABEL,
    PROJECT_ID_LABEL,
    ProjectRef,
    ProjectSpec,
    Resource,
    ResourceKind,
    make_resource,
)
from ..validation import require
from .base import AtlasService, tags_from_api, tags_to_api


def project_from_api(item: dict[str, Any]) -> Resource:
    spec = ProjectSpec(
        name=item["name"],
        organization_id=item.get("orgId"),
        tags=tags_from_api(item.get("tags")),
    )
    labels = {PROJECT_ID_LABEL: item.get("id", "")}
    if item.get("orgId"):
        labels[ORG_ID_LABEL] = item["orgId"]
    return make_resource(
        ResourceKind.PROJECT,
        item["name"],
        spec,
        resource_id=item.get("id"),
        labels=labels,
        attributes={"clusterCount": item.get("clusterCount", 0), "created": item.get("created")},
    )


class ProjectService(AtlasService):
    """Projects are the root scope; they are addressed by id or by name."""

    async def list(self) -> list[Resource]:
        items = await self._call(lambda: self.api.list_all("/groups"), "list projects")
        return [project_from_api(i) for i in items]

    async def get(self, project_id: str) -> Resource:
        require(project_id=project_id)
        item = await self._call(
            lambda: self.api.get(f"/groups/{path_segment(project_id)}"), "get project"
        )
        return project_from_api(item)

    async def get_by_name(self, name: str) -> Resource:
        require(project_name=name)
        item = await self._call(
            lambda: self.api.get(f"/groups/byName/{path_segment(name)}"), "get project by name"
        )
        return project_from_api(item)

    async def create(self, spec: ProjectSpec, org_id: str = "") -> Resource:
        org = spec.organization_id or org_id
        require(project_name=spec.name, org_id=org)
        body: dict[str, Any] = {"name": spec.name, "orgId": org}
        if spec.tags:
            body["tags"] = tags_to_api(spec.tags)
        item = await self._call(lambda: self.api.post("/groups", body), "create project")
        return project_from_api(item)

    async def update(self, project: ProjectRef, spec: ProjectSpec) -> Resource:
        path = self._group_path(project)
        body = {"name": spec.name, "tags": tags_to_api(spec.tags)}
        item = await self._call(lambda: self.api.patch(path, body), "update project")
        return project_from_api(item)

    async def delete(self, project: ProjectRef) -> None:
        path = self._group_path(project)
        await self._call(lambda: self.api.delete(path), "delete project")
