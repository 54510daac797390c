"""Network container service (VPC/VNet ranges reserved for peering)."""

from __future__ import annotations

from typing import Any

from ..atlas_api import path_segment
from ..models import (
    CloudProvider,
    NetworkContainerSpec,
    ProjectRef,
    Resource,
    ResourceKind,
    make_resource,
)
from ..validation import check, require, validate_container_cidr
from .base import AtlasService, region_from_api, region_to_api


def container_from_api(project: ProjectRef, item: dict[str, Any]) -> Resource:
    provider = CloudProvider(item.get("providerName", CloudProvider.AWS.value))
    region = region_from_api(provider, item.get("regionName") or item.get("region") or "")
    spec = NetworkContainerSpec(
        project_name=project.name,
        provider=provider,
        cidr_block=item["atlasCidrBlock"],
        region=region or None,
    )
    return make_resource(
        ResourceKind.NETWORK_CONTAINER,
        f"{provider.value}:{spec.cidr_block}",
        spec,
        resource_id=item.get("id"),
        attributes={"provisioned": item.get("provisioned", False)},
    )


def container_to_api(spec: NetworkContainerSpec) -> dict[str, Any]:
    body: dict[str, Any] = {
        "providerName": spec.provider.value,
        "atlasCidrBlock": spec.cidr_block,
    }
    if spec.region:
        key = "region" if spec.provider == CloudProvider.AZURE else "regionName"
        body[key] = region_to_api(spec.provider, spec.region)
    return body


class NetworkContainerService(AtlasService):
    """Containers, addressed by server id and listed per provider."""

    async def list_by_provider(self, project: ProjectRef, provider: str) -> list[Resource]:
        path = self._group_path(project, "/containers")
        params = {"providerName": provider}
        items = await self._call(
            lambda: self.api.list_all(path, params), "list network containers"
        )
        return [container_from_api(project, i) for i in items]

    async def list(self, project: ProjectRef) -> list[Resource]:
        self._group_path(project)
        return await self._list_across_providers(
            lambda provider: self.list_by_provider(project, provider),
            "list network containers",
        )

    async def get(self, project: ProjectRef, container_id: str) -> Resource:
        require(container_id=container_id)
        path = self._group_path(project, f"/containers/{path_segment(container_id)}")
        item = await self._call(lambda: self.api.get(path), "get network container")
        return container_from_api(project, item)

    async def create(self, project: ProjectRef, spec: NetworkContainerSpec) -> Resource:
        check(validate_container_cidr, spec.provider.value, spec.cidr_block)
        path = self._group_path(project, "/containers")
        body = container_to_api(spec)
        item = await self._call(lambda: self.api.post(path, body), "create network container")
        return container_from_api(project, item)

    async def update(
        self, project: ProjectRef, container_id: str, spec: NetworkContainerSpec
    ) -> Resource:
        require(container_id=container_id)
        check(validate_container_cidr, spec.provider.value, spec.cidr_block)
        path = self._group_path(project, f"/containers/{path_segment(container_id)}")
        body = container_to_api(spec)
        item = await self._call(lambda: self.api.patch(path, body), "update network container")
        return container_from_api(project, item)

    async def delete(self, project: ProjectRef, container_id: str) -> None:
        require(container_id=container_id)
        path = self._group_path(project, f"/containers/{path_segment(container_id)}")
        await self._call(lambda: self.api.delete(path), "delete network container")
