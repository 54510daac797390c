"""Private endpoint service (VPC endpoint services per provider and region)."""

from __future__ import annotations

from typing import Any

from ..atlas_api import path_segment
from ..models import (
    CloudProvider,
    ProjectRef,
    Resource,
    ResourceKind,
    VPCEndpointSpec,
    make_resource,
)
from ..validation import require
from .base import AtlasService, region_from_api, region_to_api


def endpoint_service_from_api(project: ProjectRef, item: dict[str, Any]) -> Resource:
    provider = CloudProvider(item.get("cloudProvider") or item.get("providerName") or "AWS")
    region = region_from_api(provider, item.get("regionName") or item.get("region") or "")
    spec = VPCEndpointSpec(project_name=project.name, cloud_provider=provider, region=region)
    return make_resource(
        ResourceKind.VPC_ENDPOINT,
        f"{provider.value}:{region}",
        spec,
        resource_id=item.get("id"),
        attributes={
            "status": item.get("status"),
            "endpointServiceName": item.get("endpointServiceName"),
        },
    )


class VPCEndpointService(AtlasService):
    """Endpoint services, addressed by provider and server id."""

    async def list_by_provider(self, project: ProjectRef, provider: str) -> list[Resource]:
        path = self._group_path(
            project, f"/privateEndpoint/{path_segment(provider)}/endpointService"
        )
        items = await self._call(lambda: self.api.get(path), "list private endpoint services")
        return [endpoint_service_from_api(project, i) for i in items or []]

    async def list(self, project: ProjectRef) -> list[Resource]:
        self._group_path(project)
        return await self._list_across_providers(
            lambda provider: self.list_by_provider(project, provider),
            "list private endpoint services",
        )

    async def get(self, project: ProjectRef, provider: CloudProvider, service_id: str) -> Resource:
        require(service_id=service_id)
        path = self._group_path(
            project,
            f"/privateEndpoint/{provider.value}/endpointService/{path_segment(service_id)}",
        )
        item = await self._call(lambda: self.api.get(path), "get private endpoint service")
        return endpoint_service_from_api(project, item)

    async def create(self, project: ProjectRef, spec: VPCEndpointSpec) -> Resource:
        path = self._group_path(project, "/privateEndpoint/endpointService")
        body = {
            "providerName": spec.cloud_provider.value,
            "region": region_to_api(spec.cloud_provider, spec.region),
        }
        item = await self._call(
            lambda: self.api.post(path, body), "create private endpoint service"
        )
        return endpoint_service_from_api(project, item)

    async def delete(self, project: ProjectRef, provider: CloudProvider, service_id: str) -> None:
        require(service_id=service_id)
        path = self._group_path(
            project,
            f"/privateEndpoint/{provider.value}/endpointService/{path_segment(service_id)}",
        )
        await self._call(lambda: self.api.delete(path), "delete private endpoint service")
