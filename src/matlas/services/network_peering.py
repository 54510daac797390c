"""Network peering service."""

from __future__ import annotations

from enum import Enum
from typing import Any

from ..atlas_api import path_segment
from ..models import (
    PEERING_REQUIRED_FIELDS,
    CloudProvider,
    NetworkPeeringSpec,
    ProjectRef,
    Resource,
    ResourceKind,
    make_resource,
)
from ..validation import require
from .base import AtlasService


class PeeringState(str, Enum):
    INITIATING = "INITIATING"
    PENDING_ACCEPTANCE = "PENDING_ACCEPTANCE"
    AVAILABLE = "AVAILABLE"
    FAILED = "FAILED"
    DELETING = "DELETING"
    DELETED = "DELETED"


# Snake-case spec field -> API field name
_API_FIELDS = {
    "container_id": "containerId",
    "vpc_id": "vpcId",
    "aws_account_id": "awsAccountId",
    "route_table_cidr_block": "routeTableCidrBlock",
    "accepter_region_name": "accepterRegionName",
    "gcp_project_id": "gcpProjectId",
    "network_name": "networkName",
    "azure_directory_id": "azureDirectoryId",
    "azure_subscription_id": "azureSubscriptionId",
    "resource_group_name": "resourceGroupName",
    "vnet_name": "vNetName",
}


def peering_from_api(project: ProjectRef, item: dict[str, Any]) -> Resource:
    provider = CloudProvider(item.get("providerName", CloudProvider.AWS.value))
    fields = {name: item.get(api) for name, api in _API_FIELDS.items() if item.get(api)}
    spec = NetworkPeeringSpec(project_name=project.name, provider=provider, **fields)
    state = item.get("statusName") or item.get("status")
    return make_resource(
        ResourceKind.NETWORK_PEERING,
        f"{provider.value}:{spec.peer_name}",
        spec,
        resource_id=item.get("id"),
        attributes={"status": state, "errorState": item.get("errorStateName")},
    )


def peering_to_api(spec: NetworkPeeringSpec, container_id: str) -> dict[str, Any]:
    body: dict[str, Any] = {"providerName": spec.provider.value, "containerId": container_id}
    for name in PEERING_REQUIRED_FIELDS[spec.provider]:
        body[_API_FIELDS[name]] = getattr(spec, name)
    return body


class NetworkPeeringService(AtlasService):
    """Peering connections, addressed by server id and listed per provider."""

    async def list_by_provider(self, project: ProjectRef, provider: str) -> list[Resource]:
        path = self._group_path(project, "/peers")
        params = {"providerName": provider}
        items = await self._call(lambda: self.api.list_all(path, params), "list peerings")
        return [peering_from_api(project, i) for i in items]

    async def list(self, project: ProjectRef) -> list[Resource]:
        self._group_path(project)
        return await self._list_across_providers(
            lambda provider: self.list_by_provider(project, provider),
            "list peerings",
        )

    async def get(self, project: ProjectRef, peer_id: str) -> Resource:
        require(peer_id=peer_id)
        path = self._group_path(project, f"/peers/{path_segment(peer_id)}")
        item = await self._call(lambda: self.api.get(path), "get peering")
        return peering_from_api(project, item)

    async def create(
        self, project: ProjectRef, spec: NetworkPeeringSpec, container_id: str
    ) -> Resource:
        """Request a peering connection from an existing container.

        The connection starts in ``INITIATING``/``PENDING_ACCEPTANCE``; the
        peer side must accept it outside of matlas.
        """
        require(container_id=container_id)
        path = self._group_path(project, "/peers")
        body = peering_to_api(spec, container_id)
        item = await self._call(lambda: self.api.post(path, body), "create peering")
        return peering_from_api(project, item)

    async def update(
        self, project: ProjectRef, peer_id: str, spec: NetworkPeeringSpec, container_id: str
    ) -> Resource:
        require(peer_id=peer_id, container_id=container_id)
        path = self._group_path(project, f"/peers/{path_segment(peer_id)}")
        body = peering_to_api(spec, container_id)
        item = await self._call(lambda: self.api.patch(path, body), "update peering")
        return peering_from_api(project, item)

    async def delete(self, project: ProjectRef, peer_id: str) -> None:
        require(peer_id=peer_id)
        path = self._group_path(project, f"/peers/{path_segment(peer_id)}")
        await self._call(lambda: self.api.delete(path), "delete peering")
