"""All resource services bound to one shared client."""

from __future__ import annotations

from dataclasses import dataclass

from ..client import AtlasClient
from .alerts import AlertConfigurationService
from .clusters import ClusterService
from .encryption import EncryptionService
from .network_access import NetworkAccessService
from .network_containers import NetworkContainerService
from .network_peering import NetworkPeeringService
from .projects import ProjectService
from .search import SearchIndexService
from .users import DatabaseUserService
from .vpc_endpoints import VPCEndpointService


@dataclass
class AtlasServices:
    client: AtlasClient
    projects: ProjectService
    clusters: ClusterService
    users: DatabaseUserService
    network_access: NetworkAccessService
    containers: NetworkContainerService
    peering: NetworkPeeringService
    search: SearchIndexService
    vpc_endpoints: VPCEndpointService
    alerts: AlertConfigurationService
    encryption: EncryptionService

    @classmethod
    def from_client(cls, client: AtlasClient) -> AtlasServices:
        return cls(
            client=client,
            projects=ProjectService(client),
            clusters=ClusterService(client),
            users=DatabaseUserService(client),
            network_access=NetworkAccessService(client),
            containers=NetworkContainerService(client),
            peering=NetworkPeeringService(client),
            search=SearchIndexService(client),
            vpc_endpoints=VPCEndpointService(client),
            alerts=AlertConfigurationService(client),
            encryption=EncryptionService(client),
        )
