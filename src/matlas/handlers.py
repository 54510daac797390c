"""Operation handlers: translate planned operations into service calls.

Each kind registers a creator, an updater and a deleter. ``Replace`` runs
the deleter then the creator. Handlers resolve the owning project through a
:class:`ProjectDirectory` so that children of a project created earlier in
the same run can find its server id.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

from .errors import UnavailableError, UnsupportedError, ValidationError
from .models import (
    AlertConfigurationSpec,
    ClusterSpec,
    DatabaseUserSpec,
    EncryptionAtRestSpec,
    NetworkAccessSpec,
    NetworkContainerSpec,
    NetworkPeeringSpec,
    ProjectRef,
    ProjectSpec,
    Resource,
    ResourceKind,
    SearchIndexSpec,
    SpecModel,
    VPCEndpointSpec,
)
from .planner import Operation, Verb
from .services.registry import AtlasServices

logger = logging.getLogger(__name__)

Creator = Callable[[ProjectRef | None, Resource], Awaitable[Resource | None]]
Updater = Callable[[ProjectRef, Resource, Resource], Awaitable[Resource | None]]
Deleter = Callable[[ProjectRef, Resource], Awaitable[None]]

SpecT = TypeVar("SpecT", bound=SpecModel)


class ProjectDirectory:
    """Project name to ``ProjectRef`` lookup shared by one run's workers."""

    def __init__(self, projects: Iterable[ProjectRef] = ()) -> None:
        self._lock = threading.Lock()
        self._projects: dict[str, ProjectRef] = {p.name: p for p in projects}

    def register(self, ref: ProjectRef) -> None:
        with self._lock:
            self._projects[ref.name] = ref

    def forget(self, name: str) -> None:
        with self._lock:
            self._projects.pop(name, None)

    def get(self, name: str) -> ProjectRef | None:
        with self._lock:
            return self._projects.get(name)

    def resolve(self, name: str) -> ProjectRef:
        """Raises UnavailableError when the project is unknown."""
        ref = self.get(name)
        if ref is None:
            raise UnavailableError(f"project {name!r} does not exist")
        return ref


class OperationHandlers:
    """Executes single operations against the admin API."""

    def __init__(
        self,
        services: AtlasServices,
        directory: ProjectDirectory | None = None,
        default_org_id: str = "",
    ) -> None:
        self._services = services
        self._directory = directory or ProjectDirectory()
        self._default_org_id = default_org_id

        self._creators: dict[ResourceKind, Creator] = {
            ResourceKind.PROJECT: self._create_project,
            ResourceKind.CLUSTER: self._create_cluster,
            ResourceKind.DATABASE_USER: self._create_user,
            ResourceKind.DATABASE_ROLE: self._unsupported,
            ResourceKind.NETWORK_ACCESS: self._upsert_access,
            ResourceKind.NETWORK_CONTAINER: self._create_container,
            ResourceKind.NETWORK_PEERING: self._create_peering,
            ResourceKind.SEARCH_INDEX: self._create_search_index,
            ResourceKind.VPC_ENDPOINT: self._create_endpoint,
            ResourceKind.ALERT_CONFIGURATION: self._create_alert,
            ResourceKind.ENCRYPTION_AT_REST: self._configure_encryption,
        }
        self._updaters: dict[ResourceKind, Updater] = {
            ResourceKind.PROJECT: self._update_project,
            ResourceKind.CLUSTER: self._update_cluster,
            ResourceKind.DATABASE_USER: self._update_user,
            ResourceKind.DATABASE_ROLE: self._unsupported_update,
            ResourceKind.NETWORK_ACCESS: self._update_access,
            ResourceKind.NETWORK_CONTAINER: self._update_container,
            ResourceKind.NETWORK_PEERING: self._update_peering,
            ResourceKind.SEARCH_INDEX: self._update_search_index,
            ResourceKind.VPC_ENDPOINT: self._unsupported_update,
            ResourceKind.ALERT_CONFIGURATION: self._update_alert,
            ResourceKind.ENCRYPTION_AT_REST: self._update_encryption,
        }
        self._deleters: dict[ResourceKind, Deleter] = {
            ResourceKind.PROJECT: self._delete_project,
            ResourceKind.CLUSTER: self._delete_cluster,
            ResourceKind.DATABASE_USER: self._delete_user,
            ResourceKind.DATABASE_ROLE: self._unsupported_delete,
            ResourceKind.NETWORK_ACCESS: self._delete_access,
            ResourceKind.NETWORK_CONTAINER: self._delete_container,
            ResourceKind.NETWORK_PEERING: self._delete_peering,
            ResourceKind.SEARCH_INDEX: self._delete_search_index,
            ResourceKind.VPC_ENDPOINT: self._delete_endpoint,
            ResourceKind.ALERT_CONFIGURATION: self._delete_alert,
            ResourceKind.ENCRYPTION_AT_REST: self._delete_encryption,
        }

    @property
    def directory(self) -> ProjectDirectory:
        return self._directory

    def project_id(self, name: str) -> str | None:
        ref = self._directory.get(name)
        return ref.id if ref else None

    async def run(self, op: Operation) -> Resource | None:
        """Perform ``op``; returns the resulting live resource when there is one."""
        match op.verb:
            case Verb.CREATE:
                return await self.create(op.desired)
            case Verb.UPDATE:
                return await self.update(op.desired, op.live)
            case Verb.REPLACE:
                await self.delete(op.live)
                return await self.create(op.desired)
            case Verb.DELETE:
                await self.delete(op.live)
                return None
            case _:
                return None

    async def create(self, resource: Resource) -> Resource | None:
        project = None
        if resource.kind != ResourceKind.PROJECT:
            project = self._directory.resolve(resource.project_name)
        return await self._creators[resource.kind](project, resource)

    async def update(self, desired: Resource, live: Resource) -> Resource | None:
        project = self._directory.resolve(desired.project_name)
        return await self._updaters[desired.kind](project, desired, live)

    async def delete(self, live: Resource) -> None:
        project = self._directory.resolve(live.project_name)
        await self._deleters[live.kind](project, live)

    async def invert(self, op: Operation, result: Resource | None) -> None:
        """Undo an applied operation (best effort, used by rollback).

        Raises:
            UnsupportedError: When ``op`` cannot be undone.
        """
        match op.verb:
            case Verb.DELETE:
                await self.create(op.snapshot)
            case Verb.CREATE if result is not None:
                await self.delete(result)
            case Verb.UPDATE:
                await self.update(op.live, result or op.live)
            case _:
                raise UnsupportedError(f"cannot roll back {op.verb.value} of {op.identity}")

    # -------------------------------------------------------------------------
    # Project
    # -------------------------------------------------------------------------

    async def _create_project(self, _: ProjectRef | None, resource: Resource) -> Resource:
        spec = spec_of(resource, ProjectSpec)
        created = await self._services.projects.create(spec, self._default_org_id)
        self._directory.register(ProjectRef(id=created.resource_id or "", name=resource.name))
        return created

    async def _update_project(
        self, project: ProjectRef, desired: Resource, _: Resource
    ) -> Resource:
        return await self._services.projects.update(project, spec_of(desired, ProjectSpec))

    async def _delete_project(self, project: ProjectRef, _: Resource) -> None:
        await self._services.projects.delete(project)
        self._directory.forget(project.name)

    # -------------------------------------------------------------------------
    # Cluster
    # -------------------------------------------------------------------------

    async def _create_cluster(self, project: ProjectRef | None, resource: Resource) -> Resource:
        project = owning_project(project, resource)
        spec = spec_of(resource, ClusterSpec)
        created = await self._services.clusters.create(project, resource.name, spec)
        if spec.pit_enabled:
            # PIT cannot be requested at creation; enable it once the cluster exists
            logger.info(
                "Enabling point-in-time restore after creation",
                extra={"cluster": resource.name},
            )
            created = await self._services.clusters.update(project, resource.name, spec)
        return created

    async def _update_cluster(
        self, project: ProjectRef, desired: Resource, live: Resource
    ) -> Resource:
        return await self._services.clusters.update(
            project, live.name, spec_of(desired, ClusterSpec)
        )

    async def _delete_cluster(self, project: ProjectRef, live: Resource) -> None:
        await self._services.clusters.delete(project, live.name)

    # -------------------------------------------------------------------------
    # Database users and roles
    # -------------------------------------------------------------------------

    async def _create_user(self, project: ProjectRef | None, resource: Resource) -> Resource:
        return await self._services.users.create(
            owning_project(project, resource), spec_of(resource, DatabaseUserSpec)
        )

    async def _update_user(self, project: ProjectRef, desired: Resource, _: Resource) -> Resource:
        return await self._services.users.update(project, spec_of(desired, DatabaseUserSpec))

    async def _delete_user(self, project: ProjectRef, live: Resource) -> None:
        spec = spec_of(live, DatabaseUserSpec)
        await self._services.users.delete(project, spec.auth_database, spec.username)

    async def _unsupported(self, _: ProjectRef | None, resource: Resource) -> None:
        raise UnsupportedError(
            f"{resource.identity}: custom database roles cannot be applied through the admin API"
        )

    async def _unsupported_update(self, _: ProjectRef, desired: Resource, __: Resource) -> None:
        raise UnsupportedError(f"{desired.identity}: in-place update is not supported")

    async def _unsupported_delete(self, _: ProjectRef, live: Resource) -> None:
        raise UnsupportedError(
            f"{live.identity}: custom database roles cannot be deleted through the admin API"
        )

    # -------------------------------------------------------------------------
    # Network access, containers and peering
    # -------------------------------------------------------------------------

    async def _upsert_access(self, project: ProjectRef | None, resource: Resource) -> Resource:
        return await self._services.network_access.upsert(
            owning_project(project, resource), spec_of(resource, NetworkAccessSpec)
        )

    async def _update_access(self, project: ProjectRef, desired: Resource, _: Resource) -> Resource:
        return await self._upsert_access(project, desired)

    async def _delete_access(self, project: ProjectRef, live: Resource) -> None:
        await self._services.network_access.delete(
            project, spec_of(live, NetworkAccessSpec).entry
        )

    async def _create_container(self, project: ProjectRef | None, resource: Resource) -> Resource:
        return await self._services.containers.create(
            owning_project(project, resource), spec_of(resource, NetworkContainerSpec)
        )

    async def _update_container(
        self, project: ProjectRef, desired: Resource, live: Resource
    ) -> Resource:
        return await self._services.containers.update(
            project, live.resource_id or "", spec_of(desired, NetworkContainerSpec)
        )

    async def _delete_container(self, project: ProjectRef, live: Resource) -> None:
        await self._services.containers.delete(project, live.resource_id or "")

    async def _container_for(self, project: ProjectRef, spec: NetworkPeeringSpec) -> str:
        if spec.container_id:
            return spec.container_id
        containers = await self._services.containers.list_by_provider(
            project, spec.provider.value
        )
        if not containers:
            raise UnavailableError(
                f"no {spec.provider.value} network container exists in project {project.name!r}"
            )
        if len(containers) > 1:
            raise ValidationError(
                f"project {project.name!r} has {len(containers)} {spec.provider.value} "
                "containers; set containerId on the peering"
            )
        return containers[0].resource_id or ""

    async def _create_peering(self, project: ProjectRef | None, resource: Resource) -> Resource:
        project = owning_project(project, resource)
        spec = spec_of(resource, NetworkPeeringSpec)
        container_id = await self._container_for(project, spec)
        return await self._services.peering.create(project, spec, container_id)

    async def _update_peering(
        self, project: ProjectRef, desired: Resource, live: Resource
    ) -> Resource:
        spec = spec_of(desired, NetworkPeeringSpec)
        container_id = spec.container_id or spec_of(live, NetworkPeeringSpec).container_id
        if not container_id:
            container_id = await self._container_for(project, spec)
        return await self._services.peering.update(
            project, live.resource_id or "", spec, container_id
        )

    async def _delete_peering(self, project: ProjectRef, live: Resource) -> None:
        await self._services.peering.delete(project, live.resource_id or "")

    # -------------------------------------------------------------------------
    # Search indexes and private endpoints
    # -------------------------------------------------------------------------

    async def _create_search_index(
        self, project: ProjectRef | None, resource: Resource
    ) -> Resource:
        return await self._services.search.create(
            owning_project(project, resource), spec_of(resource, SearchIndexSpec)
        )

    async def _update_search_index(
        self, project: ProjectRef, desired: Resource, live: Resource
    ) -> Resource:
        return await self._services.search.update(
            project, live.resource_id or "", spec_of(desired, SearchIndexSpec)
        )

    async def _delete_search_index(self, project: ProjectRef, live: Resource) -> None:
        await self._services.search.delete(
            project, spec_of(live, SearchIndexSpec).cluster_name, live.resource_id or ""
        )

    async def _create_endpoint(self, project: ProjectRef | None, resource: Resource) -> Resource:
        return await self._services.vpc_endpoints.create(
            owning_project(project, resource), spec_of(resource, VPCEndpointSpec)
        )

    async def _delete_endpoint(self, project: ProjectRef, live: Resource) -> None:
        await self._services.vpc_endpoints.delete(
            project, spec_of(live, VPCEndpointSpec).cloud_provider, live.resource_id or ""
        )

    # -------------------------------------------------------------------------
    # Alerts and encryption
    # -------------------------------------------------------------------------

    async def _create_alert(self, project: ProjectRef | None, resource: Resource) -> Resource:
        return await self._services.alerts.create(
            owning_project(project, resource), spec_of(resource, AlertConfigurationSpec)
        )

    async def _update_alert(
        self, project: ProjectRef, desired: Resource, live: Resource
    ) -> Resource:
        return await self._services.alerts.update(
            project, live.resource_id or "", spec_of(desired, AlertConfigurationSpec)
        )

    async def _delete_alert(self, project: ProjectRef, live: Resource) -> None:
        await self._services.alerts.delete(project, live.resource_id or "")

    async def _configure_encryption(
        self, project: ProjectRef | None, resource: Resource
    ) -> Resource | None:
        return await self._services.encryption.update(
            owning_project(project, resource), spec_of(resource, EncryptionAtRestSpec)
        )

    async def _update_encryption(
        self, project: ProjectRef, desired: Resource, _: Resource
    ) -> Resource | None:
        return await self._configure_encryption(project, desired)

    async def _delete_encryption(self, project: ProjectRef, _: Resource) -> None:
        await self._services.encryption.disable(project)


def spec_of(resource: Resource, spec_type: type[SpecT]) -> SpecT:
    """Return ``resource.spec`` typed as ``spec_type``.

    Raises:
        TypeError: If the resource carries a different spec model.
    """
    spec = resource.spec
    if not isinstance(spec, spec_type):
        raise TypeError(
            f"{resource.kind.value} {resource.name!r} carries {type(spec).__name__}, "
            f"expected {spec_type.__name__}"
        )
    return spec


def owning_project(project: ProjectRef | None, resource: Resource) -> ProjectRef:
    """Raises UnavailableError when a project-scoped resource has no project."""
    if project is None:
        raise UnavailableError(f"{resource.identity} has no owning project")
    return project
