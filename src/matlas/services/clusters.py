"""Cluster service and cluster payload mapping."""

from __future__ import annotations

from typing import Any

from ..atlas_api import path_segment
from ..models import (
    SHARED_TIER_SIZES,
    AutoScalingConfig,
    CloudProvider,
    ClusterSpec,
    ClusterType,
    ComputeAutoScaling,
    ProjectRef,
    RegionConfig,
    ReplicationSpec,
    Resource,
    ResourceKind,
    make_resource,
)
from ..validation import check, require, validate_cluster_name
from .base import AtlasService, tags_from_api, tags_to_api

DEFAULT_PRIORITY = 7
DEFAULT_NODE_COUNT = 3
TENANT_PROVIDER = "TENANT"


def _hardware(size: str, nodes: int, spec: ClusterSpec) -> dict[str, Any]:
    hardware: dict[str, Any] = {"instanceSize": size, "nodeCount": nodes}
    if spec.disk_size_gb is not None:
        hardware["diskSizeGB"] = spec.disk_size_gb
    return hardware


def _auto_scaling_to_api(config: AutoScalingConfig) -> dict[str, Any]:
    result: dict[str, Any] = {}
    if config.disk_gb_enabled is not None:
        result["diskGB"] = {"enabled": config.disk_gb_enabled}
    if config.compute is not None:
        compute: dict[str, Any] = {
            "enabled": config.compute.enabled,
            "scaleDownEnabled": config.compute.scale_down_enabled,
        }
        if config.compute.min_instance_size:
            compute["minInstanceSize"] = config.compute.min_instance_size
        if config.compute.max_instance_size:
            compute["maxInstanceSize"] = config.compute.max_instance_size
        result["compute"] = compute
    return result


def _region_config_to_api(region: RegionConfig, spec: ClusterSpec) -> dict[str, Any]:
    provider = (region.provider_name or spec.provider).value
    size = spec.instance_size
    config: dict[str, Any] = {
        "regionName": region.region_name,
        "priority": region.priority,
    }
    if size in SHARED_TIER_SIZES:
        config["providerName"] = TENANT_PROVIDER
        config["backingProviderName"] = provider
        config["electableSpecs"] = {"instanceSize": size}
        return config

    config["providerName"] = provider
    config["electableSpecs"] = _hardware(size, region.electable_nodes, spec)
    if region.read_only_nodes:
        config["readOnlySpecs"] = _hardware(size, region.read_only_nodes, spec)
    if region.analytics_nodes:
        config["analyticsSpecs"] = _hardware(size, region.analytics_nodes, spec)
    if spec.auto_scaling is not None:
        config["autoScaling"] = _auto_scaling_to_api(spec.auto_scaling)
    return config


def cluster_to_api(name: str, spec: ClusterSpec, include_pit: bool = True) -> dict[str, Any]:
    """Build a cluster request body.

    When ``replicationSpecs`` is empty a single region config is derived from
    ``provider``/``region``. Shared tiers (M0/M2/M5) use the TENANT provider
    with the requested cloud as backing provider.
    """
    replication = spec.replication_specs or [
        ReplicationSpec(region_configs=[RegionConfig(region_name=spec.region)])
    ]
    body: dict[str, Any] = {
        "name": name,
        "clusterType": spec.cluster_type.value,
        "backupEnabled": spec.backup_enabled,
        "replicationSpecs": [
            {
                **({"zoneName": r.zone_name} if r.zone_name else {}),
                "numShards": r.num_shards,
                "regionConfigs": [_region_config_to_api(rc, spec) for rc in r.region_configs],
            }
            for r in replication
        ],
        "tags": tags_to_api(spec.tags),
    }
    if include_pit:
        body["pitEnabled"] = spec.pit_enabled
    if spec.mongodb_version:
        body["mongoDBMajorVersion"] = spec.mongodb_version
    return body


def _provider_of(region_config: dict[str, Any]) -> str:
    provider = region_config.get("providerName", "")
    if provider == TENANT_PROVIDER:
        provider = region_config.get("backingProviderName", "")
    return provider


def _auto_scaling_from_api(data: dict[str, Any] | None) -> AutoScalingConfig | None:
    if not data:
        return None
    compute = data.get("compute")
    return AutoScalingConfig(
        disk_gb_enabled=(data.get("diskGB") or {}).get("enabled"),
        compute=ComputeAutoScaling(
            enabled=compute.get("enabled", False),
            scale_down_enabled=compute.get("scaleDownEnabled", False),
            min_instance_size=compute.get("minInstanceSize"),
            max_instance_size=compute.get("maxInstanceSize"),
        )
        if compute
        else None,
    )


def cluster_from_api(project: ProjectRef, item: dict[str, Any]) -> Resource:
    replication = item.get("replicationSpecs") or [{}]
    region_configs = replication[0].get("regionConfigs") or [{}]
    primary = region_configs[0]
    electable = primary.get("electableSpecs") or {}

    multi_region = len(replication) > 1 or len(region_configs) > 1
    replication_specs: list[ReplicationSpec] = []
    if multi_region:
        replication_specs = [
            ReplicationSpec(
                num_shards=r.get("numShards", 1),
                zone_name=r.get("zoneName"),
                region_configs=[
                    RegionConfig(
                        region_name=rc.get("regionName", ""),
                        provider_name=CloudProvider(_provider_of(rc)),
                        priority=rc.get("priority", DEFAULT_PRIORITY),
                        electable_nodes=(rc.get("electableSpecs") or {}).get("nodeCount", 0),
                        read_only_nodes=(rc.get("readOnlySpecs") or {}).get("nodeCount", 0),
                        analytics_nodes=(rc.get("analyticsSpecs") or {}).get("nodeCount", 0),
                    )
                    for rc in r.get("regionConfigs") or []
                ],
            )
            for r in replication
        ]

    disk_size = electable.get("diskSizeGB", item.get("diskSizeGB"))
    spec = ClusterSpec(
        project_name=project.name,
        provider=CloudProvider(_provider_of(primary)),
        region=primary.get("regionName", ""),
        instance_size=electable.get("instanceSize", "M10"),
        disk_size_gb=disk_size,
        backup_enabled=bool(item.get("backupEnabled", False)),
        pit_enabled=bool(item.get("pitEnabled", False)),
        mongodb_version=item.get("mongoDBMajorVersion"),
        cluster_type=ClusterType(item.get("clusterType", ClusterType.REPLICASET.value)),
        replication_specs=replication_specs,
        auto_scaling=_auto_scaling_from_api(primary.get("autoScaling")),
        tags=tags_from_api(item.get("tags")),
    )
    return make_resource(
        ResourceKind.CLUSTER,
        item["name"],
        spec,
        resource_id=item.get("id"),
        labels=tags_from_api(item.get("tags")),
        attributes={
            "stateName": item.get("stateName"),
            "connectionStrings": item.get("connectionStrings") or {},
        },
    )


class ClusterService(AtlasService):
    """Clusters within a project, addressed by name."""

    def _path(self, project: ProjectRef, name: str = "") -> str:
        if name:
            check(validate_cluster_name, name)
            return self._group_path(project, f"/clusters/{path_segment(name)}")
        return self._group_path(project, "/clusters")

    async def list(self, project: ProjectRef) -> list[Resource]:
        path = self._path(project)
        items = await self._call(lambda: self.api.list_all(path), "list clusters")
        return [cluster_from_api(project, i) for i in items]

    async def get(self, project: ProjectRef, name: str) -> Resource:
        require(cluster_name=name)
        path = self._path(project, name)
        item = await self._call(lambda: self.api.get(path), "get cluster")
        return cluster_from_api(project, item)

    async def create(self, project: ProjectRef, name: str, spec: ClusterSpec) -> Resource:
        """Create a cluster.

        Point-in-time restore cannot be requested at creation, so ``pitEnabled``
        is left out of the body; callers enable it with a follow-up :meth:`update`.
        """
        require(cluster_name=name)
        check(validate_cluster_name, name)
        path = self._path(project)
        body = cluster_to_api(name, spec, include_pit=False)
        item = await self._call(lambda: self.api.post(path, body), "create cluster")
        return cluster_from_api(project, item)

    async def update(self, project: ProjectRef, name: str, spec: ClusterSpec) -> Resource:
        require(cluster_name=name)
        path = self._path(project, name)
        body = cluster_to_api(name, spec)
        body.pop("name")
        item = await self._call(lambda: self.api.patch(path, body), "update cluster")
        return cluster_from_api(project, item)

    async def delete(self, project: ProjectRef, name: str) -> None:
        require(cluster_name=name)
        path = self._path(project, name)
        await self._call(lambda: self.api.delete(path), "delete cluster")
