"""Live state discovery.

Builds a :class:`ProjectState` for one project by fanning out over the
resource services (and, optionally, the data-plane enumerator) under a
semaphore. Parts are independent: a failing part is recorded in a
:class:`~matlas.errors.DiscoveryError` and the remaining parts are still
returned.

Discovered state can be rendered as a ``DiscoveredProject`` document and
converted into an ``ApplyDocument`` that the loader accepts.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .cache import DiscoveryCache
from .config import DEFAULT_MAX_CONCURRENCY
from .enumerator import DatabaseEnumerator, DiscoveredDatabase, EnumerationOptions
from .errors import DiscoveryError, MatlasError, NotFoundError
from .models import (
    DEFAULT_API_VERSION,
    ORG_ID_LABEL,
    PROJECT_ID_LABEL,
    DocumentKind,
    Identity,
    ProjectRef,
    Resource,
    ResourceKind,
)
from .services.registry import AtlasServices

logger = logging.getLogger(__name__)

FINGERPRINT_ANNOTATION = "matlas.mongodb.com/fingerprint"
DISCOVERED_AT_ANNOTATION = "matlas.mongodb.com/discovered-at"


class DiscoveryPart(str, Enum):
    PROJECT = "project"
    CLUSTERS = "clusters"
    USERS = "users"
    NETWORK = "network"
    CONTAINERS = "containers"
    PEERING = "peering"
    SEARCH = "search"
    VPC = "vpc"
    ALERTS = "alerts"
    ENCRYPTION = "encryption"
    DATABASES = "databases"


# DiscoveredProject section for each kind, in document order
DOCUMENT_SECTIONS: dict[ResourceKind, str] = {
    ResourceKind.CLUSTER: "clusters",
    ResourceKind.DATABASE_USER: "databaseUsers",
    ResourceKind.NETWORK_ACCESS: "networkAccess",
    ResourceKind.NETWORK_CONTAINER: "networkContainers",
    ResourceKind.NETWORK_PEERING: "networkPeerings",
    ResourceKind.SEARCH_INDEX: "searchIndexes",
    ResourceKind.VPC_ENDPOINT: "vpcEndpoints",
    ResourceKind.ALERT_CONFIGURATION: "alertConfigurations",
    ResourceKind.ENCRYPTION_AT_REST: "encryptionAtRest",
}


@dataclass(frozen=True)
class DiscoveryOptions:
    """Which parts to discover.

    An empty ``include`` means every part. ``exclude`` always wins.
    Databases are enumerated only when ``include_databases`` is set or the
    part is named explicitly in ``include``.
    """

    include: frozenset[DiscoveryPart] = frozenset()
    exclude: frozenset[DiscoveryPart] = frozenset()
    include_databases: bool = False
    mask_secrets: bool = True

    @classmethod
    def from_names(
        cls,
        include: list[str] | None = None,
        exclude: list[str] | None = None,
        **kwargs: Any,
    ) -> DiscoveryOptions:
        """Build options from part names; unknown names raise ValueError."""
        valid = [p.value for p in DiscoveryPart]

        def parse(names: list[str] | None) -> frozenset[DiscoveryPart]:
            parts = set()
            for name in names or []:
                try:
                    parts.add(DiscoveryPart(name.strip().lower()))
                except ValueError:
                    raise ValueError(f"unknown discovery part {name!r}; valid: {valid}") from None
            return frozenset(parts)

        return cls(include=parse(include), exclude=parse(exclude), **kwargs)

    def wants(self, part: DiscoveryPart) -> bool:
        if part in self.exclude:
            return False
        if part == DiscoveryPart.DATABASES:
            return self.include_databases or part in self.include
        return not self.include or part in self.include

    def cache_key(self) -> str:
        parts = sorted(p.value for p in DiscoveryPart if self.wants(p))
        return ",".join(parts)


@dataclass
class ProjectState:
    """Live state of one project.

    ``resources`` holds every discovered child resource keyed by kind, each
    list sorted by identity. ``databases`` is None when enumeration was not
    requested.
    """

    project: Resource
    resources: dict[ResourceKind, list[Resource]] = field(default_factory=dict)
    databases: list[DiscoveredDatabase] | None = None
    include_project: bool = True
    fingerprint: str = ""

    @property
    def ref(self) -> ProjectRef:
        return ProjectRef(id=self.project.resource_id or "", name=self.project.project_name)

    @property
    def clusters(self) -> list[Resource]:
        return self.resources.get(ResourceKind.CLUSTER, [])

    @property
    def database_users(self) -> list[Resource]:
        return self.resources.get(ResourceKind.DATABASE_USER, [])

    @property
    def network_access(self) -> list[Resource]:
        return self.resources.get(ResourceKind.NETWORK_ACCESS, [])

    def all_resources(self) -> list[Resource]:
        """Project (when included) followed by children in identity order."""
        children = sorted(
            (r for items in self.resources.values() for r in items),
            key=lambda r: r.identity,
        )
        return ([self.project] if self.include_project else []) + children

    def by_identity(self) -> dict[Identity, Resource]:
        return {r.identity: r for r in self.all_resources()}

    def to_document(self, reveal_secrets: bool = False) -> dict[str, Any]:
        """Render as a ``DiscoveredProject`` document."""
        labels = {PROJECT_ID_LABEL: self.project.resource_id or ""}
        org_id = self.project.metadata.labels.get(ORG_ID_LABEL)
        if org_id:
            labels[ORG_ID_LABEL] = org_id
        document: dict[str, Any] = {
            "apiVersion": DEFAULT_API_VERSION,
            "kind": DocumentKind.DISCOVERED_PROJECT.value,
            "metadata": {
                "name": self.project.project_name,
                "labels": labels,
                "annotations": {
                    FINGERPRINT_ANNOTATION: self.fingerprint,
                    DISCOVERED_AT_ANNOTATION: datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
                },
            },
            "project": self.project.to_manifest(reveal_secrets=reveal_secrets),
        }
        for kind, section in DOCUMENT_SECTIONS.items():
            items = self.resources.get(kind)
            if items:
                document[section] = [r.to_manifest(reveal_secrets=reveal_secrets) for r in items]
        if self.databases is not None:
            document["databases"] = [d.to_dict() for d in self.databases]
        return document


def compute_fingerprint(state: ProjectState) -> str:
    """Stable hash over identities and semantic fields, with secrets masked."""
    payload: dict[str, Any] = {
        "resources": [
            [str(r.identity), r.spec_data(reveal_secrets=False)] for r in state.all_resources()
        ],
    }
    if state.databases is not None:
        payload["databases"] = [d.to_dict() for d in state.databases]
    blob = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


_DNS_INVALID = re.compile(r"[^a-z0-9-]+")


def sanitize_name(name: str) -> str:
    """Convert an arbitrary name to a DNS-label style manifest name."""
    label = _DNS_INVALID.sub("-", name.lower()).strip("-")
    label = re.sub(r"-{2,}", "-", label)[:63].rstrip("-")
    return label or "resource"


def discovered_to_apply(document: dict[str, Any]) -> dict[str, Any]:
    """Convert a ``DiscoveredProject`` document into an ``ApplyDocument``.

    Manifest names are sanitised, except for clusters whose metadata name is
    their identity.

    Raises:
        ValueError: If ``document`` is not a DiscoveredProject.
    """
    if document.get("kind") != DocumentKind.DISCOVERED_PROJECT.value:
        raise ValueError(f"not a DiscoveredProject document: kind={document.get('kind')!r}")
    metadata = document.get("metadata") or {}
    name = str(metadata.get("name") or "discovered-project")

    resources: list[dict[str, Any]] = []
    if document.get("project"):
        resources.append(_renamed(document["project"]))
    for kind, section in DOCUMENT_SECTIONS.items():
        for manifest in document.get(section) or []:
            resources.append(manifest if kind == ResourceKind.CLUSTER else _renamed(manifest))

    return {
        "apiVersion": document.get("apiVersion", DEFAULT_API_VERSION),
        "kind": DocumentKind.APPLY_DOCUMENT.value,
        "metadata": {
            "name": sanitize_name(name),
            "labels": dict(metadata.get("labels") or {}),
            "annotations": {"matlas.mongodb.com/converted-from": "DiscoveredProject"},
        },
        "resources": resources,
    }


def _renamed(manifest: dict[str, Any]) -> dict[str, Any]:
    result = dict(manifest)
    meta = dict(result.get("metadata") or {})
    meta["name"] = sanitize_name(str(meta.get("name", "")))
    result["metadata"] = meta
    return result


@dataclass
class DiscoveryResult:
    state: ProjectState
    statistics: dict[str, Any] = field(default_factory=dict)
    error: DiscoveryError | None = None


class StateDiscovery:
    """Discover live project state through the resource services.

    Args:
        services: Resource services bound to a shared client.
        enumerator: Data-plane enumerator, required for the databases part.
        cache: Optional discovery cache; results with errors are never cached.
        concurrency: Maximum parts fetched at once.
        enumeration: Options passed to the enumerator.
    """

    def __init__(
        self,
        services: AtlasServices,
        enumerator: DatabaseEnumerator | None = None,
        cache: DiscoveryCache | None = None,
        concurrency: int = DEFAULT_MAX_CONCURRENCY,
        enumeration: EnumerationOptions | None = None,
    ) -> None:
        self._services = services
        self._enumerator = enumerator
        self._cache = cache
        self._concurrency = max(1, concurrency)
        self._enumeration = enumeration or EnumerationOptions()

    @property
    def cache(self) -> DiscoveryCache | None:
        return self._cache

    async def discover_by_name(
        self, name: str, options: DiscoveryOptions | None = None
    ) -> DiscoveryResult | None:
        """Discover a project by name; None when it does not exist."""
        try:
            project = await self._services.projects.get_by_name(name)
        except NotFoundError:
            logger.info("Project not found", extra={"project_name": name})
            return None
        assert project.resource_id is not None
        return await self.discover_project(project.resource_id, options)

    async def discover_project(
        self, project_id: str, options: DiscoveryOptions | None = None
    ) -> DiscoveryResult:
        options = options or DiscoveryOptions()
        started = time.monotonic()
        options_key = options.cache_key()

        if self._cache is not None:
            cached = self._cache.get(project_id, options_key)
            if cached is not None:
                logger.debug("Discovery cache hit", extra={"project_id": project_id})
                return DiscoveryResult(
                    state=cached,
                    statistics=self._statistics(cached, started, cache_hit=True, failed=0),
                )

        project = await self._services.projects.get(project_id)
        state = ProjectState(project=project, include_project=options.wants(DiscoveryPart.PROJECT))
        failures: dict[str, BaseException] = {}
        await self._discover_parts(state, options, failures)
        state.fingerprint = compute_fingerprint(state)

        error = DiscoveryError("discovery incomplete", failures) if failures else None
        if error is None and self._cache is not None:
            self._cache.put(project_id, state, options_key)

        statistics = self._statistics(state, started, cache_hit=False, failed=len(failures))
        logger.info(
            "Discovered project",
            extra={"project_id": project_id, **statistics},
        )
        return DiscoveryResult(state=state, statistics=statistics, error=error)

    async def _discover_parts(
        self,
        state: ProjectState,
        options: DiscoveryOptions,
        failures: dict[str, BaseException],
    ) -> None:
        ref = state.ref
        semaphore = asyncio.Semaphore(self._concurrency)
        services = self._services

        async def guarded(key: str, fetch: Callable[[], Awaitable[Any]]) -> Any:
            async with semaphore:
                try:
                    return await fetch()
                except MatlasError as e:
                    logger.warning("Discovery part failed", extra={"part": key, "error": str(e)})
                    failures[key] = e
                    return None

        # Clusters feed search and database enumeration, so fetch them first
        clusters: list[Resource] = []
        needs_clusters = any(
            options.wants(p)
            for p in (DiscoveryPart.CLUSTERS, DiscoveryPart.SEARCH, DiscoveryPart.DATABASES)
        )
        if needs_clusters:
            clusters = await guarded("clusters", lambda: services.clusters.list(ref)) or []
            if options.wants(DiscoveryPart.CLUSTERS):
                state.resources[ResourceKind.CLUSTER] = clusters

        fetchers: dict[DiscoveryPart, tuple[ResourceKind, Callable[[], Awaitable[Any]]]] = {
            DiscoveryPart.USERS: (ResourceKind.DATABASE_USER, lambda: services.users.list(ref)),
            DiscoveryPart.NETWORK: (
                ResourceKind.NETWORK_ACCESS,
                lambda: services.network_access.list(ref),
            ),
            DiscoveryPart.CONTAINERS: (
                ResourceKind.NETWORK_CONTAINER,
                lambda: services.containers.list(ref),
            ),
            DiscoveryPart.PEERING: (
                ResourceKind.NETWORK_PEERING,
                lambda: services.peering.list(ref),
            ),
            DiscoveryPart.VPC: (
                ResourceKind.VPC_ENDPOINT,
                lambda: services.vpc_endpoints.list(ref),
            ),
            DiscoveryPart.ALERTS: (
                ResourceKind.ALERT_CONFIGURATION,
                lambda: services.alerts.list(ref),
            ),
            DiscoveryPart.ENCRYPTION: (
                ResourceKind.ENCRYPTION_AT_REST,
                lambda: self._encryption(ref),
            ),
        }
        selected = [
            (part, kind, fetch) for part, (kind, fetch) in fetchers.items() if options.wants(part)
        ]

        tasks: list[Awaitable[Any]] = [guarded(part.value, fetch) for part, _, fetch in selected]
        search_clusters = clusters if options.wants(DiscoveryPart.SEARCH) else []
        tasks.extend(
            guarded(
                f"search/{c.metadata.name}",
                lambda name=c.metadata.name: services.search.list(ref, name),
            )
            for c in search_clusters
        )
        results = await asyncio.gather(*tasks)

        for (_, kind, _), items in zip(selected, results[: len(selected)]):
            if items is not None:
                state.resources[kind] = sorted(items, key=lambda r: r.identity)

        if search_clusters:
            indexes = [i for items in results[len(selected):] for i in items or []]
            state.resources[ResourceKind.SEARCH_INDEX] = sorted(indexes, key=lambda r: r.identity)

        if ResourceKind.CLUSTER in state.resources:
            state.resources[ResourceKind.CLUSTER].sort(key=lambda r: r.identity)

        if options.wants(DiscoveryPart.DATABASES):
            await self._enumerate(state, clusters, failures)

    async def _encryption(self, ref: ProjectRef) -> list[Resource]:
        resource = await self._services.encryption.get(ref)
        return [resource] if resource is not None else []

    async def _enumerate(
        self,
        state: ProjectState,
        clusters: list[Resource],
        failures: dict[str, BaseException],
    ) -> None:
        if self._enumerator is None:
            failures["databases"] = MatlasError("no database enumerator configured")
            return
        try:
            result = await self._enumerator.enumerate(state.ref, clusters, self._enumeration)
        except MatlasError as e:
            failures["databases"] = e
            return
        state.databases = result.databases
        if result.error is not None:
            for cluster, cause in result.error.errors.items():
                failures[f"databases/{cluster}"] = cause

    @staticmethod
    def _statistics(
        state: ProjectState, started: float, cache_hit: bool, failed: int
    ) -> dict[str, Any]:
        return {
            "cacheHit": cache_hit,
            "durationSeconds": round(time.monotonic() - started, 3),
            "clustersFound": len(state.clusters),
            "usersFound": len(state.database_users),
            "networkEntriesFound": len(state.network_access),
            "databasesFound": len(state.databases or []),
            "resourcesFound": len(state.all_resources()),
            "partsFailed": failed,
        }
