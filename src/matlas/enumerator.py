"""Read-only data-plane enumeration of databases, collections and indexes.

Each cluster is enumerated on a worker thread with a dedicated pymongo
client; clusters run in parallel under a semaphore. A failing cluster never
aborts the others: its error is collected and returned alongside the
partial results.

Per-operation server limits (``maxTimeMS``):
- ping: 5s
- listDatabases: 30s
- dbStats / collStats: 10s
- listCollections: 30s
- listIndexes: 10s
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from pymongo import MongoClient
from pymongo.errors import PyMongoError

from .config import (
    DEFAULT_ENUMERATION_CONCURRENCY,
    DEFAULT_ENUMERATION_TIMEOUT_SECONDS,
    DEFAULT_TEMP_USER_PROPAGATION_SECONDS,
)
from .errors import DatabaseEnumerationError, MatlasError
from .masking import Secret, inject_credentials, mask_connection_string
from .models import DatabaseUserSpec, ProjectRef, Resource, UserRole, UserScope
from .services.users import DatabaseUserService

logger = logging.getLogger(__name__)

SYSTEM_DATABASES = frozenset({"admin", "local", "config"})
SYSTEM_COLLECTIONS = frozenset({"fs.files", "fs.chunks"})

CONNECT_TIMEOUT_MS = 10_000
PING_TIMEOUT_MS = 5_000
LIST_DATABASES_TIMEOUT_MS = 30_000
STATS_TIMEOUT_MS = 10_000
LIST_COLLECTIONS_TIMEOUT_MS = 30_000
LIST_INDEXES_TIMEOUT_MS = 10_000

TEMP_USER_PREFIX = "matlas-temp-"
TEMP_USER_LIFETIME = timedelta(hours=1)
TEMP_USER_ROLES = (("readAnyDatabase", "admin"), ("clusterMonitor", "admin"))


@dataclass
class DiscoveredIndex:
    name: str
    keys: dict[str, Any]
    unique: bool = False
    sparse: bool = False
    expire_after_seconds: int | None = None
    partial_filter_expression: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "keys": self.keys,
            "unique": self.unique,
            "sparse": self.sparse,
        }
        if self.expire_after_seconds is not None:
            data["expireAfterSeconds"] = self.expire_after_seconds
        if self.partial_filter_expression is not None:
            data["partialFilterExpression"] = self.partial_filter_expression
        return data


@dataclass
class DiscoveredCollection:
    name: str
    document_count: int = 0
    size_bytes: int = 0
    storage_size_bytes: int = 0
    indexes: list[DiscoveredIndex] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "documentCount": self.document_count,
            "sizeBytes": self.size_bytes,
            "storageSizeBytes": self.storage_size_bytes,
            "indexes": [i.to_dict() for i in self.indexes],
        }


@dataclass
class DiscoveredDatabase:
    cluster_name: str
    name: str
    size_bytes: int = 0
    collections: list[DiscoveredCollection] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "clusterName": self.cluster_name,
            "name": self.name,
            "sizeBytes": self.size_bytes,
            "collections": [c.to_dict() for c in self.collections],
        }


@dataclass
class EnumerationOptions:
    """Knobs for one enumeration run.

    ``uri`` overrides every cluster's connection string; ``username`` and
    ``password`` are injected into URIs that carry no credentials. With
    ``use_temp_user`` a short-lived read-only user is created instead.
    """

    concurrency: int = DEFAULT_ENUMERATION_CONCURRENCY
    timeout_seconds: float = DEFAULT_ENUMERATION_TIMEOUT_SECONDS
    uri: str = ""
    username: str = ""
    password: str = ""
    use_temp_user: bool = False
    propagation_seconds: float = DEFAULT_TEMP_USER_PROPAGATION_SECONDS


@dataclass
class EnumerationResult:
    databases: list[DiscoveredDatabase] = field(default_factory=list)
    error: DatabaseEnumerationError | None = None


def connection_string_for(cluster: Resource, override: str = "") -> str:
    """Pick the connection string: override, then SRV, then standard, then a template."""
    if override:
        return override
    strings = cluster.attributes.get("connectionStrings") or {}
    return (
        strings.get("standardSrv")
        or strings.get("standard")
        or f"mongodb+srv://{cluster.metadata.name}.mongodb.net/"
    )


def _cursor_batch(reply: dict[str, Any]) -> list[dict[str, Any]]:
    return list((reply.get("cursor") or {}).get("firstBatch") or [])


def _is_system_collection(name: str) -> bool:
    return name.startswith("system.") or name in SYSTEM_COLLECTIONS


def _index_from_spec(spec: dict[str, Any]) -> DiscoveredIndex:
    ttl = spec.get("expireAfterSeconds")
    return DiscoveredIndex(
        name=spec["name"],
        keys=dict(spec.get("key") or {}),
        unique=bool(spec.get("unique", False)),
        sparse=bool(spec.get("sparse", False)),
        expire_after_seconds=int(ttl) if ttl is not None else None,
        partial_filter_expression=spec.get("partialFilterExpression"),
    )


class DatabaseEnumerator:
    """Enumerate user databases on a set of clusters.

    Args:
        users: Database user service, needed only for temp-user mode.
        client_factory: Callable returning a pymongo-compatible client.
        sleep: Awaitable sleep used for the temp-user propagation window.
    """

    def __init__(
        self,
        users: DatabaseUserService | None = None,
        client_factory: Callable[..., Any] = MongoClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._users = users
        self._client_factory = client_factory
        self._sleep = sleep

    async def enumerate(
        self,
        project: ProjectRef,
        clusters: list[Resource],
        options: EnumerationOptions | None = None,
    ) -> EnumerationResult:
        options = options or EnumerationOptions()
        if not clusters:
            return EnumerationResult()

        if not options.use_temp_user:
            return await self._enumerate_all(clusters, options, options.username, options.password)

        if self._users is None:
            raise MatlasError("temp-user enumeration needs a database user service")

        temp_user = self._temp_user_spec(project, clusters)
        assert temp_user.password is not None
        delete_after = (datetime.now(UTC) + TEMP_USER_LIFETIME).strftime("%Y-%m-%dT%H:%M:%SZ")
        await self._users.create(project, temp_user, delete_after=delete_after)
        logger.info(
            "Created temporary enumeration user",
            extra={"username": temp_user.username, "clusters": len(clusters)},
        )
        try:
            await self._sleep(options.propagation_seconds)
            return await self._enumerate_all(
                clusters, options, temp_user.username, temp_user.password.reveal()
            )
        finally:
            await self._delete_temp_user(project, temp_user)

    @staticmethod
    def _temp_user_spec(project: ProjectRef, clusters: list[Resource]) -> DatabaseUserSpec:
        return DatabaseUserSpec(
            project_name=project.name,
            username=f"{TEMP_USER_PREFIX}{secrets.token_hex(4)}",
            password=Secret(secrets.token_urlsafe(24)),
            auth_database="admin",
            roles=[UserRole(role_name=r, database_name=db) for r, db in TEMP_USER_ROLES],
            scopes=[UserScope(name=c.metadata.name) for c in clusters],
        )

    async def _delete_temp_user(self, project: ProjectRef, spec: DatabaseUserSpec) -> None:
        assert self._users is not None
        try:
            # Shielded so cleanup survives cancellation of the enumeration task
            await asyncio.shield(self._users.delete(project, spec.auth_database, spec.username))
            logger.info("Deleted temporary enumeration user", extra={"username": spec.username})
        except MatlasError as e:
            logger.warning(
                "Could not delete temporary enumeration user; it expires on its own",
                extra={"username": spec.username, "error": str(e)},
            )

    async def _enumerate_all(
        self,
        clusters: list[Resource],
        options: EnumerationOptions,
        username: str,
        password: str,
    ) -> EnumerationResult:
        semaphore = asyncio.Semaphore(max(1, options.concurrency))
        loop = asyncio.get_running_loop()

        async def run(cluster: Resource) -> list[DiscoveredDatabase]:
            uri = connection_string_for(cluster, options.uri)
            if username and password:
                uri = inject_credentials(uri, username, password)
            async with semaphore:
                return await asyncio.wait_for(
                    loop.run_in_executor(None, self._enumerate_cluster, cluster.metadata.name, uri),
                    timeout=options.timeout_seconds,
                )

        outcomes = await asyncio.gather(*(run(c) for c in clusters), return_exceptions=True)

        databases: list[DiscoveredDatabase] = []
        failures: dict[str, BaseException] = {}
        for cluster, outcome in zip(clusters, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.warning(
                    "Cluster enumeration failed",
                    extra={"cluster": cluster.metadata.name, "error": str(outcome)},
                )
                failures[cluster.metadata.name] = outcome
            else:
                databases.extend(outcome)

        databases.sort(key=lambda d: (d.cluster_name, d.name))
        error = (
            DatabaseEnumerationError("database enumeration failed", failures) if failures else None
        )
        return EnumerationResult(databases=databases, error=error)

    def _enumerate_cluster(self, cluster_name: str, uri: str) -> list[DiscoveredDatabase]:
        logger.debug(
            "Enumerating cluster",
            extra={"cluster": cluster_name, "uri": mask_connection_string(uri)},
        )
        client = self._client_factory(
            uri,
            connectTimeoutMS=CONNECT_TIMEOUT_MS,
            serverSelectionTimeoutMS=PING_TIMEOUT_MS,
            maxPoolSize=5,
        )
        with client:
            client.admin.command("ping", maxTimeMS=PING_TIMEOUT_MS)
            reply = client.admin.command(
                "listDatabases", nameOnly=False, maxTimeMS=LIST_DATABASES_TIMEOUT_MS
            )
            databases = []
            for entry in reply.get("databases") or []:
                name = entry["name"]
                if name in SYSTEM_DATABASES:
                    continue
                databases.append(self._enumerate_database(client, cluster_name, entry))
        return databases

    def _enumerate_database(
        self, client: Any, cluster_name: str, entry: dict[str, Any]
    ) -> DiscoveredDatabase:
        db = client[entry["name"]]
        size = int(entry.get("sizeOnDisk", 0))
        try:
            stats = db.command("dbStats", maxTimeMS=STATS_TIMEOUT_MS)
            size = int(stats.get("dataSize", size))
        except PyMongoError as e:
            logger.warning(
                "dbStats failed",
                extra={"cluster": cluster_name, "database": entry["name"], "error": str(e)},
            )

        collections = []
        for info in db.list_collections(maxTimeMS=LIST_COLLECTIONS_TIMEOUT_MS):
            name = info["name"]
            if _is_system_collection(name) or info.get("type") == "view":
                continue
            collections.append(self._enumerate_collection(db, cluster_name, name))
        collections.sort(key=lambda c: c.name)
        return DiscoveredDatabase(
            cluster_name=cluster_name,
            name=entry["name"],
            size_bytes=size,
            collections=collections,
        )

    @staticmethod
    def _enumerate_collection(db: Any, cluster_name: str, name: str) -> DiscoveredCollection:
        collection = DiscoveredCollection(name=name)
        try:
            stats = db.command("collStats", name, maxTimeMS=STATS_TIMEOUT_MS)
            collection.document_count = int(stats.get("count", 0))
            collection.size_bytes = int(stats.get("size", 0))
            collection.storage_size_bytes = int(stats.get("storageSize", 0))
        except PyMongoError as e:
            # Keep the collection with zero-valued metrics
            logger.warning(
                "collStats failed",
                extra={"cluster": cluster_name, "collection": name, "error": str(e)},
            )

        reply = db.command("listIndexes", name, maxTimeMS=LIST_INDEXES_TIMEOUT_MS)
        collection.indexes = sorted(
            (_index_from_spec(spec) for spec in _cursor_batch(reply)), key=lambda i: i.name
        )
        return collection
