"""Database user service."""

from __future__ import annotations

from typing import Any

from ..atlas_api import path_segment
from ..errors import ValidationError
from ..models import (
    DatabaseUserSpec,
    ProjectRef,
    Resource,
    ResourceKind,
    ScopeType,
    UserRole,
    UserScope,
    make_resource,
)
from ..validation import require
from .base import AtlasService


def _roles_to_api(spec: DatabaseUserSpec) -> list[dict[str, Any]]:
    return [r.model_dump(by_alias=True, exclude_none=True) for r in spec.roles]


def _scopes_to_api(spec: DatabaseUserSpec) -> list[dict[str, Any]]:
    return [{"name": s.name, "type": s.type.value} for s in spec.scopes]


def user_from_api(project: ProjectRef, item: dict[str, Any]) -> Resource:
    """Build a live user; the API never returns passwords, so it stays unset."""
    spec = DatabaseUserSpec(
        project_name=project.name,
        username=item["username"],
        auth_database=item.get("databaseName", "admin"),
        roles=[
            UserRole(
                role_name=r["roleName"],
                database_name=r["databaseName"],
                collection_name=r.get("collectionName"),
            )
            for r in item.get("roles") or []
        ],
        scopes=[
            UserScope(name=s["name"], type=ScopeType(s.get("type", ScopeType.CLUSTER.value)))
            for s in item.get("scopes") or []
        ],
    )
    name = f"{spec.auth_database}/{spec.username}"
    return make_resource(
        ResourceKind.DATABASE_USER,
        name,
        spec,
        resource_id=name,
        attributes={"deleteAfterDate": item.get("deleteAfterDate")},
    )


class DatabaseUserService(AtlasService):
    """Database users, addressed by ``(authDatabase, username)``."""

    def _user_path(self, project: ProjectRef, auth_database: str, username: str) -> str:
        require(username=username, auth_database=auth_database)
        return self._group_path(
            project, f"/databaseUsers/{path_segment(auth_database)}/{path_segment(username)}"
        )

    async def list(self, project: ProjectRef) -> list[Resource]:
        path = self._group_path(project, "/databaseUsers")
        items = await self._call(lambda: self.api.list_all(path), "list database users")
        return [user_from_api(project, i) for i in items]

    async def get(self, project: ProjectRef, auth_database: str, username: str) -> Resource:
        path = self._user_path(project, auth_database, username)
        item = await self._call(lambda: self.api.get(path), "get database user")
        return user_from_api(project, item)

    async def create(
        self,
        project: ProjectRef,
        spec: DatabaseUserSpec,
        delete_after: str | None = None,
    ) -> Resource:
        """Create a user.

        Args:
            project: Owning project.
            spec: Desired user; ``password`` must be present and unmasked.
            delete_after: Optional ISO-8601 timestamp after which the server
                removes the user on its own.
        """
        require(username=spec.username)
        if spec.password is None or spec.password.is_masked:
            raise ValidationError(f"password is required to create user {spec.username!r}")
        path = self._group_path(project, "/databaseUsers")
        body: dict[str, Any] = {
            "username": spec.username,
            "password": spec.password.reveal(),
            "databaseName": spec.auth_database,
            "groupId": project.id,
            "roles": _roles_to_api(spec),
            "scopes": _scopes_to_api(spec),
        }
        if delete_after:
            body["deleteAfterDate"] = delete_after
        item = await self._call(lambda: self.api.post(path, body), "create database user")
        return user_from_api(project, item)

    async def update(self, project: ProjectRef, spec: DatabaseUserSpec) -> Resource:
        """Update roles and scopes; the password is sent only when known."""
        path = self._user_path(project, spec.auth_database, spec.username)
        body: dict[str, Any] = {
            "roles": _roles_to_api(spec),
            "scopes": _scopes_to_api(spec),
        }
        if spec.password is not None and not spec.password.is_masked:
            body["password"] = spec.password.reveal()
        item = await self._call(lambda: self.api.patch(path, body), "update database user")
        return user_from_api(project, item)

    async def delete(self, project: ProjectRef, auth_database: str, username: str) -> None:
        path = self._user_path(project, auth_database, username)
        await self._call(lambda: self.api.delete(path), "delete database user")
