"""Network access list service."""

from __future__ import annotations

from typing import Any

from ..atlas_api import path_segment
from ..models import NetworkAccessSpec, ProjectRef, Resource, ResourceKind, make_resource
from ..validation import require
from .base import AtlasService


def access_entry_from_api(project: ProjectRef, item: dict[str, Any]) -> Resource:
    """Map an access list entry.

    The API echoes ``cidrBlock`` for single addresses too, so the most
    specific field wins: security group, then IP address, then CIDR block.
    """
    if item.get("awsSecurityGroup"):
        fields = {"aws_security_group": item["awsSecurityGroup"]}
    elif item.get("ipAddress"):
        fields = {"ip_address": item["ipAddress"]}
    else:
        fields = {"cidr_block": item.get("cidrBlock")}
    spec = NetworkAccessSpec(
        project_name=project.name,
        comment=item.get("comment") or None,
        delete_after_date=item.get("deleteAfterDate"),
        **fields,
    )
    return make_resource(
        ResourceKind.NETWORK_ACCESS,
        spec.entry,
        spec,
        resource_id=spec.entry,
    )


def access_entry_to_api(spec: NetworkAccessSpec) -> dict[str, Any]:
    body: dict[str, Any] = {}
    if spec.ip_address:
        body["ipAddress"] = spec.ip_address
    elif spec.cidr_block:
        body["cidrBlock"] = spec.cidr_block
    else:
        body["awsSecurityGroup"] = spec.aws_security_group
    if spec.comment:
        body["comment"] = spec.comment
    if spec.delete_after_date:
        body["deleteAfterDate"] = spec.delete_after_date
    return body


class NetworkAccessService(AtlasService):
    """IP access list entries, addressed by the entry itself."""

    def _entry_path(self, project: ProjectRef, entry: str) -> str:
        require(entry=entry)
        return self._group_path(project, f"/accessList/{path_segment(entry)}")

    async def list(self, project: ProjectRef) -> list[Resource]:
        path = self._group_path(project, "/accessList")
        items = await self._call(lambda: self.api.list_all(path), "list access entries")
        return [access_entry_from_api(project, i) for i in items]

    async def get(self, project: ProjectRef, entry: str) -> Resource:
        path = self._entry_path(project, entry)
        item = await self._call(lambda: self.api.get(path), "get access entry")
        return access_entry_from_api(project, item)

    async def upsert(self, project: ProjectRef, spec: NetworkAccessSpec) -> Resource:
        """Add or replace an entry; the endpoint takes a list and is idempotent."""
        path = self._group_path(project, "/accessList")
        body = [access_entry_to_api(spec)]
        await self._call(lambda: self.api.post(path, body), "upsert access entry")
        return await self.get(project, spec.entry)

    async def delete(self, project: ProjectRef, entry: str) -> None:
        path = self._entry_path(project, entry)
        await self._call(lambda: self.api.delete(path), "delete access entry")
