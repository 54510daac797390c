"""Shared plumbing for resource services."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

from ..atlas_api import path_segment
from ..client import AdminTransport, AtlasClient
from ..errors import NotFoundError
from ..models import CloudProvider, ProjectRef, canonical_region
from ..validation import VALID_PROVIDERS, require

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AtlasService:
    """Base class: every call goes through the shared retrying client."""

    def __init__(self, client: AtlasClient) -> None:
        self._client = client

    @property
    def api(self) -> AdminTransport:
        return self._client.api

    async def _call(self, fn: Callable[[], T], operation: str) -> T:
        return await self._client.do(fn, operation)

    @staticmethod
    def _group_path(project: ProjectRef, suffix: str = "") -> str:
        require(project_id=project.id)
        return f"/groups/{path_segment(project.id)}{suffix}"

    async def _list_across_providers(
        self,
        fetch: Callable[[str], Any],
        operation: str,
    ) -> list[Any]:
        """Call ``fetch(provider)`` for every provider, skipping NotFound."""
        results: list[Any] = []
        for provider in VALID_PROVIDERS:
            try:
                results.extend(await fetch(provider))
            except NotFoundError:
                logger.debug(
                    "Provider has no entries",
                    extra={"operation": operation, "provider": provider},
                )
        return results


def tags_to_api(tags: dict[str, str]) -> list[dict[str, str]]:
    return [{"key": k, "value": v} for k, v in sorted(tags.items())]


def tags_from_api(items: list[dict[str, Any]] | None) -> dict[str, str]:
    return {str(t["key"]): str(t.get("value", "")) for t in items or [] if "key" in t}


def region_to_api(provider: CloudProvider, region: str) -> str:
    """AWS regions are sent as ``US_EAST_1``; other providers take them verbatim."""
    if provider == CloudProvider.AWS:
        return region.upper().replace("-", "_")
    return region


def region_from_api(provider: CloudProvider, region: str) -> str:
    return canonical_region(provider, region)
