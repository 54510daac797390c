"""Pipeline entry points.

``Pipeline`` is built once per CLI invocation from a :class:`Config` and
wires the shared client, the resource services, discovery, the planner and
the executor together. Nothing here holds global state: every collaborator
is passed in or built from the config.

Flow for ``apply``::

    load desired -> discover live (per project named in desired)
                 -> plan -> execute -> report
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

from pymongo import MongoClient

from .atlas_api import AtlasAdminAPI
from .cache import DiscoveryCache
from .client import AdminTransport, AtlasClient
from .config import Config
from .discovery import (
    DiscoveryOptions,
    DiscoveryResult,
    ProjectState,
    StateDiscovery,
    discovered_to_apply,
)
from .enumerator import DatabaseEnumerator, EnumerationOptions
from .errors import CancelledError, MatlasError
from .executor import ApprovalCallback, ExecutionOptions, ExecutionReport, Executor
from .handlers import OperationHandlers, ProjectDirectory
from .loader import DesiredState, load_files
from .models import ProjectRef, Resource
from .planner import Plan, PlanMode, PlanOptions, Planner
from .services.registry import AtlasServices

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class LiveState:
    """Discovered state for every project a desired document names."""

    states: dict[str, ProjectState] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)

    @property
    def resources(self) -> list[Resource]:
        return [r for name in sorted(self.states) for r in self.states[name].all_resources()]

    @property
    def refs(self) -> list[ProjectRef]:
        return [state.ref for state in self.states.values()]


@dataclass
class PlanResult:
    desired: DesiredState
    live: LiveState
    plan: Plan


class Pipeline:
    """Composition root for one run.

    Args:
        config: Resolved configuration.
        api: Admin API transport; an :class:`AtlasAdminAPI` built from the
            config's credentials when omitted.
        mongo_client_factory: Data-plane client factory for enumeration.
        sleep: Awaitable sleep used for the temp-user propagation window.
    """

    def __init__(
        self,
        config: Config,
        api: AdminTransport | None = None,
        mongo_client_factory: Callable[..., Any] = MongoClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self._owns_api = api is None
        self.api: AdminTransport = api or AtlasAdminAPI(
            config.credentials(),
            base_url=config.base_url,
            timeout_seconds=config.http_timeout_seconds,
        )
        self.client = AtlasClient(self.api, config.retry)
        self.services = AtlasServices.from_client(self.client)
        self.cache = DiscoveryCache(
            max_entries=config.cache_max_entries,
            ttl_seconds=config.cache_ttl_seconds,
        )
        self.enumerator = DatabaseEnumerator(
            users=self.services.users,
            client_factory=mongo_client_factory,
            sleep=sleep,
        )
        self.discovery = StateDiscovery(
            self.services,
            enumerator=self.enumerator,
            cache=self.cache,
            concurrency=config.max_concurrency,
            enumeration=self.enumeration_options(),
        )

    def close(self) -> None:
        logger.info(
            "Admin API usage",
            extra={
                "calls": self.client.stats.calls,
                "retries": self.client.stats.retries,
                "failures": self.client.stats.failures,
            },
        )
        if self._owns_api and isinstance(self.api, AtlasAdminAPI):
            self.api.close()

    def __enter__(self) -> Pipeline:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def enumeration_options(self) -> EnumerationOptions:
        """Explicit data-plane credentials win; otherwise a temp user is provisioned."""
        cfg = self.config
        has_credentials = bool(cfg.mongodb_username and cfg.mongodb_password)
        return EnumerationOptions(
            concurrency=cfg.enumeration_concurrency,
            timeout_seconds=cfg.enumeration_timeout_seconds,
            uri=cfg.mongodb_uri,
            username=cfg.mongodb_username,
            password=cfg.mongodb_password,
            use_temp_user=not has_credentials and not cfg.mongodb_uri,
            propagation_seconds=cfg.temp_user_propagation_seconds,
        )

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    async def discover(
        self, project_id: str = "", options: DiscoveryOptions | None = None
    ) -> DiscoveryResult:
        """Discover one project by id (the configured default when empty)."""
        target = project_id or self.config.project_id
        if not target:
            raise MatlasError("no project id given; pass --project-id or set PROJECT_ID")
        return await self._deadline(
            self.discovery.discover_project(target, options),
            self.config.discover_timeout_seconds,
            "discovery",
        )

    async def discover_document(
        self,
        project_id: str = "",
        options: DiscoveryOptions | None = None,
        convert_to_apply: bool = False,
    ) -> tuple[dict[str, Any], DiscoveryResult]:
        """Discover and render as a DiscoveredProject (or ApplyDocument)."""
        options = options or DiscoveryOptions()
        result = await self.discover(project_id, options)
        document = result.state.to_document(reveal_secrets=not options.mask_secrets)
        if convert_to_apply:
            document = discovered_to_apply(document)
        return document, result

    async def discover_live(self, project_names: set[str]) -> LiveState:
        """Discover every named project; projects that do not exist yet have no live state.

        Raises:
            DiscoveryError: If any part of any project could not be read.
        """
        live = LiveState()
        options = DiscoveryOptions()

        async def discover_all() -> None:
            for name in sorted(project_names):
                result = await self.discovery.discover_by_name(name, options)
                if result is None:
                    live.missing.append(name)
                    continue
                if result.error is not None:
                    raise result.error
                live.states[name] = result.state

        await self._deadline(discover_all(), self.config.discover_timeout_seconds, "discovery")
        logger.info(
            "Live state discovered",
            extra={"projects": sorted(live.states), "missing_projects": live.missing},
        )
        return live

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    async def plan(
        self,
        files: list[str | Path],
        options: PlanOptions | None = None,
    ) -> PlanResult:
        desired = load_files(files, strict_env=self.config.strict_env)
        live = await self.discover_live(desired.project_names())
        planner = Planner(options or PlanOptions())
        plan = planner.plan(desired, live.resources)
        logger.info("Plan computed", extra={"summary": plan.summary})
        return PlanResult(desired=desired, live=live, plan=plan)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def executor(
        self,
        live: LiveState,
        options: ExecutionOptions,
        approve: ApprovalCallback | None = None,
    ) -> Executor:
        handlers = OperationHandlers(
            self.services,
            ProjectDirectory(live.refs),
            default_org_id=self.config.org_id,
        )
        return Executor(handlers, options, approve=approve, cache=self.cache)

    async def apply(
        self,
        files: list[str | Path],
        plan_options: PlanOptions | None = None,
        execution: ExecutionOptions | None = None,
        approve: ApprovalCallback | None = None,
    ) -> ExecutionReport:
        plan_options = plan_options or PlanOptions()
        execution = execution or ExecutionOptions(
            max_concurrency=self.config.max_concurrency,
            timeout_seconds=self.config.apply_timeout_seconds,
        )
        planned = await self.plan(files, plan_options)
        executor = self.executor(planned.live, execution, approve)
        return await executor.execute(planned.plan)

    async def destroy(
        self,
        files: list[str | Path],
        execution: ExecutionOptions | None = None,
        approve: ApprovalCallback | None = None,
    ) -> ExecutionReport:
        return await self.apply(files, PlanOptions(mode=PlanMode.DESTROY), execution, approve)

    # -------------------------------------------------------------------------

    @staticmethod
    async def _deadline(awaitable: Awaitable[T], seconds: float, what: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=seconds)
        except asyncio.TimeoutError as e:
            logger.error("Deadline exceeded", extra={"stage": what, "timeout_seconds": seconds})
            raise CancelledError(f"{what} exceeded its {seconds}s deadline", cause=e) from e
