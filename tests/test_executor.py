"""Tests for plan execution."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from atlas_mock import MockAtlasAPI

from matlas.cache import DiscoveryCache
from matlas.errors import ConflictError, ErrorKind, classify_api_error
from matlas.executor import EXIT_PARTIAL, ExecutionOptions, Executor, OpStatus
from matlas.handlers import OperationHandlers, ProjectDirectory
from matlas.loader import load_text
from matlas.models import (
    ClusterSpec,
    DatabaseUserSpec,
    ProjectRef,
    ProjectSpec,
    Resource,
    ResourceKind,
    make_resource,
)
from matlas.planner import Plan, PlanMode, PlanOptions, Planner
from matlas.services.registry import AtlasServices

HEADER = "apiVersion: matlas.mongodb.com/v1\n"


def _access(entry: str, project: str = "p1") -> str:
    return (
        f"{HEADER}kind: NetworkAccess\nmetadata:\n  name: {entry.replace('/', '-')}\n"
        f"spec:\n  projectName: {project}\n  cidrBlock: {entry}\n"
    )


def _cluster_yaml(name: str, project: str = "p1") -> str:
    return (
        f"{HEADER}kind: Cluster\nmetadata:\n  name: {name}\nspec:\n  projectName: {project}\n"
        "  provider: AWS\n  region: US_EAST_1\n  instanceSize: M10\n"
    )


def _project_yaml(name: str) -> str:
    return f"{HEADER}kind: Project\nmetadata:\n  name: {name}\nspec:\n  name: {name}\n"


USER_YAML = (
    f"{HEADER}kind: DatabaseUser\nmetadata:\n  name: u1\nspec:\n  projectName: p1\n"
    "  username: u1\n  password: hunter22\n"
    "  roles:\n    - roleName: read\n      databaseName: app\n"
)


def _live_cluster(name: str) -> Resource:
    spec = ClusterSpec.model_validate(
        {"projectName": "p1", "provider": "AWS", "region": "US_EAST_1", "instanceSize": "M10"}
    )
    return make_resource(ResourceKind.CLUSTER, name, spec, resource_id=f"{name}-id")


def _plan(*manifests: str, live: list[Resource] | None = None, **options: Any) -> Plan:
    project = make_resource(
        ResourceKind.PROJECT, "p1", ProjectSpec(name="p1"), resource_id="p1-id"
    )
    desired = load_text("---\n".join(manifests))
    return Planner(PlanOptions(**options)).plan(desired, [project, *(live or [])])


@pytest.fixture
def seeded(api: MockAtlasAPI) -> ProjectRef:
    project = api.state.add_project("p1")
    return ProjectRef(id=project.id, name="p1")


@pytest.fixture
def handlers(services: AtlasServices, seeded: ProjectRef) -> OperationHandlers:
    return OperationHandlers(
        services, ProjectDirectory([seeded]), default_org_id="5f0000000000000000000001"
    )


def _executor(handlers: OperationHandlers, **options: Any) -> Executor:
    options.setdefault("auto_approve", True)
    return Executor(handlers, ExecutionOptions(**options))


def _statuses(report: Any) -> dict[str, OpStatus]:
    return {r.op.name: r.status for r in report.results}


def _result(report: Any, name: str) -> Any:
    return next(r for r in report.results if r.op.name == name)


class TestExecution:
    """Tests for the happy path and status bookkeeping."""

    @pytest.mark.asyncio
    async def test_applies_plan(
        self, api: MockAtlasAPI, handlers: OperationHandlers, seeded: ProjectRef
    ) -> None:
        """Test every mutation succeeds and the report exits 0."""
        plan = _plan(_cluster_yaml("c1"), USER_YAML)

        report = await _executor(handlers).execute(plan)

        assert report.success
        assert report.exit_code == 0
        assert report.counts == {"Succeeded": 3}
        stored = api.state.project(seeded.id)
        assert "c1" in stored.clusters
        assert ("admin", "u1") in stored.users

    @pytest.mark.asyncio
    async def test_noops_succeed_without_calls(
        self, api: MockAtlasAPI, handlers: OperationHandlers
    ) -> None:
        """Test NoOp operations are recorded as succeeded with their reason."""
        plan = _plan(_cluster_yaml("c1"), live=[_live_cluster("c1")])

        report = await _executor(handlers).execute(plan)

        assert _result(report, "c1").status == OpStatus.SUCCEEDED
        assert _result(report, "c1").message == "unchanged"
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_dry_run_calls_nothing(
        self, api: MockAtlasAPI, handlers: OperationHandlers
    ) -> None:
        """Test dry runs record PlannedOnly and never mutate."""
        plan = _plan(_cluster_yaml("c1"), USER_YAML)

        report = await _executor(handlers, dry_run=True).execute(plan)

        assert set(_statuses(report).values()) == {OpStatus.PLANNED_ONLY}
        assert report.exit_code == 0
        assert api.mutation_count == 0

    @pytest.mark.asyncio
    async def test_result_serialization(self, handlers: OperationHandlers) -> None:
        """Test operation results render with timing and status."""
        plan = _plan(_cluster_yaml("c1"))

        report = await _executor(handlers).execute(plan)
        data = report.to_dict()

        assert data["statusCounts"] == {"Succeeded": 2}
        op = next(o for o in data["operations"] if o["name"] == "c1")
        assert op["status"] == "Succeeded"
        assert op["startedAt"].endswith("Z")
        assert op["durationSeconds"] >= 0


class TestApproval:
    """Tests for the approval gate."""

    @pytest.mark.asyncio
    async def test_rejected_plan_skips_everything(
        self, api: MockAtlasAPI, handlers: OperationHandlers
    ) -> None:
        """Test a declined plan applies nothing and exits 1."""
        plan = _plan(_cluster_yaml("c1"))
        executor = Executor(handlers, ExecutionOptions(), approve=lambda _: False)

        report = await executor.execute(plan)

        assert not report.approved
        assert report.exit_code == 1
        assert _statuses(report) == {"p1": OpStatus.SKIPPED, "c1": OpStatus.SKIPPED}
        assert api.mutation_count == 0

    @pytest.mark.asyncio
    async def test_async_approval(self, handlers: OperationHandlers) -> None:
        """Test awaitable approval callbacks are awaited."""
        seen: list[Plan] = []

        async def approve(plan: Plan) -> bool:
            seen.append(plan)
            return True

        plan = _plan(_cluster_yaml("c1"))
        report = await Executor(handlers, ExecutionOptions(), approve=approve).execute(plan)

        assert seen == [plan]
        assert report.success

    @pytest.mark.asyncio
    async def test_no_callback_refuses(self, handlers: OperationHandlers) -> None:
        """Test execution without a callback or auto-approve is refused."""
        report = await Executor(handlers).execute(_plan(_cluster_yaml("c1")))

        assert not report.approved


class TestFailures:
    """Tests for failure propagation."""

    @pytest.mark.asyncio
    async def test_dependents_blocked_independent_continue(
        self, api: MockAtlasAPI, handlers: OperationHandlers
    ) -> None:
        """Test a failed project blocks its cluster while other work lands."""
        api.inject_error("POST", r"^/groups$", classify_api_error(400, "INVALID_NAME", "bad"))
        plan = _plan(
            _project_yaml("p2"), _cluster_yaml("c2", project="p2"), _access("10.0.0.0/24")
        )

        report = await _executor(handlers).execute(plan)

        statuses = _statuses(report)
        assert statuses["p2"] == OpStatus.FAILED
        assert statuses["c2"] == OpStatus.BLOCKED
        assert statuses["10.0.0.0/24"] == OpStatus.SUCCEEDED
        assert _result(report, "c2").message == f"blocked by {_result(report, 'p2').op.id}"
        assert report.exit_code == 3

    @pytest.mark.asyncio
    async def test_unsupported_recorded_as_skipped(
        self, api: MockAtlasAPI, handlers: OperationHandlers
    ) -> None:
        """Test custom roles are skipped rather than failed."""
        role = (
            f"{HEADER}kind: DatabaseRole\nmetadata:\n  name: reader\nspec:\n"
            "  projectName: p1\n  roleName: reader\n  databaseName: admin\n"
            "  inheritedRoles:\n    - roleName: read\n      databaseName: app\n"
        )

        report = await _executor(handlers).execute(_plan(role))

        result = _result(report, "admin/reader")
        assert result.status == OpStatus.SKIPPED
        assert result.error is not None
        assert result.to_dict()["error"]["kind"] == ErrorKind.UNSUPPORTED.value
        assert api.mutation_count == 0

    @pytest.mark.asyncio
    async def test_conflict_adopted_when_preserving(
        self, api: MockAtlasAPI, handlers: OperationHandlers, seeded: ProjectRef
    ) -> None:
        """Test Conflict on create adopts the resource with preserve_existing."""
        api.state.add_cluster(api.state.project(seeded.id), "c1")
        plan = _plan(_cluster_yaml("c1"))

        report = await _executor(handlers, preserve_existing=True).execute(plan)

        assert _result(report, "c1").status == OpStatus.SUCCEEDED
        assert _result(report, "c1").message == "already exists; preserved"

    @pytest.mark.asyncio
    async def test_conflict_fails_otherwise(
        self, api: MockAtlasAPI, handlers: OperationHandlers, seeded: ProjectRef
    ) -> None:
        """Test Conflict on create fails without preserve_existing."""
        api.state.add_cluster(api.state.project(seeded.id), "c1")

        report = await _executor(handlers).execute(_plan(_cluster_yaml("c1")))

        assert _result(report, "c1").status == OpStatus.FAILED
        assert report.exit_code == 1


class TestRollback:
    """Tests for rollback after a failure."""

    @pytest.mark.asyncio
    async def test_applied_ops_rolled_back(
        self, api: MockAtlasAPI, handlers: OperationHandlers, seeded: ProjectRef
    ) -> None:
        """Test a failed delete rolls back the user created alongside it."""
        api.state.add_cluster(api.state.project(seeded.id), "c1")
        api.inject_error("DELETE", r"/clusters/c1$", ConflictError("cluster is busy"))
        plan = _plan(
            _project_yaml("p1"), USER_YAML, live=[_live_cluster("c1")], prune=True
        )

        report = await _executor(handlers, rollback_on_error=True).execute(plan)

        statuses = _statuses(report)
        assert statuses["c1"] == OpStatus.FAILED
        assert statuses["admin/u1"] == OpStatus.ROLLED_BACK
        assert report.rolled_back
        assert report.exit_code == 3
        assert ("admin", "u1") not in api.state.project(seeded.id).users

    @pytest.mark.asyncio
    async def test_rollback_failure_recorded(
        self, api: MockAtlasAPI, handlers: OperationHandlers, seeded: ProjectRef
    ) -> None:
        """Test a failing undo is recorded on the result, not raised."""
        api.state.add_cluster(api.state.project(seeded.id), "c1")
        api.inject_error("DELETE", r"/clusters/c1$", ConflictError("cluster is busy"))
        api.inject_error("DELETE", r"/databaseUsers/", ConflictError("user is busy"))
        plan = _plan(
            _project_yaml("p1"), USER_YAML, live=[_live_cluster("c1")], prune=True
        )

        report = await _executor(handlers, rollback_on_error=True).execute(plan)

        user = _result(report, "admin/u1")
        assert user.status == OpStatus.SUCCEEDED
        assert user.rollback_error is not None
        assert "rollbackError" in user.to_dict()

    @pytest.mark.asyncio
    async def test_queued_ops_skipped_after_failure(
        self, api: MockAtlasAPI, handlers: OperationHandlers
    ) -> None:
        """Test dispatch stops at the first failure when rolling back."""
        api.inject_error("POST", r"/accessList$", ConflictError("busy"))
        plan = _plan(*(_access(f"10.0.{i}.0/24") for i in range(4)))

        report = await _executor(
            handlers, rollback_on_error=True, max_concurrency=1
        ).execute(plan)

        assert report.count(OpStatus.FAILED) == 1
        assert report.count(OpStatus.SKIPPED) == 3
        assert len(api.calls_to("POST", r"/accessList$")) == 1

    @pytest.mark.asyncio
    async def test_destroy_rollback_recreates_deleted(
        self, api: MockAtlasAPI, handlers: OperationHandlers, seeded: ProjectRef
    ) -> None:
        """Test a failed destroy re-creates what it already deleted from the declared state."""
        project = api.state.project(seeded.id)
        api.state.add_cluster(project, "c1")
        api.state.add_user(project, "u1", roles=[{"roleName": "read", "databaseName": "app"}])
        api.inject_error("DELETE", r"/clusters/c1$", ConflictError("cluster is busy"))
        live_user = make_resource(
            ResourceKind.DATABASE_USER,
            "u1",
            DatabaseUserSpec.model_validate(
                {
                    "projectName": "p1",
                    "username": "u1",
                    "roles": [{"roleName": "read", "databaseName": "app"}],
                }
            ),
        )
        plan = _plan(
            _cluster_yaml("c1"),
            USER_YAML,
            live=[_live_cluster("c1"), live_user],
            mode=PlanMode.DESTROY,
        )

        report = await _executor(handlers, rollback_on_error=True).execute(plan)

        statuses = _statuses(report)
        assert statuses["admin/u1"] == OpStatus.ROLLED_BACK
        assert statuses["c1"] == OpStatus.FAILED
        assert report.exit_code == EXIT_PARTIAL
        assert len(api.calls_to("DELETE", r"/databaseUsers/")) == 1
        (recreate,) = api.calls_to("POST", r"/databaseUsers$")
        assert recreate.body["password"] == "hunter22"
        assert ("admin", "u1") in project.users
        assert "c1" in project.clusters


class TestConcurrency:
    """Tests for worker pool limits and cancellation."""

    @pytest.mark.asyncio
    async def test_global_cap(self, api: MockAtlasAPI, handlers: OperationHandlers) -> None:
        """Test no more than max_concurrency operations run at once."""
        api.latency = 0.05
        plan = _plan(*(_access(f"10.0.{i}.0/24") for i in range(6)))

        report = await _executor(handlers, max_concurrency=2).execute(plan)

        assert report.success
        assert api.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_kind_cap(self, api: MockAtlasAPI, handlers: OperationHandlers) -> None:
        """Test per-kind caps apply below the global cap."""
        api.latency = 0.05
        plan = _plan(*(_access(f"10.0.{i}.0/24") for i in range(4)))
        executor = _executor(
            handlers, max_concurrency=8, kind_limits={ResourceKind.NETWORK_ACCESS: 1}
        )

        report = await executor.execute(plan)

        assert report.success
        assert api.max_in_flight == 1

    @pytest.mark.asyncio
    async def test_dependents_start_after_dependencies_finish(
        self, api: MockAtlasAPI, handlers: OperationHandlers
    ) -> None:
        """Test no operation starts before every operation it depends on has finished."""
        api.latency = 0.02
        plan = _plan(
            _project_yaml("p2"),
            _cluster_yaml("c2", project="p2"),
            _cluster_yaml("c3", project="p2"),
            *(_access(f"10.0.{i}.0/24") for i in range(3)),
        )

        report = await _executor(handlers, max_concurrency=4).execute(plan)

        assert report.success
        by_id = {r.op.id: r for r in report.results}
        edges = [(by_id[dep], result) for result in report.results for dep in result.op.deps]
        assert len(edges) == 2
        for parent, child in edges:
            assert parent.finished_at is not None and child.started_at is not None
            assert child.started_at >= parent.finished_at

    @pytest.mark.asyncio
    async def test_cancel_aborts_and_skips(
        self, api: MockAtlasAPI, handlers: OperationHandlers
    ) -> None:
        """Test cancelling aborts the running op and skips the queue."""
        api.latency = 0.3
        plan = _plan(*(_access(f"10.0.{i}.0/24") for i in range(3)))
        executor = _executor(handlers, max_concurrency=1)

        task = asyncio.create_task(executor.execute(plan))
        await asyncio.sleep(0.1)
        executor.cancel()
        report = await task
        calls_after_cancel = len(api.calls)
        await asyncio.sleep(0.4)

        assert report.cancelled
        assert report.count(OpStatus.ABORTED) == 1
        assert report.count(OpStatus.SKIPPED) == 2
        assert len(api.calls) == calls_after_cancel
        assert report.exit_code == 1

    @pytest.mark.asyncio
    async def test_timeout_cancels(self, api: MockAtlasAPI, handlers: OperationHandlers) -> None:
        """Test the run deadline cancels outstanding work."""
        api.latency = 0.3
        plan = _plan(_access("10.0.0.0/24"))

        report = await _executor(handlers, timeout_seconds=0.05).execute(plan)

        assert report.cancelled
        assert _result(report, "10.0.0.0/24").status == OpStatus.ABORTED


class TestCacheInvalidation:
    """Tests for discovery cache invalidation."""

    @pytest.mark.asyncio
    async def test_success_invalidates_project(
        self, handlers: OperationHandlers, seeded: ProjectRef
    ) -> None:
        """Test a successful mutation drops the project's cached discovery."""
        cache = DiscoveryCache()
        cache.put(seeded.id, {"stale": True})
        executor = Executor(handlers, ExecutionOptions(auto_approve=True), cache=cache)

        await executor.execute(_plan(_cluster_yaml("c1")))

        assert cache.get(seeded.id) is None
