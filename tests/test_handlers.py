"""Tests for operation handlers."""

from __future__ import annotations

from typing import Any

import pytest
from atlas_mock import MockAtlasAPI

from matlas.errors import UnavailableError, UnsupportedError, ValidationError
from matlas.handlers import OperationHandlers, ProjectDirectory, owning_project, spec_of
from matlas.models import (
    ClusterSpec,
    DatabaseRoleSpec,
    NetworkPeeringSpec,
    ProjectRef,
    ProjectSpec,
    Resource,
    ResourceKind,
    make_resource,
)
from matlas.planner import Operation, Verb
from matlas.services.registry import AtlasServices

ORG_ID = "5f0000000000000000000001"


def _cluster(name: str = "c1", project: str = "p1", **fields: Any) -> Resource:
    data = {"projectName": project, "provider": "AWS", "region": "US_EAST_1", "tier": "M10"}
    data.update(fields)
    return make_resource(ResourceKind.CLUSTER, name, ClusterSpec.model_validate(data))


def _op(verb: Verb, desired: Resource | None, live: Resource | None = None) -> Operation:
    resource = desired or live
    assert resource is not None
    return Operation(
        id="op-001",
        kind=resource.kind,
        name=resource.name,
        verb=verb,
        project_name=resource.project_name,
        from_state=live,
        to_state=desired,
    )


@pytest.fixture
def seeded(api: MockAtlasAPI) -> ProjectRef:
    project = api.state.add_project("p1")
    return ProjectRef(id=project.id, name="p1")


@pytest.fixture
def handlers(services: AtlasServices, seeded: ProjectRef) -> OperationHandlers:
    return OperationHandlers(services, ProjectDirectory([seeded]), default_org_id=ORG_ID)


class TestProjectDirectory:
    """Tests for ProjectDirectory."""

    def test_register_and_forget(self) -> None:
        """Test names map to refs until forgotten."""
        directory = ProjectDirectory()
        directory.register(ProjectRef(id="abc", name="p1"))

        assert directory.resolve("p1").id == "abc"

        directory.forget("p1")
        assert directory.get("p1") is None

    def test_unknown_project_unavailable(self) -> None:
        """Test resolving an unknown project raises UnavailableError."""
        with pytest.raises(UnavailableError, match="project 'ghost' does not exist"):
            ProjectDirectory().resolve("ghost")


class TestOperationHandlers:
    """Tests for OperationHandlers."""

    @pytest.mark.asyncio
    async def test_new_project_visible_to_children(
        self, api: MockAtlasAPI, handlers: OperationHandlers
    ) -> None:
        """Test a project created in this run is resolvable by its clusters."""
        project = make_resource(ResourceKind.PROJECT, "p2", ProjectSpec(name="p2"))

        await handlers.run(_op(Verb.CREATE, project))
        created = await handlers.run(_op(Verb.CREATE, _cluster(project="p2")))

        p2 = api.state.project_by_name("p2")
        assert p2 is not None
        assert p2.data["orgId"] == ORG_ID
        assert handlers.project_id("p2") == p2.id
        assert created is not None
        assert "c1" in p2.clusters

    @pytest.mark.asyncio
    async def test_pit_enabled_after_create(
        self, api: MockAtlasAPI, handlers: OperationHandlers, seeded: ProjectRef
    ) -> None:
        """Test point-in-time restore is switched on by a follow-up update."""
        cluster = _cluster(backupEnabled=True, pitEnabled=True)

        await handlers.run(_op(Verb.CREATE, cluster))

        post = api.calls_to("POST", r"/clusters$")[0]
        assert "pitEnabled" not in post.body
        assert len(api.calls_to("PATCH", r"/clusters/c1$")) == 1
        assert api.state.project(seeded.id).clusters["c1"]["pitEnabled"] is True

    @pytest.mark.asyncio
    async def test_update(
        self, api: MockAtlasAPI, handlers: OperationHandlers, seeded: ProjectRef
    ) -> None:
        """Test an update patches the live cluster."""
        api.state.add_cluster(api.state.project(seeded.id), "c1")

        await handlers.run(_op(Verb.UPDATE, _cluster(tier="M30"), _cluster()))

        stored = api.state.project(seeded.id).clusters["c1"]
        region = stored["replicationSpecs"][0]["regionConfigs"][0]
        assert region["electableSpecs"]["instanceSize"] == "M30"

    @pytest.mark.asyncio
    async def test_replace_deletes_then_creates(
        self, api: MockAtlasAPI, handlers: OperationHandlers, seeded: ProjectRef
    ) -> None:
        """Test Replace runs the deleter before the creator."""
        api.state.add_cluster(api.state.project(seeded.id), "c1")

        await handlers.run(_op(Verb.REPLACE, _cluster(region="EU_WEST_1"), _cluster()))

        assert [c.method for c in api.mutations] == ["DELETE", "POST"]
        assert "c1" in api.state.project(seeded.id).clusters

    @pytest.mark.asyncio
    async def test_delete(
        self, api: MockAtlasAPI, handlers: OperationHandlers, seeded: ProjectRef
    ) -> None:
        """Test a delete removes the resource and returns nothing."""
        api.state.add_cluster(api.state.project(seeded.id), "c1")

        result = await handlers.run(_op(Verb.DELETE, None, _cluster()))

        assert result is None
        assert api.state.project(seeded.id).clusters == {}

    @pytest.mark.asyncio
    async def test_noop_calls_nothing(
        self, api: MockAtlasAPI, handlers: OperationHandlers
    ) -> None:
        """Test NoOp operations never reach the API."""
        assert await handlers.run(_op(Verb.NOOP, _cluster(), _cluster())) is None
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_unknown_project(self, handlers: OperationHandlers) -> None:
        """Test children of an unknown project are unavailable."""
        with pytest.raises(UnavailableError):
            await handlers.run(_op(Verb.CREATE, _cluster(project="ghost")))

    @pytest.mark.asyncio
    async def test_database_role_unsupported(
        self, api: MockAtlasAPI, handlers: OperationHandlers
    ) -> None:
        """Test custom roles are planned but cannot be applied."""
        spec = DatabaseRoleSpec.model_validate(
            {
                "projectName": "p1",
                "roleName": "reader",
                "databaseName": "admin",
                "inheritedRoles": [{"roleName": "read", "databaseName": "app"}],
            }
        )
        role = make_resource(ResourceKind.DATABASE_ROLE, "reader", spec)

        with pytest.raises(UnsupportedError, match="custom database roles"):
            await handlers.run(_op(Verb.CREATE, role))
        assert api.mutation_count == 0


class TestPeeringContainer:
    """Tests for resolving a peering's container."""

    @staticmethod
    def _peering() -> Resource:
        spec = NetworkPeeringSpec.model_validate(
            {
                "projectName": "p1",
                "provider": "AWS",
                "vpcId": "vpc-1",
                "awsAccountId": "123456789012",
                "routeTableCidrBlock": "172.31.0.0/16",
                "accepterRegionName": "us-east-1",
            }
        )
        return make_resource(ResourceKind.NETWORK_PEERING, "vpc-1", spec)

    @pytest.mark.asyncio
    async def test_no_container(self, handlers: OperationHandlers) -> None:
        """Test peering without a container is unavailable."""
        with pytest.raises(UnavailableError, match="no AWS network container"):
            await handlers.run(_op(Verb.CREATE, self._peering()))

    @pytest.mark.asyncio
    async def test_ambiguous_container(
        self, api: MockAtlasAPI, handlers: OperationHandlers, seeded: ProjectRef
    ) -> None:
        """Test several containers of the provider require containerId."""
        project = api.state.project(seeded.id)
        api.state.add_container(project, "10.8.0.0/21")
        api.state.add_container(project, "10.9.0.0/21", region="US_WEST_2")

        with pytest.raises(ValidationError, match="set containerId"):
            await handlers.run(_op(Verb.CREATE, self._peering()))

    @pytest.mark.asyncio
    async def test_single_container_used(
        self, api: MockAtlasAPI, handlers: OperationHandlers, seeded: ProjectRef
    ) -> None:
        """Test the only container of the provider is picked."""
        container = api.state.add_container(api.state.project(seeded.id), "10.8.0.0/21")

        await handlers.run(_op(Verb.CREATE, self._peering()))

        post = api.calls_to("POST", r"/peers$")[0]
        assert post.body["containerId"] == container["id"]


class TestInvert:
    """Tests for undoing applied operations."""

    @pytest.mark.asyncio
    async def test_invert_create_deletes(
        self, api: MockAtlasAPI, handlers: OperationHandlers, seeded: ProjectRef
    ) -> None:
        """Test undoing a create deletes what was created."""
        op = _op(Verb.CREATE, _cluster())
        created = await handlers.run(op)

        await handlers.invert(op, created)

        assert api.state.project(seeded.id).clusters == {}

    @pytest.mark.asyncio
    async def test_invert_delete_recreates(
        self, api: MockAtlasAPI, handlers: OperationHandlers, seeded: ProjectRef
    ) -> None:
        """Test undoing a delete re-creates the snapshot."""
        api.state.add_cluster(api.state.project(seeded.id), "c1")
        op = _op(Verb.DELETE, None, _cluster())
        await handlers.run(op)

        await handlers.invert(op, None)

        assert "c1" in api.state.project(seeded.id).clusters

    @pytest.mark.asyncio
    async def test_invert_replace_unsupported(self, handlers: OperationHandlers) -> None:
        """Test Replace cannot be undone."""
        op = _op(Verb.REPLACE, _cluster(region="EU_WEST_1"), _cluster())

        with pytest.raises(UnsupportedError, match="cannot roll back Replace"):
            await handlers.invert(op, None)


class TestStateChecks:
    """Tests for operations and resources that do not fit their handler."""

    @pytest.mark.asyncio
    async def test_update_without_live_state(
        self, api: MockAtlasAPI, handlers: OperationHandlers
    ) -> None:
        """Test an update missing its live resource is refused before any call."""
        with pytest.raises(ValueError, match="Update of 'c1' has no live state"):
            await handlers.run(_op(Verb.UPDATE, _cluster()))
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_create_without_desired_state(self, handlers: OperationHandlers) -> None:
        """Test a create missing its declared resource is refused."""
        with pytest.raises(ValueError, match="has no desired state"):
            await handlers.run(_op(Verb.CREATE, None, _cluster()))

    def test_spec_of_mismatch(self) -> None:
        """Test a resource carrying another kind's spec is a type error."""
        project = make_resource(ResourceKind.PROJECT, "p1", ProjectSpec(name="p1"))

        assert spec_of(project, ProjectSpec).name == "p1"
        with pytest.raises(TypeError, match="carries ProjectSpec, expected ClusterSpec"):
            spec_of(project, ClusterSpec)

    def test_owning_project_required(self) -> None:
        """Test project-scoped handlers need a resolved project."""
        with pytest.raises(UnavailableError, match="has no owning project"):
            owning_project(None, _cluster())

    def test_operation_without_resource(self) -> None:
        """Test an operation with neither state has no identity."""
        op = Operation(
            id="op-001", kind=ResourceKind.CLUSTER, name="c1", verb=Verb.NOOP, project_name="p1"
        )

        with pytest.raises(ValueError, match="carries no resource"):
            _ = op.identity
