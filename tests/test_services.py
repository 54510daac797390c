"""Tests for the resource services against the in-memory admin API."""

from __future__ import annotations

import pytest
from atlas_mock import MockAtlasAPI

from matlas.errors import ConflictError, NotFoundError, TransientError, ValidationError
from matlas.masking import Secret
from matlas.models import (
    AlertConfigurationSpec,
    ClusterSpec,
    CloudProvider,
    DatabaseUserSpec,
    EncryptionAtRestSpec,
    NetworkAccessSpec,
    NetworkContainerSpec,
    NetworkPeeringSpec,
    ProjectRef,
    ProjectSpec,
    SearchIndexSpec,
    VPCEndpointSpec,
)
from matlas.services.clusters import cluster_to_api
from matlas.services.registry import AtlasServices


@pytest.fixture
def project(api: MockAtlasAPI) -> ProjectRef:
    seeded = api.state.add_project("p1")
    return ProjectRef(id=seeded.id, name="p1")


def _cluster_spec(**fields: object) -> ClusterSpec:
    data = {"projectName": "p1", "provider": "AWS", "region": "US_EAST_1", "instanceSize": "M10"}
    data.update(fields)
    return ClusterSpec.model_validate(data)


def _user_spec(password: str | None = "pw") -> DatabaseUserSpec:
    data: dict[str, object] = {
        "projectName": "p1",
        "username": "app",
        "roles": [{"roleName": "readWrite", "databaseName": "app"}],
    }
    if password is not None:
        data["password"] = password
    return DatabaseUserSpec.model_validate(data)


class TestProjectService:
    """Tests for ProjectService."""

    @pytest.mark.asyncio
    async def test_create_and_lookup(self, api: MockAtlasAPI, services: AtlasServices) -> None:
        """Test projects are created under the default org and found by name."""
        created = await services.projects.create(
            ProjectSpec(name="p2", tags={"env": "dev"}), org_id="org-1"
        )
        found = await services.projects.get_by_name("p2")

        assert found.resource_id == created.resource_id
        assert found.spec.organization_id == "org-1"
        assert found.spec.tags == {"env": "dev"}

    @pytest.mark.asyncio
    async def test_create_needs_org(self, api: MockAtlasAPI, services: AtlasServices) -> None:
        """Test missing org ids fail before any call."""
        with pytest.raises(ValidationError, match="org_id is required"):
            await services.projects.create(ProjectSpec(name="p2"))
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_duplicate_is_conflict(
        self, project: ProjectRef, services: AtlasServices
    ) -> None:
        """Test creating an existing project is a conflict."""
        with pytest.raises(ConflictError):
            await services.projects.create(ProjectSpec(name="p1"), org_id="org-1")

    @pytest.mark.asyncio
    async def test_missing_is_not_found(self, services: AtlasServices) -> None:
        """Test unknown names are not found."""
        with pytest.raises(NotFoundError):
            await services.projects.get_by_name("nope")

    @pytest.mark.asyncio
    async def test_name_is_escaped(self, api: MockAtlasAPI, services: AtlasServices) -> None:
        """Test path segments are percent-encoded."""
        api.state.add_project("team a/b")
        found = await services.projects.get_by_name("team a/b")
        assert found.name == "team a/b"
        assert api.calls[-1].path == "/groups/byName/team%20a%2Fb"


class TestClusterService:
    """Tests for ClusterService."""

    def test_shared_tier_payload(self) -> None:
        """Test shared tiers use the tenant provider."""
        body = cluster_to_api("c1", _cluster_spec(instanceSize="M0"))
        region = body["replicationSpecs"][0]["regionConfigs"][0]
        assert region["providerName"] == "TENANT"
        assert region["backingProviderName"] == "AWS"
        assert region["electableSpecs"] == {"instanceSize": "M0"}

    @pytest.mark.asyncio
    async def test_create_omits_pit(
        self, api: MockAtlasAPI, project: ProjectRef, services: AtlasServices
    ) -> None:
        """Test point-in-time recovery is not sent on create."""
        spec = _cluster_spec(backupEnabled=True, pitEnabled=True, tags={"team": "db"})
        created = await services.clusters.create(project, "c1", spec)

        (call,) = api.calls_to("POST", r"/clusters$")
        assert "pitEnabled" not in call.body
        assert call.body["tags"] == [{"key": "team", "value": "db"}]
        assert created.spec.backup_enabled
        assert created.metadata.labels == {"team": "db"}

    @pytest.mark.asyncio
    async def test_round_trip_matches_spec(
        self, project: ProjectRef, services: AtlasServices
    ) -> None:
        """Test a created cluster reads back with the same semantic fields."""
        await services.clusters.create(project, "c1", _cluster_spec(diskSizeGB=40))
        live = await services.clusters.get(project, "c1")

        assert live.spec.provider == CloudProvider.AWS
        assert live.spec.region == "US_EAST_1"
        assert live.spec.instance_size == "M10"
        assert live.spec.disk_size_gb == 40
        assert live.spec.replication_specs == []
        assert live.attributes["connectionStrings"]["standardSrv"].startswith("mongodb+srv://")

    @pytest.mark.asyncio
    async def test_invalid_name_rejected(
        self, api: MockAtlasAPI, project: ProjectRef, services: AtlasServices
    ) -> None:
        """Test invalid cluster names never reach the API."""
        with pytest.raises(ValidationError, match="cluster name"):
            await services.clusters.create(project, "bad_name", _cluster_spec())
        assert api.mutation_count == 0

    @pytest.mark.asyncio
    async def test_transient_retried(
        self, api: MockAtlasAPI, project: ProjectRef, services: AtlasServices
    ) -> None:
        """Test transient failures are retried by the shared client."""
        api.state.add_cluster(api.state.project(project.id), "c1")
        api.inject_error("GET", r"/clusters/c1$", TransientError("busy"), times=2)

        live = await services.clusters.get(project, "c1")

        assert live.name == "c1"
        assert len(api.calls_to("GET", r"/clusters/c1$")) == 3

    @pytest.mark.asyncio
    async def test_delete(
        self, api: MockAtlasAPI, project: ProjectRef, services: AtlasServices
    ) -> None:
        """Test deleted clusters are gone."""
        api.state.add_cluster(api.state.project(project.id), "c1")
        await services.clusters.delete(project, "c1")
        with pytest.raises(NotFoundError):
            await services.clusters.get(project, "c1")


class TestDatabaseUserService:
    """Tests for DatabaseUserService."""

    @pytest.mark.asyncio
    async def test_password_never_read_back(
        self, api: MockAtlasAPI, project: ProjectRef, services: AtlasServices
    ) -> None:
        """Test the password is sent on create but not returned."""
        created = await services.users.create(project, _user_spec())

        (call,) = api.calls_to("POST", r"/databaseUsers$")
        assert call.body["password"] == "pw"
        assert created.spec.password is None
        assert created.name == "admin/app"

    @pytest.mark.asyncio
    async def test_create_requires_password(
        self, api: MockAtlasAPI, project: ProjectRef, services: AtlasServices
    ) -> None:
        """Test users cannot be created without a password."""
        with pytest.raises(ValidationError, match="password is required"):
            await services.users.create(project, _user_spec(password=None))
        assert api.mutation_count == 0

    @pytest.mark.asyncio
    async def test_update_skips_unknown_password(
        self, api: MockAtlasAPI, project: ProjectRef, services: AtlasServices
    ) -> None:
        """Test masked passwords are left out of updates."""
        api.state.add_user(api.state.project(project.id), "app")
        spec = _user_spec(password=None).model_copy(update={"password": Secret.masked()})

        await services.users.update(project, spec)

        (call,) = api.calls_to("PATCH", r"/databaseUsers/admin/app$")
        assert "password" not in call.body

    @pytest.mark.asyncio
    async def test_duplicate_is_conflict(
        self, api: MockAtlasAPI, project: ProjectRef, services: AtlasServices
    ) -> None:
        """Test creating an existing user is a conflict."""
        api.state.add_user(api.state.project(project.id), "app")
        with pytest.raises(ConflictError):
            await services.users.create(project, _user_spec())


class TestNetworkServices:
    """Tests for access list, container and peering services."""

    @pytest.mark.asyncio
    async def test_access_upsert_prefers_ip(
        self, project: ProjectRef, services: AtlasServices
    ) -> None:
        """Test single addresses read back as ipAddress, not cidrBlock."""
        spec = NetworkAccessSpec.model_validate({"projectName": "p1", "ipAddress": "1.2.3.4"})
        live = await services.network_access.upsert(project, spec)
        assert live.spec.ip_address == "1.2.3.4"
        assert live.spec.cidr_block is None
        assert live.name == "1.2.3.4"

    @pytest.mark.asyncio
    async def test_access_cidr_delete(
        self, api: MockAtlasAPI, project: ProjectRef, services: AtlasServices
    ) -> None:
        """Test CIDR entries are escaped in the delete path."""
        api.state.add_access(api.state.project(project.id), "10.0.0.0/24")
        await services.network_access.delete(project, "10.0.0.0/24")
        assert api.calls[-1].path.endswith("/accessList/10.0.0.0%2F24")
        assert await services.network_access.list(project) == []

    @pytest.mark.asyncio
    async def test_containers_listed_per_provider(
        self, api: MockAtlasAPI, project: ProjectRef, services: AtlasServices
    ) -> None:
        """Test containers from every provider are listed."""
        seeded = api.state.project(project.id)
        api.state.add_container(seeded, "10.8.0.0/21", "AWS", "us-east-1")
        api.state.add_container(seeded, "10.9.0.0/21", "GCP", "")

        containers = await services.containers.list(project)

        assert sorted(c.name for c in containers) == ["AWS:10.8.0.0/21", "GCP:10.9.0.0/21"]
        assert len(api.calls_to("GET", r"/containers$")) == 3

    @pytest.mark.asyncio
    async def test_peering_create(
        self, api: MockAtlasAPI, project: ProjectRef, services: AtlasServices
    ) -> None:
        """Test peering requests carry the container id and provider fields."""
        spec = NetworkPeeringSpec.model_validate(
            {
                "projectName": "p1",
                "provider": "AWS",
                "vpcId": "vpc-1",
                "awsAccountId": "123456789012",
                "routeTableCidrBlock": "172.16.0.0/16",
                "accepterRegionName": "us-east-1",
            }
        )
        live = await services.peering.create(project, spec, "c-1")

        (call,) = api.calls_to("POST", r"/peers$")
        assert call.body["containerId"] == "c-1"
        assert call.body["vpcId"] == "vpc-1"
        assert live.name == "AWS:vpc-1"
        assert live.attributes["status"] == "INITIATING"


class TestOtherServices:
    """Tests for search, endpoint, alert and encryption services."""

    @pytest.mark.asyncio
    async def test_search_find(
        self, api: MockAtlasAPI, project: ProjectRef, services: AtlasServices
    ) -> None:
        """Test indexes are found by database, collection and name."""
        seeded = api.state.project(project.id)
        api.state.add_cluster(seeded, "c1")
        api.state.add_search_index(seeded, "c1", "default")
        spec = SearchIndexSpec.model_validate(
            {
                "projectName": "p1",
                "clusterName": "c1",
                "databaseName": "app",
                "collectionName": "items",
                "indexName": "default",
            }
        )

        found = await services.search.find(project, spec)
        assert found.spec.effective_definition() == spec.effective_definition()

        missing = spec.model_copy(update={"index_name": "other"})
        with pytest.raises(NotFoundError):
            await services.search.find(project, missing)

    @pytest.mark.asyncio
    async def test_vpc_endpoint_region_spelling(
        self, api: MockAtlasAPI, project: ProjectRef, services: AtlasServices
    ) -> None:
        """Test AWS regions are sent upper-case and read back dashed."""
        spec = VPCEndpointSpec.model_validate(
            {"projectName": "p1", "cloudProvider": "AWS", "region": "us-east-1"}
        )
        live = await services.vpc_endpoints.create(project, spec)

        (call,) = api.calls_to("POST", r"/endpointService$")
        assert call.body == {"providerName": "AWS", "region": "US_EAST_1"}
        assert live.name == "AWS:us-east-1"
        assert [e.name for e in await services.vpc_endpoints.list(project)] == ["AWS:us-east-1"]

    @pytest.mark.asyncio
    async def test_alert_secret_masked_on_read(
        self, api: MockAtlasAPI, project: ProjectRef, services: AtlasServices
    ) -> None:
        """Test notification tokens are sent but come back masked."""
        spec = AlertConfigurationSpec.model_validate(
            {
                "projectName": "p1",
                "eventTypeName": "HOST_DOWN",
                "notifications": [
                    {"typeName": "SLACK", "channelName": "#ops", "apiToken": "xoxb-1"}
                ],
            }
        )
        live = await services.alerts.create(project, spec)

        (call,) = api.calls_to("POST", r"/alertConfigs$")
        assert call.body["notifications"][0]["apiToken"] == "xoxb-1"
        assert live.spec.notifications[0].api_token.is_masked
        assert live.name == f"HOST_DOWN:{spec.content_key()}"

        await services.alerts.update(project, live.resource_id, spec)
        assert len(api.calls_to("PUT", r"/alertConfigs/")) == 1

    @pytest.mark.asyncio
    async def test_encryption_lifecycle(
        self, api: MockAtlasAPI, project: ProjectRef, services: AtlasServices
    ) -> None:
        """Test encryption exists only while a provider is enabled."""
        assert await services.encryption.get(project) is None
        spec = EncryptionAtRestSpec.model_validate(
            {
                "projectName": "p1",
                "awsKms": {
                    "enabled": True,
                    "customerMasterKeyId": "key-1",
                    "region": "us-east-1",
                    "roleId": "role-1",
                },
            }
        )

        live = await services.encryption.update(project, spec)
        assert live is not None
        assert live.spec.aws_kms.role_id == "role-1"

        await services.encryption.disable(project)
        assert await services.encryption.get(project) is None
