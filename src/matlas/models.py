"""Pydantic models for resource manifests.

These models provide:
1. Type-safe YAML parsing with unknown fields rejected
2. Cross-field validation at the boundary (fail fast, fail loudly)
3. A stable identity per resource used to pair desired with live state

Manifests are a tagged variant over ``kind``: the envelope is decoded first,
then ``spec`` is validated by the model registered for that kind in
:data:`SPEC_MODELS`. Desired resources (from YAML) and live resources (from
the admin API) share the same :class:`Resource` shape.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

from .masking import Secret
from .validation import (
    validate_aws_region,
    validate_cidr,
    validate_container_cidr,
    validate_ip_address,
)

API_GROUP = "matlas.mongodb.com"
DEFAULT_API_VERSION = f"{API_GROUP}/v1"
SUPPORTED_API_VERSIONS = (
    f"{API_GROUP}/v1alpha1",
    f"{API_GROUP}/v1beta1",
    f"{API_GROUP}/v1",
)

PRESERVE_LABEL = f"{API_GROUP}/preserve"
PROJECT_ID_LABEL = "atlas.mongodb.com/project-id"
ORG_ID_LABEL = "atlas.mongodb.com/org-id"


class ResourceKind(str, Enum):
    """Resource kinds the pipeline understands."""

    PROJECT = "Project"
    CLUSTER = "Cluster"
    DATABASE_USER = "DatabaseUser"
    DATABASE_ROLE = "DatabaseRole"
    NETWORK_ACCESS = "NetworkAccess"
    NETWORK_CONTAINER = "NetworkContainer"
    NETWORK_PEERING = "NetworkPeering"
    SEARCH_INDEX = "SearchIndex"
    VPC_ENDPOINT = "VPCEndpoint"
    ALERT_CONFIGURATION = "AlertConfiguration"
    ENCRYPTION_AT_REST = "EncryptionAtRest"


class DocumentKind(str, Enum):
    """Container document kinds."""

    APPLY_DOCUMENT = "ApplyDocument"
    DISCOVERED_PROJECT = "DiscoveredProject"


class DeletionPolicy(str, Enum):
    DELETE = "Delete"
    RETAIN = "Retain"
    SNAPSHOT = "Snapshot"


class CloudProvider(str, Enum):
    AWS = "AWS"
    GCP = "GCP"
    AZURE = "AZURE"


class ClusterType(str, Enum):
    REPLICASET = "REPLICASET"
    SHARDED = "SHARDED"
    GEOSHARDED = "GEOSHARDED"


INSTANCE_SIZES = frozenset(
    {
        "M0", "M2", "M5", "M10", "M20", "M30", "M40", "M50", "M60", "M80",
        "M140", "M200", "M300", "M400", "M700",
        "R40", "R50", "R60", "R80", "R200", "R300", "R400", "R700",
    }
)
SHARED_TIER_SIZES = frozenset({"M0", "M2", "M5"})


# =============================================================================
# Envelope
# =============================================================================


class ResourceMetadata(BaseModel):
    """Metadata envelope common to every manifest."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=255)]
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    deletion_policy: DeletionPolicy | None = Field(None, alias="deletionPolicy")
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")


class ResourceManifest(BaseModel):
    """Single-resource envelope; ``spec`` is decoded separately by kind."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    api_version: str = Field(alias="apiVersion")
    kind: str
    metadata: ResourceMetadata
    spec: dict[str, Any] = Field(default_factory=dict)

    @field_validator("api_version")
    @classmethod
    def validate_api_version(cls, v: str) -> str:
        if v not in SUPPORTED_API_VERSIONS:
            raise ValueError(f"apiVersion must be one of {list(SUPPORTED_API_VERSIONS)}")
        return v


class ApplyDocument(BaseModel):
    """Multi-resource container processed as one unit."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    api_version: str = Field(alias="apiVersion")
    kind: str
    metadata: ResourceMetadata
    resources: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("api_version")
    @classmethod
    def validate_api_version(cls, v: str) -> str:
        if v not in SUPPORTED_API_VERSIONS:
            raise ValueError(f"apiVersion must be one of {list(SUPPORTED_API_VERSIONS)}")
        return v


# =============================================================================
# Spec models
# =============================================================================


class SpecModel(BaseModel):
    """Base for kind-specific specs: camelCase aliases, unknown fields rejected."""

    model_config = {"extra": "forbid", "populate_by_name": True}


class ProjectScopedSpec(SpecModel):
    project_name: Annotated[str, Field(min_length=1, alias="projectName")]


class ProjectSpec(SpecModel):
    name: Annotated[str, Field(min_length=1, max_length=64)]
    organization_id: str | None = Field(
        None,
        validation_alias=AliasChoices("organizationId", "orgId"),
        serialization_alias="organizationId",
    )
    tags: dict[str, str] = Field(default_factory=dict)


class RegionConfig(SpecModel):
    region_name: Annotated[str, Field(min_length=1, alias="regionName")]
    provider_name: CloudProvider | None = Field(None, alias="providerName")
    priority: Annotated[int, Field(ge=0, le=7)] = 7
    electable_nodes: Annotated[int, Field(ge=0, le=50, alias="electableNodes")] = 3
    read_only_nodes: Annotated[int, Field(ge=0, le=50, alias="readOnlyNodes")] = 0
    analytics_nodes: Annotated[int, Field(ge=0, le=50, alias="analyticsNodes")] = 0


class ReplicationSpec(SpecModel):
    num_shards: Annotated[int, Field(ge=1, alias="numShards")] = 1
    zone_name: str | None = Field(None, alias="zoneName")
    region_configs: list[RegionConfig] = Field(default_factory=list, alias="regionConfigs")


class ComputeAutoScaling(SpecModel):
    enabled: bool = False
    scale_down_enabled: bool = Field(False, alias="scaleDownEnabled")
    min_instance_size: str | None = Field(None, alias="minInstanceSize")
    max_instance_size: str | None = Field(None, alias="maxInstanceSize")


class AutoScalingConfig(SpecModel):
    disk_gb_enabled: bool | None = Field(None, alias="diskGBEnabled")
    compute: ComputeAutoScaling | None = None


class ClusterSpec(ProjectScopedSpec):
    """Cluster specification; the cluster name is ``metadata.name``."""

    provider: CloudProvider
    region: Annotated[str, Field(min_length=1)]
    instance_size: str = Field(
        validation_alias=AliasChoices("instanceSize", "tier", "instance_size"),
        serialization_alias="instanceSize",
    )
    disk_size_gb: Annotated[float, Field(gt=0, le=4096)] | None = Field(None, alias="diskSizeGB")
    backup_enabled: bool = Field(False, alias="backupEnabled")
    pit_enabled: bool = Field(False, alias="pitEnabled")
    mongodb_version: str | None = Field(None, alias="mongodbVersion")
    cluster_type: ClusterType = Field(ClusterType.REPLICASET, alias="clusterType")
    replication_specs: list[ReplicationSpec] = Field(default_factory=list, alias="replicationSpecs")
    auto_scaling: AutoScalingConfig | None = Field(None, alias="autoScaling")
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("instance_size")
    @classmethod
    def validate_instance_size(cls, v: str) -> str:
        if v.upper() not in INSTANCE_SIZES:
            raise ValueError(f"instanceSize must be one of {sorted(INSTANCE_SIZES)}")
        return v.upper()

    @model_validator(mode="after")
    def validate_backup(self) -> ClusterSpec:
        if self.pit_enabled and not self.backup_enabled:
            raise ValueError("pitEnabled requires backupEnabled")
        if self.pit_enabled and self.instance_size in SHARED_TIER_SIZES:
            raise ValueError(f"pitEnabled is not available on {self.instance_size} clusters")
        return self


class ScopeType(str, Enum):
    CLUSTER = "CLUSTER"
    DATA_LAKE = "DATA_LAKE"


class UserRole(SpecModel):
    role_name: Annotated[str, Field(min_length=1, alias="roleName")]
    database_name: Annotated[str, Field(min_length=1, alias="databaseName")]
    collection_name: str | None = Field(None, alias="collectionName")


class UserScope(SpecModel):
    name: Annotated[str, Field(min_length=1)]
    type: ScopeType = ScopeType.CLUSTER


class DatabaseUserSpec(ProjectScopedSpec):
    username: Annotated[str, Field(min_length=1, max_length=1024)]
    password: Secret | None = None
    auth_database: str = Field("admin", alias="authDatabase")
    roles: Annotated[list[UserRole], Field(min_length=1)]
    scopes: list[UserScope] = Field(default_factory=list)


class PrivilegeResource(SpecModel):
    database: str = ""
    collection: str = ""
    cluster: bool | None = None


class Privilege(SpecModel):
    actions: Annotated[list[str], Field(min_length=1)]
    resource: PrivilegeResource


class InheritedRole(SpecModel):
    role_name: Annotated[str, Field(min_length=1, alias="roleName")]
    database_name: Annotated[str, Field(min_length=1, alias="databaseName")]


class DatabaseRoleSpec(ProjectScopedSpec):
    role_name: Annotated[str, Field(min_length=1, alias="roleName")]
    database_name: Annotated[str, Field(min_length=1, alias="databaseName")]
    privileges: list[Privilege] = Field(default_factory=list)
    inherited_roles: list[InheritedRole] = Field(default_factory=list, alias="inheritedRoles")

    @model_validator(mode="after")
    def validate_grants(self) -> DatabaseRoleSpec:
        if not self.privileges and not self.inherited_roles:
            raise ValueError("a role needs at least one privilege or inherited role")
        return self


class NetworkAccessSpec(ProjectScopedSpec):
    ip_address: str | None = Field(None, alias="ipAddress")
    cidr_block: str | None = Field(
        None,
        validation_alias=AliasChoices("cidrBlock", "cidr", "cidr_block"),
        serialization_alias="cidrBlock",
    )
    aws_security_group: str | None = Field(None, alias="awsSecurityGroup")
    comment: str | None = None
    delete_after_date: str | None = Field(None, alias="deleteAfterDate")

    @field_validator("ip_address")
    @classmethod
    def validate_ip(cls, v: str | None) -> str | None:
        return validate_ip_address(v) if v is not None else v

    @field_validator("cidr_block")
    @classmethod
    def validate_cidr_block(cls, v: str | None) -> str | None:
        return validate_cidr(v) if v is not None else v

    @model_validator(mode="after")
    def validate_exactly_one(self) -> NetworkAccessSpec:
        chosen = [v for v in (self.ip_address, self.cidr_block, self.aws_security_group) if v]
        if len(chosen) != 1:
            raise ValueError("exactly one of ipAddress, cidrBlock, awsSecurityGroup must be set")
        return self

    @property
    def entry(self) -> str:
        return self.ip_address or self.cidr_block or self.aws_security_group or ""


class NetworkContainerSpec(ProjectScopedSpec):
    provider: CloudProvider
    cidr_block: str = Field(
        validation_alias=AliasChoices("atlasCidrBlock", "cidrBlock", "cidr_block"),
        serialization_alias="atlasCidrBlock",
    )
    region: str | None = None

    @model_validator(mode="after")
    def validate_provider_fields(self) -> NetworkContainerSpec:
        validate_container_cidr(self.provider.value, self.cidr_block)
        if self.provider in (CloudProvider.AWS, CloudProvider.AZURE) and not self.region:
            raise ValueError(f"region is required for {self.provider.value} containers")
        if self.provider == CloudProvider.AWS:
            validate_aws_region(self.region or "")
        return self


PEERING_REQUIRED_FIELDS: dict[CloudProvider, tuple[str, ...]] = {
    CloudProvider.AWS: (
        "vpc_id",
        "aws_account_id",
        "route_table_cidr_block",
        "accepter_region_name",
    ),
    CloudProvider.GCP: ("gcp_project_id", "network_name"),
    CloudProvider.AZURE: (
        "azure_directory_id",
        "azure_subscription_id",
        "resource_group_name",
        "vnet_name",
    ),
}


class NetworkPeeringSpec(ProjectScopedSpec):
    provider: CloudProvider
    container_id: str | None = Field(None, alias="containerId")
    vpc_id: str | None = Field(None, alias="vpcId")
    aws_account_id: str | None = Field(None, alias="awsAccountId")
    route_table_cidr_block: str | None = Field(None, alias="routeTableCidrBlock")
    accepter_region_name: str | None = Field(None, alias="accepterRegionName")
    gcp_project_id: str | None = Field(None, alias="gcpProjectId")
    network_name: str | None = Field(None, alias="networkName")
    azure_directory_id: str | None = Field(None, alias="azureDirectoryId")
    azure_subscription_id: str | None = Field(None, alias="azureSubscriptionId")
    resource_group_name: str | None = Field(None, alias="resourceGroupName")
    vnet_name: str | None = Field(None, alias="vnetName")

    @model_validator(mode="after")
    def validate_provider_fields(self) -> NetworkPeeringSpec:
        missing = [
            name for name in PEERING_REQUIRED_FIELDS[self.provider] if not getattr(self, name)
        ]
        if missing:
            aliases = [type(self).model_fields[name].alias or name for name in missing]
            raise ValueError(f"{self.provider.value} peering requires {', '.join(aliases)}")
        if self.route_table_cidr_block:
            validate_cidr(self.route_table_cidr_block)
        return self

    @property
    def peer_name(self) -> str:
        return self.vpc_id or self.network_name or self.vnet_name or ""


class SearchIndexType(str, Enum):
    SEARCH = "search"
    VECTOR_SEARCH = "vectorSearch"


class SearchIndexSpec(ProjectScopedSpec):
    """Search index specification.

    ``analyzers`` and ``synonyms`` are folded into the index definition; the
    planner compares the whole effective definition structurally.
    """

    cluster_name: Annotated[str, Field(min_length=1, alias="clusterName")]
    database_name: Annotated[str, Field(min_length=1, alias="databaseName")]
    collection_name: Annotated[str, Field(min_length=1, alias="collectionName")]
    index_name: Annotated[str, Field(min_length=1, alias="indexName")]
    index_type: SearchIndexType = Field(SearchIndexType.SEARCH, alias="indexType")
    definition: dict[str, Any] = Field(default_factory=dict)
    analyzers: list[dict[str, Any]] = Field(default_factory=list)
    synonyms: list[dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_definition(self) -> SearchIndexSpec:
        if self.index_type == SearchIndexType.VECTOR_SEARCH:
            fields = self.definition.get("fields")
            if not isinstance(fields, list) or not fields:
                raise ValueError("vectorSearch indexes require definition.fields")
            for entry in fields:
                if not isinstance(entry, dict) or "path" not in entry or "type" not in entry:
                    raise ValueError("each vector field needs 'path' and 'type'")
        elif "fields" in self.definition:
            raise ValueError("definition.fields is only valid for vectorSearch indexes")
        for synonym in self.synonyms:
            if not {"name", "analyzer", "source"} <= set(synonym):
                raise ValueError("synonym mappings need name, analyzer and source")
        return self

    def effective_definition(self) -> dict[str, Any]:
        definition = dict(self.definition)
        if self.index_type == SearchIndexType.SEARCH:
            definition.setdefault("mappings", {"dynamic": True})
        if self.analyzers:
            definition["analyzers"] = self.analyzers
        if self.synonyms:
            definition["synonyms"] = self.synonyms
        return definition


class VPCEndpointSpec(ProjectScopedSpec):
    cloud_provider: CloudProvider = Field(
        validation_alias=AliasChoices("cloudProvider", "providerName", "cloud_provider"),
        serialization_alias="cloudProvider",
    )
    region: Annotated[str, Field(min_length=1)]

    @model_validator(mode="after")
    def validate_region(self) -> VPCEndpointSpec:
        if self.cloud_provider == CloudProvider.AWS:
            validate_aws_region(self.region)
        return self


class MatcherOperator(str, Enum):
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"
    STARTS_WITH = "STARTS_WITH"
    ENDS_WITH = "ENDS_WITH"
    REGEX = "REGEX"
    NOT_REGEX = "NOT_REGEX"


class NotificationType(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    SLACK = "SLACK"
    PAGER_DUTY = "PAGER_DUTY"
    OPS_GENIE = "OPS_GENIE"
    DATADOG = "DATADOG"
    MICROSOFT_TEAMS = "MICROSOFT_TEAMS"
    WEBHOOK = "WEBHOOK"
    USER = "USER"
    GROUP = "GROUP"
    TEAM = "TEAM"


REQUIRED_NOTIFICATION_FIELDS: dict[NotificationType, tuple[str, ...]] = {
    NotificationType.EMAIL: ("email_address",),
    NotificationType.SMS: ("mobile_number",),
    NotificationType.SLACK: ("api_token", "channel_name"),
    NotificationType.PAGER_DUTY: ("service_key",),
    NotificationType.OPS_GENIE: ("ops_genie_api_key",),
    NotificationType.DATADOG: ("datadog_api_key",),
    NotificationType.MICROSOFT_TEAMS: ("microsoft_teams_webhook_url",),
    NotificationType.WEBHOOK: ("webhook_url",),
    NotificationType.USER: ("username",),
    NotificationType.GROUP: (),
    NotificationType.TEAM: ("team_id",),
}


class AlertMatcher(SpecModel):
    field_name: Annotated[str, Field(min_length=1, alias="fieldName")]
    operator: MatcherOperator
    value: Annotated[str, Field(min_length=1)]


class AlertNotification(SpecModel):
    type_name: NotificationType = Field(alias="typeName")
    delay_min: Annotated[int, Field(ge=0, le=1440)] | None = Field(None, alias="delayMin")
    interval_min: Annotated[int, Field(ge=5, le=1440)] | None = Field(None, alias="intervalMin")
    email_enabled: bool | None = Field(None, alias="emailEnabled")
    sms_enabled: bool | None = Field(None, alias="smsEnabled")
    roles: list[str] = Field(default_factory=list)
    email_address: str | None = Field(None, alias="emailAddress")
    mobile_number: str | None = Field(None, alias="mobileNumber")
    api_token: Secret | None = Field(None, alias="apiToken")
    channel_name: str | None = Field(None, alias="channelName")
    service_key: Secret | None = Field(None, alias="serviceKey")
    ops_genie_api_key: Secret | None = Field(None, alias="opsGenieApiKey")
    ops_genie_region: str | None = Field(None, alias="opsGenieRegion")
    datadog_api_key: Secret | None = Field(None, alias="datadogApiKey")
    datadog_region: str | None = Field(None, alias="datadogRegion")
    microsoft_teams_webhook_url: Secret | None = Field(None, alias="microsoftTeamsWebhookUrl")
    webhook_url: str | None = Field(None, alias="webhookUrl")
    webhook_secret: Secret | None = Field(None, alias="webhookSecret")
    team_id: str | None = Field(None, alias="teamId")
    username: str | None = None

    @model_validator(mode="after")
    def validate_required_fields(self) -> AlertNotification:
        missing = [
            name
            for name in REQUIRED_NOTIFICATION_FIELDS[self.type_name]
            if getattr(self, name) is None or getattr(self, name) == ""
        ]
        if missing:
            aliases = [type(self).model_fields[name].alias or name for name in missing]
            raise ValueError(
                f"{self.type_name.value} notifications require {', '.join(aliases)}"
            )
        return self


class ThresholdMode(str, Enum):
    AVERAGE = "AVERAGE"
    TOTAL = "TOTAL"


class ThresholdOperator(str, Enum):
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"


class MetricThreshold(SpecModel):
    metric_name: Annotated[str, Field(min_length=1, alias="metricName")]
    operator: ThresholdOperator
    threshold: float
    units: str | None = None
    mode: ThresholdMode = ThresholdMode.AVERAGE


class GeneralThreshold(SpecModel):
    operator: ThresholdOperator
    threshold: float
    units: str | None = None


class AlertConfigurationSpec(ProjectScopedSpec):
    enabled: bool = True
    event_type_name: Annotated[str, Field(min_length=1, alias="eventTypeName")]
    matchers: list[AlertMatcher] = Field(default_factory=list)
    notifications: Annotated[list[AlertNotification], Field(min_length=1)]
    metric_threshold: MetricThreshold | None = Field(None, alias="metricThreshold")
    threshold: GeneralThreshold | None = None

    @model_validator(mode="after")
    def validate_thresholds(self) -> AlertConfigurationSpec:
        if self.metric_threshold is not None and self.threshold is not None:
            raise ValueError("set either metricThreshold or threshold, not both")
        return self

    def content_key(self) -> str:
        """Short digest over the fields that identify an alert."""
        payload = {
            "eventTypeName": self.event_type_name,
            "matchers": sorted(
                (m.field_name, m.operator.value, m.value) for m in self.matchers
            ),
            "metricThreshold": self.metric_threshold.model_dump(mode="json", by_alias=True)
            if self.metric_threshold
            else None,
            "threshold": self.threshold.model_dump(mode="json", by_alias=True)
            if self.threshold
            else None,
        }
        blob = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()[:8]


class AwsKmsConfig(SpecModel):
    enabled: bool
    customer_master_key_id: str | None = Field(None, alias="customerMasterKeyId")
    region: str | None = None
    access_key_id: str | None = Field(None, alias="accessKeyId")
    secret_access_key: Secret | None = Field(None, alias="secretAccessKey")
    role_id: str | None = Field(None, alias="roleId")

    @model_validator(mode="after")
    def validate_auth(self) -> AwsKmsConfig:
        if not self.enabled:
            return self
        if not self.customer_master_key_id or not self.region:
            raise ValueError("awsKms requires customerMasterKeyId and region when enabled")
        has_keys = bool(self.access_key_id) and self.secret_access_key is not None
        partial_keys = bool(self.access_key_id) != (self.secret_access_key is not None)
        if partial_keys:
            raise ValueError("awsKms accessKeyId and secretAccessKey must be set together")
        if has_keys == bool(self.role_id):
            raise ValueError("awsKms requires exactly one of accessKeyId+secretAccessKey or roleId")
        return self


class AzureKeyVaultConfig(SpecModel):
    enabled: bool
    client_id: str | None = Field(None, alias="clientId")
    azure_environment: str = Field("AZURE", alias="azureEnvironment")
    subscription_id: str | None = Field(None, alias="subscriptionId")
    resource_group_name: str | None = Field(None, alias="resourceGroupName")
    key_vault_name: str | None = Field(None, alias="keyVaultName")
    key_identifier: str | None = Field(None, alias="keyIdentifier")
    secret: Secret | None = None
    tenant_id: str | None = Field(None, alias="tenantId")

    @model_validator(mode="after")
    def validate_enabled(self) -> AzureKeyVaultConfig:
        if not self.enabled:
            return self
        required = (
            "client_id",
            "subscription_id",
            "resource_group_name",
            "key_vault_name",
            "key_identifier",
            "tenant_id",
        )
        missing = [type(self).model_fields[n].alias for n in required if not getattr(self, n)]
        if missing:
            raise ValueError(f"azureKeyVault requires {', '.join(missing)} when enabled")
        return self


class GoogleCloudKmsConfig(SpecModel):
    enabled: bool
    service_account_key: Secret | None = Field(None, alias="serviceAccountKey")
    key_version_resource_id: str | None = Field(None, alias="keyVersionResourceId")

    @model_validator(mode="after")
    def validate_enabled(self) -> GoogleCloudKmsConfig:
        if self.enabled and (
            self.service_account_key is None or not self.key_version_resource_id
        ):
            raise ValueError(
                "googleCloudKms requires serviceAccountKey and keyVersionResourceId when enabled"
            )
        return self


class EncryptionAtRestSpec(ProjectScopedSpec):
    aws_kms: AwsKmsConfig | None = Field(None, alias="awsKms")
    azure_key_vault: AzureKeyVaultConfig | None = Field(None, alias="azureKeyVault")
    google_cloud_kms: GoogleCloudKmsConfig | None = Field(None, alias="googleCloudKms")

    @model_validator(mode="after")
    def validate_providers(self) -> EncryptionAtRestSpec:
        if self.aws_kms is None and self.azure_key_vault is None and self.google_cloud_kms is None:
            raise ValueError("configure at least one of awsKms, azureKeyVault, googleCloudKms")
        return self


SPEC_MODELS: dict[ResourceKind, type[SpecModel]] = {
    ResourceKind.PROJECT: ProjectSpec,
    ResourceKind.CLUSTER: ClusterSpec,
    ResourceKind.DATABASE_USER: DatabaseUserSpec,
    ResourceKind.DATABASE_ROLE: DatabaseRoleSpec,
    ResourceKind.NETWORK_ACCESS: NetworkAccessSpec,
    ResourceKind.NETWORK_CONTAINER: NetworkContainerSpec,
    ResourceKind.NETWORK_PEERING: NetworkPeeringSpec,
    ResourceKind.SEARCH_INDEX: SearchIndexSpec,
    ResourceKind.VPC_ENDPOINT: VPCEndpointSpec,
    ResourceKind.ALERT_CONFIGURATION: AlertConfigurationSpec,
    ResourceKind.ENCRYPTION_AT_REST: EncryptionAtRestSpec,
}


def get_spec_class(kind: str) -> type[SpecModel]:
    """Get the spec class for a manifest kind.

    Raises:
        ValueError: If kind is not recognized.
    """
    try:
        return SPEC_MODELS[ResourceKind(kind)]
    except ValueError:
        valid_kinds = [k.value for k in SPEC_MODELS]
        raise ValueError(f"Unknown kind '{kind}'. Valid kinds: {valid_kinds}") from None


# =============================================================================
# Identity and resources
# =============================================================================


ENCRYPTION_IDENTITY_NAME = "encryptionAtRest"


@dataclass(frozen=True)
class ProjectRef:
    """A project's server id together with its name."""

    id: str
    name: str


@dataclass(frozen=True, order=True)
class Identity:
    """``(kind, parent, name)`` tuple pairing desired with live resources."""

    kind: ResourceKind
    parent: str
    name: str

    def __str__(self) -> str:
        if self.parent:
            return f"{self.kind.value}/{self.parent}/{self.name}"
        return f"{self.kind.value}/{self.name}"


def canonical_region(provider: CloudProvider, region: str) -> str:
    """AWS regions in the lowercase form the API returns (``us-east-1``)."""
    if provider == CloudProvider.AWS:
        return region.lower().replace("_", "-")
    return region


def identity_of(kind: ResourceKind, metadata: ResourceMetadata, spec: SpecModel) -> Identity:
    """Compute the stable identity of a resource."""
    if isinstance(spec, ProjectSpec):
        return Identity(kind, "", spec.name)

    if not isinstance(spec, ProjectScopedSpec):
        raise TypeError(f"no identity rule for {type(spec).__name__}")
    parent = spec.project_name

    if isinstance(spec, ClusterSpec):
        name = metadata.name
    elif isinstance(spec, DatabaseUserSpec):
        name = f"{spec.auth_database}/{spec.username}"
    elif isinstance(spec, DatabaseRoleSpec):
        name = f"{spec.database_name}/{spec.role_name}"
    elif isinstance(spec, NetworkAccessSpec):
        name = spec.entry
    elif isinstance(spec, NetworkContainerSpec):
        name = f"{spec.provider.value}:{spec.cidr_block}"
    elif isinstance(spec, NetworkPeeringSpec):
        name = f"{spec.provider.value}:{spec.peer_name}"
    elif isinstance(spec, SearchIndexSpec):
        parent = "/".join(
            (spec.project_name, spec.cluster_name, spec.database_name, spec.collection_name)
        )
        name = spec.index_name
    elif isinstance(spec, VPCEndpointSpec):
        name = f"{spec.cloud_provider.value}:{canonical_region(spec.cloud_provider, spec.region)}"
    elif isinstance(spec, AlertConfigurationSpec):
        name = f"{spec.event_type_name}:{spec.content_key()}"
    elif isinstance(spec, EncryptionAtRestSpec):
        name = ENCRYPTION_IDENTITY_NAME
    else:
        raise TypeError(f"no identity rule for {type(spec).__name__}")
    return Identity(kind, parent, name)


@dataclass
class Resource:
    """A desired or live resource.

    ``resource_id`` is the server-assigned id (None until created); ``source``
    names where a desired resource came from (file and document path).
    """

    kind: ResourceKind
    metadata: ResourceMetadata
    spec: SpecModel
    resource_id: str | None = None
    source: str = ""
    api_version: str = DEFAULT_API_VERSION
    attributes: dict[str, Any] = field(default_factory=dict)

    @cached_property
    def identity(self) -> Identity:
        return identity_of(self.kind, self.metadata, self.spec)

    @property
    def name(self) -> str:
        return self.identity.name

    @property
    def project_name(self) -> str:
        if isinstance(self.spec, ProjectSpec):
            return self.spec.name
        return getattr(self.spec, "project_name", "")

    @property
    def is_preserved(self) -> bool:
        return self.metadata.labels.get(PRESERVE_LABEL, "").lower() == "true"

    @property
    def is_retained(self) -> bool:
        return self.metadata.deletion_policy == DeletionPolicy.RETAIN

    def spec_data(self, reveal_secrets: bool = False) -> dict[str, Any]:
        return self.spec.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            context={"reveal_secrets": reveal_secrets},
        )

    def to_manifest(self, reveal_secrets: bool = False) -> dict[str, Any]:
        """Render as a single-resource manifest mapping."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind.value,
            "metadata": self.metadata.model_dump(
                mode="json", by_alias=True, exclude_defaults=True
            ),
            "spec": self.spec_data(reveal_secrets=reveal_secrets),
        }


def make_resource(
    kind: ResourceKind,
    name: str,
    spec: SpecModel,
    *,
    resource_id: str | None = None,
    labels: dict[str, str] | None = None,
    attributes: dict[str, Any] | None = None,
) -> Resource:
    """Convenience constructor used for live resources built from API payloads."""
    return Resource(
        kind=kind,
        metadata=ResourceMetadata(name=name, labels=labels or {}),
        spec=spec,
        resource_id=resource_id,
        attributes=attributes or {},
    )
