"""Encryption at rest (customer key management) service.

A project has exactly one encryption configuration. It "exists" when at
least one provider is enabled; deleting it disables every enabled provider.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from ..masking import Secret
from ..models import (
    ENCRYPTION_IDENTITY_NAME,
    AwsKmsConfig,
    AzureKeyVaultConfig,
    EncryptionAtRestSpec,
    GoogleCloudKmsConfig,
    ProjectRef,
    Resource,
    ResourceKind,
    make_resource,
)
from .base import AtlasService

# API key -> (model, secret fields the API never returns)
PROVIDERS: dict[str, tuple[type[BaseModel], tuple[str, ...]]] = {
    "awsKms": (AwsKmsConfig, ("secret_access_key",)),
    "azureKeyVault": (AzureKeyVaultConfig, ("secret",)),
    "googleCloudKms": (GoogleCloudKmsConfig, ("service_account_key",)),
}


def _provider_from_api(key: str, data: dict[str, Any]) -> BaseModel:
    model, secrets = PROVIDERS[key]
    fields = model.model_fields
    known = {info.alias or name for name, info in fields.items()}
    values: dict[str, Any] = {k: v for k, v in data.items() if k in known and v is not None}
    for name in secrets:
        values.pop(fields[name].alias or name, None)
    if key == "awsKms" and values.get("accessKeyId") and not values.get("roleId"):
        values["secretAccessKey"] = Secret.masked()
    elif key == "azureKeyVault" and values.get("enabled"):
        values["secret"] = Secret.masked()
    elif key == "googleCloudKms" and values.get("enabled"):
        values["serviceAccountKey"] = Secret.masked()
    if key == "awsKms" and values.get("roleId"):
        values.pop("accessKeyId", None)
    return model.model_validate(values)


def encryption_from_api(project: ProjectRef, item: dict[str, Any]) -> Resource | None:
    """Map the project's encryption settings; None when no provider is enabled."""
    configs = {
        key: _provider_from_api(key, item[key])
        for key in PROVIDERS
        if isinstance(item.get(key), dict) and item[key].get("enabled")
    }
    if not configs:
        return None
    spec = EncryptionAtRestSpec(
        project_name=project.name,
        aws_kms=configs.get("awsKms"),
        azure_key_vault=configs.get("azureKeyVault"),
        google_cloud_kms=configs.get("googleCloudKms"),
    )
    return make_resource(
        ResourceKind.ENCRYPTION_AT_REST,
        ENCRYPTION_IDENTITY_NAME,
        spec,
        resource_id=project.id,
    )


def _provider_to_api(config: BaseModel) -> dict[str, Any]:
    body = config.model_dump(
        mode="json", by_alias=True, exclude_none=True, context={"reveal_secrets": True}
    )
    for name, info in type(config).model_fields.items():
        value = getattr(config, name)
        if isinstance(value, Secret) and value.is_masked:
            body.pop(info.alias or name, None)
    if isinstance(config, AwsKmsConfig) and config.role_id:
        body.pop("accessKeyId", None)
        body.pop("secretAccessKey", None)
    return body


def encryption_to_api(spec: EncryptionAtRestSpec) -> dict[str, Any]:
    body: dict[str, Any] = {}
    if spec.aws_kms is not None:
        body["awsKms"] = _provider_to_api(spec.aws_kms)
    if spec.azure_key_vault is not None:
        body["azureKeyVault"] = _provider_to_api(spec.azure_key_vault)
    if spec.google_cloud_kms is not None:
        body["googleCloudKms"] = _provider_to_api(spec.google_cloud_kms)
    return body


class EncryptionService(AtlasService):
    """Singleton encryption settings of a project."""

    async def get(self, project: ProjectRef) -> Resource | None:
        path = self._group_path(project, "/encryptionAtRest")
        item = await self._call(lambda: self.api.get(path), "get encryption at rest")
        return encryption_from_api(project, item or {})

    async def update(self, project: ProjectRef, spec: EncryptionAtRestSpec) -> Resource | None:
        path = self._group_path(project, "/encryptionAtRest")
        body = encryption_to_api(spec)
        item = await self._call(lambda: self.api.patch(path, body), "update encryption at rest")
        return encryption_from_api(project, item or {})

    async def disable(self, project: ProjectRef) -> None:
        """Disable every provider that is currently enabled."""
        path = self._group_path(project, "/encryptionAtRest")
        current = await self._call(lambda: self.api.get(path), "get encryption at rest")
        body = {
            key: {"enabled": False}
            for key in PROVIDERS
            if isinstance((current or {}).get(key), dict) and current[key].get("enabled")
        }
        if not body:
            return
        await self._call(lambda: self.api.patch(path, body), "disable encryption at rest")
