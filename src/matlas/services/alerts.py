"""Alert configuration service."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from ..atlas_api import path_segment
from ..masking import Secret
from ..models import (
    REQUIRED_NOTIFICATION_FIELDS,
    AlertConfigurationSpec,
    AlertMatcher,
    AlertNotification,
    GeneralThreshold,
    MetricThreshold,
    NotificationType,
    ProjectRef,
    Resource,
    ResourceKind,
    make_resource,
)
from ..validation import require
from .base import AtlasService

# Notification fields the API accepts but never returns in clear text
SECRET_NOTIFICATION_FIELDS = (
    "api_token",
    "service_key",
    "ops_genie_api_key",
    "datadog_api_key",
    "microsoft_teams_webhook_url",
    "webhook_secret",
)


def _known(model: type[BaseModel], item: dict[str, Any]) -> dict[str, Any]:
    """Keep only the keys ``model`` declares, by alias or by name."""
    names = {info.alias or name for name, info in model.model_fields.items()}
    names.update(model.model_fields)
    return {k: v for k, v in item.items() if k in names and v is not None}


def notification_from_api(item: dict[str, Any]) -> AlertNotification:
    data = _known(AlertNotification, item)
    type_name = NotificationType(item["typeName"])
    for name in SECRET_NOTIFICATION_FIELDS:
        alias = AlertNotification.model_fields[name].alias or name
        if alias in data or name in REQUIRED_NOTIFICATION_FIELDS[type_name]:
            data.pop(alias, None)
            data[name] = Secret.masked()
    return AlertNotification.model_validate(data)


def notification_to_api(notification: AlertNotification) -> dict[str, Any]:
    """Serialize a notification, leaving out secrets whose value is unknown."""
    body = notification.model_dump(
        mode="json", by_alias=True, exclude_none=True, context={"reveal_secrets": True}
    )
    for name in SECRET_NOTIFICATION_FIELDS:
        value = getattr(notification, name)
        if isinstance(value, Secret) and value.is_masked:
            body.pop(AlertNotification.model_fields[name].alias or name, None)
    return body


def alert_to_api(spec: AlertConfigurationSpec) -> dict[str, Any]:
    body: dict[str, Any] = {
        "eventTypeName": spec.event_type_name,
        "enabled": spec.enabled,
        "matchers": [m.model_dump(mode="json", by_alias=True) for m in spec.matchers],
        "notifications": [notification_to_api(n) for n in spec.notifications],
    }
    if spec.metric_threshold is not None:
        body["metricThreshold"] = spec.metric_threshold.model_dump(
            mode="json", by_alias=True, exclude_none=True
        )
    if spec.threshold is not None:
        body["threshold"] = spec.threshold.model_dump(mode="json", by_alias=True, exclude_none=True)
    return body


def alert_from_api(project: ProjectRef, item: dict[str, Any]) -> Resource:
    metric = item.get("metricThreshold")
    threshold = item.get("threshold")
    spec = AlertConfigurationSpec(
        project_name=project.name,
        enabled=bool(item.get("enabled", True)),
        event_type_name=item["eventTypeName"],
        matchers=[
            AlertMatcher.model_validate(_known(AlertMatcher, m))
            for m in item.get("matchers") or []
        ],
        notifications=[notification_from_api(n) for n in item.get("notifications") or []],
        metric_threshold=MetricThreshold.model_validate(_known(MetricThreshold, metric))
        if metric
        else None,
        threshold=GeneralThreshold.model_validate(_known(GeneralThreshold, threshold))
        if threshold and not metric
        else None,
    )
    return make_resource(
        ResourceKind.ALERT_CONFIGURATION,
        f"{spec.event_type_name}:{spec.content_key()}",
        spec,
        resource_id=item.get("id"),
    )


class AlertConfigurationService(AtlasService):
    """Alert configurations, addressed by server id."""

    def _alert_path(self, project: ProjectRef, alert_id: str) -> str:
        require(alert_id=alert_id)
        return self._group_path(project, f"/alertConfigs/{path_segment(alert_id)}")

    async def list(self, project: ProjectRef) -> list[Resource]:
        path = self._group_path(project, "/alertConfigs")
        items = await self._call(lambda: self.api.list_all(path), "list alert configurations")
        return [alert_from_api(project, i) for i in items]

    async def get(self, project: ProjectRef, alert_id: str) -> Resource:
        path = self._alert_path(project, alert_id)
        item = await self._call(lambda: self.api.get(path), "get alert configuration")
        return alert_from_api(project, item)

    async def create(self, project: ProjectRef, spec: AlertConfigurationSpec) -> Resource:
        path = self._group_path(project, "/alertConfigs")
        body = alert_to_api(spec)
        item = await self._call(lambda: self.api.post(path, body), "create alert configuration")
        return alert_from_api(project, item)

    async def update(
        self, project: ProjectRef, alert_id: str, spec: AlertConfigurationSpec
    ) -> Resource:
        """Replace an alert configuration in full (the endpoint is a PUT)."""
        path = self._alert_path(project, alert_id)
        body = alert_to_api(spec)
        item = await self._call(lambda: self.api.put(path, body), "update alert configuration")
        return alert_from_api(project, item)

    async def delete(self, project: ProjectRef, alert_id: str) -> None:
        path = self._alert_path(project, alert_id)
        await self._call(lambda: self.api.delete(path), "delete alert configuration")
