"""Semantic normalization and field-level diffs between desired and live specs.

The admin API returns values that differ syntactically from what a user
writes but mean the same thing. Comparing raw payloads would report drift
on every plan, so each field is normalized before comparison.

COMMON FALSE POSITIVES HANDLED:
1. Empty tags/comment vs missing
2. Region spelling (``us-east-1`` vs ``US_EAST_1``)
3. Role, scope, matcher and notification order
4. Write-only secrets that the API never returns
5. Search index definitions with defaults filled in server-side

Only fields present in the desired manifest are compared; fields the user
left unset are adopted from live state.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .masking import MASK
from .models import Resource, SearchIndexSpec

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # Empty equivalence: [], {}, "", null, missing are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Case normalization for enums/strings
    CASE_INSENSITIVE = "case_insensitive"

    # Region names: lowercase-dashed and uppercase-underscored are equivalent
    REGION_NAME = "region_name"

    # Array order independence
    ARRAY_UNORDERED = "array_unordered"

    # Default value equivalence
    DEFAULT_VALUE = "default_value"

    # Nested opaque documents compared by canonical JSON
    CANONICAL_JSON = "canonical_json"


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        kind: Resource kind to match (``*`` for any)
        path_pattern: Dotted spec path pattern (supports ``*`` and ``**``)
        normalization_type: Type of normalization to apply
        params: Additional parameters for the normalization
        reason: Human-readable explanation
    """

    kind: str
    path_pattern: str
    normalization_type: NormalizationType
    params: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    def matches(self, kind: str, path: str) -> bool:
        if self.kind != "*" and self.kind.lower() != kind.lower():
            return False
        return self.path_pattern == "*" or _glob_match(path.lower(), self.path_pattern.lower())


def _glob_match(value: str, pattern: str) -> bool:
    """Glob matching where ``*`` stays within a segment and ``**`` spans segments."""
    regex_pattern = "^"
    i = 0
    while i < len(pattern):
        if pattern[i:i + 2] == "**":
            regex_pattern += ".*"
            i += 2
        elif pattern[i] == "*":
            regex_pattern += "[^.]*"
            i += 1
        else:
            regex_pattern += re.escape(pattern[i])
            i += 1
    regex_pattern += "$"
    return bool(re.match(regex_pattern, value))


DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    NormalizationRule(
        kind="*",
        path_pattern="tags",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty tags equal missing tags",
    ),
    NormalizationRule(
        kind="NetworkAccess",
        path_pattern="comment",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty comment equals missing comment",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="region",
        normalization_type=NormalizationType.REGION_NAME,
        reason="Regions are accepted in either spelling",
    ),
    NormalizationRule(
        kind="Cluster",
        path_pattern="replicationSpecs.**regionName",
        normalization_type=NormalizationType.REGION_NAME,
        reason="Regions are accepted in either spelling",
    ),
    NormalizationRule(
        kind="Cluster",
        path_pattern="mongodbVersion",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Version labels may differ in case",
    ),
    NormalizationRule(
        kind="DatabaseUser",
        path_pattern="roles",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Role grants are a set",
    ),
    NormalizationRule(
        kind="DatabaseUser",
        path_pattern="scopes",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Scopes are a set",
    ),
    NormalizationRule(
        kind="DatabaseRole",
        path_pattern="privileges",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Privileges are a set",
    ),
    NormalizationRule(
        kind="DatabaseRole",
        path_pattern="inheritedRoles",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Inherited roles are a set",
    ),
    NormalizationRule(
        kind="AlertConfiguration",
        path_pattern="matchers",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Matchers are a set",
    ),
    NormalizationRule(
        kind="AlertConfiguration",
        path_pattern="notifications",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Notifications are a set",
    ),
    NormalizationRule(
        kind="AlertConfiguration",
        path_pattern="enabled",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": True},
        reason="Alerts are enabled unless disabled",
    ),
    NormalizationRule(
        kind="SearchIndex",
        path_pattern="definition",
        normalization_type=NormalizationType.CANONICAL_JSON,
        reason="Definitions are compared structurally",
    ),
]


class DiffNormalizer:
    """Normalizes spec values to decide semantic equality."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)

    def normalize_value(self, value: Any, kind: str, path: str) -> Any:
        normalized = _strip_secrets(value)
        for rule in self._rules:
            if rule.matches(kind, path):
                normalized = self._apply_normalization(normalized, rule)
        return normalized

    def _apply_normalization(self, value: Any, rule: NormalizationRule) -> Any:
        match rule.normalization_type:
            case NormalizationType.EMPTY_EQUIVALENCE:
                return None if value in (None, "", [], {}) else value
            case NormalizationType.CASE_INSENSITIVE:
                return value.lower() if isinstance(value, str) else value
            case NormalizationType.REGION_NAME:
                return value.upper().replace("-", "_") if isinstance(value, str) else value
            case NormalizationType.ARRAY_UNORDERED:
                if isinstance(value, list):
                    return sorted(value, key=_canonical)
                return value
            case NormalizationType.DEFAULT_VALUE:
                return rule.params.get("default") if value is None else value
            case NormalizationType.CANONICAL_JSON:
                return _canonical(value)
            case _:
                return value

    def are_equivalent(self, before: Any, after: Any, kind: str, path: str) -> bool:
        # Write-only values cannot be compared once masked
        if before == MASK or after == MASK:
            return True
        return self.normalize_value(before, kind, path) == self.normalize_value(after, kind, path)


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _strip_secrets(value: Any) -> Any:
    """Drop masked secrets nested in lists or mappings (e.g. notification tokens)."""
    if isinstance(value, dict):
        return {k: _strip_secrets(v) for k, v in value.items() if v != MASK}
    if isinstance(value, list):
        return [_strip_secrets(v) for v in value]
    return value


# =============================================================================
# Semantic views and field diffs
# =============================================================================


def semantic_view(resource: Resource, only_set: bool = False) -> dict[str, Any]:
    """Spec as a JSON mapping ready for comparison.

    Args:
        resource: Desired or live resource.
        only_set: Keep only fields the manifest set explicitly (desired side).
    """
    data = resource.spec.model_dump(
        mode="json",
        by_alias=True,
        exclude_none=True,
        exclude_unset=only_set,
        context={"reveal_secrets": False},
    )
    if isinstance(resource.spec, SearchIndexSpec):
        data.pop("analyzers", None)
        data.pop("synonyms", None)
        data["definition"] = resource.spec.effective_definition()
        data["indexType"] = resource.spec.index_type.value
    return data


@dataclass(frozen=True)
class FieldChange:
    """RFC-6902 style change; ``path`` is a JSON pointer under ``/spec``."""

    op: str
    path: str
    before: Any = None
    after: Any = None

    @property
    def field(self) -> str:
        """Top-level spec field the change belongs to."""
        return self.path.split("/")[2] if self.path.count("/") >= 2 else ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"op": self.op, "path": self.path}
        if self.op in ("replace", "remove"):
            data["from"] = self.before
        if self.op in ("replace", "add"):
            data["value"] = self.after
        return data


def diff_resources(
    desired: Resource,
    live: Resource,
    normalizer: DiffNormalizer | None = None,
) -> list[FieldChange]:
    """Field-level changes needed to move ``live`` to ``desired``."""
    normalizer = normalizer or DiffNormalizer()
    changes: list[FieldChange] = []
    _diff_mapping(
        semantic_view(desired, only_set=True),
        semantic_view(live),
        desired.kind.value,
        "",
        normalizer,
        changes,
    )
    if changes:
        logger.debug(
            "Field differences found",
            extra={"identity": str(desired.identity), "changes": len(changes)},
        )
    return changes


def create_changes(resource: Resource) -> list[FieldChange]:
    return [
        FieldChange("add", f"/spec/{key}", after=value)
        for key, value in sorted(semantic_view(resource, only_set=True).items())
    ]


def delete_changes(resource: Resource) -> list[FieldChange]:
    return [
        FieldChange("remove", f"/spec/{key}", before=value)
        for key, value in sorted(semantic_view(resource).items())
    ]


def _pointer(path: str) -> str:
    return "/spec/" + path.replace("~", "~0").replace(".", "/")


# Free-form maps and opaque documents: compared whole, never projected
OPAQUE_FIELDS = frozenset({"tags", "definition"})


def _template(items: list[Any]) -> Any:
    """Union of the keys set across desired list items."""
    merged: dict[str, Any] = {}
    for item in items:
        if not isinstance(item, dict):
            return None
        for key, value in item.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = _template([merged[key], value])
            elif isinstance(value, list) and isinstance(merged.get(key), list):
                merged[key] = merged[key] + value
            else:
                merged.setdefault(key, value)
    return merged


def _project(have: Any, want: Any) -> Any:
    """Restrict ``have`` to the keys ``want`` manages, recursively."""
    if isinstance(have, dict) and isinstance(want, dict):
        return {k: _project(v, want[k]) for k, v in have.items() if k in want}
    if isinstance(have, list) and isinstance(want, list) and want:
        template = _template(want)
        if template is None:
            return have
        return [_project(item, template) for item in have]
    return have


def _diff_mapping(
    desired: dict[str, Any],
    live: dict[str, Any],
    kind: str,
    prefix: str,
    normalizer: DiffNormalizer,
    changes: list[FieldChange],
) -> None:
    for key in sorted(desired):
        path = f"{prefix}{key}"
        want = desired[key]
        have = live.get(key)
        opaque = path in OPAQUE_FIELDS
        if not opaque:
            have = _project(have, want)
        if normalizer.are_equivalent(have, want, kind, path):
            continue
        if key not in live or have is None:
            changes.append(FieldChange("add", _pointer(path), after=want))
        elif want in (None, "", [], {}):
            changes.append(FieldChange("remove", _pointer(path), before=have))
        elif isinstance(want, dict) and isinstance(have, dict) and not opaque:
            _diff_mapping(want, have, kind, f"{path}.", normalizer, changes)
        else:
            changes.append(FieldChange("replace", _pointer(path), before=have, after=want))
