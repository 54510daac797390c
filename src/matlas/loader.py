"""Desired-state loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.

Accepted YAML shapes (several may share one file as ``---`` documents):
- a single resource manifest (``apiVersion``, ``kind``, ``metadata``, ``spec``)
- an ``ApplyDocument`` whose ``resources`` list holds manifests
- a ``DiscoveredProject`` snapshot, converted to an ApplyDocument first

``${VAR}`` references are expanded from the environment before parsing
(see :mod:`matlas.template`). Every problem found is reported at once, each
line prefixed with the document path and kind it came from.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .discovery import discovered_to_apply
from .errors import ValidationError
from .models import (
    ApplyDocument,
    DatabaseUserSpec,
    DocumentKind,
    Identity,
    ProjectScopedSpec,
    Resource,
    ResourceKind,
    ResourceManifest,
    ScopeType,
    SearchIndexSpec,
    get_spec_class,
)
from .template import substitute_env
from .validation import validate_cluster_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reference:
    """``source`` needs ``target`` to exist, either desired or live."""

    source: Identity
    target: Identity
    field: str


@dataclass
class DesiredState:
    resources: list[Resource] = field(default_factory=list)
    references: list[Reference] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def by_identity(self) -> dict[Identity, Resource]:
        return {r.identity: r for r in self.resources}

    def project_names(self) -> set[str]:
        return {r.project_name for r in self.resources if r.project_name}

    def extend(self, other: DesiredState) -> None:
        self.resources.extend(other.resources)
        self.references.extend(other.references)
        self.warnings.extend(other.warnings)


def format_validation_error(prefix: str, error: PydanticValidationError) -> list[str]:
    """Flatten a pydantic error into ``prefix.loc: message`` lines."""
    lines = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        msg = item["msg"].removeprefix("Value error, ")
        lines.append(f"{prefix}.{loc}: {msg}" if loc else f"{prefix}: {msg}")
    return lines


def read_manifest_text(path: Path) -> str:
    """Read ``path`` as UTF-8 text.

    Raises:
        ValidationError: If the file is missing, too large, or unreadable.
    """
    if not path.exists():
        raise ValidationError(f"Manifest file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ValidationError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ValidationError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError(f"Failed to read manifest file {path}: {e}") from e


def parse_yaml(content: str, source: str) -> list[Any]:
    try:
        return [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in {source}: {e}") from e


def render_documents(
    content: str,
    source: str,
    strict_env: bool = False,
    env: Mapping[str, str] | None = None,
) -> tuple[list[Any], list[str]]:
    """Expand ``${VAR}`` references, then parse; returns documents and warnings."""
    rendered = substitute_env(content, env=env, strict=strict_env, source=source)
    return parse_yaml(rendered.content, source), rendered.problems


def load_file(
    path: str | Path,
    strict_env: bool = False,
    env: Mapping[str, str] | None = None,
) -> DesiredState:
    path = Path(path)
    state = load_files([path], strict_env=strict_env, env=env)
    logger.info(
        "Loaded desired state",
        extra={"path": str(path), "resources": len(state.resources)},
    )
    return state


def load_files(
    paths: list[str | Path],
    strict_env: bool = False,
    env: Mapping[str, str] | None = None,
) -> DesiredState:
    """Load several files as one desired state (identities must stay unique)."""
    documents: list[tuple[str, Any]] = []
    warnings: list[str] = []
    for path in paths:
        docs, problems = render_documents(
            read_manifest_text(Path(path)), str(path), strict_env, env
        )
        documents.extend(_sources(str(path), docs))
        warnings.extend(problems)
    state = _load(documents)
    state.warnings[:0] = warnings
    return state


def load_text(
    content: str,
    source: str = "<string>",
    strict_env: bool = False,
    env: Mapping[str, str] | None = None,
) -> DesiredState:
    documents, warnings = render_documents(content, source, strict_env, env)
    state = load_documents(documents, source)
    state.warnings[:0] = warnings
    return state


def load_documents(documents: list[Any], source: str) -> DesiredState:
    return _load(_sources(source, documents))


def _sources(source: str, documents: list[Any]) -> list[tuple[str, Any]]:
    if len(documents) == 1:
        return [(f"{source}#", documents[0])]
    return [(f"{source}#documents[{i}].", doc) for i, doc in enumerate(documents)]


def _load(documents: list[tuple[str, Any]]) -> DesiredState:
    errors: list[str] = []
    state = DesiredState()

    for prefix, document in documents:
        for location, manifest in _expand(prefix, document, errors):
            resource = _decode(location, manifest, errors)
            if resource is not None:
                state.resources.append(resource)

    _check_duplicates(state.resources, errors)
    if errors:
        raise ValidationError(
            "Validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        )

    for resource in state.resources:
        state.references.extend(_references(resource))
        warning = _secret_warning(resource)
        if warning:
            logger.warning(warning, extra={"source": resource.source})
            state.warnings.append(warning)
    return state


def _expand(prefix: str, document: Any, errors: list[str]) -> list[tuple[str, dict[str, Any]]]:
    """Unpack one YAML document into ``(location, manifest)`` pairs."""
    root = prefix.rstrip(".#") or prefix
    if not isinstance(document, dict):
        errors.append(f"{root}: document must be a YAML mapping")
        return []

    kind = document.get("kind")
    if kind == DocumentKind.DISCOVERED_PROJECT.value:
        try:
            document = discovered_to_apply(document)
        except ValueError as e:
            errors.append(f"{root}: {e}")
            return []
        kind = document["kind"]

    if kind != DocumentKind.APPLY_DOCUMENT.value:
        return [(prefix.rstrip("."), document)]

    try:
        container = ApplyDocument.model_validate(document)
    except PydanticValidationError as e:
        errors.extend(format_validation_error(f"{root} (ApplyDocument)", e))
        return []
    return [(f"{prefix}resources[{i}]", item) for i, item in enumerate(container.resources)]


def _decode(location: str, manifest: Any, errors: list[str]) -> Resource | None:
    location = location.rstrip("#")
    if not isinstance(manifest, dict):
        errors.append(f"{location}: manifest must be a mapping")
        return None

    seen_kind = manifest.get("kind", "<missing>")
    prefix = f"{location} ({seen_kind})"
    try:
        envelope = ResourceManifest.model_validate(manifest)
    except PydanticValidationError as e:
        errors.extend(format_validation_error(prefix, e))
        return None

    try:
        spec_class = get_spec_class(envelope.kind)
    except ValueError as e:
        errors.append(f"{prefix}.kind: {e}")
        return None

    try:
        spec = spec_class.model_validate(envelope.spec)
    except PydanticValidationError as e:
        errors.extend(format_validation_error(f"{prefix}.spec", e))
        return None

    kind = ResourceKind(envelope.kind)
    if kind == ResourceKind.CLUSTER:
        try:
            validate_cluster_name(envelope.metadata.name)
        except ValueError as e:
            errors.append(f"{prefix}.metadata.name: {e}")
            return None

    return Resource(
        kind=kind,
        metadata=envelope.metadata,
        spec=spec,
        source=location,
        api_version=envelope.api_version,
    )


def _check_duplicates(resources: list[Resource], errors: list[str]) -> None:
    first_seen: dict[Identity, str] = {}
    for resource in resources:
        identity = resource.identity
        if identity in first_seen:
            errors.append(
                f"{resource.source}: duplicate resource {identity} "
                f"(first defined at {first_seen[identity]})"
            )
        else:
            first_seen[identity] = resource.source


def _references(resource: Resource) -> list[Reference]:
    spec = resource.spec
    if not isinstance(spec, ProjectScopedSpec):
        return []
    source = resource.identity
    project = spec.project_name
    refs = [Reference(source, Identity(ResourceKind.PROJECT, "", project), "spec.projectName")]
    if isinstance(spec, DatabaseUserSpec):
        refs.extend(
            Reference(source, Identity(ResourceKind.CLUSTER, project, scope.name), "spec.scopes")
            for scope in spec.scopes
            if scope.type == ScopeType.CLUSTER
        )
    elif isinstance(spec, SearchIndexSpec):
        refs.append(
            Reference(
                source,
                Identity(ResourceKind.CLUSTER, project, spec.cluster_name),
                "spec.clusterName",
            )
        )
    return refs


def _secret_warning(resource: Resource) -> str | None:
    spec = resource.spec
    if isinstance(spec, DatabaseUserSpec) and (spec.password is None or spec.password.is_masked):
        return (
            f"{resource.identity} has no password; it can be updated but not created"
        )
    return None
