"""Planner: pairs desired with live resources and emits an ordered plan.

For every identity ``(kind, parent, name)`` seen on either side:

- desired only: ``Create``
- both, semantically equal: ``NoOp``
- both, differing: ``Update`` when every differing field is mutable in
  place, otherwise ``Replace`` (delete then create)
- live only: ``Delete`` when pruning (or destroying), otherwise ``NoOp``

Destroy mode inverts the policy: resources named in the desired document
that exist live are deleted, everything else is left alone.

All validation, consistency and availability problems are collected and
raised together as a :class:`PlanError`; a partial plan is never returned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .dependency import (
    KIND_DEPENDENCIES,
    KIND_RANK,
    CyclicDependencyError,
    DependencyGraph,
    parse_dependency_ref,
)
from .errors import ConsistencyError, MatlasError, PlanError, UnavailableError, ValidationError
from .loader import DesiredState, Reference
from .models import (
    Identity,
    NetworkContainerSpec,
    NetworkPeeringSpec,
    Resource,
    ResourceKind,
    SearchIndexSpec,
)
from .normalize import (
    DiffNormalizer,
    FieldChange,
    create_changes,
    delete_changes,
    diff_resources,
)
from .validation import cidrs_overlap

logger = logging.getLogger(__name__)


class Verb(str, Enum):
    CREATE = "Create"
    UPDATE = "Update"
    REPLACE = "Replace"
    DELETE = "Delete"
    NOOP = "NoOp"


class PlanMode(str, Enum):
    RECONCILE = "reconcile"
    DESTROY = "destroy"


class NoOpReason(str, Enum):
    UNCHANGED = "unchanged"
    ADOPTED = "adopted"
    PRESERVED = "preserved"
    RETAINED = "retained"
    ABSENT = "absent"
    OUT_OF_SCOPE = "out-of-scope"


# Spec fields that can be changed in place; any other difference forces Replace
MUTABLE_FIELDS: dict[ResourceKind, frozenset[str]] = {
    ResourceKind.PROJECT: frozenset({"tags"}),
    ResourceKind.CLUSTER: frozenset(
        {
            "instanceSize",
            "diskSizeGB",
            "backupEnabled",
            "pitEnabled",
            "mongodbVersion",
            "replicationSpecs",
            "autoScaling",
            "tags",
        }
    ),
    ResourceKind.DATABASE_USER: frozenset({"password", "roles", "scopes"}),
    ResourceKind.DATABASE_ROLE: frozenset({"privileges", "inheritedRoles"}),
    ResourceKind.NETWORK_ACCESS: frozenset({"comment", "deleteAfterDate"}),
    ResourceKind.NETWORK_CONTAINER: frozenset({"region"}),
    ResourceKind.NETWORK_PEERING: frozenset(
        {
            "vpcId",
            "awsAccountId",
            "routeTableCidrBlock",
            "accepterRegionName",
            "gcpProjectId",
            "networkName",
            "azureDirectoryId",
            "azureSubscriptionId",
            "resourceGroupName",
            "vnetName",
        }
    ),
    ResourceKind.SEARCH_INDEX: frozenset({"definition"}),
    ResourceKind.VPC_ENDPOINT: frozenset(),
    ResourceKind.ALERT_CONFIGURATION: frozenset({"enabled", "notifications"}),
    ResourceKind.ENCRYPTION_AT_REST: frozenset({"awsKms", "azureKeyVault", "googleCloudKms"}),
}

# Replacing these loses data; refused unless destructive changes are allowed
DESTRUCTIVE_REPLACE_KINDS = frozenset({ResourceKind.PROJECT, ResourceKind.CLUSTER})


@dataclass
class Operation:
    """One planned change.

    ``from_state`` is the live resource (None for creates), ``to_state`` the
    desired one (None for deletes). ``snapshot`` is what a rollback would
    re-create after a delete.
    """

    id: str
    kind: ResourceKind
    name: str
    verb: Verb
    project_name: str
    from_state: Resource | None = None
    to_state: Resource | None = None
    deps: list[str] = field(default_factory=list)
    changes: list[FieldChange] = field(default_factory=list)
    reason: str = ""

    @property
    def resource(self) -> Resource:
        """The declared resource, or the live one when nothing is declared."""
        resource = self.to_state or self.from_state
        if resource is None:
            raise ValueError(f"operation {self.id or self.name!r} carries no resource")
        return resource

    @property
    def desired(self) -> Resource:
        if self.to_state is None:
            raise ValueError(f"{self.verb.value} of {self.name!r} has no desired state")
        return self.to_state

    @property
    def live(self) -> Resource:
        if self.from_state is None:
            raise ValueError(f"{self.verb.value} of {self.name!r} has no live state")
        return self.from_state

    @property
    def identity(self) -> Identity:
        return self.resource.identity

    @property
    def is_mutation(self) -> bool:
        return self.verb != Verb.NOOP

    @property
    def snapshot(self) -> Resource:
        # Declared resources carry write-only secrets the live view lacks
        return self.resource

    def to_dict(self, reveal_secrets: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "verb": self.verb.value,
            "deps": list(self.deps),
        }
        if self.reason:
            data["reason"] = self.reason
        if self.from_state is not None:
            data["fromState"] = self.from_state.spec_data(reveal_secrets)
        if self.to_state is not None and self.verb != Verb.DELETE:
            data["toState"] = self.to_state.spec_data(reveal_secrets)
        if self.changes:
            data["changes"] = [c.to_dict() for c in self.changes]
        return data


@dataclass
class Plan:
    mode: PlanMode
    operations: list[Operation] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        counts = {verb: 0 for verb in Verb}
        for op in self.operations:
            counts[op.verb] += 1
        return {
            "creates": counts[Verb.CREATE],
            "updates": counts[Verb.UPDATE],
            "deletes": counts[Verb.DELETE],
            "noops": counts[Verb.NOOP],
            "replaces": counts[Verb.REPLACE],
        }

    @property
    def has_changes(self) -> bool:
        return any(op.is_mutation for op in self.operations)

    @property
    def project_names(self) -> set[str]:
        return {op.project_name for op in self.operations if op.project_name}

    def get(self, op_id: str) -> Operation:
        for op in self.operations:
            if op.id == op_id:
                return op
        raise KeyError(op_id)

    def to_dict(self, reveal_secrets: bool = False) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "summary": self.summary,
            "operations": [op.to_dict(reveal_secrets) for op in self.operations],
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class PlanOptions:
    """Planner behavior.

    Attributes:
        mode: Reconcile toward desired state, or destroy what it names.
        prune: Delete live resources absent from desired state.
        preserve_existing: Never delete anything (every delete becomes NoOp).
        allow_destructive: Permit Replace of projects and clusters.
    """

    mode: PlanMode = PlanMode.RECONCILE
    prune: bool = False
    preserve_existing: bool = False
    allow_destructive: bool = False


class Planner:
    """Computes a deterministic plan from desired and live resources."""

    def __init__(
        self,
        options: PlanOptions | None = None,
        normalizer: DiffNormalizer | None = None,
    ) -> None:
        self._options = options or PlanOptions()
        self._normalizer = normalizer or DiffNormalizer()

    @property
    def options(self) -> PlanOptions:
        return self._options

    def plan(self, desired: DesiredState, live: list[Resource]) -> Plan:
        """Build the plan.

        Raises:
            PlanError: If any validation, consistency or availability check fails.
        """
        errors: list[MatlasError] = []
        plan = Plan(mode=self._options.mode, warnings=list(desired.warnings))

        desired_by_id = desired.by_identity()
        live_by_id = {r.identity: r for r in live}

        self._check_references(desired.references, desired_by_id, live_by_id, errors)

        operations: list[Operation] = []
        for identity in sorted(set(desired_by_id) | set(live_by_id), key=_identity_order):
            op = self._classify(desired_by_id.get(identity), live_by_id.get(identity), errors)
            if op.verb == Verb.DELETE:
                op = self._guard_delete(op, plan.warnings)
            operations.append(op)

        self._check_containers(operations, live, errors)
        self._check_project_deletes(operations, live, errors)

        ordered: list[Operation] = []
        if not errors:
            try:
                ordered = self._order(operations, desired_by_id, live_by_id, errors)
            except CyclicDependencyError as e:
                errors.append(e)

        if errors:
            logger.warning("Plan rejected", extra={"error_count": len(errors)})
            raise PlanError(errors)

        plan.operations = ordered
        logger.info("Plan computed", extra={"mode": plan.mode.value, **plan.summary})
        return plan

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    def _classify(
        self,
        desired: Resource | None,
        live: Resource | None,
        errors: list[MatlasError],
    ) -> Operation:
        resource = desired or live
        if resource is None:
            raise ValueError("an operation needs a desired or a live resource")
        op = Operation(
            id="",
            kind=resource.kind,
            name=resource.name,
            verb=Verb.NOOP,
            project_name=resource.project_name,
            from_state=live,
            to_state=desired,
        )

        if self._options.mode == PlanMode.DESTROY:
            if desired is not None and live is not None:
                op.verb = Verb.DELETE
                op.changes = delete_changes(live)
            else:
                reason = NoOpReason.ABSENT if live is None else NoOpReason.OUT_OF_SCOPE
                op.reason = reason.value
            return op

        if live is None:
            op.verb = Verb.CREATE
            op.changes = create_changes(resource)
            return op

        if desired is None:
            if self._options.prune:
                op.verb = Verb.DELETE
                op.changes = delete_changes(live)
            else:
                op.reason = NoOpReason.ADOPTED.value
            return op

        op.changes = diff_resources(desired, live, self._normalizer)
        if not op.changes:
            op.reason = NoOpReason.UNCHANGED.value
            return op

        immutable = sorted(
            {c.field for c in op.changes} - MUTABLE_FIELDS.get(resource.kind, frozenset())
        )
        if not immutable:
            op.verb = Verb.UPDATE
            return op

        op.verb = Verb.REPLACE
        if resource.kind in DESTRUCTIVE_REPLACE_KINDS and not self._options.allow_destructive:
            errors.append(
                ValidationError(
                    f"{resource.identity}: changing {', '.join(immutable)} requires replacing "
                    "the resource and destroys its data; rerun with --allow-destructive"
                )
            )
        return op

    def _guard_delete(self, op: Operation, warnings: list[str]) -> Operation:
        live = op.live
        declared = op.to_state
        reason = None
        if self._options.preserve_existing or live.is_preserved or (
            declared is not None and declared.is_preserved
        ):
            reason = NoOpReason.PRESERVED
        elif live.is_retained or (declared is not None and declared.is_retained):
            reason = NoOpReason.RETAINED
        if reason is None:
            return op

        message = f"{live.identity} is {reason.value}; skipping delete"
        logger.warning(
            "Skipping delete", extra={"identity": str(live.identity), "reason": reason.value}
        )
        warnings.append(message)
        op.verb = Verb.NOOP
        op.reason = reason.value
        op.changes = []
        return op

    # -------------------------------------------------------------------------
    # Consistency checks
    # -------------------------------------------------------------------------

    def _check_references(
        self,
        references: list[Reference],
        desired_by_id: dict[Identity, Resource],
        live_by_id: dict[Identity, Resource],
        errors: list[MatlasError],
    ) -> None:
        if self._options.mode == PlanMode.DESTROY:
            return
        for ref in references:
            if ref.target not in desired_by_id and ref.target not in live_by_id:
                errors.append(
                    UnavailableError(
                        f"{ref.source} references {ref.target} via {ref.field}, "
                        "which is neither declared nor present live"
                    )
                )

    def _check_containers(
        self,
        operations: list[Operation],
        live: list[Resource],
        errors: list[MatlasError],
    ) -> None:
        live_containers = [
            r for r in live if isinstance(r.spec, NetworkContainerSpec)
        ]
        new_containers = [
            op.to_state
            for op in operations
            if op.verb in (Verb.CREATE, Verb.REPLACE)
            and op.to_state is not None
            and isinstance(op.to_state.spec, NetworkContainerSpec)
        ]

        for i, existing in enumerate(live_containers):
            for other in live_containers[i + 1:]:
                if _same_project(existing, other) and _overlaps(existing, other):
                    errors.append(
                        ConsistencyError(
                            f"live containers {_container_ref(existing)} and "
                            f"{_container_ref(other)} have overlapping CIDR ranges"
                        )
                    )

        for i, container in enumerate(new_containers):
            for existing in live_containers:
                if existing.identity == container.identity:
                    continue
                if _same_project(container, existing) and _overlaps(container, existing):
                    errors.append(
                        ConsistencyError(
                            f"{container.identity} CIDR {container.spec.cidr_block} overlaps "
                            f"existing container {_container_ref(existing)}"
                        )
                    )
            for other in new_containers[i + 1:]:
                if _same_project(container, other) and _overlaps(container, other):
                    errors.append(
                        ConsistencyError(
                            f"{container.identity} overlaps {other.identity}"
                        )
                    )

    def _check_project_deletes(
        self,
        operations: list[Operation],
        live: list[Resource],
        errors: list[MatlasError],
    ) -> None:
        deleted = {op.identity for op in operations if op.verb == Verb.DELETE}
        for op in operations:
            if op.kind != ResourceKind.PROJECT or op.verb not in (Verb.DELETE, Verb.REPLACE):
                continue
            remaining = sorted(
                r.name
                for r in live
                if r.kind == ResourceKind.CLUSTER
                and r.project_name == op.project_name
                and r.identity not in deleted
            )
            if remaining:
                errors.append(
                    ConsistencyError(
                        f"Project {op.project_name} cannot be deleted while it has clusters: "
                        f"{', '.join(remaining)}"
                    )
                )

    # -------------------------------------------------------------------------
    # Ordering
    # -------------------------------------------------------------------------

    def _order(
        self,
        operations: list[Operation],
        desired_by_id: dict[Identity, Resource],
        live_by_id: dict[Identity, Resource],
        errors: list[MatlasError],
    ) -> list[Operation]:
        by_identity = {op.identity: op for op in operations}
        keys = {op.identity: str(op.identity) for op in operations}
        graph = DependencyGraph()
        for op in operations:
            graph.add_node(keys[op.identity])

        active = [op for op in operations if op.is_mutation]
        for op in active:
            for parent in self._parent_ops(op, active):
                if op.verb == Verb.DELETE and parent.verb == Verb.DELETE:
                    # Children go first when tearing down
                    graph.add_edge(keys[parent.identity], keys[op.identity])
                elif op.verb != Verb.DELETE and parent.verb != Verb.DELETE:
                    graph.add_edge(keys[op.identity], keys[parent.identity])

        for op in operations:
            declared = op.to_state
            if declared is None:
                continue
            for ref in declared.metadata.depends_on:
                targets = _resolve_dependency(ref, op, operations)
                if not targets:
                    if not _resolves_live(ref, op, live_by_id):
                        errors.append(
                            UnavailableError(
                                f"{op.identity} dependsOn {ref!r}, which matches no resource"
                            )
                        )
                    continue
                for target in targets:
                    if target.is_mutation and op.is_mutation:
                        graph.add_edge(keys[op.identity], keys[target.identity])

        rank = {
            keys[op.identity]: (
                _verb_phase(op),
                KIND_RANK[op.kind] if op.verb != Verb.DELETE else -KIND_RANK[op.kind],
                op.name,
                keys[op.identity],
            )
            for op in operations
        }
        ordered_keys = graph.topological_sort(sort_key=lambda k: rank[k])

        key_to_op = {keys[identity]: op for identity, op in by_identity.items()}
        ordered = [key_to_op[k] for k in ordered_keys]
        for index, op in enumerate(ordered, start=1):
            op.id = f"op-{index:03d}"
        for op in ordered:
            op.deps = sorted(
                key_to_op[dep].id for dep in graph.nodes[keys[op.identity]].depends_on
            )
        return ordered

    def _parent_ops(self, op: Operation, active: list[Operation]) -> list[Operation]:
        """Nearest active ops of parent kinds in the same project."""
        found: list[Operation] = []
        pending = list(KIND_DEPENDENCIES[op.kind])
        seen: set[ResourceKind] = set()
        while pending:
            kind = pending.pop(0)
            if kind in seen:
                continue
            seen.add(kind)
            matches = [
                other
                for other in active
                if other is not op
                and other.kind == kind
                and other.project_name == op.project_name
                and _related(op, other)
            ]
            if matches:
                found.extend(matches)
            else:
                pending.extend(KIND_DEPENDENCIES[kind])
        return found


def _identity_order(identity: Identity) -> tuple[int, str, str]:
    return (KIND_RANK[identity.kind], identity.parent, identity.name)


def _verb_phase(op: Operation) -> int:
    # Deletes drain before creates when nothing else constrains order
    return 0 if op.verb == Verb.DELETE else 1


def _related(child: Operation, parent: Operation) -> bool:
    """Narrow kind-level edges where the child names its parent."""
    spec = child.resource.spec
    if isinstance(spec, SearchIndexSpec) and parent.kind == ResourceKind.CLUSTER:
        return parent.name == spec.cluster_name
    if isinstance(spec, NetworkPeeringSpec) and parent.kind == ResourceKind.NETWORK_CONTAINER:
        return parent.name.startswith(f"{spec.provider.value}:")
    return True


def _resolve_dependency(ref: str, op: Operation, operations: list[Operation]) -> list[Operation]:
    kind, name = parse_dependency_ref(ref)
    return [
        other
        for other in operations
        if other is not op
        and other.project_name == op.project_name
        and other.name == name
        and (kind is None or other.kind == kind)
    ]


def _resolves_live(ref: str, op: Operation, live_by_id: dict[Identity, Resource]) -> bool:
    kind, name = parse_dependency_ref(ref)
    return any(
        r.name == name and r.project_name == op.project_name and (kind is None or r.kind == kind)
        for r in live_by_id.values()
    )


def _same_project(a: Resource, b: Resource) -> bool:
    return a.project_name == b.project_name


def _overlaps(a: Resource, b: Resource) -> bool:
    return cidrs_overlap(a.spec.cidr_block, b.spec.cidr_block)


def _container_ref(container: Resource) -> str:
    return f"{container.spec.cidr_block} (id {container.resource_id or 'unknown'})"
