"""Plan executor.

Runs planned operations on a bounded asyncio worker pool:

- an operation is dispatched only after every dependency succeeded
- a global semaphore caps running operations, per-kind semaphores cap
  each kind (projects one at a time, clusters three, the rest five)
- a failed operation blocks everything that depends on it, independent
  branches keep going
- cancelling the run aborts in-flight operations and skips queued ones
- with rollback enabled, the first failure stops dispatch and the
  operations that already succeeded are undone in reverse order

Retries live in the client; a handler's outcome is terminal here.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .cache import DiscoveryCache
from .config import DEFAULT_MAX_CONCURRENCY
from .errors import CancelledError, ConflictError, ExecutionError, MatlasError, UnsupportedError
from .handlers import OperationHandlers
from .models import PROJECT_ID_LABEL, Resource, ResourceKind
from .planner import Operation, Plan, Verb

logger = logging.getLogger(__name__)


class OpStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ABORTED = "Aborted"
    BLOCKED = "Blocked"
    SKIPPED = "Skipped"
    PLANNED_ONLY = "PlannedOnly"
    ROLLED_BACK = "RolledBack"


FAILURE_STATUSES = frozenset({OpStatus.FAILED, OpStatus.ABORTED, OpStatus.BLOCKED})

# Process exit codes
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CHANGES = 2
EXIT_PARTIAL = 3

DEFAULT_KIND_LIMITS: dict[ResourceKind, int] = {
    ResourceKind.PROJECT: 1,
    ResourceKind.CLUSTER: 3,
}
DEFAULT_KIND_LIMIT = 5

ApprovalCallback = Callable[[Plan], bool | Awaitable[bool]]


@dataclass
class OperationResult:
    """Outcome of one operation."""

    op: Operation
    status: OpStatus = OpStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: BaseException | None = None
    message: str = ""
    resource: Resource | None = None
    rollback_error: BaseException | None = None

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def start(self) -> None:
        self.status = OpStatus.RUNNING
        self.started_at = datetime.now(UTC)

    def finish(self, status: OpStatus, error: BaseException | None = None) -> None:
        self.status = status
        self.error = error
        self.finished_at = datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.op.id,
            "kind": self.op.kind.value,
            "name": self.op.name,
            "verb": self.op.verb.value,
            "status": self.status.value,
            "startedAt": _timestamp(self.started_at),
            "finishedAt": _timestamp(self.finished_at),
            "durationSeconds": round(self.duration_seconds, 3),
        }
        if self.error is not None:
            data["error"] = _error_dict(self.error)
        if self.message:
            data["message"] = self.message
        if self.rollback_error is not None:
            data["rollbackError"] = _error_dict(self.rollback_error)
        return data


def _timestamp(value: datetime | None) -> str | None:
    return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ") if value else None


def _error_dict(error: BaseException) -> dict[str, Any]:
    if isinstance(error, MatlasError):
        return error.to_dict()
    return {"kind": "Error", "message": str(error)}


@dataclass(frozen=True)
class ExecutionOptions:
    """Executor behavior.

    Attributes:
        dry_run: Record every operation as PlannedOnly without calling the API.
        auto_approve: Skip the approval callback.
        max_concurrency: Cap on operations running at once.
        kind_limits: Per-kind caps (kinds not listed use ``DEFAULT_KIND_LIMIT``).
        rollback_on_error: Undo applied operations after the first failure.
        preserve_existing: Treat Conflict on create as adopting the resource.
        timeout_seconds: Deadline for the whole run (None for no deadline).
    """

    dry_run: bool = False
    auto_approve: bool = False
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    kind_limits: dict[ResourceKind, int] = field(
        default_factory=lambda: dict(DEFAULT_KIND_LIMITS)
    )
    rollback_on_error: bool = False
    preserve_existing: bool = False
    timeout_seconds: float | None = None

    def limit_for(self, kind: ResourceKind) -> int:
        return min(self.kind_limits.get(kind, DEFAULT_KIND_LIMIT), self.max_concurrency)


@dataclass
class ExecutionReport:
    """Results in dispatch order, followed by never-dispatched operations."""

    plan: Plan
    results: list[OperationResult] = field(default_factory=list)
    dry_run: bool = False
    approved: bool = True
    cancelled: bool = False
    rolled_back: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def count(self, status: OpStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def counts(self) -> dict[str, int]:
        return {status.value: self.count(status) for status in OpStatus if self.count(status)}

    @property
    def failed(self) -> list[OperationResult]:
        return [r for r in self.results if r.status in FAILURE_STATUSES]

    @property
    def success(self) -> bool:
        return self.approved and not self.failed and not self.cancelled

    @property
    def exit_code(self) -> int:
        """EXIT_PARTIAL when some changes landed before a failure, else EXIT_OK or EXIT_ERROR."""
        if self.success:
            return EXIT_OK
        applied = any(
            (r.status == OpStatus.SUCCEEDED and r.op.is_mutation)
            or r.status == OpStatus.ROLLED_BACK
            for r in self.results
        )
        return EXIT_PARTIAL if applied else EXIT_ERROR

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.plan.summary,
            "statusCounts": self.counts,
            "dryRun": self.dry_run,
            "approved": self.approved,
            "cancelled": self.cancelled,
            "rolledBack": self.rolled_back,
            "startedAt": _timestamp(self.started_at),
            "finishedAt": _timestamp(self.finished_at),
            "durationSeconds": round(self.duration_seconds, 3),
            "operations": [r.to_dict() for r in self.results],
            "warnings": list(self.plan.warnings),
        }


class Executor:
    """Executes a plan with dependency ordering and bounded concurrency."""

    def __init__(
        self,
        handlers: OperationHandlers,
        options: ExecutionOptions | None = None,
        approve: ApprovalCallback | None = None,
        cache: DiscoveryCache | None = None,
    ) -> None:
        self._handlers = handlers
        self._options = options or ExecutionOptions()
        self._approve = approve
        self._cache = cache
        self._task: asyncio.Task[Any] | None = None
        self._cancel_requested = False
        self._halted = False

    def cancel(self) -> None:
        """Cancel the running execution; no new calls are issued afterwards."""
        self._cancel_requested = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def execute(self, plan: Plan) -> ExecutionReport:
        report = ExecutionReport(plan=plan, dry_run=self._options.dry_run)
        results = {op.id: OperationResult(op=op) for op in plan.operations}

        if self._options.dry_run:
            for result in results.values():
                result.status = OpStatus.PLANNED_ONLY
            return self._finish(report, list(results.values()))

        if plan.has_changes and not self._options.auto_approve:
            report.approved = await self._request_approval(plan)
            if not report.approved:
                logger.info("Plan not approved; nothing was applied")
                for result in results.values():
                    result.status = OpStatus.SKIPPED
                return self._finish(report, list(results.values()))

        order: list[str] = []
        self._task = asyncio.current_task()
        try:
            if self._options.timeout_seconds:
                await asyncio.wait_for(
                    self._run(plan, results, order, report),
                    timeout=self._options.timeout_seconds,
                )
            else:
                await self._run(plan, results, order, report)
        except asyncio.TimeoutError:
            logger.error(
                "Execution deadline exceeded",
                extra={"timeout_seconds": self._options.timeout_seconds},
            )
            report.cancelled = True
        except asyncio.CancelledError:
            report.cancelled = True
            if not self._cancel_requested:
                _mark_cancelled(results)
                self._finish(report, _ordered(plan, results, order))
                raise
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
        finally:
            self._task = None

        if report.cancelled:
            _mark_cancelled(results)
        return self._finish(report, _ordered(plan, results, order))

    async def _request_approval(self, plan: Plan) -> bool:
        if self._approve is None:
            logger.warning("No approval callback configured; refusing to apply")
            return False
        decision = self._approve(plan)
        if inspect.isawaitable(decision):
            decision = await decision
        return bool(decision)

    def _finish(self, report: ExecutionReport, results: list[OperationResult]) -> ExecutionReport:
        report.results = results
        report.finished_at = datetime.now(UTC)
        logger.info(
            "Execution finished",
            extra={
                "status_counts": report.counts,
                "duration_seconds": report.duration_seconds,
                "exit_code": report.exit_code,
            },
        )
        return report

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    async def _run(
        self,
        plan: Plan,
        results: dict[str, OperationResult],
        order: list[str],
        report: ExecutionReport,
    ) -> None:
        global_limit = asyncio.Semaphore(max(1, self._options.max_concurrency))
        kind_limits = {
            kind: asyncio.Semaphore(max(1, self._options.limit_for(kind))) for kind in ResourceKind
        }

        for op in plan.operations:
            if not op.is_mutation:
                now = datetime.now(UTC)
                results[op.id].started_at = now
                results[op.id].finish(OpStatus.SUCCEEDED)
                results[op.id].message = op.reason

        pending = [op for op in plan.operations if op.is_mutation]
        running: dict[asyncio.Task[None], Operation] = {}
        self._halted = False

        try:
            while pending or running:
                if not self._halted:
                    pending = self._block_dependents(pending, results)
                    ready = [
                        op
                        for op in pending
                        if all(results[d].status == OpStatus.SUCCEEDED for d in op.deps)
                    ]
                    for op in ready:
                        pending.remove(op)
                        task = asyncio.create_task(
                            self._worker(op, results[op.id], order, global_limit, kind_limits)
                        )
                        running[task] = op

                if not running:
                    break

                done, _ = await asyncio.wait(set(running), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    running.pop(task)

                if self._halted and pending:
                    logger.warning(
                        "Stopping dispatch after failure",
                        extra={"skipped": len(pending)},
                    )
                    for op in pending:
                        results[op.id].finish(OpStatus.SKIPPED)
                    pending = []
        except asyncio.CancelledError:
            for task in running:
                task.cancel()
            await asyncio.gather(*running, return_exceptions=True)
            raise

        if self._halted:
            await self._rollback(results, order, report)

    def _block_dependents(
        self, pending: list[Operation], results: dict[str, OperationResult]
    ) -> list[Operation]:
        """Mark ops with a failed, blocked or skipped dependency as Blocked."""
        dead = {OpStatus.FAILED, OpStatus.ABORTED, OpStatus.BLOCKED, OpStatus.SKIPPED}
        remaining: list[Operation] = []
        for op in pending:
            failed_deps = [d for d in op.deps if results[d].status in dead]
            if failed_deps:
                result = results[op.id]
                result.finish(OpStatus.BLOCKED)
                result.message = f"blocked by {', '.join(failed_deps)}"
                logger.warning(
                    "Operation blocked by failed dependency",
                    extra={"op_id": op.id, "identity": str(op.identity), "deps": failed_deps},
                )
            else:
                remaining.append(op)
        # One pass may unblock a chain; repeat until stable
        if len(remaining) != len(pending):
            return self._block_dependents(remaining, results)
        return remaining

    async def _worker(
        self,
        op: Operation,
        result: OperationResult,
        order: list[str],
        global_limit: asyncio.Semaphore,
        kind_limits: dict[ResourceKind, asyncio.Semaphore],
    ) -> None:
        async with kind_limits[op.kind], global_limit:
            if self._halted:
                result.finish(OpStatus.SKIPPED)
                result.message = "not started after an earlier failure"
                return
            order.append(op.id)
            result.start()
            log_extra = {"op_id": op.id, "verb": op.verb.value, "identity": str(op.identity)}
            logger.info("Operation started", extra=log_extra)
            try:
                result.resource = await self._handlers.run(op)
            except asyncio.CancelledError:
                result.finish(OpStatus.ABORTED, CancelledError("operation cancelled"))
                logger.warning("Operation aborted", extra=log_extra)
                raise
            except ConflictError as e:
                if self._options.preserve_existing and op.verb == Verb.CREATE:
                    result.finish(OpStatus.SUCCEEDED)
                    result.message = "already exists; preserved"
                    logger.warning("Resource already exists; adopting it", extra=log_extra)
                else:
                    result.finish(OpStatus.FAILED, e)
                    logger.error("Operation failed", extra={**log_extra, "error": str(e)})
            except UnsupportedError as e:
                result.finish(OpStatus.SKIPPED, e)
                logger.warning("Operation not supported", extra={**log_extra, "error": str(e)})
            except MatlasError as e:
                result.finish(OpStatus.FAILED, e)
                logger.error("Operation failed", extra={**log_extra, "error": str(e)})
            except Exception as e:
                logger.exception("Unexpected error during operation", extra=log_extra)
                result.finish(OpStatus.FAILED, ExecutionError(str(e), cause=e))
            else:
                result.finish(OpStatus.SUCCEEDED)
                logger.info(
                    "Operation succeeded",
                    extra={**log_extra, "duration_seconds": result.duration_seconds},
                )

            if result.status == OpStatus.SUCCEEDED:
                self._invalidate(op)
            elif result.status == OpStatus.FAILED and self._options.rollback_on_error:
                # Set before the slot is released so queued workers see it
                self._halted = True

    def _invalidate(self, op: Operation) -> None:
        if self._cache is None:
            return
        project_id = self._handlers.project_id(op.project_name)
        if not project_id and op.from_state is not None:
            project_id = op.from_state.metadata.labels.get(PROJECT_ID_LABEL)
        if project_id:
            self._cache.invalidate(project_id)

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    async def _rollback(
        self,
        results: dict[str, OperationResult],
        order: list[str],
        report: ExecutionReport,
    ) -> None:
        """Undo succeeded operations in reverse dispatch order.

        Failures are recorded on the result and never trigger another rollback.
        """
        applied = [
            results[op_id]
            for op_id in reversed(order)
            if results[op_id].status == OpStatus.SUCCEEDED and results[op_id].op.is_mutation
        ]
        if not applied:
            return
        logger.warning("Rolling back applied operations", extra={"count": len(applied)})
        report.rolled_back = True
        for result in applied:
            op = result.op
            try:
                await self._handlers.invert(op, result.resource)
            except MatlasError as e:
                result.rollback_error = e
                logger.error(
                    "Rollback failed",
                    extra={"op_id": op.id, "identity": str(op.identity), "error": str(e)},
                )
                continue
            result.status = OpStatus.ROLLED_BACK
            result.finished_at = datetime.now(UTC)
            self._invalidate(op)
            logger.info("Operation rolled back", extra={"op_id": op.id})


def _mark_cancelled(results: dict[str, OperationResult]) -> None:
    for result in results.values():
        if result.status == OpStatus.RUNNING:
            result.finish(OpStatus.ABORTED, CancelledError("operation cancelled"))
        elif result.status == OpStatus.PENDING:
            result.finish(OpStatus.SKIPPED)


def _ordered(
    plan: Plan, results: dict[str, OperationResult], order: list[str]
) -> list[OperationResult]:
    dispatched = set(order)
    return [results[op_id] for op_id in order] + [
        results[op.id] for op in plan.operations if op.id not in dispatched
    ]
