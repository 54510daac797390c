"""Render plans, diffs, apply outcomes and errors.

Three formats:
- ``table``: terminal output, one row per operation, status colored
- ``json``: stable machine-readable documents with a versioned apiVersion
- ``yaml``: the same documents as YAML (diffs round-trip through it)

Exit codes follow the CLI contract: 0 success or no change, 1 fatal
error, 2 changes detected by plan/diff, 3 partial success.
"""

from __future__ import annotations

import json
from typing import Any

import click
import yaml

from .config import OutputFormat
from .discovery import ProjectState
from .errors import MatlasError
from .executor import EXIT_CHANGES, EXIT_OK, ExecutionReport, OpStatus
from .masking import mask_connection_string
from .normalize import FieldChange
from .planner import Plan, Verb

REPORT_API_VERSION = "matlas.mongodb.com/v1"

STATUS_COLORS: dict[OpStatus, str] = {
    OpStatus.PENDING: "white",
    OpStatus.RUNNING: "cyan",
    OpStatus.SUCCEEDED: "green",
    OpStatus.FAILED: "red",
    OpStatus.ABORTED: "red",
    OpStatus.BLOCKED: "yellow",
    OpStatus.SKIPPED: "yellow",
    OpStatus.PLANNED_ONLY: "blue",
    OpStatus.ROLLED_BACK: "magenta",
}

VERB_SYMBOLS: dict[Verb, str] = {
    Verb.CREATE: "+",
    Verb.UPDATE: "~",
    Verb.REPLACE: "-/+",
    Verb.DELETE: "-",
    Verb.NOOP: " ",
}

VERB_COLORS: dict[Verb, str] = {
    Verb.CREATE: "green",
    Verb.UPDATE: "yellow",
    Verb.REPLACE: "magenta",
    Verb.DELETE: "red",
    Verb.NOOP: "white",
}


def plan_exit_code(plan: Plan) -> int:
    return EXIT_CHANGES if plan.has_changes else EXIT_OK


def summary_line(plan: Plan) -> str:
    s = plan.summary
    return (
        f"Plan: {s['creates']} create, {s['updates']} update, {s['deletes']} delete, "
        f"{s['replaces']} replace, {s['noops']} no-op"
    )


def _document(kind: str, body: dict[str, Any]) -> dict[str, Any]:
    return {"apiVersion": REPORT_API_VERSION, "kind": kind, **body}


def _dump(document: dict[str, Any], fmt: OutputFormat) -> str:
    if fmt == OutputFormat.YAML:
        return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)
    return json.dumps(document, indent=2, default=str)


def _table(headers: list[str], rows: list[list[str]], colors: list[str | None]) -> str:
    """Left-aligned columns; the last column of each row is colored."""
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    def fmt_row(row: list[str]) -> list[str]:
        return [cell.ljust(widths[i]) for i, cell in enumerate(row)]

    lines = ["  ".join(fmt_row(headers)).rstrip()]
    for row, color in zip(rows, colors):
        cells = fmt_row(row)
        if color:
            cells[-1] = click.style(cells[-1], fg=color)
        lines.append("  ".join(cells).rstrip())
    return "\n".join(lines)


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return mask_connection_string(value)
    return json.dumps(value, sort_keys=True, default=str)


def _change_line(change: FieldChange) -> str:
    if change.op == "add":
        return f"+ {change.path}: {_format_value(change.after)}"
    if change.op == "remove":
        return f"- {change.path}: {_format_value(change.before)}"
    return (
        f"~ {change.path}: {_format_value(change.before)} -> {_format_value(change.after)}"
    )


# =============================================================================
# Plans and diffs
# =============================================================================


def render_plan(plan: Plan, fmt: OutputFormat = OutputFormat.TABLE) -> str:
    if fmt != OutputFormat.TABLE:
        return _dump(_document("PlanReport", plan.to_dict()), fmt)

    rows = []
    colors: list[str | None] = []
    for op in plan.operations:
        detail = op.reason if op.verb == Verb.NOOP else ", ".join(op.deps)
        rows.append([op.id, op.kind.value, op.name, detail, op.verb.value])
        colors.append(VERB_COLORS[op.verb])
    out = [_table(["ID", "KIND", "NAME", "DEPS/REASON", "ACTION"], rows, colors)]
    out.extend(_warning_lines(plan.warnings))
    out.append("")
    out.append(summary_line(plan))
    return "\n".join(out)


def diff_document(plan: Plan) -> dict[str, Any]:
    return _document(
        "DiffReport",
        {
            "summary": plan.summary,
            "diffs": [
                {
                    "id": op.id,
                    "kind": op.kind.value,
                    "name": op.name,
                    "verb": op.verb.value,
                    "changes": [c.to_dict() for c in op.changes],
                }
                for op in plan.operations
                if op.is_mutation
            ],
        },
    )


def render_diff(plan: Plan, fmt: OutputFormat = OutputFormat.TABLE) -> str:
    if fmt != OutputFormat.TABLE:
        return _dump(diff_document(plan), fmt)

    out: list[str] = []
    for op in plan.operations:
        if not op.is_mutation:
            continue
        header = f"{VERB_SYMBOLS[op.verb]} {op.kind.value} {op.name} ({op.verb.value})"
        out.append(click.style(header, fg=VERB_COLORS[op.verb], bold=True))
        out.extend(f"    {_change_line(c)}" for c in op.changes)
    if not out:
        out.append("No differences.")
    out.append("")
    out.append(summary_line(plan))
    return "\n".join(out)


def _warning_lines(warnings: list[str]) -> list[str]:
    if not warnings:
        return []
    return ["", *(click.style(f"warning: {w}", fg="yellow") for w in warnings)]


# =============================================================================
# Apply outcomes
# =============================================================================


def render_report(report: ExecutionReport, fmt: OutputFormat = OutputFormat.TABLE) -> str:
    if fmt != OutputFormat.TABLE:
        return _dump(_document("ApplyReport", report.to_dict()), fmt)

    rows = []
    colors: list[str | None] = []
    for result in report.results:
        note = result.message
        if result.error is not None:
            note = str(result.error).splitlines()[0]
        rows.append(
            [
                result.op.id,
                result.op.kind.value,
                result.op.name,
                result.op.verb.value,
                f"{result.duration_seconds:.1f}s",
                note,
                result.status.value,
            ]
        )
        colors.append(STATUS_COLORS[result.status])
    out = [
        _table(
            ["ID", "KIND", "NAME", "VERB", "TIME", "DETAIL", "STATUS"],
            rows,
            colors,
        )
    ]
    out.extend(_warning_lines(report.plan.warnings))
    out.append("")
    out.append(summary_line(report.plan))
    if report.dry_run:
        out.append("Dry run: no changes were made.")
    elif not report.approved:
        out.append("Plan was not approved; no changes were made.")
    else:
        counts = ", ".join(f"{n} {status}" for status, n in report.counts.items())
        out.append(f"Result: {counts} in {report.duration_seconds:.1f}s")
        if report.rolled_back:
            out.append(click.style("Applied operations were rolled back.", fg="magenta"))
        if report.cancelled:
            out.append(click.style("Execution was cancelled.", fg="red"))
    return "\n".join(out)


# =============================================================================
# Live state
# =============================================================================


def render_state(state: ProjectState, fmt: OutputFormat = OutputFormat.TABLE) -> str:
    if fmt != OutputFormat.TABLE:
        return _dump(state.to_document(), fmt)

    rows = [
        [r.kind.value, r.name, r.resource_id or "", str(r.attributes.get("stateName", ""))]
        for r in state.all_resources()
    ]
    out = [
        f"Project {state.project.project_name} ({state.project.resource_id})",
        _table(["KIND", "NAME", "ID", "STATE"], rows, [None] * len(rows)),
    ]
    if state.databases is not None:
        out.append("")
        db_rows = [
            [db.cluster_name, db.name, str(len(db.collections)), str(db.size_bytes)]
            for db in state.databases
        ]
        out.append(
            _table(["CLUSTER", "DATABASE", "COLLECTIONS", "SIZE"], db_rows, [None] * len(db_rows))
        )
    return "\n".join(out)


def render_document(document: dict[str, Any], fmt: OutputFormat = OutputFormat.YAML) -> str:
    """Snapshots are data; tables fall back to YAML."""
    return _dump(document, OutputFormat.JSON if fmt == OutputFormat.JSON else OutputFormat.YAML)


# =============================================================================
# Errors
# =============================================================================


def error_document(error: MatlasError) -> dict[str, Any]:
    body = error.to_dict()
    if error.hint:
        body["hint"] = error.hint
    return _document("ErrorReport", {"error": body})


def render_error(error: MatlasError, fmt: OutputFormat = OutputFormat.TABLE) -> str:
    if fmt != OutputFormat.TABLE:
        return _dump(error_document(error), fmt)

    lines = [click.style(f"Error ({error.kind.value}): {error.message}", fg="red")]
    if error.cause is not None:
        lines.append(f"  cause: {error.cause}")
    if error.hint:
        lines.append(f"  hint: {error.hint}")
    return "\n".join(lines)
