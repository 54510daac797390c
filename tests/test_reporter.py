"""Tests for report rendering."""

from __future__ import annotations

import json

import click
import yaml

from matlas.config import OutputFormat
from matlas.errors import ConflictError, PlanError, UnavailableError, ValidationError
from matlas.executor import ExecutionReport, OperationResult, OpStatus
from matlas.loader import load_text
from matlas.masking import MASK
from matlas.models import ClusterSpec, ProjectSpec, ResourceKind, make_resource
from matlas.planner import Plan, PlanMode, Planner
from matlas.reporter import (
    EXIT_CHANGES,
    EXIT_OK,
    error_document,
    plan_exit_code,
    render_diff,
    render_error,
    render_plan,
    render_report,
    summary_line,
)

STACK = """
apiVersion: matlas.mongodb.com/v1
kind: ApplyDocument
metadata:
  name: stack
resources:
  - apiVersion: matlas.mongodb.com/v1
    kind: Project
    metadata:
      name: p1
    spec:
      name: p1
  - apiVersion: matlas.mongodb.com/v1
    kind: Cluster
    metadata:
      name: c1
    spec:
      projectName: p1
      provider: AWS
      region: US_EAST_1
      instanceSize: M20
  - apiVersion: matlas.mongodb.com/v1
    kind: DatabaseUser
    metadata:
      name: app
    spec:
      projectName: p1
      username: app
      password: s3cret-pass
      roles:
        - roleName: readWrite
          databaseName: app
"""


def _plan() -> Plan:
    """One create, one update, one no-op."""
    project = make_resource(
        ResourceKind.PROJECT,
        "p1",
        ProjectSpec(name="p1", organization_id="5f0000000000000000000001"),
        resource_id="p-id",
    )
    cluster = make_resource(
        ResourceKind.CLUSTER,
        "c1",
        ClusterSpec.model_validate(
            {"projectName": "p1", "provider": "AWS", "region": "US_EAST_1", "instanceSize": "M10"}
        ),
        resource_id="c1-id",
    )
    return Planner().plan(load_text(STACK), [project, cluster])


class TestPlanRendering:
    """Tests for render_plan and summary_line."""

    def test_summary_line(self) -> None:
        """Test the summary counts every verb."""
        assert summary_line(_plan()) == "Plan: 1 create, 1 update, 0 delete, 0 replace, 1 no-op"

    def test_table(self) -> None:
        """Test the table lists every operation and ends with the summary."""
        output = click.unstyle(render_plan(_plan()))

        lines = output.splitlines()
        assert lines[0].split() == ["ID", "KIND", "NAME", "DEPS/REASON", "ACTION"]
        assert "DatabaseUser" in output
        assert "unchanged" in output
        assert lines[-1].startswith("Plan: 1 create")

    def test_json_masks_secrets(self) -> None:
        """Test JSON plans are versioned documents without plaintext passwords."""
        output = render_plan(_plan(), OutputFormat.JSON)

        document = json.loads(output)
        assert document["apiVersion"] == "matlas.mongodb.com/v1"
        assert document["kind"] == "PlanReport"
        assert document["summary"]["updates"] == 1
        assert "s3cret-pass" not in output
        assert MASK in output

    def test_yaml(self) -> None:
        """Test YAML plans parse to the same document shape."""
        document = yaml.safe_load(render_plan(_plan(), OutputFormat.YAML))

        assert document["kind"] == "PlanReport"
        assert [op["id"] for op in document["operations"]] == ["op-001", "op-002", "op-003"]

    def test_exit_codes(self) -> None:
        """Test plans with changes exit 2 and empty plans exit 0."""
        assert plan_exit_code(_plan()) == EXIT_CHANGES
        assert plan_exit_code(Plan(mode=PlanMode.RECONCILE)) == EXIT_OK


class TestDiffRendering:
    """Tests for render_diff."""

    def test_field_lines(self) -> None:
        """Test updates list their changed fields with before and after."""
        output = click.unstyle(render_diff(_plan()))

        assert "~ Cluster c1 (Update)" in output
        assert "~ /spec/instanceSize: M10 -> M20" in output
        assert "+ DatabaseUser admin/app (Create)" in output

    def test_no_differences(self) -> None:
        """Test an empty plan says so."""
        output = render_diff(Plan(mode=PlanMode.RECONCILE))

        assert output.splitlines()[0] == "No differences."

    def test_json_omits_noops(self) -> None:
        """Test diff documents only carry mutations."""
        document = json.loads(render_diff(_plan(), OutputFormat.JSON))

        assert document["kind"] == "DiffReport"
        assert {d["name"] for d in document["diffs"]} == {"c1", "admin/app"}
        update = next(d for d in document["diffs"] if d["name"] == "c1")
        assert update["changes"] == [
            {"op": "replace", "path": "/spec/instanceSize", "from": "M10", "value": "M20"}
        ]


class TestReportRendering:
    """Tests for render_report."""

    def test_not_approved(self) -> None:
        """Test declined runs say nothing changed."""
        report = ExecutionReport(plan=_plan(), approved=False)

        assert render_report(report).splitlines()[-1] == (
            "Plan was not approved; no changes were made."
        )
        assert report.exit_code == 1

    def test_dry_run(self) -> None:
        """Test dry runs list operations as PlannedOnly."""
        plan = _plan()
        report = ExecutionReport(plan=plan, dry_run=True)
        for op in plan.operations:
            result = OperationResult(op=op)
            result.finish(OpStatus.PLANNED_ONLY)
            report.results.append(result)

        output = click.unstyle(render_report(report))

        assert output.count("PlannedOnly") == 3
        assert output.splitlines()[-1] == "Dry run: no changes were made."

    def test_failure_detail(self) -> None:
        """Test failed rows show the first line of their error."""
        plan = _plan()
        report = ExecutionReport(plan=plan)
        result = OperationResult(op=plan.operations[1])
        result.finish(OpStatus.FAILED, ConflictError("cluster c1 already exists\nmore"))
        report.results.append(result)

        output = click.unstyle(render_report(report))

        assert "cluster c1 already exists" in output
        assert "more" not in output
        assert "Result: 1 Failed" in output

    def test_json(self) -> None:
        """Test JSON reports carry status counts."""
        plan = _plan()
        report = ExecutionReport(plan=plan)
        result = OperationResult(op=plan.operations[0])
        result.finish(OpStatus.SUCCEEDED)
        report.results.append(result)

        document = json.loads(render_report(report, OutputFormat.JSON))

        assert document["kind"] == "ApplyReport"
        assert document["statusCounts"] == {"Succeeded": 1}


class TestErrorRendering:
    """Tests for render_error and error_document."""

    def test_table(self) -> None:
        """Test errors render their kind, message and hint."""
        output = click.unstyle(render_error(ValidationError("bad instanceSize")))

        lines = output.splitlines()
        assert lines[0] == "Error (ValidationError): bad instanceSize"
        assert lines[-1].startswith("  hint: fix the manifest")

    def test_document_with_hint(self) -> None:
        """Test error documents include the user hint."""
        document = error_document(UnavailableError("project 'ghost' does not exist"))

        assert document["kind"] == "ErrorReport"
        assert document["error"]["kind"] == "Unavailable"
        assert document["error"]["hint"] == "declare the referenced resource or create it first"

    def test_plan_error_lists_children(self) -> None:
        """Test rejected plans report each underlying error."""
        error = PlanError([ValidationError("a"), UnavailableError("b")])

        document = json.loads(render_error(error, OutputFormat.JSON))

        assert document["error"]["kind"] == "ValidationError"
        assert [e["message"] for e in document["error"]["errors"]] == ["a", "b"]
