"""Tests for desired-state loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from matlas.errors import ValidationError
from matlas.loader import load_file, load_files, load_text
from matlas.models import Identity, ResourceKind

CLUSTER_YAML = """
apiVersion: matlas.mongodb.com/v1
kind: Cluster
metadata:
  name: c1
spec:
  projectName: p1
  provider: AWS
  region: US_EAST_1
  instanceSize: M10
"""

APPLY_DOCUMENT_YAML = """
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
      instanceSize: M10
  - apiVersion: matlas.mongodb.com/v1
    kind: DatabaseUser
    metadata:
      name: app-user
    spec:
      projectName: p1
      username: app
      password: s3cret
      roles:
        - roleName: readWrite
          databaseName: app
      scopes:
        - name: c1
          type: CLUSTER
"""


class TestLoadText:
    """Tests for loading manifests from text."""

    def test_single_manifest(self) -> None:
        """Test a bare resource manifest loads."""
        state = load_text(CLUSTER_YAML)
        assert [r.identity for r in state.resources] == [
            Identity(ResourceKind.CLUSTER, "p1", "c1")
        ]
        assert state.project_names() == {"p1"}

    def test_apply_document_expands(self) -> None:
        """Test an ApplyDocument yields each listed resource."""
        state = load_text(APPLY_DOCUMENT_YAML)
        assert [r.kind for r in state.resources] == [
            ResourceKind.PROJECT,
            ResourceKind.CLUSTER,
            ResourceKind.DATABASE_USER,
        ]
        assert state.resources[1].source == "<string>#resources[1]"

    def test_references_collected(self) -> None:
        """Test project and cluster-scope references are recorded."""
        state = load_text(APPLY_DOCUMENT_YAML)
        user = Identity(ResourceKind.DATABASE_USER, "p1", "admin/app")
        targets = {ref.target for ref in state.references if ref.source == user}
        assert targets == {
            Identity(ResourceKind.PROJECT, "", "p1"),
            Identity(ResourceKind.CLUSTER, "p1", "c1"),
        }

    def test_pit_without_backup_rejected(self) -> None:
        """Test cross-field validation happens before any network call."""
        with pytest.raises(ValidationError) as exc_info:
            load_text(CLUSTER_YAML + "  pitEnabled: true\n")
        assert "<string> (Cluster).spec: pitEnabled requires backupEnabled" in str(
            exc_info.value
        )

    def test_all_errors_reported(self) -> None:
        """Test every invalid document is reported in one error."""
        content = CLUSTER_YAML.replace("M10", "M11") + "---\n" + """
apiVersion: matlas.mongodb.com/v1
kind: Widget
metadata:
  name: w
"""
        with pytest.raises(ValidationError) as exc_info:
            load_text(content)
        message = str(exc_info.value)
        assert "documents[0] (Cluster).spec" in message
        assert "documents[1] (Widget).kind: Unknown kind 'Widget'" in message

    def test_duplicate_identity(self) -> None:
        """Test two manifests with one identity are rejected."""
        with pytest.raises(ValidationError, match="duplicate resource Cluster/p1/c1"):
            load_text(CLUSTER_YAML + "---" + CLUSTER_YAML)

    def test_non_mapping_document(self) -> None:
        """Test scalar documents are rejected."""
        with pytest.raises(ValidationError, match="document must be a YAML mapping"):
            load_text("just a string\n")

    def test_invalid_yaml(self) -> None:
        """Test YAML syntax errors name the source."""
        with pytest.raises(ValidationError, match="Invalid YAML in stack.yaml"):
            load_text("a: [unclosed\n", source="stack.yaml")

    def test_user_without_password_warns(self) -> None:
        """Test a user with no password loads with a warning."""
        content = APPLY_DOCUMENT_YAML.replace("      password: s3cret\n", "")
        state = load_text(content)
        assert state.warnings == [
            "DatabaseUser/p1/admin/app has no password; it can be updated but not created"
        ]

    def test_discovered_project_converted(self) -> None:
        """Test a discovered snapshot is accepted as desired state."""
        content = """
apiVersion: matlas.mongodb.com/v1
kind: DiscoveredProject
metadata:
  name: P1 Snapshot
project:
  apiVersion: matlas.mongodb.com/v1
  kind: Project
  metadata:
    name: P1 Project
  spec:
    name: p1
clusters:
  - apiVersion: matlas.mongodb.com/v1
    kind: Cluster
    metadata:
      name: Main-Cluster
    spec:
      projectName: p1
      provider: AWS
      region: US_EAST_1
      instanceSize: M10
"""
        state = load_text(content)
        project, cluster = state.resources
        assert project.metadata.name == "p1-project"
        assert cluster.metadata.name == "Main-Cluster"

    def test_invalid_cluster_name(self) -> None:
        """Test cluster names outside letters, digits and hyphens are rejected at load."""
        with pytest.raises(ValidationError) as exc_info:
            load_text(CLUSTER_YAML.replace("name: c1", "name: bad_name!"))
        assert "<string> (Cluster).metadata.name" in str(exc_info.value)

    def test_cluster_name_too_long(self) -> None:
        """Test cluster names longer than 64 characters are rejected."""
        with pytest.raises(ValidationError, match="metadata.name"):
            load_text(CLUSTER_YAML.replace("name: c1", "name: " + "c" * 65))

    def test_manifests_reload_unchanged(self) -> None:
        """Test rendered manifests load back to the same resources."""
        original = load_text(APPLY_DOCUMENT_YAML)
        content = yaml.safe_dump_all(
            [r.to_manifest(reveal_secrets=True) for r in original.resources]
        )

        reloaded = load_text(content)

        assert [r.identity for r in reloaded.resources] == [
            r.identity for r in original.resources
        ]
        for before, after in zip(original.resources, reloaded.resources):
            assert after.metadata == before.metadata
            assert after.spec == before.spec
        assert "s3cret" in content

    def test_environment_references(self) -> None:
        """Test ${VAR} references are expanded before parsing."""
        content = CLUSTER_YAML.replace("M10", "${CLUSTER_SIZE:-M10}").replace(
            "name: c1", "name: ${CLUSTER_NAME}"
        )

        state = load_text(content, env={"CLUSTER_NAME": "orders"})

        assert state.resources[0].identity == Identity(ResourceKind.CLUSTER, "p1", "orders")
        assert state.resources[0].spec.instance_size == "M10"
        assert state.warnings == []

    def test_undefined_reference_warns(self) -> None:
        """Test an undefined variable becomes a load warning."""
        content = CLUSTER_YAML + "  diskSizeGB: ${DISK_GB:-10}\n"
        content = content.replace("projectName: p1", "projectName: ${PROJECT}")

        state = load_text(content, source="c.yaml", env={})

        assert state.warnings == ["c.yaml: undefined variable 'PROJECT'"]

    def test_undefined_reference_strict(self) -> None:
        """Test strict mode turns an undefined variable into an error."""
        content = CLUSTER_YAML.replace("projectName: p1", "projectName: ${PROJECT}")

        with pytest.raises(ValidationError, match="undefined variable 'PROJECT'"):
            load_text(content, strict_env=True, env={})


class TestLoadFiles:
    """Tests for loading manifests from disk."""

    def test_load_file(self, tmp_path: Path) -> None:
        """Test a single file loads with its path as source."""
        path = tmp_path / "cluster.yaml"
        path.write_text(CLUSTER_YAML)
        state = load_file(path)
        assert state.resources[0].source == str(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test missing files are validation errors."""
        with pytest.raises(ValidationError, match="not found"):
            load_file(tmp_path / "absent.yaml")

    def test_identities_unique_across_files(self, tmp_path: Path) -> None:
        """Test duplicates spanning two files are caught."""
        first = tmp_path / "a.yaml"
        second = tmp_path / "b.yaml"
        first.write_text(CLUSTER_YAML)
        second.write_text(CLUSTER_YAML)
        with pytest.raises(ValidationError, match="first defined at"):
            load_files([first, second])

    def test_oversized_file(self, tmp_path: Path) -> None:
        """Test oversized manifests are rejected before parsing."""
        path = tmp_path / "big.yaml"
        path.write_text("# " + "x" * (1024 * 1024 + 10))
        with pytest.raises(ValidationError, match="maximum size"):
            load_file(path)

    def test_strict_env_across_files(self, tmp_path: Path) -> None:
        """Test strict mode applies to every file and names the file."""
        path = tmp_path / "cluster.yaml"
        path.write_text(CLUSTER_YAML.replace("M10", "${CLUSTER_SIZE}"))

        with pytest.raises(ValidationError, match="cluster.yaml: undefined variable"):
            load_files([path], strict_env=True, env={})
