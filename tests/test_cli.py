"""Tests for the tierctl command line."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
import yaml
from click.testing import CliRunner
from kube_mock import make_tier, make_work_item, record_manifest, tier_manifest

from tier_operator.cli import cli
from tier_operator.fingerprint import compute_tier_hash


def write_yaml(path: Path, *docs: dict[str, Any]) -> Path:
    path.write_text(yaml.safe_dump_all(docs))
    return path


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def manifests(tmp_path: Path) -> Path:
    """Tier base with three outdated records on cluster1 and one request in flight."""
    return write_yaml(
        tmp_path / "manifests.yaml",
        tier_manifest("base"),
        *(record_manifest(name, {"cluster1": ("base", "old")}) for name in ("ann", "bob", "cat")),
        make_work_item("ann").to_manifest(),
    )


class TestFingerprint:
    """Tests for tierctl fingerprint."""

    def test_prints_name_and_hash(self, runner: CliRunner, tmp_path: Path) -> None:
        path = write_yaml(tmp_path / "tiers.yaml", tier_manifest("base"), tier_manifest("other"))

        result = runner.invoke(cli, ["fingerprint", str(path)])

        assert result.exit_code == 0
        assert result.output.splitlines() == [
            f"base\t{compute_tier_hash(make_tier('base'))}",
            f"other\t{compute_tier_hash(make_tier('other'))}",
        ]

    def test_malformed_tier(self, runner: CliRunner, tmp_path: Path) -> None:
        path = write_yaml(tmp_path / "tier.yaml", tier_manifest("broken", namespace_refs=[""]))

        result = runner.invoke(cli, ["fingerprint", str(path)])

        assert result.exit_code == 1
        assert "broken" in result.output

    def test_no_tier(self, runner: CliRunner, tmp_path: Path) -> None:
        path = write_yaml(tmp_path / "record.yaml", record_manifest("john", {}))

        result = runner.invoke(cli, ["fingerprint", str(path)])

        assert result.exit_code == 1
        assert "No NSTemplateTier" in result.output


class TestPlan:
    """Tests for tierctl plan."""

    def test_text_plan(self, runner: CliRunner, manifests: Path) -> None:
        """Test that in-flight records are skipped and the pool limit holds."""
        result = runner.invoke(cli, ["plan", str(manifests), "--max-pool-size", "2"])

        assert result.exit_code == 0, result.output
        assert "Pool: 1 live, 0 reclaimable, 1 free" in result.output
        assert "  + bob.cluster1" in result.output
        assert "cat.cluster1" not in result.output
        assert "Pool full" in result.output

    def test_json_plan(self, runner: CliRunner, manifests: Path) -> None:
        result = runner.invoke(cli, ["plan", str(manifests), "--json"])

        assert result.exit_code == 0, result.output
        (plan,) = json.loads(result.output)
        assert plan["tier"] == "base"
        assert plan["status"] == "Done"
        assert plan["tier_hash"] == compute_tier_hash(make_tier("base"))
        assert plan["create"] == ["bob.cluster1", "cat.cluster1"]
        assert plan["in_flight"] == 1
        assert plan["clusters_scanned"] == ["cluster1"]

    def test_explicit_clusters(self, runner: CliRunner, manifests: Path) -> None:
        """Test that --cluster replaces the clusters found in record labels."""
        result = runner.invoke(cli, ["plan", str(manifests), "-c", "cluster2", "--json"])

        assert result.exit_code == 0, result.output
        (plan,) = json.loads(result.output)
        assert plan["create"] == []
        assert plan["clusters_scanned"] == ["cluster2"]

    def test_nothing_to_do(self, runner: CliRunner, tmp_path: Path) -> None:
        current = compute_tier_hash(make_tier("base"))
        path = write_yaml(
            tmp_path / "manifests.yaml",
            tier_manifest("base"),
            record_manifest("john", {"cluster1": ("base", current)}),
        )

        result = runner.invoke(cli, ["plan", str(path)])

        assert result.exit_code == 0, result.output
        assert "Nothing to create" in result.output

    def test_missing_tier(self, runner: CliRunner, manifests: Path) -> None:
        result = runner.invoke(cli, ["plan", str(manifests), "--tier", "gone"])

        assert result.exit_code == 0, result.output
        assert "gone: not found" in result.output

    def test_malformed_tier_fails(self, runner: CliRunner, tmp_path: Path) -> None:
        path = write_yaml(
            tmp_path / "manifests.yaml",
            tier_manifest("broken", namespace_refs=["base-code-1", ""]),
            record_manifest("john", {"cluster1": ("broken", "old")}),
        )

        result = runner.invoke(cli, ["plan", str(path)])

        assert result.exit_code == 1
        assert "broken: FatalConfigError" in result.output

    def test_no_clusters(self, runner: CliRunner, tmp_path: Path) -> None:
        path = write_yaml(tmp_path / "tier.yaml", tier_manifest("base"))

        result = runner.invoke(cli, ["plan", str(path)])

        assert result.exit_code == 1
        assert "No member clusters" in result.output

    def test_invalid_pool_size(self, runner: CliRunner, manifests: Path) -> None:
        result = runner.invoke(cli, ["plan", str(manifests), "--max-pool-size", "0"])

        assert result.exit_code == 1
        assert "MAX_POOL_SIZE" in result.output


class TestRun:
    """Tests for tierctl run."""

    def test_options_become_environment(self, runner: CliRunner) -> None:
        main = AsyncMock(return_value=0)

        with patch.dict(os.environ, {}, clear=True), patch("tier_operator.main.main", main):
            result = runner.invoke(
                cli, ["run", "-n", "host", "-m", "cluster1,cluster2", "--dry-run"]
            )
            environment = dict(os.environ)

        assert result.exit_code == 0, result.output
        main.assert_awaited_once()
        assert environment["WATCH_NAMESPACE"] == "host"
        assert environment["MEMBER_CLUSTERS"] == "cluster1,cluster2"
        assert environment["DRY_RUN"] == "true"

    def test_exit_code_is_propagated(self, runner: CliRunner) -> None:
        with (
            patch.dict(os.environ, {}, clear=True),
            patch("tier_operator.main.main", AsyncMock(return_value=1)),
        ):
            result = runner.invoke(cli, ["run", "-m", "cluster1"])

        assert result.exit_code == 1
