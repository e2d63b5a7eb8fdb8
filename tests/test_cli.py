from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from branch_fleet import __version__, app

runner = CliRunner()


@pytest.fixture(autouse=True)
def _home(isolated_home: Path) -> Path:
    return isolated_home


def _json(result) -> dict:
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def test_version() -> None:
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_schema_lists_commands() -> None:
    result = runner.invoke(app, ["--schema"])

    schema = _json(result)
    assert [tool["name"] for tool in schema["tools"]] == ["merged", "uptodate", "branch", "list"]


def test_merged_json(merged_repo: Path, remote_only_repo: Path, fleet_root: Path) -> None:
    result = runner.invoke(
        app, ["merged", "feature/x", str(fleet_root), "--no-fetch", "--format", "json"]
    )

    data = _json(result)
    assert data["direction"] == "branch_into_base"
    assert data["summary"] == {
        "total": 2,
        "satisfied": 1,
        "behind": 0,
        "missing_branch": 1,
        "missing_base": 0,
        "errors": 0,
        "sync_failed": 0,
    }
    alpha, bravo = data["results"]
    assert alpha["name"] == "alpha"
    assert alpha["is_ancestor_satisfied"] is True
    assert bravo["branch_ref"]["exists"] is False
    assert bravo["failure"] is None


def test_uptodate_json_reports_drift(remote_only_repo: Path, fleet_root: Path) -> None:
    result = runner.invoke(
        app, ["uptodate", "feature/y", str(fleet_root), "--no-fetch", "-f", "json", "-p", "2"]
    )

    data = _json(result)
    (bravo,) = data["results"]
    assert bravo["branch_ref"]["resolved_name"] == "origin/feature/y"
    assert bravo["is_ancestor_satisfied"] is False
    assert bravo["drift_count"] == 3
    assert data["summary"]["behind"] == 1


def test_merged_table_output(merged_repo: Path, fleet_root: Path) -> None:
    result = runner.invoke(
        app, ["merged", "feature/x", str(fleet_root), "--no-fetch", "--show-missing"]
    )

    assert result.exit_code == 0, result.output
    assert "alpha" in result.stdout
    assert "merged" in result.stdout


def test_base_branch_from_config(merged_repo: Path, fleet_root: Path, tmp_path: Path) -> None:
    config = tmp_path / "config.json"
    config.write_text(json.dumps({"base_branch": "main"}))

    result = runner.invoke(
        app,
        ["merged", "feature/x", str(fleet_root), "--no-fetch", "-f", "json", "--config", str(config)],
    )

    data = _json(result)
    assert data["base_branch"] == "main"
    assert data["summary"]["missing_base"] == 1


def test_branch_search(make_fleet, git, fleet_root: Path) -> None:
    repos = make_fleet(["one", "two"])
    git(repos[0], "branch", "hotfix")

    result = runner.invoke(app, ["branch", "hotfix", str(fleet_root), "--no-fetch", "-f", "json"])

    data = _json(result)
    assert data["summary"] == {"total": 2, "matched": 1, "errors": 0}
    assert [r["has_target_branch"] for r in data["results"]] == [True, False]


def test_list_paths(make_fleet, fleet_root: Path) -> None:
    make_fleet(["one", "two"])

    result = runner.invoke(app, ["list", str(fleet_root), "--paths"])

    assert result.exit_code == 0
    lines = result.stdout.splitlines()
    assert [Path(line).name for line in lines] == ["one", "two"]


def test_missing_root_exits_with_error(tmp_path: Path) -> None:
    result = runner.invoke(app, ["merged", "feature/x", str(tmp_path / "nowhere")])

    assert result.exit_code == 1
    assert "does not exist" in result.output


def test_invalid_branch_name_exits_with_error(tmp_path: Path) -> None:
    result = runner.invoke(app, ["uptodate", "--no-fetch", "--", "-weird", str(tmp_path)])

    assert result.exit_code == 1
    assert "must not start with" in result.output
