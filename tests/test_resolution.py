from __future__ import annotations

from pathlib import Path

import pytest

from branch_fleet.core import (
    AncestryEvaluator,
    GitCommandError,
    LocalRefStrategy,
    RefResolver,
    RemoteTrackingStrategy,
)


def test_resolves_local_branch_first(git, merged_repo: Path) -> None:
    resolved = RefResolver().resolve(merged_repo, "feature/x")

    assert resolved.exists
    assert resolved.requested_name == "feature/x"
    assert resolved.resolved_name == "feature/x"
    assert resolved.commit_hash == git.rev(merged_repo, "feature/x")
    assert not resolved.is_remote_fallback


def test_falls_back_to_remote_tracking_branch(git, remote_only_repo: Path) -> None:
    resolved = RefResolver().resolve(remote_only_repo, "feature/y")

    assert resolved.exists
    assert resolved.resolved_name == "origin/feature/y"
    assert resolved.commit_hash == git.rev(remote_only_repo, "origin/feature/y")
    assert resolved.is_remote_fallback


def test_missing_branch_is_not_an_error(merged_repo: Path) -> None:
    resolved = RefResolver().resolve(merged_repo, "feature/does-not-exist")

    assert not resolved.exists
    assert resolved.commit_hash is None
    assert resolved.resolved_name == "feature/does-not-exist"


def test_strategies_are_tried_in_order(remote_only_repo: Path) -> None:
    # With only the local strategy the remote-only branch is invisible.
    local_only = RefResolver(strategies=[LocalRefStrategy()])
    assert not local_only.resolve(remote_only_repo, "feature/y").exists

    remote_first = RefResolver(strategies=[RemoteTrackingStrategy(), LocalRefStrategy()])
    assert remote_first.resolve(remote_only_repo, "master").resolved_name == "origin/master"


def test_outside_a_repository_raises(git, tmp_path: Path) -> None:
    not_a_repo = tmp_path / "plain"
    not_a_repo.mkdir()

    with pytest.raises(GitCommandError):
        RefResolver().resolve(not_a_repo, "master")


def test_ancestry_is_reflexive(git, merged_repo: Path) -> None:
    head = git.rev(merged_repo, "master")
    evaluator = AncestryEvaluator()

    assert evaluator.is_ancestor(merged_repo, head, head)


def test_ancestry_direction(git, merged_repo: Path) -> None:
    branch = git.rev(merged_repo, "feature/x")
    base = git.rev(merged_repo, "master")
    evaluator = AncestryEvaluator()

    assert evaluator.is_ancestor(merged_repo, branch, base)
    assert not evaluator.is_ancestor(merged_repo, base, branch)


def test_count_behind(remote_only_repo: Path) -> None:
    evaluator = AncestryEvaluator()

    assert evaluator.count_behind(remote_only_repo, "origin/feature/y", "master") == 3
    assert evaluator.count_behind(remote_only_repo, "master", "origin/feature/y") == 0
