from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest


def _git_env(home: Path) -> dict[str, str]:
    env = dict(os.environ)
    env.update(
        {
            "HOME": str(home),
            "GIT_CONFIG_NOSYSTEM": "1",
            "GIT_AUTHOR_NAME": "Fleet Tester",
            "GIT_AUTHOR_EMAIL": "tester@example.com",
            "GIT_COMMITTER_NAME": "Fleet Tester",
            "GIT_COMMITTER_EMAIL": "tester@example.com",
        }
    )
    return env


class GitHelper:
    """Builds small repositories for tests."""

    def __init__(self, home: Path) -> None:
        self.env = _git_env(home)

    def __call__(self, cwd: Path, *args: str) -> str:
        proc = subprocess.run(
            ["git", "-c", "commit.gpgsign=false", *args],
            cwd=cwd,
            env=self.env,
            capture_output=True,
            text=True,
            check=True,
        )
        return proc.stdout.strip()

    def init(self, path: Path) -> Path:
        path.mkdir(parents=True, exist_ok=True)
        self(path, "init", "-q")
        self(path, "symbolic-ref", "HEAD", "refs/heads/master")
        return path

    def commit(self, repo: Path, message: str) -> str:
        self(repo, "commit", "-q", "--allow-empty", "-m", message)
        return self(repo, "rev-parse", "HEAD")

    def clone(self, source: Path, dest: Path) -> Path:
        self(dest.parent, "clone", "-q", str(source), dest.name)
        return dest

    def rev(self, repo: Path, ref: str) -> str:
        return self(repo, "rev-parse", ref)


@pytest.fixture
def git(tmp_path: Path) -> GitHelper:
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    home = tmp_path / "home"
    home.mkdir()
    return GitHelper(home)


@pytest.fixture
def fleet_root(tmp_path: Path) -> Path:
    root = tmp_path / "fleet"
    root.mkdir()
    return root


@pytest.fixture
def merged_repo(git: GitHelper, fleet_root: Path) -> Path:
    """feature/x points at an ancestor of master."""
    repo = git.init(fleet_root / "alpha")
    git.commit(repo, "initial")
    git(repo, "branch", "feature/x")
    git.commit(repo, "master moves on")
    return repo


@pytest.fixture
def remote_only_repo(git: GitHelper, tmp_path: Path, fleet_root: Path) -> Path:
    """feature/y exists only as origin/feature/y, three commits behind master."""
    upstream = git.init(tmp_path / "upstream" / "bravo")
    git.commit(upstream, "initial")
    git(upstream, "branch", "feature/y")
    for i in range(3):
        git.commit(upstream, f"master commit {i}")
    return git.clone(upstream, fleet_root / "bravo")


@pytest.fixture
def make_fleet(git: GitHelper, fleet_root: Path) -> Callable[[list[str]], list[Path]]:
    """Create one single-commit repository per name."""

    def build(names: list[str]) -> list[Path]:
        repos = []
        for name in names:
            repo = git.init(fleet_root / name)
            git.commit(repo, f"initial {name}")
            repos.append(repo)
        return repos

    return build


@pytest.fixture
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep the user's config and roots files out of the test."""
    home = tmp_path / "user-home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("BRANCH_FLEET_CONFIG", raising=False)
    monkeypatch.delenv("BRANCH_FLEET_ROOTS", raising=False)
    return home
