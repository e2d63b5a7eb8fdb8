"""
branch-fleet: Audit branch merge state across a fleet of Git repositories.

Answers, in bulk, which repositories carry a branch, whether that branch has
been merged into the base branch, and whether it contains all of the base
branch's history. Repositories are inspected concurrently in bounded waves.
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from collections.abc import Callable, Iterable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, replace
from enum import StrEnum
from pathlib import Path
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
)

from ._version import __version__
from .formatters import OutputFormat, OutputFormatter
from .schema import get_tool_schema

logger = logging.getLogger(__name__)

DEFAULT_BASE_BRANCH = "master"
DEFAULT_CONCURRENCY = 5
DEFAULT_REMOTE = "origin"
DEFAULT_SYNC_TIMEOUT = 30.0
DEFAULT_GIT_TIMEOUT = 120.0

ProgressCallback = Callable[[int, int], None]

T = TypeVar("T")

# Characters with meaning in a POSIX extended regular expression
_ERE_SPECIAL = re.compile(r"([.\[\]()*+?{}|^$\\])")

# =============================================================================
# Errors
# =============================================================================


class BranchFleetError(Exception):
    """Base class for all branch-fleet errors."""


class ConfigError(BranchFleetError):
    """Configuration file could not be read or holds invalid values."""


class RootDirectoryError(BranchFleetError):
    """Root directory to scan is missing or unreadable."""


class GitCommandError(BranchFleetError):
    """A git invocation failed in an unexpected way."""

    def __init__(self, command: Sequence[str], returncode: int | None, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(self._describe())

    def _describe(self) -> str:
        cmd = " ".join(self.command)
        detail = f": {self.stderr}" if self.stderr else ""
        return f"'{cmd}' exited with status {self.returncode}{detail}"


class GitTimeoutError(GitCommandError):
    """A git invocation exceeded its time bound."""

    def __init__(self, command: Sequence[str], timeout: float):
        self.timeout = timeout
        super().__init__(command, None)

    def _describe(self) -> str:
        return f"'{' '.join(self.command)}' timed out after {self.timeout:g}s"


# =============================================================================
# Domain Models
# =============================================================================


class InspectionDirection(StrEnum):
    """Which ancestry question an inspection answers."""

    BRANCH_INTO_BASE = "branch_into_base"  # is the branch merged into base?
    BASE_INTO_BRANCH = "base_into_branch"  # does the branch contain all of base?


@dataclass(frozen=True)
class RepositoryHandle:
    """One inspection target: a working copy on disk."""

    name: str
    path: Path

    @classmethod
    def from_path(cls, path: Path | str) -> RepositoryHandle:
        """Name the handle after the directory entry, even when it is a symlink."""
        path = Path(path).expanduser()
        if path.name in ("", ".", ".."):
            path = path.resolve()
        else:
            path = path.parent.resolve() / path.name
        return cls(name=path.name, path=path)

    def to_dict(self) -> dict:
        return {"name": self.name, "path": str(self.path)}


@dataclass(frozen=True)
class InspectionRequest:
    """Parameters shared by every inspection job of one command invocation."""

    branch_ref: str
    base_ref: str = DEFAULT_BASE_BRANCH
    sync_before_inspect: bool = True
    concurrency_limit: int = DEFAULT_CONCURRENCY
    direction: InspectionDirection = InspectionDirection.BRANCH_INTO_BASE
    sync_timeout: float = DEFAULT_SYNC_TIMEOUT
    git_timeout: float | None = DEFAULT_GIT_TIMEOUT

    def __post_init__(self) -> None:
        for label, ref in (("branch", self.branch_ref), ("base branch", self.base_ref)):
            validate_ref_name(ref, label)
        if self.concurrency_limit < 1:
            raise ValueError(f"concurrency limit must be positive, got {self.concurrency_limit}")


def validate_ref_name(ref: str, label: str = "ref") -> None:
    """Reject names git would misread as options or that are empty."""
    if not ref or not ref.strip():
        raise ValueError(f"{label} name must not be empty")
    if ref.startswith("-"):
        raise ValueError(f"{label} name must not start with '-': {ref!r}")


@dataclass(frozen=True)
class ResolvedRef:
    """Outcome of resolving a human-supplied branch name to a commit."""

    requested_name: str
    resolved_name: str
    exists: bool
    commit_hash: str | None = None

    @classmethod
    def missing(cls, name: str) -> ResolvedRef:
        return cls(requested_name=name, resolved_name=name, exists=False)

    @property
    def is_remote_fallback(self) -> bool:
        return self.exists and self.resolved_name != self.requested_name

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class InspectionFailure:
    """A per-repository processing error, surfaced as data."""

    stage: str  # "resolve", "ancestry", "search" or "scheduler"
    message: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class InspectionResult:
    """Per-repository outcome of an ancestry inspection."""

    repository: RepositoryHandle
    direction: InspectionDirection
    branch_ref: ResolvedRef
    base_ref: ResolvedRef
    sync_succeeded: bool = True
    sync_error: str = ""
    is_ancestor_satisfied: bool = False
    drift_count: int = 0
    commit_hash: str | None = None
    commit_timestamp: str | None = None
    merge_commit: str | None = None
    merge_timestamp: str | None = None
    failure: InspectionFailure | None = None

    def __post_init__(self) -> None:
        if self.is_ancestor_satisfied and not self.both_exist:
            raise ValueError("ancestry cannot be satisfied when a ref is missing")
        if self.drift_count < 0:
            raise ValueError("drift count must be non-negative")

    @property
    def name(self) -> str:
        return self.repository.name

    @property
    def path(self) -> Path:
        return self.repository.path

    @property
    def both_exist(self) -> bool:
        return self.branch_ref.exists and self.base_ref.exists

    @property
    def is_errored(self) -> bool:
        return self.failure is not None

    @property
    def is_missing_branch(self) -> bool:
        return self.failure is None and not self.branch_ref.exists

    @property
    def is_missing_base(self) -> bool:
        return self.failure is None and not self.base_ref.exists

    @property
    def is_satisfied(self) -> bool:
        return self.failure is None and self.is_ancestor_satisfied

    @property
    def is_behind(self) -> bool:
        """Both refs exist, verdict is negative and was actually verified."""
        return self.failure is None and self.both_exist and not self.is_ancestor_satisfied

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": str(self.path),
            "direction": self.direction.value,
            "sync_succeeded": self.sync_succeeded,
            "sync_error": self.sync_error,
            "branch_ref": self.branch_ref.to_dict(),
            "base_ref": self.base_ref.to_dict(),
            "is_ancestor_satisfied": self.is_ancestor_satisfied,
            "drift_count": self.drift_count,
            "commit_hash": self.commit_hash,
            "commit_timestamp": self.commit_timestamp,
            "merge_commit": self.merge_commit,
            "merge_timestamp": self.merge_timestamp,
            "failure": self.failure.to_dict() if self.failure else None,
        }


@dataclass(frozen=True)
class BranchSearchResult:
    """Whether one repository carries a branch."""

    repository: RepositoryHandle
    branch: str
    has_target_branch: bool = False
    branches: tuple[str, ...] = ()
    sync_succeeded: bool = True
    sync_error: str = ""
    failure: InspectionFailure | None = None

    @property
    def name(self) -> str:
        return self.repository.name

    @property
    def path(self) -> Path:
        return self.repository.path

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": str(self.path),
            "branch": self.branch,
            "has_target_branch": self.has_target_branch,
            "branches": list(self.branches),
            "sync_succeeded": self.sync_succeeded,
            "sync_error": self.sync_error,
            "failure": self.failure.to_dict() if self.failure else None,
        }


@dataclass
class AuditSummary:
    """Counts derived from a result set by partitioning predicates."""

    total: int = 0
    satisfied: int = 0
    behind: int = 0
    missing_branch: int = 0
    missing_base: int = 0
    errors: int = 0
    sync_failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_results(cls, results: Sequence[InspectionResult]) -> AuditSummary:
        return cls(
            total=len(results),
            satisfied=sum(1 for r in results if r.is_satisfied),
            behind=sum(1 for r in results if r.is_behind),
            missing_branch=sum(1 for r in results if r.is_missing_branch),
            missing_base=sum(1 for r in results if r.is_missing_base),
            errors=sum(1 for r in results if r.is_errored),
            sync_failed=sum(1 for r in results if not r.sync_succeeded),
        )


# =============================================================================
# Git Operations (Low-level)
# =============================================================================


class GitOperations:
    """Low-level Git operations for a single repository."""

    def __init__(self, repo_path: Path, timeout: float | None = None):
        self.repo_path = repo_path
        self.timeout = timeout

    def _run(self, *args: str, timeout: float | None = None) -> subprocess.CompletedProcess:
        """Run a git command in the repository.

        Non-zero exit codes are returned to the caller; only a timeout or a
        failure to start git at all is raised.
        """
        command = ["git", *args]
        limit = timeout if timeout is not None else self.timeout
        logger.debug("%s: %s", self.repo_path.name, " ".join(command))
        try:
            return subprocess.run(
                command,
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                check=False,
                timeout=limit,
            )
        except subprocess.TimeoutExpired as e:
            raise GitTimeoutError(command, e.timeout) from e
        except OSError as e:
            raise GitCommandError(command, None, str(e)) from e

    def fetch_all(self, timeout: float | None = DEFAULT_SYNC_TIMEOUT) -> tuple[bool, str]:
        """Fetch all remotes, pruning stale remote-tracking branches."""
        try:
            result = self._run("fetch", "--all", "--prune", timeout=timeout)
            if result.returncode != 0:
                return False, result.stderr.strip() or f"exit status {result.returncode}"
            return True, ""
        except GitCommandError as e:
            return False, str(e)

    def verify_commit(self, ref: str) -> str | None:
        """Return the commit a ref points at, or None if it does not exist."""
        args = ("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")
        result = self._run(*args)
        if result.returncode == 0:
            return result.stdout.strip()
        if result.returncode == 1:
            return None
        raise GitCommandError(["git", *args], result.returncode, result.stderr)

    def is_ancestor(self, candidate: str, descendant: str) -> bool:
        args = ("merge-base", "--is-ancestor", candidate, descendant)
        result = self._run(*args)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise GitCommandError(["git", *args], result.returncode, result.stderr)

    def count_commits(self, revision_range: str) -> int:
        args = ("rev-list", "--count", revision_range)
        result = self._run(*args)
        if result.returncode != 0:
            raise GitCommandError(["git", *args], result.returncode, result.stderr)
        try:
            return int(result.stdout.strip())
        except ValueError as e:
            raise GitCommandError(
                ["git", *args], result.returncode, f"unexpected output {result.stdout!r}"
            ) from e

    def get_commit_timestamp(self, commit: str) -> str | None:
        """Get committer date (ISO-8601) of a commit."""
        try:
            result = self._run("log", "-1", "--format=%cI", commit)
            if result.returncode == 0 and result.stdout.strip():
                return result.stdout.strip()
        except GitCommandError:
            pass
        return None

    def find_merge_commit(self, base: str, branch_name: str) -> tuple[str, str] | None:
        """Find the newest merge on base whose subject names branch_name.

        Matches git's own wording, e.g. "Merge branch 'x' into master" or
        "Merge remote-tracking branch 'origin/x'"; the quotes keep
        feature/x from matching feature/x2.
        """
        quoted = _ERE_SPECIAL.sub(r"\\\1", branch_name)
        result = self._run(
            "log",
            "--merges",
            "--extended-regexp",
            f"--grep=^Merge .*'([^'/]+/)?{quoted}'",
            "-1",
            "--format=%H%x09%cI",
            base,
            "--",
        )
        if result.returncode != 0 or not result.stdout.strip():
            return None
        commit, _, timestamp = result.stdout.strip().partition("\t")
        return commit, timestamp

    def list_branches(
        self, include_remote: bool = False, remote: str = DEFAULT_REMOTE
    ) -> list[str]:
        """List local branch names, plus remote-tracking ones without their prefix."""
        patterns = ["refs/heads"]
        if include_remote:
            patterns.append(f"refs/remotes/{remote}")
        args = ("for-each-ref", "--format=%(refname)", *patterns)
        result = self._run(*args)
        if result.returncode != 0:
            raise GitCommandError(["git", *args], result.returncode, result.stderr)

        branches: list[str] = []
        remote_prefix = f"refs/remotes/{remote}/"
        for line in result.stdout.splitlines():
            refname = line.strip()
            if refname.startswith("refs/heads/"):
                name = refname[len("refs/heads/") :]
            elif refname.startswith(remote_prefix):
                name = refname[len(remote_prefix) :]
                if name == "HEAD":
                    continue
            else:
                continue
            if name not in branches:
                branches.append(name)
        return branches


# =============================================================================
# Reference Resolution & Ancestry
# =============================================================================


@dataclass(frozen=True)
class LocalRefStrategy:
    """Try the name exactly as given."""

    def candidate(self, ref_name: str) -> str:
        return ref_name


@dataclass(frozen=True)
class RemoteTrackingStrategy:
    """Try the remote-tracking form, e.g. origin/<name>."""

    remote: str = DEFAULT_REMOTE

    def candidate(self, ref_name: str) -> str:
        return f"{self.remote}/{ref_name}"


DEFAULT_STRATEGIES: tuple[LocalRefStrategy | RemoteTrackingStrategy, ...] = (
    LocalRefStrategy(),
    RemoteTrackingStrategy(),
)


class RefResolver:
    """Resolve a branch name by trying each strategy in order.

    The first strategy whose candidate verifies as a commit wins. Absence
    under every strategy is a normal outcome, not an error.
    """

    def __init__(
        self,
        strategies: Sequence[Any] = DEFAULT_STRATEGIES,
        timeout: float | None = DEFAULT_GIT_TIMEOUT,
    ):
        self.strategies = tuple(strategies)
        self.timeout = timeout

    def resolve(self, repository_path: Path, ref_name: str) -> ResolvedRef:
        ops = GitOperations(repository_path, timeout=self.timeout)
        for strategy in self.strategies:
            candidate = strategy.candidate(ref_name)
            commit = ops.verify_commit(candidate)
            if commit:
                return ResolvedRef(
                    requested_name=ref_name,
                    resolved_name=candidate,
                    exists=True,
                    commit_hash=commit,
                )
        return ResolvedRef.missing(ref_name)


class AncestryEvaluator:
    """Read-only ancestry queries."""

    def __init__(self, timeout: float | None = DEFAULT_GIT_TIMEOUT):
        self.timeout = timeout

    def is_ancestor(
        self, repository_path: Path, candidate_commit: str, descendant_commit: str
    ) -> bool:
        """True if merging candidate into descendant would be a no-op."""
        ops = GitOperations(repository_path, timeout=self.timeout)
        return ops.is_ancestor(candidate_commit, descendant_commit)

    def count_behind(self, repository_path: Path, lagging_ref: str, leading_ref: str) -> int:
        """Commits reachable from leading_ref but not from lagging_ref."""
        ops = GitOperations(repository_path, timeout=self.timeout)
        return ops.count_commits(f"{lagging_ref}..{leading_ref}")


# =============================================================================
# Repository Inspector
# =============================================================================


class RepositoryInspector:
    """Inspect one repository; every failure is captured into the result."""

    def __init__(
        self,
        resolver: RefResolver | None = None,
        evaluator: AncestryEvaluator | None = None,
    ):
        self.resolver = resolver
        self.evaluator = evaluator

    def _components(self, git_timeout: float | None) -> tuple[RefResolver, AncestryEvaluator]:
        resolver = self.resolver or RefResolver(timeout=git_timeout)
        evaluator = self.evaluator or AncestryEvaluator(timeout=git_timeout)
        return resolver, evaluator

    def _sync(self, repository: RepositoryHandle, timeout: float) -> tuple[bool, str]:
        ops = GitOperations(repository.path)
        success, error = ops.fetch_all(timeout=timeout)
        if not success:
            logger.warning("%s: fetch failed, using local state: %s", repository.name, error)
        return success, error

    def inspect(self, repository: RepositoryHandle, request: InspectionRequest) -> InspectionResult:
        """Inspect ancestry of request.branch_ref against request.base_ref."""
        resolver, evaluator = self._components(request.git_timeout)

        sync_succeeded, sync_error = True, ""
        if request.sync_before_inspect:
            sync_succeeded, sync_error = self._sync(repository, request.sync_timeout)

        result = InspectionResult(
            repository=repository,
            direction=request.direction,
            branch_ref=ResolvedRef.missing(request.branch_ref),
            base_ref=ResolvedRef.missing(request.base_ref),
            sync_succeeded=sync_succeeded,
            sync_error=sync_error,
        )

        stage = "resolve"
        try:
            base = resolver.resolve(repository.path, request.base_ref)
            branch = resolver.resolve(repository.path, request.branch_ref)
            result = replace(result, base_ref=base, branch_ref=branch)
            if not (base.exists and branch.exists):
                return result

            result = replace(
                result,
                commit_hash=branch.commit_hash,
                commit_timestamp=GitOperations(
                    repository.path, timeout=request.git_timeout
                ).get_commit_timestamp(branch.commit_hash),
            )

            stage = "ancestry"
            if request.direction == InspectionDirection.BRANCH_INTO_BASE:
                satisfied = evaluator.is_ancestor(
                    repository.path, branch.commit_hash, base.commit_hash
                )
                lagging, leading = base, branch
            else:
                satisfied = evaluator.is_ancestor(
                    repository.path, base.commit_hash, branch.commit_hash
                )
                lagging, leading = branch, base

            drift = 0
            if not satisfied:
                drift = evaluator.count_behind(
                    repository.path, lagging.resolved_name, leading.resolved_name
                )
            result = replace(result, is_ancestor_satisfied=satisfied, drift_count=drift)
        except Exception as e:
            logger.warning("%s: %s failed: %s", repository.name, stage, e)
            return replace(result, failure=InspectionFailure(stage=stage, message=str(e)))

        merged_direction = request.direction == InspectionDirection.BRANCH_INTO_BASE
        if result.is_ancestor_satisfied and merged_direction:
            merge = self._find_merge_commit(repository, result.base_ref, request)
            if merge:
                result = replace(result, merge_commit=merge[0], merge_timestamp=merge[1])
        return result

    def _find_merge_commit(
        self, repository: RepositoryHandle, base: ResolvedRef, request: InspectionRequest
    ) -> tuple[str, str] | None:
        """Best-effort lookup; never affects the verdict."""
        try:
            ops = GitOperations(repository.path, timeout=request.git_timeout)
            return ops.find_merge_commit(base.resolved_name, request.branch_ref)
        except Exception as e:
            logger.debug("%s: merge commit lookup failed: %s", repository.name, e)
            return None

    def search(
        self,
        repository: RepositoryHandle,
        branch: str,
        *,
        include_remote: bool = False,
        sync: bool = True,
        sync_timeout: float = DEFAULT_SYNC_TIMEOUT,
        git_timeout: float | None = DEFAULT_GIT_TIMEOUT,
    ) -> BranchSearchResult:
        """Check whether the repository carries a branch named exactly `branch`."""
        sync_succeeded, sync_error = True, ""
        if sync:
            sync_succeeded, sync_error = self._sync(repository, sync_timeout)

        try:
            names = GitOperations(repository.path, timeout=git_timeout).list_branches(
                include_remote=include_remote
            )
        except Exception as e:
            logger.warning("%s: branch listing failed: %s", repository.name, e)
            return BranchSearchResult(
                repository=repository,
                branch=branch,
                sync_succeeded=sync_succeeded,
                sync_error=sync_error,
                failure=InspectionFailure(stage="search", message=str(e)),
            )

        return BranchSearchResult(
            repository=repository,
            branch=branch,
            has_target_branch=branch in names,
            branches=tuple(n for n in names if branch in n),
            sync_succeeded=sync_succeeded,
            sync_error=sync_error,
        )


# =============================================================================
# Discovery
# =============================================================================


def is_working_copy(path: Path) -> bool:
    try:
        return path.is_dir() and (path / ".git").exists()
    except OSError as e:
        logger.debug("Skipping unreadable entry %s: %s", path, e)
        return False


def discover_repositories(root: Path, exclude: Iterable[str] = ()) -> list[RepositoryHandle]:
    """Immediate subdirectories of root that hold Git metadata, sorted by name."""
    root = Path(root).expanduser()
    if not root.exists():
        raise RootDirectoryError(f"Root directory does not exist: {root}")
    if not root.is_dir():
        raise RootDirectoryError(f"Root path is not a directory: {root}")

    excluded = set(exclude)
    try:
        entries = sorted(root.iterdir(), key=lambda p: p.name)
    except OSError as e:
        raise RootDirectoryError(f"Cannot read root directory {root}: {e}") from e

    repos = []
    for entry in entries:
        if entry.name in excluded:
            logger.debug("Skipping excluded repository %s", entry.name)
            continue
        if is_working_copy(entry):
            repos.append(RepositoryHandle.from_path(entry))
    return repos


def discover_all(roots: Sequence[Path], exclude: Iterable[str] = ()) -> list[RepositoryHandle]:
    """Discover across several roots; the first root wins on duplicate names."""
    excluded = set(exclude)
    seen: set[str] = set()
    repos = []
    for root in roots:
        for repo in discover_repositories(root, excluded):
            if repo.name in seen:
                logger.info("Ignoring duplicate repository name %s at %s", repo.name, repo.path)
                continue
            seen.add(repo.name)
            repos.append(repo)
    return repos


# =============================================================================
# Batch Scheduler
# =============================================================================


class BatchScheduler:
    """Run inspection jobs in consecutive waves of bounded size.

    Every job of a wave is awaited before the next wave starts, so at most
    `concurrency_limit` jobs are in flight. Results come back in input order.
    """

    def __init__(self, inspector: RepositoryInspector | None = None):
        self.inspector = inspector or RepositoryInspector()

    def run(
        self,
        repositories: Sequence[RepositoryHandle | Path | str],
        request: InspectionRequest,
        on_progress: ProgressCallback | None = None,
    ) -> list[InspectionResult]:
        """Inspect every repository and return one result per repository."""

        def on_error(repo: RepositoryHandle, error: Exception) -> InspectionResult:
            return InspectionResult(
                repository=repo,
                direction=request.direction,
                branch_ref=ResolvedRef.missing(request.branch_ref),
                base_ref=ResolvedRef.missing(request.base_ref),
                sync_succeeded=False,
                failure=InspectionFailure(stage="scheduler", message=str(error)),
            )

        return self._run_waves(
            _as_handles(repositories),
            lambda repo: self.inspector.inspect(repo, request),
            on_error,
            request.concurrency_limit,
            on_progress,
        )

    def search(
        self,
        repositories: Sequence[RepositoryHandle | Path | str],
        branch: str,
        *,
        include_remote: bool = False,
        sync: bool = True,
        concurrency_limit: int = DEFAULT_CONCURRENCY,
        sync_timeout: float = DEFAULT_SYNC_TIMEOUT,
        git_timeout: float | None = DEFAULT_GIT_TIMEOUT,
        on_progress: ProgressCallback | None = None,
    ) -> list[BranchSearchResult]:
        """Find which repositories carry `branch`."""
        validate_ref_name(branch, "branch")
        if concurrency_limit < 1:
            raise ValueError(f"concurrency limit must be positive, got {concurrency_limit}")

        def on_error(repo: RepositoryHandle, error: Exception) -> BranchSearchResult:
            return BranchSearchResult(
                repository=repo,
                branch=branch,
                sync_succeeded=False,
                failure=InspectionFailure(stage="scheduler", message=str(error)),
            )

        return self._run_waves(
            _as_handles(repositories),
            lambda repo: self.inspector.search(
                repo,
                branch,
                include_remote=include_remote,
                sync=sync,
                sync_timeout=sync_timeout,
                git_timeout=git_timeout,
            ),
            on_error,
            concurrency_limit,
            on_progress,
        )

    def _run_waves(
        self,
        repositories: list[RepositoryHandle],
        job: Callable[[RepositoryHandle], T],
        on_error: Callable[[RepositoryHandle, Exception], T],
        concurrency_limit: int,
        on_progress: ProgressCallback | None,
    ) -> list[T]:
        total = len(repositories)
        results: list[T] = []
        if total == 0:
            return results

        with ThreadPoolExecutor(max_workers=min(concurrency_limit, total)) as executor:
            for start in range(0, total, concurrency_limit):
                wave = repositories[start : start + concurrency_limit]
                futures = [executor.submit(job, repo) for repo in wave]
                # Collect in submission order; this is also the wave barrier.
                for repo, future in zip(wave, futures):
                    try:
                        results.append(future.result())
                    except Exception as e:
                        logger.warning("%s: inspection job crashed: %s", repo.name, e)
                        results.append(on_error(repo, e))
                if on_progress:
                    on_progress(len(results), total)
        return results


def _as_handles(repositories: Sequence[RepositoryHandle | Path | str]) -> list[RepositoryHandle]:
    return [
        r if isinstance(r, RepositoryHandle) else RepositoryHandle.from_path(r)
        for r in repositories
    ]


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class AuditConfig:
    """Defaults for a run; command-line options override them."""

    directory: Path = field(default_factory=lambda: Path("."))
    base_branch: str = DEFAULT_BASE_BRANCH
    concurrency: int = DEFAULT_CONCURRENCY
    exclude: list[str] = field(default_factory=list)
    sync_timeout: float = DEFAULT_SYNC_TIMEOUT
    git_timeout: float | None = DEFAULT_GIT_TIMEOUT

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditConfig:
        config = cls()
        if "directory" in data:
            directory = os.path.expandvars(_expect(data, "directory", str))
            config.directory = Path(directory).expanduser()
        if "base_branch" in data:
            config.base_branch = _expect(data, "base_branch", str)
        if "concurrency" in data:
            config.concurrency = _expect(data, "concurrency", int)
            if config.concurrency < 1:
                raise ConfigError("'concurrency' must be a positive integer")
        if "exclude" in data:
            exclude = _expect(data, "exclude", list)
            if not all(isinstance(name, str) for name in exclude):
                raise ConfigError("'exclude' must be a list of repository names")
            config.exclude = list(exclude)
        if "sync_timeout" in data:
            config.sync_timeout = float(_expect(data, "sync_timeout", (int, float)))
        if "git_timeout" in data:
            value = data["git_timeout"]
            if value is not None:
                value = float(_expect(data, "git_timeout", (int, float)))
            config.git_timeout = value
        return config

    def build_request(
        self,
        branch: str,
        direction: InspectionDirection,
        *,
        base_branch: str | None = None,
        concurrency: int | None = None,
        sync: bool = True,
    ) -> InspectionRequest:
        return InspectionRequest(
            branch_ref=branch,
            base_ref=base_branch or self.base_branch,
            sync_before_inspect=sync,
            concurrency_limit=concurrency or self.concurrency,
            direction=direction,
            sync_timeout=self.sync_timeout,
            git_timeout=self.git_timeout,
        )


def _expect(data: dict[str, Any], key: str, kind: type | tuple[type, ...]) -> Any:
    value = data[key]
    # bool is an int subclass; never accept it for numeric settings
    if isinstance(value, bool) or not isinstance(value, kind):
        raise ConfigError(f"Invalid type for '{key}': {type(value).__name__}")
    return value


def resolve_config_file() -> Path | None:
    """Auto-resolve the config file.

    Priority order:
    1. $BRANCH_FLEET_CONFIG environment variable
    2. ~/.config/branch-fleet/config.json (XDG-compliant)
    3. ~/.branch-fleet.json
    """
    env_config = os.environ.get("BRANCH_FLEET_CONFIG")
    if env_config:
        env_path = Path(env_config).expanduser()
        if env_path.is_file():
            return env_path

    xdg_path = Path.home() / ".config" / "branch-fleet" / "config.json"
    if xdg_path.is_file():
        return xdg_path

    legacy_path = Path.home() / ".branch-fleet.json"
    if legacy_path.is_file():
        return legacy_path

    return None


def load_config(config_file: Path | None = None) -> AuditConfig:
    """Load configuration, falling back to defaults when no file exists."""
    path = config_file or resolve_config_file()
    if path is None:
        return AuditConfig()
    path = path.expanduser()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    logger.debug("Loaded config from %s", path)
    return AuditConfig.from_dict(data)


def load_roots_file(roots_file: Path) -> list[Path]:
    """Load root directories from a file (one path per line).

    Supports:
    - Comments starting with #
    - Environment variables: $HOME, ${HOME}, $DEV_ROOT, etc.
    - Tilde expansion: ~/path
    """
    roots = []
    try:
        with open(roots_file.expanduser()) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#"):
                    path = Path(os.path.expandvars(line)).expanduser()
                    if path.is_dir():
                        roots.append(path)
                    else:
                        logger.warning("Ignoring missing root %s", path)
    except FileNotFoundError:
        pass
    return roots


def resolve_roots_file() -> Path | None:
    """Auto-resolve roots file from $BRANCH_FLEET_ROOTS or ~/.config/branch-fleet/roots."""
    env_roots = os.environ.get("BRANCH_FLEET_ROOTS")
    if env_roots:
        env_path = Path(env_roots).expanduser()
        if env_path.is_file():
            return env_path

    xdg_path = Path.home() / ".config" / "branch-fleet" / "roots"
    if xdg_path.is_file():
        return xdg_path

    return None


# =============================================================================
# CLI Application
# =============================================================================


app = typer.Typer(
    name="branch-fleet",
    help="Audit branch merge state across a fleet of Git repositories.",
    no_args_is_help=True,
)


def configure_logging(verbose: bool = False) -> None:
    """Send package logs to stderr through rich."""
    package_logger = logging.getLogger("branch_fleet")
    package_logger.handlers.clear()
    handler = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    package_logger.propagate = False


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        print(f"branch-fleet {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    schema: bool = typer.Option(
        False,
        "--schema",
        help="Output MCP-compatible tool schema for AI agents",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log every git invocation",
    ),
):
    """branch-fleet: Audit branch merge state across a fleet of Git repositories."""
    configure_logging(verbose)
    if schema:
        print(json.dumps(get_tool_schema(), indent=2))
        raise typer.Exit()


def get_console_and_formatter(output_format: OutputFormat) -> tuple[Console, OutputFormatter]:
    """Create console and formatter."""
    console = Console(force_terminal=False if output_format == OutputFormat.JSON else None)
    formatter = OutputFormatter(console, output_format=output_format)
    return console, formatter


def prepare_run(
    console: Console,
    path: Path | None,
    roots: Path | None,
    config_file: Path | None,
) -> tuple[AuditConfig, list[Path], list[RepositoryHandle]]:
    """Load config and discover repositories; exit with status 1 on setup failure."""
    try:
        config = load_config(config_file)
        resolved_roots = roots or (None if path else resolve_roots_file())
        if resolved_roots:
            root_paths = load_roots_file(resolved_roots)
            if not root_paths:
                raise RootDirectoryError(f"No valid roots found in {resolved_roots}")
        else:
            root_paths = [(path or config.directory).expanduser().resolve()]
        repos = discover_all(root_paths, config.exclude)
    except BranchFleetError as e:
        console.print(f"[red]Error: {e}[/]")
        raise typer.Exit(1) from e
    return config, root_paths, repos


@contextmanager
def progress_reporter(
    console: Console, description: str, enabled: bool
) -> Iterator[ProgressCallback | None]:
    """Yield an on_progress callback drawing a rich progress bar."""
    if not enabled:
        yield None
        return
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task(description, total=None)

        def update(completed: int, total: int) -> None:
            progress.update(task, completed=completed, total=total)

        yield update


PathArgument = typer.Argument(None, help="Root directory whose subdirectories are repositories")
RootsOption = typer.Option(
    None, "--roots", "-r", help="File containing root directories (one per line)"
)
ConfigOption = typer.Option(None, "--config", "-c", help="Path to a JSON config file")
NoFetchOption = typer.Option(False, "--no-fetch", help="Skip 'git fetch --all --prune'")
ParallelOption = typer.Option(
    None, "--parallel", "-p", min=1, help="Repositories inspected at once (default from config)"
)
SequentialOption = typer.Option(
    False, "--sequential", "-s", help="Inspect one repository at a time"
)
BaseBranchOption = typer.Option(
    None, "--base-branch", "-b", help="Reference branch (default from config, else master)"
)
FormatOption = typer.Option(OutputFormat.TABLE, "--format", "-f", help="Output format")
ShowMissingOption = typer.Option(
    False, "--show-missing", help="List repositories lacking the branch or base branch"
)


def run_inspection(
    direction: InspectionDirection,
    branch: str,
    path: Path | None,
    roots: Path | None,
    config_file: Path | None,
    no_fetch: bool,
    parallel: int | None,
    sequential: bool,
    base_branch: str | None,
    output_format: OutputFormat,
    show_missing: bool,
) -> None:
    console, formatter = get_console_and_formatter(output_format)
    config, root_paths, repos = prepare_run(console, path, roots, config_file)

    try:
        request = config.build_request(
            branch,
            direction,
            base_branch=base_branch,
            concurrency=1 if sequential else parallel,
            sync=not no_fetch,
        )
    except ValueError as e:
        console.print(f"[red]Error: {e}[/]")
        raise typer.Exit(1) from e

    interactive = output_format != OutputFormat.JSON
    if interactive:
        formatter.print_run_header(request, root_paths, len(repos))

    with progress_reporter(console, "Inspecting repositories...", interactive) as on_progress:
        results = BatchScheduler().run(repos, request, on_progress)

    summary = AuditSummary.from_results(results)
    formatter.print_inspection_results(results, summary, request, show_missing)


@app.command()
def merged(
    branch: str = typer.Argument(..., help="Branch to check"),
    path: Path = PathArgument,
    roots: Path = RootsOption,
    config_file: Path = ConfigOption,
    no_fetch: bool = NoFetchOption,
    parallel: int = ParallelOption,
    sequential: bool = SequentialOption,
    base_branch: str = BaseBranchOption,
    output_format: OutputFormat = FormatOption,
    show_missing: bool = ShowMissingOption,
):
    """Check whether BRANCH has been merged into the base branch."""
    run_inspection(
        InspectionDirection.BRANCH_INTO_BASE,
        branch,
        path,
        roots,
        config_file,
        no_fetch,
        parallel,
        sequential,
        base_branch,
        output_format,
        show_missing,
    )


@app.command()
def uptodate(
    branch: str = typer.Argument(..., help="Branch to check"),
    path: Path = PathArgument,
    roots: Path = RootsOption,
    config_file: Path = ConfigOption,
    no_fetch: bool = NoFetchOption,
    parallel: int = ParallelOption,
    sequential: bool = SequentialOption,
    base_branch: str = BaseBranchOption,
    output_format: OutputFormat = FormatOption,
    show_missing: bool = ShowMissingOption,
):
    """Check whether BRANCH contains all of the base branch's history."""
    run_inspection(
        InspectionDirection.BASE_INTO_BRANCH,
        branch,
        path,
        roots,
        config_file,
        no_fetch,
        parallel,
        sequential,
        base_branch,
        output_format,
        show_missing,
    )


@app.command(name="branch")
def find_branch(
    branch: str = typer.Argument(..., help="Branch name to look for"),
    path: Path = PathArgument,
    roots: Path = RootsOption,
    config_file: Path = ConfigOption,
    no_fetch: bool = NoFetchOption,
    remote: bool = typer.Option(
        False, "--remote", help="Also search origin's remote-tracking branches"
    ),
    parallel: int = ParallelOption,
    sequential: bool = SequentialOption,
    output_format: OutputFormat = FormatOption,
):
    """Find repositories that carry BRANCH."""
    console, formatter = get_console_and_formatter(output_format)
    config, root_paths, repos = prepare_run(console, path, roots, config_file)

    try:
        validate_ref_name(branch, "branch")
    except ValueError as e:
        console.print(f"[red]Error: {e}[/]")
        raise typer.Exit(1) from e

    interactive = output_format != OutputFormat.JSON
    if interactive:
        console.print(f"Found [bold]{len(repos)}[/] repositories\n")

    with progress_reporter(console, "Searching branches...", interactive) as on_progress:
        results = BatchScheduler().search(
            repos,
            branch,
            include_remote=remote,
            sync=not no_fetch,
            concurrency_limit=1 if sequential else (parallel or config.concurrency),
            sync_timeout=config.sync_timeout,
            git_timeout=config.git_timeout,
            on_progress=on_progress,
        )

    formatter.print_search_results(results, branch)


@app.command(name="list")
def list_repos(
    path: Path = PathArgument,
    roots: Path = RootsOption,
    config_file: Path = ConfigOption,
    paths_only: bool = typer.Option(
        False,
        "--paths",
        "-P",
        help="Output only paths (one per line, for piping to fzf etc.)",
    ),
    output_format: OutputFormat = FormatOption,
):
    """List all discovered repositories."""
    console, formatter = get_console_and_formatter(output_format)
    _, root_paths, repos = prepare_run(console, path, roots, config_file)

    if paths_only:
        for repo in repos:
            print(repo.path)
    else:
        formatter.print_repo_list(repos, root_paths)
