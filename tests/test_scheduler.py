from __future__ import annotations

import threading
import time
from pathlib import Path

from branch_fleet.core import (
    BatchScheduler,
    InspectionDirection,
    InspectionRequest,
    InspectionResult,
    RepositoryHandle,
    ResolvedRef,
)


def _handles(count: int) -> list[RepositoryHandle]:
    return [
        RepositoryHandle(name=f"repo-{i:02d}", path=Path(f"/fleet/repo-{i:02d}"))
        for i in range(count)
    ]


class RecordingInspector:
    """Fake inspector that tracks how many jobs run at once."""

    def __init__(self, fail_on: set[str] | None = None, delay: float = 0.02):
        self.fail_on = fail_on or set()
        self.delay = delay
        self.lock = threading.Lock()
        self.running = 0
        self.peak = 0
        self.spans: dict[str, tuple[float, float]] = {}

    def inspect(self, repository: RepositoryHandle, request: InspectionRequest) -> InspectionResult:
        started = time.monotonic()
        with self.lock:
            self.running += 1
            self.peak = max(self.peak, self.running)
        try:
            # Later repositories finish first within a wave.
            index = int(repository.name.rsplit("-", 1)[1])
            time.sleep(self.delay * (1 + (10 - index % 10) / 10))
            if repository.name in self.fail_on:
                raise RuntimeError(f"boom in {repository.name}")
            ref = ResolvedRef(request.branch_ref, request.branch_ref, True, "c1")
            base = ResolvedRef(request.base_ref, request.base_ref, True, "c2")
            return InspectionResult(
                repository=repository,
                direction=request.direction,
                branch_ref=ref,
                base_ref=base,
                is_ancestor_satisfied=True,
            )
        finally:
            with self.lock:
                self.running -= 1
                self.spans[repository.name] = (started, time.monotonic())


def _request(limit: int) -> InspectionRequest:
    return InspectionRequest(branch_ref="feature/x", sync_before_inspect=False, concurrency_limit=limit)


def test_concurrency_never_exceeds_limit() -> None:
    inspector = RecordingInspector()
    BatchScheduler(inspector).run(_handles(10), _request(3))

    assert 1 <= inspector.peak <= 3


def test_next_wave_waits_for_the_whole_previous_wave() -> None:
    inspector = RecordingInspector()
    repos = _handles(10)
    BatchScheduler(inspector).run(repos, _request(3))

    waves = [repos[i : i + 3] for i in range(0, len(repos), 3)]
    for previous, current in zip(waves, waves[1:]):
        previous_end = max(inspector.spans[r.name][1] for r in previous)
        current_start = min(inspector.spans[r.name][0] for r in current)
        assert current_start >= previous_end


def test_results_follow_discovery_order() -> None:
    repos = _handles(7)
    results = BatchScheduler(RecordingInspector()).run(repos, _request(4))

    assert [r.repository for r in results] == repos


def test_progress_is_reported_once_per_wave() -> None:
    calls: list[tuple[int, int]] = []
    BatchScheduler(RecordingInspector(delay=0)).run(
        _handles(10), _request(3), lambda done, total: calls.append((done, total))
    )

    assert calls == [(3, 10), (6, 10), (9, 10), (10, 10)]


def test_empty_fleet_returns_no_results() -> None:
    calls: list[tuple[int, int]] = []
    results = BatchScheduler(RecordingInspector()).run([], _request(3), lambda *a: calls.append(a))

    assert results == []
    assert calls == []


def test_crashing_job_does_not_abort_siblings() -> None:
    repos = _handles(6)
    results = BatchScheduler(RecordingInspector(fail_on={"repo-01", "repo-04"}, delay=0)).run(
        repos, _request(2)
    )

    assert len(results) == 6
    failed = [r.name for r in results if r.is_errored]
    assert failed == ["repo-01", "repo-04"]
    for r in results:
        if r.is_errored:
            assert r.failure.stage == "scheduler"
            assert "boom" in r.failure.message
            assert not r.is_ancestor_satisfied
        else:
            assert r.is_satisfied


def test_inspection_is_idempotent_without_sync(merged_repo: Path, remote_only_repo: Path) -> None:
    repos = sorted([merged_repo, remote_only_repo])
    request = InspectionRequest(
        branch_ref="feature/x",
        sync_before_inspect=False,
        direction=InspectionDirection.BASE_INTO_BRANCH,
        concurrency_limit=2,
    )
    scheduler = BatchScheduler()

    first = scheduler.run(repos, request)
    second = scheduler.run(repos, request)

    assert [r.to_dict() for r in first] == [r.to_dict() for r in second]
    assert [r.name for r in first] == ["alpha", "bravo"]


def test_search_runs_in_waves(make_fleet, git) -> None:
    repos = make_fleet(["one", "two", "three"])
    git(repos[1], "branch", "release/1.0")
    calls: list[tuple[int, int]] = []

    results = BatchScheduler().search(
        repos,
        "release/1.0",
        sync=False,
        concurrency_limit=2,
        on_progress=lambda done, total: calls.append((done, total)),
    )

    assert [r.has_target_branch for r in results] == [False, True, False]
    assert calls == [(2, 3), (3, 3)]
