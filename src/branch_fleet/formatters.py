"""Output formatters for console and JSON display."""

from __future__ import annotations

import json
from collections.abc import Sequence
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:
    from .core import (
        AuditSummary,
        BranchSearchResult,
        InspectionRequest,
        InspectionResult,
        RepositoryHandle,
    )


class OutputFormat(StrEnum):
    """Output format selected with --format."""

    TABLE = "table"
    SIMPLE = "simple"
    JSON = "json"


# Verdict wording per direction: (satisfied, unsatisfied, drift unit)
_VERDICT_LABELS = {
    "branch_into_base": ("merged", "not merged", "unmerged"),
    "base_into_branch": ("up to date", "behind", "behind"),
}


def _truncate(text: str, width: int) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


class OutputFormatter:
    """Format results as a rich table, a plain list, or JSON."""

    def __init__(self, console: Console, output_format: OutputFormat = OutputFormat.TABLE):
        self.console = console
        self.output_format = output_format

    @property
    def use_json(self) -> bool:
        return self.output_format == OutputFormat.JSON

    def _print_json(self, data: dict) -> None:
        # soft_wrap keeps long paths from being broken across lines
        self.console.print(
            json.dumps(data, indent=2, default=str),
            soft_wrap=True,
            markup=False,
            highlight=False,
        )

    def print_run_header(
        self, request: InspectionRequest, roots: Sequence[Path], repo_count: int
    ) -> None:
        if request.direction == "branch_into_base":
            question = f"Is [bold]{request.branch_ref}[/] merged into [bold]{request.base_ref}[/]?"
        else:
            question = f"Does [bold]{request.branch_ref}[/] contain all of [bold]{request.base_ref}[/]?"
        self.console.print(question)
        for root in roots:
            self.console.print(f"[dim]Root: {root}[/]")
        self.console.print(f"[dim]Fetch: {'on' if request.sync_before_inspect else 'off'}[/]")
        self.console.print(f"Found [bold]{repo_count}[/] repositories\n")

    # -------------------------------------------------------------------------
    # Inspection results
    # -------------------------------------------------------------------------

    def print_inspection_results(
        self,
        results: Sequence[InspectionResult],
        summary: AuditSummary,
        request: InspectionRequest,
        show_missing: bool = False,
    ) -> None:
        """Print inspection results in the selected format."""
        if self.use_json:
            self._print_json(
                {
                    "branch": request.branch_ref,
                    "base_branch": request.base_ref,
                    "direction": request.direction.value,
                    "summary": summary.to_dict(),
                    "results": [r.to_dict() for r in results],
                }
            )
            return

        if self.output_format == OutputFormat.SIMPLE:
            self._print_inspection_simple(results, request, show_missing)
        else:
            self._print_inspection_table(results, request, show_missing)
        self._print_inspection_summary(summary, request, show_missing)

    def _status_display(self, result: InspectionResult) -> str:
        satisfied, unsatisfied, unit = _VERDICT_LABELS[result.direction.value]
        if result.is_satisfied:
            return f"[green]✓ {satisfied}[/]"
        if result.drift_count > 0:
            return f"[yellow]✗ {unsatisfied} ({result.drift_count} {unit})[/]"
        return f"[yellow]✗ {unsatisfied}[/]"

    def _print_inspection_table(
        self,
        results: Sequence[InspectionResult],
        request: InspectionRequest,
        show_missing: bool,
    ) -> None:
        verified = [r for r in results if r.failure is None and r.both_exist]

        if verified:
            table = Table(title=f"{request.branch_ref} vs {request.base_ref}")
            table.add_column("#", justify="right", style="dim")
            table.add_column("Repository", style="cyan", no_wrap=True)
            table.add_column("Branch")
            table.add_column("Status")
            table.add_column("Date", justify="right")

            for index, result in enumerate(verified, start=1):
                branch_display = result.branch_ref.resolved_name
                if result.branch_ref.is_remote_fallback:
                    branch_display = f"[dim]{branch_display}[/]"
                if not result.sync_succeeded:
                    branch_display += " [red](stale)[/]"
                date = result.merge_timestamp or result.commit_timestamp
                table.add_row(
                    str(index),
                    _truncate(result.name, 40),
                    branch_display,
                    self._status_display(result),
                    date[:10] if date else "[dim]-[/]",
                )
            self.console.print(table)
            self.console.print()
        else:
            self.console.print("[dim]No repository has both branches[/]\n")

        self._print_missing_and_errors(results, request, show_missing)

    def _print_inspection_simple(
        self,
        results: Sequence[InspectionResult],
        request: InspectionRequest,
        show_missing: bool,
    ) -> None:
        satisfied_label, unsatisfied_label, unit = _VERDICT_LABELS[request.direction.value]

        satisfied = [r for r in results if r.is_satisfied]
        behind = [r for r in results if r.is_behind]

        self.console.print(f"[green]✓ {satisfied_label.capitalize()} ({len(satisfied)}):[/]")
        for r in satisfied:
            date = r.merge_timestamp or r.commit_timestamp
            suffix = f" ({date[:10]})" if date else ""
            self.console.print(f"  {r.name}{suffix}")

        if behind:
            self.console.print(f"[yellow]✗ {unsatisfied_label.capitalize()} ({len(behind)}):[/]")
            for r in behind:
                drift = f" ({r.drift_count} {unit})" if r.drift_count else ""
                self.console.print(f"  {r.name}{drift}")

        self._print_missing_and_errors(results, request, show_missing)

    def _print_missing_and_errors(
        self,
        results: Sequence[InspectionResult],
        request: InspectionRequest,
        show_missing: bool,
    ) -> None:
        if show_missing:
            missing_branch = [r for r in results if r.is_missing_branch]
            missing_base = [r for r in results if r.is_missing_base]
            if missing_branch:
                self.console.print(
                    f"[dim]Branch '{request.branch_ref}' not found ({len(missing_branch)}):[/]"
                )
                for r in missing_branch:
                    self.console.print(f"  • {r.name}")
            if missing_base:
                self.console.print(
                    f"[dim]Base branch '{request.base_ref}' not found ({len(missing_base)}):[/]"
                )
                for r in missing_base:
                    self.console.print(f"  • {r.name}")

        errored = [r for r in results if r.is_errored]
        if errored:
            self.console.print(f"[red]✗ Errors ({len(errored)}):[/]")
            for r in errored:
                self.console.print(
                    f"  • {r.name}: {r.failure.message}",
                    markup=False,
                )

    def _print_inspection_summary(
        self, summary: AuditSummary, request: InspectionRequest, show_missing: bool
    ) -> None:
        satisfied_label, unsatisfied_label, _ = _VERDICT_LABELS[request.direction.value]
        parts = [f"[bold]Total:[/] {summary.total}"]
        parts.append(f"[green]✓ {satisfied_label.capitalize()}:[/] {summary.satisfied}")
        parts.append(f"[yellow]✗ {unsatisfied_label.capitalize()}:[/] {summary.behind}")
        if show_missing:
            parts.append(f"[dim]No branch:[/] {summary.missing_branch}")
            parts.append(f"[dim]No base:[/] {summary.missing_base}")
        if summary.sync_failed > 0:
            parts.append(f"[red]Fetch failed:[/] {summary.sync_failed}")
        parts.append(f"[red]✗ Errors:[/] {summary.errors}")
        self.console.print()
        self.console.print(" | ".join(parts))

    # -------------------------------------------------------------------------
    # Branch search
    # -------------------------------------------------------------------------

    def print_search_results(self, results: Sequence[BranchSearchResult], branch: str) -> None:
        """Print which repositories carry a branch."""
        matched = [r for r in results if r.has_target_branch]
        failed = [r for r in results if r.failure is not None]

        if self.use_json:
            self._print_json(
                {
                    "branch": branch,
                    "summary": {
                        "total": len(results),
                        "matched": len(matched),
                        "errors": len(failed),
                    },
                    "results": [r.to_dict() for r in results],
                }
            )
            return

        if not matched:
            self.console.print(f"[yellow]No repository has branch '{branch}'[/]")
        elif self.output_format == OutputFormat.SIMPLE:
            self.console.print(f"[green]Repositories with branch '{branch}':[/]")
            for index, r in enumerate(matched, start=1):
                self.console.print(f"{index}. {r.name}")
        else:
            table = Table(title=f"Repositories with branch '{branch}'")
            table.add_column("#", justify="right", style="dim")
            table.add_column("Repository", style="cyan", no_wrap=True)
            table.add_column("Matching branches")
            table.add_column("Fetch", justify="center")
            for index, r in enumerate(matched, start=1):
                shown = ", ".join(r.branches[:2])
                if len(r.branches) > 2:
                    shown += f" (+{len(r.branches) - 2})"
                table.add_row(
                    str(index),
                    r.name,
                    _truncate(shown, 40),
                    "[green]✓[/]" if r.sync_succeeded else "[yellow]⚠[/]",
                )
            self.console.print(table)

        if failed:
            self.console.print(f"\n[red]✗ Errors ({len(failed)}):[/]")
            for r in failed:
                self.console.print(
                    f"  • {r.name}: {r.failure.message}", markup=False
                )

        self.console.print(
            f"\n[bold]Total:[/] {len(results)} | [green]With branch:[/] {len(matched)}"
            f" | [red]Errors:[/] {len(failed)}"
        )

    # -------------------------------------------------------------------------
    # Repository list
    # -------------------------------------------------------------------------

    def print_repo_list(self, repos: Sequence[RepositoryHandle], roots: Sequence[Path]) -> None:
        """Print discovered repositories."""
        if self.use_json:
            self._print_json(
                {
                    "roots": [str(root) for root in roots],
                    "count": len(repos),
                    "repositories": [repo.to_dict() for repo in repos],
                }
            )
            return

        where = ", ".join(str(root) for root in roots)
        self.console.print(f"[bold]Found {len(repos)} repositories in {where}[/]\n")
        for repo in repos:
            self.console.print(f"  [cyan]{repo.name}[/]")
