"""Output formatters for console and JSON display."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .models import ActionKind, OutcomeStatus

if TYPE_CHECKING:
    from .errors import ConfigError, FlotillaError
    from .manifest import ValidationIssue
    from .models import ExecutionOutcome, SyncReport
    from .planner import SyncPlan
    from .snapshot import SnapshotResult


_ACTION_STYLES = {
    ActionKind.CLONE: "[blue]clone[/]",
    ActionKind.UPDATE_CLEANLY: "[cyan]update[/]",
    ActionKind.UPDATE_WITH_CONFLICT: "[bold red]⚠ conflict[/]",
    ActionKind.SKIP: "[green]up to date[/]",
    ActionKind.UNTRACK: "[dim]untracked[/]",
    ActionKind.INVALID_SPEC: "[red]invalid[/]",
}

_STATUS_STYLES = {
    OutcomeStatus.SUCCEEDED: "[green]✓[/]",
    OutcomeStatus.SKIPPED: "[green]=[/]",
    OutcomeStatus.FAILED: "[red]✗[/]",
    OutcomeStatus.CONFLICT: "[bold red]⚠[/]",
    OutcomeStatus.CANCELLED: "[yellow]⊘[/]",
    OutcomeStatus.PLANNED: "[blue]…[/]",
}


def short_commit(commit: str | None) -> str:
    return commit[:10] if commit else "-"


class OutputFormatter:
    """Format output for console or JSON."""

    def __init__(self, console: Console, use_json: bool = False):
        self.console = console
        self.use_json = use_json

    def _print_json(self, output: dict[str, Any]):
        self.console.print(
            json.dumps(output, indent=2, default=str),
            markup=False,
            highlight=False,
            soft_wrap=True,
        )

    # -------------------------------------------------------------------------
    # Errors and validation issues
    # -------------------------------------------------------------------------

    def print_config_error(self, error: ConfigError):
        """Print a configuration error with every issue found."""
        if self.use_json:
            self._print_json(
                {"error": str(error), "issues": [i.to_dict() for i in error.issues]}
            )
            return
        self.console.print(f"[bold red]Error:[/] {escape(str(error))}")
        for issue in error.issues:
            color = "red" if issue.fatal else "yellow"
            self.console.print(f"  [{color}]•[/] {escape(str(issue))}")

    def print_error(self, error: FlotillaError | str):
        if self.use_json:
            self._print_json({"error": str(error)})
        else:
            self.console.print(f"[bold red]Error:[/] {escape(str(error))}")

    def print_issues(self, issues: list[ValidationIssue]):
        """Print non-fatal manifest issues (console only)."""
        if self.use_json or not issues:
            return
        for issue in issues:
            self.console.print(f"[yellow]Warning:[/] {escape(str(issue))}")
        self.console.print()

    # -------------------------------------------------------------------------
    # Plan and report
    # -------------------------------------------------------------------------

    def print_status(self, plan: SyncPlan, report: SyncReport, root_path: Path):
        """Print the planned action for every project."""
        if self.use_json:
            self._print_json(
                {
                    "workspace": str(root_path),
                    "plan": plan.to_dict(),
                    "report": report.to_dict(),
                }
            )
            return

        table = Table(title=f"Workspace Status: {root_path}")
        table.add_column("Project", style="cyan", no_wrap=True)
        table.add_column("Path")
        table.add_column("Action", justify="center")
        table.add_column("Current", justify="right")
        table.add_column("Target", justify="right")
        table.add_column("Note")

        for action in plan.actions:
            current = action.current
            head = short_commit(current.commit)
            if current.branch:
                head = f"{current.branch} {head}"
            table.add_row(
                action.name,
                action.path,
                _ACTION_STYLES.get(action.kind, str(action.kind)),
                escape(head),
                short_commit(action.target),
                f"[dim]{escape(action.note)}[/]" if action.note else "",
            )

        self.console.print(table)
        self.console.print()
        self._print_untracked(report)
        self._print_diagnostics(plan)
        self._print_summary(report)

    def print_report(self, report: SyncReport, root_path: Path, plan: SyncPlan | None = None):
        """Print the outcome of a sync run."""
        if self.use_json:
            self._print_json({"workspace": str(root_path), "report": report.to_dict()})
            return

        title = "Dry Run" if report.dry_run else "Sync Results"
        table = Table(title=f"{title}: {root_path}")
        table.add_column("Project", style="cyan", no_wrap=True)
        table.add_column("Status", justify="center")
        table.add_column("Action")
        table.add_column("Commit", justify="right")
        table.add_column("Time", justify="right")
        table.add_column("Message")

        for outcome in report.outcomes:
            table.add_row(
                outcome.name,
                _STATUS_STYLES.get(outcome.status, str(outcome.status)),
                str(outcome.action),
                short_commit(outcome.commit or outcome.target),
                f"{outcome.duration:.1f}s" if outcome.duration else "",
                self._outcome_message(outcome),
            )

        self.console.print(table)
        self.console.print()
        self._print_untracked(report)
        if plan is not None:
            self._print_diagnostics(plan)
        self._print_summary(report)

    def _outcome_message(self, outcome: ExecutionOutcome) -> str:
        if not outcome.message:
            return ""
        message = escape(outcome.message[:60])
        if outcome.status in (OutcomeStatus.FAILED, OutcomeStatus.CONFLICT):
            kind = f"{outcome.error_kind}: " if outcome.error_kind else ""
            return f"[red]{kind}{message}[/]"
        return f"[dim]{message}[/]"

    def _print_untracked(self, report: SyncReport):
        if not report.untracked:
            return
        self.console.print("[bold]Untracked repositories:[/]")
        for path in report.untracked:
            self.console.print(f"  [dim]?[/] {escape(path)}")
        self.console.print()

    def _print_diagnostics(self, plan: SyncPlan):
        notes = [
            (name, note)
            for name, entries in plan.diagnostics.items()
            for note in entries
            if (action := plan.action(name)) is None or note != action.note
        ]
        for name, note in notes:
            self.console.print(f"[yellow]Note:[/] [cyan]{escape(name)}[/] {escape(note)}")
        if notes:
            self.console.print()

    def _print_summary(self, report: SyncReport):
        """Print summary."""
        parts = [f"[bold]Total:[/] {report.total}"]

        if report.succeeded > 0:
            parts.append(f"[green]✓ Synced:[/] {report.succeeded}")
        if report.skipped > 0:
            parts.append(f"[green]= Up to date:[/] {report.skipped}")
        if report.planned > 0:
            parts.append(f"[blue]… Pending:[/] {report.planned}")
        if report.conflicted > 0:
            parts.append(f"[bold red]⚠ Conflicts:[/] {report.conflicted}")
        if report.failed > 0:
            parts.append(f"[red]✗ Failed:[/] {report.failed}")
        if report.cancelled > 0:
            parts.append(f"[yellow]⊘ Cancelled:[/] {report.cancelled}")
        if report.untracked:
            parts.append(f"[dim]? Untracked:[/] {len(report.untracked)}")

        self.console.print(" | ".join(parts))
        if report.was_cancelled:
            self.console.print("[yellow]Run was cancelled.[/]")

    # -------------------------------------------------------------------------
    # Snapshot and track
    # -------------------------------------------------------------------------

    def print_snapshot(self, result: SnapshotResult, report: SyncReport | None = None):
        if self.use_json:
            output: dict[str, Any] = {"snapshot": result.to_dict()}
            if report is not None:
                output["report"] = report.to_dict()
            self._print_json(output)
            return

        if report is not None:
            self._print_summary(report)
        self.console.print(
            f"[bold]Snapshot:[/] {escape(str(result.output))} "
            f"([green]{len(result.pinned)} pinned[/])"
        )
        if result.partial:
            self.console.print(
                f"[yellow]Partial snapshot; unpinned:[/] {escape(', '.join(result.unpinned))}"
            )

    def print_tracked(self, names: list[str], manifest_path: Path | None):
        if self.use_json:
            self._print_json(
                {"tracked": names, "manifest": str(manifest_path) if manifest_path else None}
            )
            return
        if not names:
            self.console.print("[dim]No untracked repositories found[/]")
            return
        for name in names:
            self.console.print(f"[green]+[/] {escape(name)}")
        self.console.print(f"\n[bold]Tracked:[/] {len(names)} in {escape(str(manifest_path))}")
