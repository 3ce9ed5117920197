"""
git-flotilla: Keep a flotilla of Git repositories in formation.

Reconciles a workspace against a declarative manifest: clones missing
repositories, moves existing ones to their declared revisions, reports local
divergence and writes revision-pinned snapshots of the manifest.
"""

from __future__ import annotations

import json
import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from threading import Event

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn

from ._version import __version__
from .config import SyncSettings, load_settings, resolve_manifest_path, resolve_workspace
from .errors import ConfigError, ErrorKind, SnapshotWriteError, VcsError
from .executor import ConcurrentExecutor
from .formatters import OutputFormatter
from .manifest import Manifest, ValidationIssue
from .models import ExecutionOutcome, SyncReport
from .planner import RevisionResolver, SyncPlan, SyncPlanner
from .retry import RetryPolicy
from .scanner import ObservedWorkspace, WorkspaceScanner
from .schema import get_tool_schema
from .snapshot import SnapshotResult, SnapshotWriter, save_manifest_text, track_repository
from .vcs import GitClient, VersionControlClient

logger = logging.getLogger(__name__)

# =============================================================================
# Orchestration
# =============================================================================


class Flotilla:
    """One workspace reconciled against one manifest."""

    def __init__(
        self,
        workspace: Path,
        manifest: Manifest,
        settings: SyncSettings | None = None,
        client: VersionControlClient | None = None,
        cancel: Event | None = None,
    ):
        self.workspace = Path(workspace)
        self.manifest = manifest
        self.settings = settings or SyncSettings()
        self.client = client or GitClient(timeout=self.settings.timeout)
        self.cancel = cancel or Event()
        self.policy = RetryPolicy.from_settings(self.settings)
        # Raises ConfigError before anything touches the workspace.
        self.issues: list[ValidationIssue] = manifest.check()

    @classmethod
    def open(
        cls,
        workspace: Path | None = None,
        manifest_path: Path | None = None,
        *,
        settings: SyncSettings | None = None,
        ignore: list[str] | None = None,
        client: VersionControlClient | None = None,
    ) -> Flotilla:
        """Resolve workspace and manifest the way the CLI does, then load both."""
        root = resolve_workspace(workspace)
        if not root.is_dir():
            raise ConfigError(f"Workspace is not a directory: {root}")
        manifest = Manifest.load(resolve_manifest_path(root, manifest_path))
        if ignore:
            manifest = manifest.select(ignore)
        return cls(root, manifest, settings or load_settings(), client)

    @property
    def concurrency(self) -> int:
        return self.settings.concurrency

    def scan(self) -> ObservedWorkspace:
        return WorkspaceScanner(self.client, self.concurrency).scan(
            self.workspace, self.manifest, self.cancel
        )

    def plan(self) -> SyncPlan:
        """Scan the workspace, resolve every selector and plan the run."""
        try:
            observed = self.scan()
            resolutions = RevisionResolver(self.client, self.policy, self.concurrency).resolve_all(
                self.manifest, self.cancel
            )
        except VcsError as e:
            if e.kind != ErrorKind.CANCELLED:
                raise
            logger.warning("Cancelled while planning")
            return SyncPlanner.interrupted(self.manifest, self.workspace)
        return SyncPlanner().plan(self.manifest, observed, resolutions)

    def execute(
        self,
        plan: SyncPlan,
        *,
        force: bool = False,
        no_checkout: bool = False,
        dry_run: bool = False,
        on_outcome: Callable[[ExecutionOutcome], None] | None = None,
    ) -> SyncReport:
        executor = ConcurrentExecutor(self.client, self.policy)
        return executor.execute(
            plan,
            concurrency=self.concurrency,
            force=force,
            no_checkout=no_checkout,
            cancel=self.cancel,
            dry_run=dry_run,
            on_outcome=on_outcome,
        )

    def status(self) -> tuple[SyncPlan, SyncReport]:
        """Plan without executing; every pending action is reported as planned."""
        plan = self.plan()
        return plan, self.execute(plan, dry_run=True)

    def sync(
        self, *, force: bool = False, no_checkout: bool = False, dry_run: bool = False
    ) -> tuple[SyncPlan, SyncReport]:
        plan = self.plan()
        return plan, self.execute(plan, force=force, no_checkout=no_checkout, dry_run=dry_run)

    def snapshot(
        self,
        report: SyncReport,
        output: Path | None = None,
        *,
        overwrite: bool = False,
    ) -> SnapshotResult:
        return SnapshotWriter().write_file(self.manifest, report, output, overwrite=overwrite)

    def track(
        self,
        path: Path,
        *,
        name: str | None = None,
        revision: str | None = None,
    ) -> str:
        """Add the repository at ``path`` to the manifest file; returns its name."""
        path = Path(path)
        if not path.is_absolute():
            path = self.workspace / path
        state = self.client.inspect(path, cancel=self.cancel)
        text = track_repository(self.manifest, state, self.workspace, name=name, revision=revision)
        self._save(text)
        return name or state.path.name

    def track_all(self) -> list[str]:
        """Add every undeclared repository found in the workspace.

        Entries are named after their directory, or after their
        workspace-relative path when that name is taken. The manifest is
        written once, after every entry was built.
        """
        observed = self.scan()
        manifest = self.manifest
        tracked = []
        for state in observed.untracked:
            if not state.remote_url:
                logger.warning("Skipping %s: no remote configured", state.path)
                continue
            name = state.path.name
            if manifest.project(name) is not None:
                name = observed.relative(state)
            text = track_repository(manifest, state, self.workspace, name=name)
            manifest = Manifest.parse(text, source=manifest.source)
            tracked.append(name)
        if tracked:
            self._save(manifest.text)
        return tracked

    def _save(self, text: str) -> None:
        if self.manifest.source is None:
            raise SnapshotWriteError("manifest has no source path")
        save_manifest_text(self.manifest.source, text)
        self.manifest = Manifest.parse(text, source=self.manifest.source)


@contextmanager
def cancel_on_interrupt(cancel: Event) -> Iterator[None]:
    """Turn the first Ctrl-C into a cooperative cancel; the second one aborts."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupted, cancelling remaining work")
        cancel.set()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


# =============================================================================
# CLI Application
# =============================================================================


app = typer.Typer(
    name="git-flotilla",
    help="Keep a flotilla of Git repositories in formation.",
    no_args_is_help=True,
)


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        print(f"git-flotilla {__version__}")
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
):
    """git-flotilla: Keep a flotilla of Git repositories in formation."""
    if schema:
        print(json.dumps(get_tool_schema(), indent=2))
        raise typer.Exit()


def get_console_and_formatter(json_output: bool) -> tuple[Console, OutputFormatter]:
    """Create console and formatter."""
    console = Console(force_terminal=not json_output)
    formatter = OutputFormatter(console, use_json=json_output)
    return console, formatter


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def open_flotilla(
    formatter: OutputFormatter,
    workspace: Path | None,
    manifest: Path | None,
    *,
    concurrency: int | None = None,
    timeout: float | None = None,
    ignore: list[str] | None = None,
) -> Flotilla:
    """Load settings and manifest, exiting with status 2 on configuration errors."""
    try:
        settings = load_settings().with_overrides(concurrency=concurrency, timeout=timeout)
        fleet = Flotilla.open(workspace, manifest, settings=settings, ignore=ignore)
    except ConfigError as e:
        formatter.print_config_error(e)
        raise typer.Exit(2) from e
    formatter.print_issues(fleet.issues)
    return fleet


def run_with_progress(
    console: Console,
    json_output: bool,
    fleet: Flotilla,
    *,
    force: bool = False,
    no_checkout: bool = False,
    dry_run: bool = False,
) -> tuple[SyncPlan, SyncReport]:
    """Plan and execute, showing a spinner on the console."""
    with cancel_on_interrupt(fleet.cancel):
        if json_output:
            plan = fleet.plan()
            return plan, fleet.execute(
                plan, force=force, no_checkout=no_checkout, dry_run=dry_run
            )

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Scanning workspace and resolving revisions...", total=None)
            plan = fleet.plan()
            progress.update(task, description=f"Syncing {len(plan.actions)} project(s)...")

            def on_outcome(outcome: ExecutionOutcome) -> None:
                progress.update(task, description=f"{outcome.name}: {outcome.status}")

            report = fleet.execute(
                plan,
                force=force,
                no_checkout=no_checkout,
                dry_run=dry_run,
                on_outcome=on_outcome,
            )
    return plan, report


@app.command()
def status(
    workspace: Path = typer.Argument(
        None,
        help="Workspace root (default: $FLOTILLA_WORKSPACE or the current directory)",
    ),
    manifest: Path = typer.Option(
        None,
        "--manifest",
        "-m",
        help="Manifest file (default: $FLOTILLA_MANIFEST, .gitrepos or flotilla.toml)",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
    concurrency: int = typer.Option(
        None,
        "--concurrency",
        "-c",
        help="Maximum number of repositories processed at once",
    ),
    ignore: list[str] = typer.Option(
        None,
        "--ignore",
        help="Project name or path to leave out (repeatable)",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log every git command",
    ),
):
    """Show what sync would do for every project, without changing anything."""
    setup_logging(verbose)
    console, formatter = get_console_and_formatter(json_output)
    fleet = open_flotilla(formatter, workspace, manifest, concurrency=concurrency, ignore=ignore)

    plan, report = run_with_progress(console, json_output, fleet, dry_run=True)
    formatter.print_status(plan, report, fleet.workspace)
    raise typer.Exit(report.exit_code)


@app.command()
def sync(
    workspace: Path = typer.Argument(
        None,
        help="Workspace root (default: $FLOTILLA_WORKSPACE or the current directory)",
    ),
    manifest: Path = typer.Option(
        None,
        "--manifest",
        "-m",
        help="Manifest file (default: $FLOTILLA_MANIFEST, .gitrepos or flotilla.toml)",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite local changes that block an update",
    ),
    no_checkout: bool = typer.Option(
        False,
        "--no-checkout",
        help="Fetch declared revisions but leave existing working trees where they are",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        "-n",
        help="Show what would happen without actually doing it",
    ),
    concurrency: int = typer.Option(
        None,
        "--concurrency",
        "-c",
        help="Maximum number of repositories processed at once",
    ),
    timeout: float = typer.Option(
        None,
        "--timeout",
        help="Seconds before a single git command is abandoned",
    ),
    ignore: list[str] = typer.Option(
        None,
        "--ignore",
        help="Project name or path to leave out (repeatable)",
    ),
    report_file: Path = typer.Option(
        None,
        "--report",
        help="Also write the JSON report to this file",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log every git command",
    ),
):
    """Clone missing repositories and move every project to its declared revision."""
    setup_logging(verbose)
    console, formatter = get_console_and_formatter(json_output)
    fleet = open_flotilla(
        formatter, workspace, manifest, concurrency=concurrency, timeout=timeout, ignore=ignore
    )

    plan, report = run_with_progress(
        console, json_output, fleet, force=force, no_checkout=no_checkout, dry_run=dry_run
    )
    formatter.print_report(report, fleet.workspace, plan)

    if report_file:
        try:
            report_file.write_text(json.dumps(report.to_dict(), indent=2) + "\n", encoding="utf-8")
        except OSError as e:
            formatter.print_error(f"cannot write report {report_file}: {e}")
            raise typer.Exit(2) from e
    raise typer.Exit(report.exit_code)


def load_report(path: Path) -> SyncReport:
    try:
        return SyncReport.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise SnapshotWriteError(f"cannot read report {path}: {e}") from e


@app.command()
def snapshot(
    workspace: Path = typer.Argument(
        None,
        help="Workspace root (default: $FLOTILLA_WORKSPACE or the current directory)",
    ),
    manifest: Path = typer.Option(
        None,
        "--manifest",
        "-m",
        help="Manifest file (default: $FLOTILLA_MANIFEST, .gitrepos or flotilla.toml)",
    ),
    output: Path = typer.Option(
        None,
        "--output",
        "-o",
        help="Snapshot file (default: <manifest>.snapshot)",
    ),
    from_report: Path = typer.Option(
        None,
        "--from-report",
        help="Pin commits from a JSON report written by 'sync --report' instead of syncing",
    ),
    in_place: bool = typer.Option(
        False,
        "--in-place",
        help="Overwrite the manifest itself with the pinned revisions",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite local changes that block an update",
    ),
    concurrency: int = typer.Option(
        None,
        "--concurrency",
        "-c",
        help="Maximum number of repositories processed at once",
    ),
    ignore: list[str] = typer.Option(
        None,
        "--ignore",
        help="Project name or path to leave out (repeatable)",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log every git command",
    ),
):
    """Sync, then write a manifest with every project pinned to its exact commit."""
    setup_logging(verbose)
    console, formatter = get_console_and_formatter(json_output)
    if in_place and output is not None:
        formatter.print_error("--in-place and --output are mutually exclusive")
        raise typer.Exit(2)

    fleet = open_flotilla(formatter, workspace, manifest, concurrency=concurrency, ignore=ignore)
    target = fleet.manifest.source if in_place else output

    try:
        if from_report is not None:
            report = load_report(from_report)
            exit_code = 0
        else:
            _, report = run_with_progress(console, json_output, fleet, force=force)
            exit_code = report.exit_code
        result = fleet.snapshot(report, target, overwrite=in_place)
    except SnapshotWriteError as e:
        formatter.print_error(e)
        raise typer.Exit(2) from e

    formatter.print_snapshot(result, None if from_report is not None else report)
    raise typer.Exit(exit_code)


@app.command()
def track(
    path: Path = typer.Argument(
        None,
        help="Repository to add to the manifest (relative to the workspace)",
    ),
    workspace: Path = typer.Option(
        None,
        "--workspace",
        "-w",
        help="Workspace root (default: $FLOTILLA_WORKSPACE or the current directory)",
    ),
    manifest: Path = typer.Option(
        None,
        "--manifest",
        "-m",
        help="Manifest file (default: $FLOTILLA_MANIFEST, .gitrepos or flotilla.toml)",
    ),
    name: str = typer.Option(
        None,
        "--name",
        help="Project name (default: the directory name)",
    ),
    revision: str = typer.Option(
        None,
        "--revision",
        help="Revision selector (default: current branch, or commit when detached)",
    ),
    all_untracked: bool = typer.Option(
        False,
        "--all",
        "-a",
        help="Track every undeclared repository found in the workspace",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log every git command",
    ),
):
    """Add an existing repository to the manifest."""
    setup_logging(verbose)
    _, formatter = get_console_and_formatter(json_output)
    if (path is None) == (not all_untracked):
        formatter.print_error("give either a repository PATH or --all")
        raise typer.Exit(2)
    if all_untracked and (name or revision):
        formatter.print_error("--name and --revision need a single repository PATH")
        raise typer.Exit(2)

    fleet = open_flotilla(formatter, workspace, manifest)
    try:
        if all_untracked:
            tracked = fleet.track_all()
        else:
            tracked = [fleet.track(path, name=name, revision=revision)]
    except (SnapshotWriteError, VcsError) as e:
        formatter.print_error(e)
        raise typer.Exit(2) from e
    except ConfigError as e:
        formatter.print_config_error(e)
        raise typer.Exit(2) from e

    formatter.print_tracked(tracked, fleet.manifest.source)

