"""Revision resolution and sync planning.

``RevisionResolver`` is the only part of planning that talks to remotes. Once
every selector has been turned into a ``Resolution``, ``SyncPlanner.plan`` is a
pure function of the manifest, the observed workspace and those resolutions.
"""

from __future__ import annotations

import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from pathlib import Path
from threading import Event

from .errors import ErrorKind, ResolutionError, VcsError
from .manifest import Manifest, ProjectSpec, SelectorKind
from .models import ActionKind, Presence, RepoState
from .retry import Retrier, RetryPolicy
from .scanner import ObservedWorkspace
from .vcs import VersionControlClient

logger = logging.getLogger(__name__)


# =============================================================================
# Resolution
# =============================================================================


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving one project's selector."""

    name: str
    commit: str | None = None
    remote: str | None = None
    error: ResolutionError | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.commit is not None and self.error is None

    @property
    def cancelled(self) -> bool:
        return (
            self.error is not None
            and self.error.cause is not None
            and self.error.cause.kind == ErrorKind.CANCELLED
        )


class RevisionResolver:
    """Resolves every project's selector to a commit, in parallel."""

    def __init__(
        self,
        client: VersionControlClient,
        policy: RetryPolicy | None = None,
        concurrency: int = 8,
    ):
        self.client = client
        self.policy = policy or RetryPolicy()
        self.concurrency = max(1, concurrency)

    def resolve(self, project: ProjectSpec, cancel: Event | None = None) -> Resolution:
        if project.selector is None:
            error = ResolutionError(project.selector_error or "no revision", project.name)
            return Resolution(project.name, error=error)
        if project.selector.kind == SelectorKind.COMMIT:
            return Resolution(project.name, commit=project.selector.value)

        retrier = Retrier(self.policy, cancel)
        try:
            commit, remote = retrier.call(
                lambda remote: self.client.resolve(remote, project.selector, cancel=cancel),
                project.remotes,
                label=project.name,
            )
        except ResolutionError as e:
            return Resolution(
                project.name,
                error=ResolutionError(e.message, project.name, e.cause),
                attempts=retrier.attempts,
            )
        except VcsError as e:
            error = ResolutionError(f"cannot resolve {project.revision!r}: {e}", project.name, e)
            return Resolution(project.name, error=error, attempts=retrier.attempts)

        logger.debug("%s: %s resolved to %s via %s", project.name, project.revision, commit, remote)
        return Resolution(project.name, commit=commit, remote=remote, attempts=retrier.attempts)

    def resolve_all(
        self, manifest: Manifest, cancel: Event | None = None
    ) -> dict[str, Resolution]:
        results: dict[str, Resolution] = {}
        pending = []
        for project in manifest.projects:
            if project.selector is None or project.selector.is_exact:
                results[project.name] = self.resolve(project, cancel)
            else:
                pending.append(project)

        if pending:
            with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
                futures = {pool.submit(self.resolve, p, cancel): p for p in pending}
                for future in as_completed(futures):
                    resolution = future.result()
                    results[resolution.name] = resolution

        return {p.name: results[p.name] for p in manifest.projects}


# =============================================================================
# Plan
# =============================================================================


@dataclass(frozen=True)
class PlannedAction:
    """What the executor should do for one declared project."""

    project: ProjectSpec
    kind: ActionKind
    current: RepoState
    target: str | None = None
    remote: str | None = None
    note: str = ""
    interrupted: bool = False

    @property
    def name(self) -> str:
        return self.project.name

    @property
    def path(self) -> str:
        return self.project.path

    @property
    def remotes(self) -> tuple[str, ...]:
        """Remotes to try, the one that resolved the target first."""
        if self.remote and self.remote in self.project.remotes:
            return (self.remote, *(r for r in self.project.remotes if r != self.remote))
        return self.project.remotes

    @property
    def unpushed(self) -> int:
        return unpushed_commits(self.project, self.current)

    @property
    def needs_work(self) -> bool:
        return self.kind in (
            ActionKind.CLONE,
            ActionKind.UPDATE_CLEANLY,
            ActionKind.UPDATE_WITH_CONFLICT,
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "action": self.kind.value,
            "target": self.target,
            "current": self.current.commit,
            "branch": self.current.branch,
            "note": self.note,
        }


@dataclass(frozen=True)
class UntrackedRepo:
    """A repository found in the workspace that the manifest does not declare."""

    path: str
    state: RepoState
    kind: ActionKind = ActionKind.UNTRACK

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "action": self.kind.value,
            "commit": self.state.commit,
            "branch": self.state.branch,
            "remote_url": self.state.remote_url,
        }


@dataclass(frozen=True)
class SyncPlan:
    """Ordered actions for a run."""

    actions: tuple[PlannedAction, ...] = ()
    untracked: tuple[UntrackedRepo, ...] = ()
    diagnostics: dict[str, list[str]] = field(default_factory=dict)

    def action(self, name: str) -> PlannedAction | None:
        for action in self.actions:
            if action.name == name:
                return action
        return None

    def counts(self) -> Counter:
        counts = Counter(action.kind for action in self.actions)
        if self.untracked:
            counts[ActionKind.UNTRACK] = len(self.untracked)
        return counts

    def to_dict(self) -> dict:
        return {
            "actions": [a.to_dict() for a in self.actions],
            "untracked": [u.to_dict() for u in self.untracked],
            "diagnostics": {k: list(v) for k, v in self.diagnostics.items()},
        }


def unpushed_commits(project: ProjectSpec, state: RepoState) -> int:
    """Local commits a checkout of the declared branch would drop."""
    wanted_branch = project.selector.branch_name if project.selector else None
    if wanted_branch is None or state.branch != wanted_branch:
        return 0
    return state.ahead or 0


def _describe_changes(state: RepoState, unpushed: int = 0) -> str:
    parts = []
    if state.dirty:
        parts.append("uncommitted changes")
    if state.untracked_files:
        n = len(state.untracked_files)
        parts.append(f"{n} untracked file{'s' if n != 1 else ''}")
    if unpushed:
        parts.append(f"{unpushed} unpushed commit{'s' if unpushed != 1 else ''}")
    return " and ".join(parts)


class SyncPlanner:
    """Decides one action per declared project."""

    @staticmethod
    def interrupted(manifest: Manifest, workspace_root: Path) -> SyncPlan:
        """Plan for a run cancelled before scanning or resolution finished."""
        actions = tuple(
            PlannedAction(
                project=project,
                kind=ActionKind.SKIP,
                current=RepoState(path=project.local_path(workspace_root)),
                note="cancelled before planning",
                interrupted=True,
            )
            for project in manifest.projects
        )
        return SyncPlan(actions=actions)

    def plan(
        self,
        manifest: Manifest,
        observed: ObservedWorkspace,
        resolutions: dict[str, Resolution],
    ) -> SyncPlan:
        project_issues = manifest.project_issues()
        actions = []
        diagnostics: dict[str, list[str]] = {}

        for project in manifest.projects:
            state = observed.state(project.name) or RepoState(
                path=project.local_path(observed.root)
            )
            notes: list[str] = []
            action = self._plan_project(
                project, state, resolutions.get(project.name), project_issues, notes
            )
            if (
                state.remote_url
                and project.remotes
                and state.remote_url not in project.remotes
                and action.kind != ActionKind.INVALID_SPEC
            ):
                notes.append(f"remote is {state.remote_url}, manifest declares {project.remote}")
            if notes:
                diagnostics[project.name] = notes
            actions.append(action)

        untracked = tuple(
            UntrackedRepo(observed.relative(state), state)
            for state in sorted(observed.untracked, key=lambda s: s.path)
        )
        return SyncPlan(actions=tuple(actions), untracked=untracked, diagnostics=diagnostics)

    def _plan_project(
        self,
        project: ProjectSpec,
        state: RepoState,
        resolution: Resolution | None,
        project_issues: dict,
        notes: list[str],
    ) -> PlannedAction:
        def make(kind: ActionKind, note: str = "") -> PlannedAction:
            if note:
                notes.append(note)
            return PlannedAction(
                project=project,
                kind=kind,
                current=state,
                target=resolution.commit if resolution else None,
                remote=resolution.remote if resolution else None,
                note=note,
            )

        issues = project_issues.get(project.name)
        if issues:
            return make(ActionKind.INVALID_SPEC, "; ".join(str(i) for i in issues))
        if resolution is None:
            return make(ActionKind.INVALID_SPEC, "revision was not resolved")
        if resolution.cancelled:
            action = make(ActionKind.INVALID_SPEC, "cancelled before the revision was resolved")
            return replace(action, interrupted=True)
        if not resolution.ok:
            message = resolution.error.message if resolution.error else "revision was not resolved"
            return make(ActionKind.INVALID_SPEC, message)

        if state.presence == Presence.ABSENT:
            return make(ActionKind.CLONE)
        if state.presence == Presence.NOT_A_REPOSITORY:
            if state.is_empty_dir:
                return make(ActionKind.CLONE)
            return make(
                ActionKind.UPDATE_WITH_CONFLICT,
                "directory exists and is not a git repository",
            )

        wanted_branch = project.selector.branch_name if project.selector else None
        at_target = state.commit == resolution.commit and (
            wanted_branch is None or state.branch == wanted_branch
        )
        if at_target:
            if state.is_clean:
                return make(ActionKind.SKIP)
            return make(ActionKind.SKIP, f"at target but has {_describe_changes(state)}")
        # checkout -B moves the branch; commits only it holds would be lost.
        unpushed = unpushed_commits(project, state)
        if state.is_clean and not unpushed:
            return make(ActionKind.UPDATE_CLEANLY)
        return make(
            ActionKind.UPDATE_WITH_CONFLICT, f"has {_describe_changes(state, unpushed)}"
        )
