"""Workspace scanner: observe declared paths and find undeclared repositories.

Scanning is read-only. Declared projects are inspected through the
version-control client in parallel; the workspace tree is then walked to find
repositories the manifest does not know about.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from threading import Event

from .errors import ErrorKind, VcsError
from .manifest import Manifest, ProjectSpec, matches_any
from .models import Presence, RepoState
from .vcs import VersionControlClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObservedWorkspace:
    """Snapshot of the workspace taken at the start of a run."""

    root: Path
    projects: dict[str, RepoState] = field(default_factory=dict)
    untracked: tuple[RepoState, ...] = ()

    def state(self, name: str) -> RepoState | None:
        return self.projects.get(name)

    def relative(self, state: RepoState) -> str:
        try:
            return state.path.relative_to(self.root).as_posix() or "."
        except ValueError:
            return str(state.path)


class WorkspaceScanner:
    """Builds an ``ObservedWorkspace`` for a manifest."""

    def __init__(self, client: VersionControlClient, concurrency: int = 8):
        self.client = client
        self.concurrency = max(1, concurrency)

    def scan(
        self, workspace_root: Path, manifest: Manifest, cancel: Event | None = None
    ) -> ObservedWorkspace:
        root = Path(workspace_root)
        discovered = self.discover(root, manifest)
        logger.debug(
            "Scanning %d declared project(s) and %d undeclared repo(s) under %s",
            len(manifest.projects),
            len(discovered),
            root,
        )

        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            declared = [
                pool.submit(self._inspect_project, root, project, cancel)
                for project in manifest.projects
            ]
            extra = [pool.submit(self._inspect_path, path, cancel) for path in discovered]
            states = [future.result() for future in declared]
            untracked = [future.result() for future in extra]

        return ObservedWorkspace(
            root=root,
            projects={project.name: state for project, state in zip(manifest.projects, states)},
            untracked=tuple(s for s in untracked if s.is_repository),
        )

    def _inspect_path(
        self, path: Path, cancel: Event | None, remote_name: str = "origin"
    ) -> RepoState:
        try:
            return self.client.inspect(path, remote_name=remote_name, cancel=cancel)
        except VcsError as e:
            if e.kind == ErrorKind.CANCELLED:
                raise
            # Unreadable repositories are treated as foreign directories so
            # nothing ever writes into them without --force.
            logger.warning("Cannot inspect %s: %s", path, e)
            return RepoState(path=path, presence=Presence.NOT_A_REPOSITORY)

    def _inspect_project(
        self, root: Path, project: ProjectSpec, cancel: Event | None
    ) -> RepoState:
        state = self._inspect_path(project.local_path(root), cancel, project.remote_name)
        if not state.untracked_files or not project.exclude:
            return state
        kept = tuple(f for f in state.untracked_files if not matches_any(project.exclude, f))
        return replace(state, untracked_files=kept)

    def discover(self, root: Path, manifest: Manifest) -> list[Path]:
        """Repositories under ``root`` that the manifest does not declare."""
        declared = {project.parts for project in manifest.projects}
        if () in declared:
            return []
        exclude = manifest.defaults.exclude
        found: list[Path] = []

        for dirpath, dirnames, _filenames in os.walk(root):
            current = Path(dirpath)
            prefix = current.relative_to(root).parts
            descend = []
            for name in sorted(dirnames):
                if name == ".git":
                    continue
                parts = (*prefix, name)
                if parts in declared:
                    continue
                if matches_any(exclude, "/".join(parts) + "/"):
                    continue
                child = current / name
                if (child / ".git").exists():
                    found.append(child)
                    continue
                descend.append(name)
            dirnames[:] = descend

        return sorted(found)
