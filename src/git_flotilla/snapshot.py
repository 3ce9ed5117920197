"""Snapshot writer: pin every synced project to its exact commit.

The snapshot is the manifest document with ``revision`` values replaced in
place, so comments, ordering and untouched fields survive unchanged.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import tomlkit
from tomlkit.exceptions import TOMLKitError
from tomlkit.toml_document import TOMLDocument

from .errors import SnapshotWriteError
from .manifest import Manifest, RevisionSelector, SelectorKind
from .models import RepoState, SyncReport

logger = logging.getLogger(__name__)

SNAPSHOT_SUFFIX = ".snapshot"


@dataclass(frozen=True)
class SnapshotResult:
    """Rendered snapshot plus which projects could be pinned."""

    text: str
    pinned: tuple[str, ...] = ()
    unpinned: tuple[str, ...] = ()
    output: Path | None = None

    @property
    def partial(self) -> bool:
        return bool(self.unpinned)

    def to_dict(self) -> dict:
        return {
            "output": str(self.output) if self.output else None,
            "pinned": list(self.pinned),
            "unpinned": list(self.unpinned),
            "partial": self.partial,
        }


def default_output(manifest: Manifest) -> Path:
    if manifest.source is None:
        raise SnapshotWriteError("manifest has no source path; an output path is required")
    return manifest.source.with_name(manifest.source.name + SNAPSHOT_SUFFIX)


def _is_commit(value: str | None) -> bool:
    if not value:
        return False
    try:
        return RevisionSelector.parse(value).kind == SelectorKind.COMMIT
    except ValueError:
        return False


def _pinned_value(old, commit: str):
    """New revision item carrying over the old value's trailing comment."""
    new = tomlkit.item(commit)
    trivia = getattr(old, "trivia", None)
    if trivia is not None and trivia.comment:
        new.trivia.comment_ws = trivia.comment_ws
        new.trivia.comment = trivia.comment
    return new


def _set_revision(table, value) -> None:
    """Set ``revision`` in a project table.

    A new key goes right after the table's last key, ahead of the blank lines
    and comments that lead into the next table.
    """
    if "revision" in table:
        table["revision"] = value
        return
    body = table.value.body
    keyed = [i for i, (key, _) in enumerate(body) if key is not None]
    if not keyed or keyed[-1] == len(body) - 1:
        table["revision"] = value
        return
    # tomlkit has no public insert; append() would land after the trailing trivia.
    table.value._insert_after(body[keyed[-1]][0], "revision", value)


class SnapshotWriter:
    """Produces revision-pinned copies of a manifest."""

    @staticmethod
    def from_report(report: SyncReport) -> dict[str, str]:
        """Commits worth pinning: succeeded and skipped projects only."""
        return report.resolved_revisions()

    def _document(self, manifest: Manifest) -> TOMLDocument:
        # Work on a fresh parse; the loaded manifest stays untouched.
        try:
            return tomlkit.parse(manifest.text)
        except TOMLKitError as e:
            raise SnapshotWriteError(f"cannot re-read manifest: {e}") from e

    def write(
        self, manifest: Manifest, resolved: Mapping[str, str] | SyncReport
    ) -> SnapshotResult:
        if isinstance(resolved, SyncReport):
            resolved = self.from_report(resolved)

        document = self._document(manifest)
        tables = document.get("projects", [])
        pinned, unpinned = [], []

        for project in manifest.projects:
            commit = resolved.get(project.name)
            if not _is_commit(commit):
                if commit:
                    logger.warning("%s: %r is not a commit id, leaving unpinned", project.name, commit)
                unpinned.append(project.name)
                continue
            try:
                table = tables[project.index]
            except IndexError as e:
                raise SnapshotWriteError(f"{project.name}: project table not found") from e
            _set_revision(table, _pinned_value(table.get("revision"), commit))
            pinned.append(project.name)

        if unpinned:
            logger.warning("Snapshot is partial; unpinned: %s", ", ".join(unpinned))
        return SnapshotResult(
            text=tomlkit.dumps(document), pinned=tuple(pinned), unpinned=tuple(unpinned)
        )

    def write_file(
        self,
        manifest: Manifest,
        resolved: Mapping[str, str] | SyncReport,
        output: Path | None = None,
        *,
        overwrite: bool = False,
    ) -> SnapshotResult:
        """Render the snapshot and write it atomically to ``output``.

        Writing over the source manifest requires ``overwrite=True``.
        """
        output = Path(output) if output is not None else default_output(manifest)
        if (
            manifest.source is not None
            and output.resolve() == Path(manifest.source).resolve()
            and not overwrite
        ):
            raise SnapshotWriteError(
                f"refusing to overwrite the source manifest {manifest.source}"
            )

        result = self.write(manifest, resolved)
        _atomic_write(output, result.text)
        logger.info("Wrote snapshot to %s (%d pinned)", output, len(result.pinned))
        return SnapshotResult(
            text=result.text, pinned=result.pinned, unpinned=result.unpinned, output=output
        )


def _atomic_write(path: Path, text: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    except OSError as e:
        raise SnapshotWriteError(f"cannot write {path}: {e}") from e

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(temp_path, path)
    except OSError as e:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise SnapshotWriteError(f"cannot write {path}: {e}") from e


# =============================================================================
# Tracking undeclared repositories
# =============================================================================


def track_repository(
    manifest: Manifest,
    state: RepoState,
    workspace_root: Path,
    *,
    name: str | None = None,
    revision: str | None = None,
) -> str:
    """Return the manifest text with a new ``[[projects]]`` entry for ``state``.

    Name defaults to the directory name; revision to the current branch, or
    the current commit when HEAD is detached.
    """
    if not state.is_repository:
        raise SnapshotWriteError(f"{state.path} is not a git repository")
    if not state.remote_url:
        raise SnapshotWriteError(f"{state.path} has no remote to track")
    try:
        rel = state.path.resolve().relative_to(Path(workspace_root).resolve()).as_posix()
    except ValueError as e:
        raise SnapshotWriteError(f"{state.path} is outside the workspace") from e

    name = name or state.path.name
    revision = revision or state.branch or state.commit
    if not revision:
        raise SnapshotWriteError(f"{state.path} has no commits to track")
    if manifest.project(name) is not None:
        raise SnapshotWriteError(f"a project named {name!r} already exists")
    if any(p.path == rel for p in manifest.projects):
        raise SnapshotWriteError(f"path {rel!r} is already declared")

    document = tomlkit.parse(manifest.text)
    table = tomlkit.table()
    table["name"] = name
    if rel != name:
        table["path"] = rel
    table["remote"] = state.remote_url
    table["revision"] = revision

    if "projects" in document:
        document["projects"].append(table)
    else:
        projects = tomlkit.aot()
        projects.append(table)
        document["projects"] = projects
    return tomlkit.dumps(document)


def save_manifest_text(path: Path, text: str) -> None:
    """Atomically replace a manifest file with new text."""
    _atomic_write(Path(path), text)
