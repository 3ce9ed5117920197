"""Manifest model: the declarative list of repositories and global defaults.

The manifest is a TOML document (``.gitrepos`` by default)::

    [defaults]
    revision = "main"
    exclude = ["*.log"]

    [[projects]]
    name = "a"
    path = "libs/a"
    remote = "https://example.com/a.git"
    revision = "v1.2.0"

The parsed ``tomlkit`` document is kept alongside the logical model so the
snapshot writer can patch revision fields without re-rendering the file.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from functools import lru_cache
from pathlib import Path, PurePosixPath
from typing import Any

import pathspec
import tomlkit
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from tomlkit.exceptions import TOMLKitError
from tomlkit.toml_document import TOMLDocument

from .errors import ConfigError, ManifestParseError

DEFAULT_MANIFEST_NAME = ".gitrepos"
FALLBACK_MANIFEST_NAME = "flotilla.toml"

_PROJECT_KEYS = {
    "name",
    "path",
    "remote",
    "revision",
    "exclude",
    "conflict-policy",
    "force",
    "depth",
}
_DEFAULT_KEYS = {"revision", "remote-name", "depth", "exclude", "conflict-policy"}


# =============================================================================
# Revision selectors
# =============================================================================


class SelectorKind(StrEnum):
    """How a revision selector picks its commit."""

    COMMIT = "commit"
    BRANCH = "branch"
    TAG = "tag"
    RANGE = "range"


_COMMIT_RE = re.compile(r"^(?:[0-9a-fA-F]{40}|[0-9a-fA-F]{64})$")
_VERSION_TAG_RE = re.compile(r"^v?\d+(?:\.\d+)+(?:[-+.][0-9A-Za-z.+-]*)?$")
_RANGE_PREFIXES = (">", "<", "=", "!", "~")
# Subset of git check-ref-format rules.
_BAD_REF_RE = re.compile(r"\.\.|[\s~^:?*\[\\\x00-\x1f\x7f]|@\{|^[/.-]|/$|//|\.lock$|\.$|/\.")


def _check_ref_name(name: str) -> None:
    if not name or name == "@" or _BAD_REF_RE.search(name):
        raise ValueError(f"invalid ref name {name!r}")


@dataclass(frozen=True)
class RevisionSelector:
    """Parsed form of a project's ``revision`` string.

    Plain strings are classified as follows: a full hex object id is a commit,
    text starting with a comparison operator is a version range, a
    version-shaped name (``v1.2.0``) is a tag, anything else is a branch. The
    ``commit:``, ``branch:``, ``tag:`` and ``version:`` prefixes force a kind.
    """

    raw: str
    kind: SelectorKind
    value: str

    @classmethod
    def parse(cls, text: str) -> RevisionSelector:
        raw = text
        text = text.strip()
        if not text:
            raise ValueError("empty revision")

        prefix, sep, rest = text.partition(":")
        if sep and prefix in ("commit", "branch", "tag", "version"):
            rest = rest.strip()
            if prefix == "commit":
                return cls._commit(raw, rest)
            if prefix == "version":
                return cls._range(raw, rest)
            _check_ref_name(rest)
            kind = SelectorKind.BRANCH if prefix == "branch" else SelectorKind.TAG
            return cls(raw=raw, kind=kind, value=rest)

        if _COMMIT_RE.match(text):
            return cls._commit(raw, text)
        if text.startswith(_RANGE_PREFIXES):
            return cls._range(raw, text)
        _check_ref_name(text)
        if _VERSION_TAG_RE.match(text):
            return cls(raw=raw, kind=SelectorKind.TAG, value=text)
        return cls(raw=raw, kind=SelectorKind.BRANCH, value=text)

    @classmethod
    def _commit(cls, raw: str, value: str) -> RevisionSelector:
        if not _COMMIT_RE.match(value):
            raise ValueError(f"invalid commit id {value!r} (expected a full hex object id)")
        return cls(raw=raw, kind=SelectorKind.COMMIT, value=value.lower())

    @classmethod
    def _range(cls, raw: str, value: str) -> RevisionSelector:
        try:
            SpecifierSet(value)
        except InvalidSpecifier as e:
            raise ValueError(f"invalid version range {value!r}: {e}") from e
        return cls(raw=raw, kind=SelectorKind.RANGE, value=value)

    @property
    def specifier(self) -> SpecifierSet:
        if self.kind != SelectorKind.RANGE:
            raise ValueError(f"{self.raw!r} is not a version range")
        return SpecifierSet(self.value)

    @property
    def is_exact(self) -> bool:
        """Resolvable without contacting a remote."""
        return self.kind == SelectorKind.COMMIT

    @property
    def branch_name(self) -> str | None:
        """Local branch to check out for this selector, if any."""
        return self.value if self.kind == SelectorKind.BRANCH else None

    def __str__(self) -> str:
        return self.raw


# =============================================================================
# Remotes and patterns
# =============================================================================

_SCP_LIKE_RE = re.compile(r"^(?:[\w.-]+@)?[\w.-]+:(?!//)\S+$")


def remote_protocol(url: str) -> str:
    """Detect protocol from a git remote URL; ``unknown`` means unparseable."""
    if not url or url != url.strip():
        return "unknown"
    if url.startswith("https://"):
        return "https"
    if url.startswith("http://"):
        return "http"
    if url.startswith("git://"):
        return "git"
    if url.startswith("ssh://") or url.startswith("git+ssh://"):
        return "ssh"
    if url.startswith("file://") or url.startswith(("/", "./", "../")):
        return "file"
    if "://" in url:
        return "unknown"
    if _SCP_LIKE_RE.match(url):
        return "ssh"
    return "unknown"


@lru_cache(maxsize=256)
def compile_patterns(patterns: tuple[str, ...]) -> pathspec.PathSpec:
    """Compile gitignore-style glob patterns; raises ``ValueError`` if invalid."""
    for pattern in patterns:
        if not isinstance(pattern, str) or not pattern.strip():
            raise ValueError(f"invalid exclude pattern {pattern!r}")
    return pathspec.GitIgnoreSpec.from_lines(patterns)


def matches_any(patterns: tuple[str, ...], relative_path: str) -> bool:
    if not patterns:
        return False
    return compile_patterns(patterns).match_file(relative_path)


# =============================================================================
# Manifest model
# =============================================================================


class ConflictPolicy(StrEnum):
    """What to do when an update would overwrite local changes."""

    BLOCK = "block"
    FORCE = "force"
    STASH = "stash"  # stash, check out, re-apply


class IssueLevel(StrEnum):
    """Severity of a validation issue."""

    ERROR = "error"  # whole manifest is unusable
    PROJECT = "project"  # only that project is unusable (planned as InvalidSpec)
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationIssue:
    """One problem found while validating the manifest."""

    message: str
    project: str | None = None
    field: str | None = None
    level: IssueLevel = IssueLevel.ERROR

    @property
    def fatal(self) -> bool:
        return self.level == IssueLevel.ERROR

    def __str__(self) -> str:
        where = ""
        if self.project:
            where = f"[{self.project}] "
        if self.field:
            where += f"{self.field}: "
        return f"{where}{self.message}"

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "project": self.project,
            "field": self.field,
            "level": self.level.value,
        }


@dataclass(frozen=True)
class ManifestDefaults:
    """Settings applied to every project unless overridden."""

    revision: str | None = None
    remote_name: str = "origin"
    depth: int | None = None
    exclude: tuple[str, ...] = ()
    conflict_policy: ConflictPolicy = ConflictPolicy.BLOCK


@dataclass(frozen=True)
class ProjectSpec:
    """One declared repository."""

    name: str
    path: str
    remotes: tuple[str, ...]
    revision: str
    selector: RevisionSelector | None = None
    selector_error: str | None = None
    exclude: tuple[str, ...] = ()
    conflict_policy: ConflictPolicy = ConflictPolicy.BLOCK
    depth: int | None = None
    remote_name: str = "origin"
    index: int = 0
    revision_inherited: bool = False

    @property
    def remote(self) -> str:
        return self.remotes[0] if self.remotes else ""

    @property
    def force(self) -> bool:
        return self.conflict_policy == ConflictPolicy.FORCE

    @property
    def stash(self) -> bool:
        return self.conflict_policy == ConflictPolicy.STASH

    @property
    def parts(self) -> tuple[str, ...]:
        return () if self.path == "." else PurePosixPath(self.path).parts

    def local_path(self, workspace_root: Path) -> Path:
        return workspace_root / self.path if self.path != "." else workspace_root

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "remotes": list(self.remotes),
            "revision": self.revision,
            "selector_kind": self.selector.kind.value if self.selector else None,
            "exclude": list(self.exclude),
            "conflict_policy": self.conflict_policy.value,
            "depth": self.depth,
        }


def _normalize_path(raw: str) -> str:
    path = PurePosixPath(raw.replace("\\", "/"))
    return str(path) if str(path) else "."


def _is_ancestor(ancestor: tuple[str, ...], other: tuple[str, ...]) -> bool:
    return len(ancestor) < len(other) and other[: len(ancestor)] == ancestor


@dataclass
class _Builder:
    """Turns the unwrapped TOML data into defaults, projects and issues."""

    issues: list[ValidationIssue] = field(default_factory=list)

    def issue(
        self,
        message: str,
        project: str | None = None,
        key: str | None = None,
        level: IssueLevel = IssueLevel.ERROR,
    ) -> None:
        self.issues.append(ValidationIssue(message, project, key, level))

    def patterns(self, value: Any, project: str | None) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            self.issue("must be a list of glob patterns", project, "exclude")
            return ()
        patterns = tuple(value)
        try:
            compile_patterns(patterns)
        except (ValueError, TypeError) as e:
            self.issue(f"pattern does not compile: {e}", project, "exclude")
            return ()
        return patterns

    def depth(self, value: Any, project: str | None) -> int | None:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            self.issue(f"must be a positive integer, got {value!r}", project, "depth")
            return None
        return value

    def policy(self, data: dict, project: str | None, fallback: ConflictPolicy) -> ConflictPolicy:
        if "force" in data:
            if not isinstance(data["force"], bool):
                self.issue("must be true or false", project, "force")
                return fallback
            return ConflictPolicy.FORCE if data["force"] else ConflictPolicy.BLOCK
        value = data.get("conflict-policy")
        if value is None:
            return fallback
        try:
            return ConflictPolicy(value)
        except ValueError:
            self.issue(
                f"must be 'block', 'force' or 'stash', got {value!r}", project, "conflict-policy"
            )
            return fallback

    def defaults(self, data: dict) -> ManifestDefaults:
        for key in sorted(set(data) - _DEFAULT_KEYS):
            self.issue(f"unknown key {key!r}", None, "defaults", IssueLevel.WARNING)
        revision = data.get("revision")
        if revision is not None and not isinstance(revision, str):
            self.issue("must be a string", None, "defaults.revision")
            revision = None
        remote_name = data.get("remote-name", "origin")
        if not isinstance(remote_name, str) or not remote_name.strip():
            self.issue("must be a non-empty string", None, "defaults.remote-name")
            remote_name = "origin"
        return ManifestDefaults(
            revision=revision,
            remote_name=remote_name,
            depth=self.depth(data.get("depth"), None),
            exclude=self.patterns(data.get("exclude"), None),
            conflict_policy=self.policy(data, None, ConflictPolicy.BLOCK),
        )

    def project(self, index: int, data: dict, defaults: ManifestDefaults) -> ProjectSpec | None:
        name = data.get("name")
        path = data.get("path")
        if name is None and path is None:
            self.issue(f"project #{index + 1} needs a name or a path", None, "projects")
            return None
        if name is not None and (not isinstance(name, str) or not name.strip()):
            self.issue(f"project #{index + 1} has an invalid name {name!r}", None, "name")
            return None
        if path is not None and (not isinstance(path, str) or not path.strip()):
            self.issue(f"invalid path {path!r}", name, "path")
            return None
        path = _normalize_path(path if path is not None else name)
        name = name if name is not None else path
        for key in sorted(set(data) - _PROJECT_KEYS):
            self.issue(f"unknown key {key!r}", name, key, IssueLevel.WARNING)

        if PurePosixPath(path).is_absolute() or ".." in PurePosixPath(path).parts:
            self.issue("must be relative to the workspace root", name, "path")

        raw_remote = data.get("remote")
        if isinstance(raw_remote, str):
            remotes: tuple[str, ...] = (raw_remote,)
        elif isinstance(raw_remote, list) and raw_remote and all(
            isinstance(r, str) for r in raw_remote
        ):
            remotes = tuple(raw_remote)
        else:
            self.issue("needs a remote URL or a non-empty list of URLs", name, "remote")
            remotes = ()
        for url in remotes:
            if remote_protocol(url) == "unknown":
                self.issue(f"cannot parse remote URL {url!r}", name, "remote", IssueLevel.PROJECT)

        revision = data.get("revision")
        inherited = revision is None
        if inherited:
            revision = defaults.revision
        selector = None
        selector_error = None
        if not isinstance(revision, str):
            selector_error = (
                "no revision and no default revision" if revision is None else "must be a string"
            )
            revision = "" if revision is None else str(revision)
        else:
            try:
                selector = RevisionSelector.parse(revision)
            except ValueError as e:
                selector_error = str(e)
        if selector_error:
            self.issue(selector_error, name, "revision", IssueLevel.PROJECT)

        own_exclude = self.patterns(data.get("exclude"), name)
        exclude = tuple(dict.fromkeys(defaults.exclude + own_exclude))

        return ProjectSpec(
            name=name,
            path=path,
            remotes=remotes,
            revision=revision,
            selector=selector,
            selector_error=selector_error,
            exclude=exclude,
            conflict_policy=self.policy(data, name, defaults.conflict_policy),
            depth=self.depth(data.get("depth"), name) or defaults.depth,
            remote_name=defaults.remote_name,
            index=index,
            revision_inherited=inherited,
        )


class Manifest:
    """Parsed and validated manifest, with its original document retained."""

    def __init__(
        self,
        document: TOMLDocument,
        text: str,
        defaults: ManifestDefaults,
        projects: list[ProjectSpec],
        *,
        source: Path | None = None,
        parse_issues: list[ValidationIssue] | None = None,
    ):
        self.document = document
        self.text = text
        self.defaults = defaults
        self.projects = list(projects)
        self.source = source
        self._parse_issues = list(parse_issues or [])

    @classmethod
    def load(cls, path: Path) -> Manifest:
        """Read and parse a manifest file."""
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise ManifestParseError(f"Cannot read manifest {path}: {e}") from e
        return cls.parse(text, source=Path(path))

    @classmethod
    def parse(cls, text: str, source: Path | None = None) -> Manifest:
        """Parse manifest text; structural problems are kept for ``validate()``."""
        where = str(source) if source else "<manifest>"
        try:
            document = tomlkit.parse(text)
        except TOMLKitError as e:
            raise ManifestParseError(f"Invalid TOML in {where}: {e}") from e

        data = document.unwrap()
        raw_defaults = data.get("defaults", {})
        if not isinstance(raw_defaults, dict):
            raise ManifestParseError(f"{where}: 'defaults' must be a table")
        raw_projects = data.get("projects", [])
        if not isinstance(raw_projects, list) or not all(
            isinstance(p, dict) for p in raw_projects
        ):
            raise ManifestParseError(f"{where}: 'projects' must be an array of tables")

        builder = _Builder()
        defaults = builder.defaults(raw_defaults)
        projects = []
        for index, raw in enumerate(raw_projects):
            project = builder.project(index, raw, defaults)
            if project is not None:
                projects.append(project)
        return cls(
            document, text, defaults, projects, source=source, parse_issues=builder.issues
        )

    # -------------------------------------------------------------------------

    @property
    def names(self) -> list[str]:
        return [p.name for p in self.projects]

    def project(self, name: str) -> ProjectSpec | None:
        for project in self.projects:
            if project.name == name:
                return project
        return None

    def validate(self) -> list[ValidationIssue]:
        """Collect every problem in the manifest, never stopping at the first."""
        issues = list(self._parse_issues)

        seen_names: dict[str, int] = {}
        seen_paths: dict[str, str] = {}
        for project in self.projects:
            if project.name in seen_names:
                issues.append(ValidationIssue("duplicate project name", project.name, "name"))
            seen_names[project.name] = project.index
            if project.path in seen_paths:
                issues.append(
                    ValidationIssue(
                        f"path {project.path!r} is also used by {seen_paths[project.path]!r}",
                        project.name,
                        "path",
                    )
                )
            else:
                seen_paths[project.path] = project.name

        ordered = sorted(self.projects, key=lambda p: p.parts)
        for i, outer in enumerate(ordered):
            for inner in ordered[i + 1 :]:
                if _is_ancestor(outer.parts, inner.parts):
                    issues.append(
                        ValidationIssue(
                            f"path {inner.path!r} is nested inside {outer.name!r} ({outer.path!r})",
                            inner.name,
                            "path",
                        )
                    )
        return issues

    def check(self) -> list[ValidationIssue]:
        """Validate and raise ``ConfigError`` on any fatal issue.

        Returns the non-fatal issues so callers can show them.
        """
        issues = self.validate()
        fatal = [i for i in issues if i.fatal]
        if fatal:
            where = f" in {self.source}" if self.source else ""
            raise ConfigError(f"{len(fatal)} manifest error(s){where}", issues)
        return issues

    def project_issues(self) -> dict[str, list[ValidationIssue]]:
        """Project-scoped issues that make a project unusable, by project name."""
        result: dict[str, list[ValidationIssue]] = {}
        for issue in self.validate():
            if issue.level == IssueLevel.PROJECT and issue.project:
                result.setdefault(issue.project, []).append(issue)
        return result

    def select(self, ignore: Iterable[str]) -> Manifest:
        """Copy of this manifest without the projects named or located in ``ignore``."""
        ignore = list(ignore)
        ignored = {_normalize_path(i) for i in ignore} | set(ignore)
        if not ignored:
            return self
        kept = [p for p in self.projects if p.name not in ignored and p.path not in ignored]
        kept_names = {p.name for p in kept}
        issues = [i for i in self._parse_issues if i.project is None or i.project in kept_names]
        return Manifest(
            self.document,
            self.text,
            self.defaults,
            kept,
            source=self.source,
            parse_issues=issues,
        )

    def dumps(self) -> str:
        return tomlkit.dumps(self.document)
