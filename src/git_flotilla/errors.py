"""Error types shared by the manifest, client, executor and snapshot layers."""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .manifest import ValidationIssue


class ErrorKind(StrEnum):
    """Structured kind of a per-project failure."""

    NETWORK = "network"
    AUTHENTICATION = "authentication"
    NOT_FOUND = "not_found"
    LOCAL_CONFLICT = "local_conflict"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    RESOLUTION = "resolution"
    UNKNOWN = "unknown"


class FlotillaError(Exception):
    """Base class for all git-flotilla errors."""


class ConfigError(FlotillaError):
    """The manifest is malformed or invalid; the run must not start."""

    def __init__(self, message: str, issues: list[ValidationIssue] | None = None):
        super().__init__(message)
        self.issues = list(issues or [])


class ManifestParseError(ConfigError):
    """The manifest document could not be read or parsed."""


class VcsError(FlotillaError):
    """A version-control operation failed."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class ConflictError(VcsError):
    """Local changes block the requested update.

    ``commit`` is set when HEAD already moved before the conflict surfaced.
    """

    def __init__(self, message: str, commit: str | None = None):
        super().__init__(ErrorKind.LOCAL_CONFLICT, message)
        self.commit = commit


class ResolutionError(FlotillaError):
    """A project's revision selector cannot be resolved to a commit."""

    def __init__(self, message: str, project: str | None = None, cause: VcsError | None = None):
        super().__init__(f"{project}: {message}" if project else message)
        self.project = project
        self.message = message
        self.cause = cause


class SnapshotWriteError(FlotillaError):
    """The snapshot document could not be produced or written."""
