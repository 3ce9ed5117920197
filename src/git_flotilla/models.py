"""Domain models: observed repository state, planned actions and run outcomes."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from types import MappingProxyType

from .errors import ErrorKind


class Presence(StrEnum):
    """What was found at a project's local path."""

    ABSENT = "absent"
    PRESENT = "present"
    NOT_A_REPOSITORY = "not_a_repository"


class ActionKind(StrEnum):
    """Planned operation for one project."""

    CLONE = "clone"
    UPDATE_CLEANLY = "update_cleanly"
    UPDATE_WITH_CONFLICT = "update_with_conflict"
    SKIP = "skip"
    UNTRACK = "untrack"
    INVALID_SPEC = "invalid_spec"


class OutcomeStatus(StrEnum):
    """Result of executing (or planning) one action."""

    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    CONFLICT = "conflict"
    CANCELLED = "cancelled"
    PLANNED = "planned"  # dry-run / status: work that would be done


@dataclass(frozen=True)
class RepoState:
    """Observed state of one local directory at scan time."""

    path: Path
    presence: Presence = Presence.ABSENT
    commit: str | None = None
    branch: str | None = None
    dirty: bool = False
    untracked_files: tuple[str, ...] = ()
    ahead: int | None = None
    behind: int | None = None
    remote_url: str | None = None
    is_empty_dir: bool = False

    @property
    def is_repository(self) -> bool:
        return self.presence == Presence.PRESENT

    @property
    def has_untracked(self) -> bool:
        return bool(self.untracked_files)

    @property
    def is_clean(self) -> bool:
        """No tracked modifications and no untracked files."""
        return not self.dirty and not self.untracked_files

    def to_dict(self) -> dict:
        return {
            "path": str(self.path),
            "presence": self.presence.value,
            "commit": self.commit,
            "branch": self.branch,
            "dirty": self.dirty,
            "untracked_count": len(self.untracked_files),
            "ahead": self.ahead,
            "behind": self.behind,
            "remote_url": self.remote_url,
        }


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of executing one planned action."""

    name: str
    path: str
    action: ActionKind
    status: OutcomeStatus
    error_kind: ErrorKind | None = None
    message: str = ""
    commit: str | None = None
    target: str | None = None
    attempts: int = 0
    started_at: datetime | None = None
    duration: float = 0.0

    @property
    def is_failure(self) -> bool:
        return self.status in (OutcomeStatus.FAILED, OutcomeStatus.CONFLICT)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "action": self.action.value,
            "status": self.status.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "message": self.message,
            "commit": self.commit,
            "target": self.target,
            "attempts": self.attempts,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "duration": round(self.duration, 3),
        }

    @classmethod
    def from_dict(cls, data: dict) -> ExecutionOutcome:
        started_at = data.get("started_at")
        error_kind = data.get("error_kind")
        return cls(
            name=data["name"],
            path=data["path"],
            action=ActionKind(data["action"]),
            status=OutcomeStatus(data["status"]),
            error_kind=ErrorKind(error_kind) if error_kind else None,
            message=data.get("message", ""),
            commit=data.get("commit"),
            target=data.get("target"),
            attempts=data.get("attempts", 0),
            started_at=datetime.fromisoformat(started_at) if started_at else None,
            duration=data.get("duration", 0.0),
        )


@dataclass(frozen=True)
class SyncReport:
    """Aggregate of all outcomes of one run, in manifest declaration order."""

    outcomes: tuple[ExecutionOutcome, ...] = ()
    untracked: tuple[str, ...] = ()
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    conflicted: int = 0
    cancelled: int = 0
    planned: int = 0
    dry_run: bool = False
    was_cancelled: bool = False
    notes: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        # Read-only view so the frozen report cannot be changed through it.
        object.__setattr__(self, "notes", MappingProxyType(dict(self.notes)))

    @property
    def ok(self) -> bool:
        """True when no project failed or was conflict-blocked."""
        return self.failed == 0 and self.conflicted == 0

    @property
    def exit_code(self) -> int:
        if self.was_cancelled:
            return 130
        return 0 if self.ok else 1

    def outcome(self, name: str) -> ExecutionOutcome | None:
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        return None

    def resolved_revisions(self) -> dict[str, str]:
        """Commits each successfully synced or skipped project sits at."""
        return {
            o.name: o.commit
            for o in self.outcomes
            if o.status in (OutcomeStatus.SUCCEEDED, OutcomeStatus.SKIPPED) and o.commit
        }

    def to_dict(self) -> dict:
        return {
            "outcomes": [o.to_dict() for o in self.outcomes],
            "untracked": list(self.untracked),
            "summary": {
                "total": self.total,
                "succeeded": self.succeeded,
                "failed": self.failed,
                "skipped": self.skipped,
                "conflicted": self.conflicted,
                "cancelled": self.cancelled,
                "planned": self.planned,
            },
            "dry_run": self.dry_run,
            "cancelled": self.was_cancelled,
            "notes": dict(self.notes),
        }

    @classmethod
    def from_dict(cls, data: dict) -> SyncReport:
        summary = data.get("summary", {})
        return cls(
            outcomes=tuple(ExecutionOutcome.from_dict(o) for o in data.get("outcomes", [])),
            untracked=tuple(data.get("untracked", [])),
            total=summary.get("total", 0),
            succeeded=summary.get("succeeded", 0),
            failed=summary.get("failed", 0),
            skipped=summary.get("skipped", 0),
            conflicted=summary.get("conflicted", 0),
            cancelled=summary.get("cancelled", 0),
            planned=summary.get("planned", 0),
            dry_run=data.get("dry_run", False),
            was_cancelled=data.get("cancelled", False),
            notes=dict(data.get("notes", {})),
        )
