"""git-flotilla: Keep a flotilla of Git repositories in formation."""

# Guard against deleted CWD (e.g. directory removed by another process).
# rich crashes on import if os.getcwd() fails, so recover before any imports.
import os

try:
    os.getcwd()
except (OSError, PermissionError):
    os.chdir(os.path.expanduser("~"))

from ._version import __version__
from .config import SyncSettings, load_settings
from .core import Flotilla, app
from .errors import (
    ConfigError,
    ConflictError,
    ErrorKind,
    FlotillaError,
    ManifestParseError,
    ResolutionError,
    SnapshotWriteError,
    VcsError,
)
from .executor import ConcurrentExecutor
from .formatters import OutputFormatter
from .manifest import Manifest, ProjectSpec, RevisionSelector
from .models import ActionKind, ExecutionOutcome, OutcomeStatus, RepoState, SyncReport
from .planner import RevisionResolver, SyncPlan, SyncPlanner
from .report import ReportAggregator
from .retry import RetryPolicy
from .scanner import ObservedWorkspace, WorkspaceScanner
from .schema import get_tool_schema
from .snapshot import SnapshotResult, SnapshotWriter, track_repository
from .vcs import GitClient, VersionControlClient

__all__ = [
    # Version
    "__version__",
    # CLI
    "app",
    "Flotilla",
    # Models
    "ActionKind",
    "ExecutionOutcome",
    "Manifest",
    "ObservedWorkspace",
    "OutcomeStatus",
    "ProjectSpec",
    "RepoState",
    "RevisionSelector",
    "SnapshotResult",
    "SyncPlan",
    "SyncReport",
    "SyncSettings",
    # Errors
    "ConfigError",
    "ConflictError",
    "ErrorKind",
    "FlotillaError",
    "ManifestParseError",
    "ResolutionError",
    "SnapshotWriteError",
    "VcsError",
    # Operations
    "ConcurrentExecutor",
    "GitClient",
    "ReportAggregator",
    "RetryPolicy",
    "RevisionResolver",
    "SnapshotWriter",
    "SyncPlanner",
    "VersionControlClient",
    "WorkspaceScanner",
    # Functions
    "get_tool_schema",
    "load_settings",
    "track_repository",
    # Formatters
    "OutputFormatter",
]
