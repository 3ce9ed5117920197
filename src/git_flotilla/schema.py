"""MCP-compatible tool schema for AI agents."""

from __future__ import annotations

from ._version import __version__

_COMMON_PROPERTIES = {
    "workspace": {
        "type": "string",
        "description": "Workspace root (default: $FLOTILLA_WORKSPACE or the current directory)",
    },
    "manifest": {
        "type": "string",
        "description": "Manifest file. Auto-resolved from: $FLOTILLA_MANIFEST → <workspace>/.gitrepos → <workspace>/flotilla.toml",
    },
    "json": {
        "type": "boolean",
        "description": "Output as JSON for machine parsing",
        "default": False,
    },
    "concurrency": {
        "type": "integer",
        "description": "Maximum number of repositories processed at once (default: 8)",
        "minimum": 1,
    },
    "ignore": {
        "type": "array",
        "items": {"type": "string"},
        "description": "Project names or paths to leave out of the run",
    },
}

_OUTCOME_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "path": {"type": "string"},
        "action": {
            "type": "string",
            "enum": ["clone", "update_cleanly", "update_with_conflict", "skip", "invalid_spec"],
        },
        "status": {
            "type": "string",
            "enum": ["succeeded", "skipped", "failed", "conflict", "cancelled", "planned"],
        },
        "error_kind": {
            "type": ["string", "null"],
            "enum": [
                "network",
                "authentication",
                "not_found",
                "local_conflict",
                "timeout",
                "cancelled",
                "resolution",
                "unknown",
                None,
            ],
        },
        "message": {"type": "string"},
        "commit": {"type": ["string", "null"]},
        "target": {"type": ["string", "null"]},
        "attempts": {"type": "integer"},
        "started_at": {"type": ["string", "null"], "format": "date-time"},
        "duration": {"type": "number"},
    },
}

_REPORT_SCHEMA = {
    "type": "object",
    "properties": {
        "outcomes": {"type": "array", "items": _OUTCOME_SCHEMA},
        "untracked": {"type": "array", "items": {"type": "string"}},
        "summary": {
            "type": "object",
            "properties": {
                "total": {"type": "integer"},
                "succeeded": {"type": "integer"},
                "failed": {"type": "integer"},
                "skipped": {"type": "integer"},
                "conflicted": {"type": "integer"},
                "cancelled": {"type": "integer"},
                "planned": {"type": "integer"},
            },
        },
        "dry_run": {"type": "boolean"},
        "cancelled": {"type": "boolean"},
        "notes": {"type": "object", "additionalProperties": {"type": "string"}},
    },
}


def get_tool_schema() -> dict:
    """Generate MCP-compatible tool schema for AI agents."""
    return {
        "name": "git-flotilla",
        "version": __version__,
        "description": "Keep a flotilla of Git repositories in formation. Reconciles a workspace against a declarative TOML manifest: clones missing repositories, moves existing ones to their declared branch, tag, commit or version range, reports local divergence without overwriting it, and writes revision-pinned snapshots.",
        "usage": "git-flotilla <command> [workspace] [options]",
        "tools": [
            {
                "name": "status",
                "description": "Scan the workspace, resolve every revision and show the action sync would take for each project (clone, update, up to date, conflict, invalid). Never modifies anything. Use this first to understand the workspace.",
                "inputSchema": {
                    "type": "object",
                    "properties": dict(_COMMON_PROPERTIES),
                    "required": [],
                },
                "outputSchema": {
                    "type": "object",
                    "properties": {
                        "workspace": {"type": "string"},
                        "plan": {"type": "object"},
                        "report": _REPORT_SCHEMA,
                    },
                },
                "examples": [
                    {
                        "description": "Show pending work for the workspace in the current directory",
                        "command": "git-flotilla status --json",
                    },
                ],
            },
            {
                "name": "sync",
                "description": "Clone missing repositories and check out the declared revision in existing ones, in parallel. Projects with local changes in the way are reported as conflicts and left untouched unless --force is given or the project sets conflict-policy = \"force\" (overwrite) or \"stash\" (stash, check out, re-apply). Local commits not on the remote also block the update. --no-checkout only fetches into existing repositories.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        **_COMMON_PROPERTIES,
                        "force": {
                            "type": "boolean",
                            "description": "Overwrite local changes that block an update",
                            "default": False,
                        },
                        "no_checkout": {
                            "type": "boolean",
                            "description": "Fetch declared revisions but leave existing working trees where they are",
                            "default": False,
                        },
                        "dry_run": {
                            "type": "boolean",
                            "description": "Show what would happen without actually doing it",
                            "default": False,
                        },
                        "timeout": {
                            "type": "number",
                            "description": "Seconds before a single git command is abandoned",
                        },
                        "report": {
                            "type": "string",
                            "description": "Also write the JSON report to this file",
                        },
                    },
                    "required": [],
                },
                "outputSchema": {
                    "type": "object",
                    "properties": {
                        "workspace": {"type": "string"},
                        "report": _REPORT_SCHEMA,
                    },
                },
                "examples": [
                    {
                        "description": "Sync with four parallel workers",
                        "command": "git-flotilla sync -c 4 --json",
                    },
                    {
                        "description": "Preview a sync",
                        "command": "git-flotilla sync --dry-run --json",
                    },
                ],
            },
            {
                "name": "snapshot",
                "description": "Sync, then write a copy of the manifest with every successfully synced project pinned to its exact commit. Comments and layout of the manifest are preserved. Projects that failed or were blocked keep their selector and are listed as unpinned.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        **_COMMON_PROPERTIES,
                        "output": {
                            "type": "string",
                            "description": "Snapshot file (default: <manifest>.snapshot)",
                        },
                        "from_report": {
                            "type": "string",
                            "description": "Pin commits from a JSON report written by 'sync --report' instead of syncing",
                        },
                        "in_place": {
                            "type": "boolean",
                            "description": "Overwrite the manifest itself",
                            "default": False,
                        },
                        "force": {
                            "type": "boolean",
                            "description": "Overwrite local changes that block an update",
                            "default": False,
                        },
                    },
                    "required": [],
                },
                "outputSchema": {
                    "type": "object",
                    "properties": {
                        "snapshot": {
                            "type": "object",
                            "properties": {
                                "output": {"type": "string"},
                                "pinned": {"type": "array", "items": {"type": "string"}},
                                "unpinned": {"type": "array", "items": {"type": "string"}},
                                "partial": {"type": "boolean"},
                            },
                        },
                        "report": _REPORT_SCHEMA,
                    },
                },
                "examples": [
                    {
                        "description": "Pin the workspace into release.toml",
                        "command": "git-flotilla snapshot -o release.toml --json",
                    },
                ],
            },
            {
                "name": "track",
                "description": "Add an existing repository in the workspace to the manifest, using its remote URL and current branch (or commit when detached). With --all, adds every undeclared repository found in the workspace.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "path": {
                            "type": "string",
                            "description": "Repository to add, relative to the workspace",
                        },
                        "workspace": _COMMON_PROPERTIES["workspace"],
                        "manifest": _COMMON_PROPERTIES["manifest"],
                        "name": {"type": "string", "description": "Project name"},
                        "revision": {"type": "string", "description": "Revision selector"},
                        "all": {
                            "type": "boolean",
                            "description": "Track every undeclared repository",
                            "default": False,
                        },
                        "json": _COMMON_PROPERTIES["json"],
                    },
                    "required": [],
                },
                "outputSchema": {
                    "type": "object",
                    "properties": {
                        "tracked": {"type": "array", "items": {"type": "string"}},
                        "manifest": {"type": "string"},
                    },
                },
                "examples": [
                    {
                        "description": "Track every repository cloned by hand",
                        "command": "git-flotilla track --all --json",
                    },
                ],
            },
        ],
        "globalOptions": {
            "--json, -j": "Output in JSON format (recommended for AI agents)",
            "--manifest, -m": "Manifest file (overrides auto-resolution)",
            "--concurrency, -c": "Maximum number of repositories processed at once",
            "--ignore": "Leave a project out of the run (repeatable)",
            "--verbose, -v": "Log every git command to stderr",
        },
        "manifestFormat": {
            "description": "TOML document with an optional [defaults] table and [[projects]] entries",
            "example": '[defaults]\nrevision = "main"\n\n[[projects]]\nname = "a"\npath = "libs/a"\nremote = "https://example.com/a.git"\nrevision = ">=1.2,<2"\n',
            "revisionSelectors": [
                "Full commit id (40 or 64 hex characters) or commit:<id>",
                "Branch name, or branch:<name>",
                "Version-shaped tag such as v1.2.0, or tag:<name>",
                "Version range such as >=1.2,<2, or version:<range>; highest matching tag wins",
            ],
        },
        "exitCodes": {
            "0": "Every project succeeded, was up to date or is pending (status/dry-run)",
            "1": "At least one project failed or was blocked by local changes",
            "2": "Invalid manifest, configuration or snapshot output",
            "130": "Run was cancelled",
        },
        "notes": [
            "All commands support --json for machine-readable output",
            "Use 'status --json' first to see what sync would do",
            "Local changes are never overwritten without --force or conflict-policy = \"force\"; conflict-policy = \"stash\" carries them over the checkout",
            "Settings are read from the [sync] table of $FLOTILLA_CONFIG or ~/.config/git-flotilla/config.toml",
        ],
    }
