"""Version-control client capability and its git implementation.

The engine only talks to repositories through ``VersionControlClient``;
``GitClient`` implements it by shelling out to the ``git`` binary. Every call
takes an optional cancellation event which is polled while the subprocess runs.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from collections.abc import Sequence
from pathlib import Path
from threading import Event
from typing import Protocol

from packaging.specifiers import SpecifierSet
from packaging.version import InvalidVersion, Version

from .errors import ConflictError, ErrorKind, ResolutionError, VcsError
from .manifest import RevisionSelector, SelectorKind
from .models import Presence, RepoState

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
KILL_GRACE = 5.0
IS_UNIX = os.name == "posix"


class VersionControlClient(Protocol):
    """Operations the engine needs from a version-control backend."""

    def resolve(
        self, remote: str, selector: RevisionSelector, cancel: Event | None = None
    ) -> str: ...

    def clone(
        self,
        remote: str,
        path: Path,
        commit: str,
        *,
        branch: str | None = None,
        depth: int | None = None,
        remote_name: str = "origin",
        exclude: Sequence[str] = (),
        cancel: Event | None = None,
    ) -> None: ...

    def fetch_and_checkout(
        self,
        path: Path,
        remote: str,
        commit: str,
        *,
        branch: str | None = None,
        force: bool = False,
        stash: bool = False,
        depth: int | None = None,
        remote_name: str = "origin",
        exclude: Sequence[str] = (),
        cancel: Event | None = None,
    ) -> None: ...

    def fetch(
        self,
        path: Path,
        remote: str,
        commit: str,
        *,
        depth: int | None = None,
        remote_name: str = "origin",
        cancel: Event | None = None,
    ) -> None: ...

    def inspect(
        self, path: Path, *, remote_name: str = "origin", cancel: Event | None = None
    ) -> RepoState: ...


# =============================================================================
# Error classification
# =============================================================================

_CONFLICT_MARKERS = (
    "would be overwritten",
    "your local changes",
    "untracked working tree files",
    "please commit your changes or stash them",
)
_AUTH_MARKERS = (
    "authentication failed",
    "permission denied",
    "could not read username",
    "could not read password",
    "terminal prompts disabled",
    "invalid username or password",
    "http basic: access denied",
)
_NOT_FOUND_MARKERS = (
    "repository not found",
    "does not appear to be a git repository",
    "not found",
    "couldn't find remote ref",
    "no such ref",
    "unknown revision",
    "reference is not a tree",
    "not our ref",
    "no such file or directory",
)
_NETWORK_MARKERS = (
    "could not resolve host",
    "connection timed out",
    "connection refused",
    "connection reset",
    "network is unreachable",
    "unable to access",
    "early eof",
    "the remote end hung up",
    "operation timed out",
    "failed to connect",
    "ssl",
    "tls",
    "rpc failed",
)


def classify_git_error(output: str, args: Sequence[str] = ()) -> VcsError:
    """Map git's stderr to a structured error."""
    text = output.strip()
    lowered = text.lower()
    command = f"git {args[0]}" if args else "git"
    message = text.splitlines()[-1] if text else f"{command} failed"

    if any(marker in lowered for marker in _CONFLICT_MARKERS):
        return ConflictError(message)
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return VcsError(ErrorKind.AUTHENTICATION, message)
    if any(marker in lowered for marker in _NETWORK_MARKERS):
        return VcsError(ErrorKind.NETWORK, message)
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return VcsError(ErrorKind.NOT_FOUND, message)
    return VcsError(ErrorKind.UNKNOWN, message)


def parse_ls_remote(output: str) -> dict[str, str]:
    """Parse ``git ls-remote`` output into ``{ref: sha}``.

    Peeled tag entries (``refs/tags/x^{}``) replace the tag object's id so
    every tag maps to the commit it points at.
    """
    refs: dict[str, str] = {}
    peeled: dict[str, str] = {}
    for line in output.splitlines():
        parts = line.split("\t", 1)
        if len(parts) != 2:
            continue
        sha, ref = parts[0].strip(), parts[1].strip()
        if ref.endswith("^{}"):
            peeled[ref[:-3]] = sha
        else:
            refs[ref] = sha
    refs.update(peeled)
    return refs


def pick_version(tags: dict[str, str], specifier: SpecifierSet) -> tuple[str, str] | None:
    """Highest version-shaped tag matching ``specifier`` as ``(tag, sha)``."""
    best: tuple[Version, str, str] | None = None
    for tag, sha in tags.items():
        try:
            version = Version(tag)
        except InvalidVersion:
            continue
        if not specifier.contains(version):
            continue
        if best is None or version > best[0]:
            best = (version, tag, sha)
    return (best[1], best[2]) if best else None


# =============================================================================
# Git implementation
# =============================================================================


class GitClient:
    """``VersionControlClient`` backed by the git command-line tool."""

    def __init__(self, timeout: float | None = None, git: str = "git"):
        self.timeout = timeout
        self.git = git

    def _run(
        self,
        *args: str,
        cwd: Path | None = None,
        cancel: Event | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """Run a git command, honouring cancellation and the per-call timeout."""
        cmd = [self.git, *args]
        logger.debug("Running %s (cwd=%s)", " ".join(cmd), cwd)
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", "LC_ALL": "C"}
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=env,
                # Own process group so helpers git spawns die with it.
                start_new_session=IS_UNIX,
            )
        except OSError as e:
            raise VcsError(ErrorKind.UNKNOWN, f"cannot run {self.git}: {e}") from e

        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    self._kill(proc)
                    raise VcsError(ErrorKind.CANCELLED, f"git {args[0]} cancelled") from None
                if deadline is not None and time.monotonic() >= deadline:
                    self._kill(proc)
                    raise VcsError(
                        ErrorKind.TIMEOUT, f"git {args[0]} timed out after {self.timeout}s"
                    ) from None

        result = subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)
        if check and result.returncode != 0:
            raise classify_git_error(result.stderr or result.stdout, args)
        return result

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        """Kill git and everything it started, then reap it.

        Remote helpers and ssh inherit git's pipes; killing only git would
        leave ``communicate()`` waiting for them to exit.
        """
        if IS_UNIX:
            try:
                # start_new_session makes git the group leader: pgid == pid.
                os.killpg(proc.pid, signal.SIGKILL)
            except (ProcessLookupError, OSError) as e:
                logger.debug("Process group kill failed (process may be dead): %s", e)
                proc.kill()
        else:
            proc.kill()
        try:
            proc.communicate(timeout=KILL_GRACE)
        except subprocess.TimeoutExpired:
            logger.warning("git process %d still holds its pipes after kill", proc.pid)

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def ls_remote(self, remote: str, *patterns: str, tags: bool = False,
                  cancel: Event | None = None) -> dict[str, str]:
        args = ["ls-remote"]
        if tags:
            args.append("--tags")
        result = self._run(*args, remote, *patterns, cancel=cancel)
        return parse_ls_remote(result.stdout)

    def resolve(
        self, remote: str, selector: RevisionSelector, cancel: Event | None = None
    ) -> str:
        """Resolve a selector to a commit id using the remote's refs."""
        if selector.kind == SelectorKind.COMMIT:
            return selector.value

        if selector.kind == SelectorKind.BRANCH:
            ref = f"refs/heads/{selector.value}"
            refs = self.ls_remote(remote, ref, cancel=cancel)
            if ref not in refs:
                raise ResolutionError(f"branch {selector.value!r} not found on {remote}")
            return refs[ref]

        if selector.kind == SelectorKind.TAG:
            ref = f"refs/tags/{selector.value}"
            refs = self.ls_remote(remote, ref, f"{ref}^{{}}", cancel=cancel)
            if ref not in refs:
                raise ResolutionError(f"tag {selector.value!r} not found on {remote}")
            return refs[ref]

        refs = self.ls_remote(remote, tags=True, cancel=cancel)
        tags = {ref[len("refs/tags/") :]: sha for ref, sha in refs.items()}
        picked = pick_version(tags, selector.specifier)
        if picked is None:
            raise ResolutionError(f"no tag on {remote} satisfies {selector.value!r}")
        logger.debug("Range %s on %s resolved to tag %s", selector.value, remote, picked[0])
        return picked[1]

    # -------------------------------------------------------------------------
    # Mutating operations
    # -------------------------------------------------------------------------

    def _ensure_remote(self, path: Path, remote_name: str, remote: str, cancel: Event | None):
        current = self._run(
            "remote", "get-url", remote_name, cwd=path, cancel=cancel, check=False
        )
        if current.returncode != 0:
            self._run("remote", "add", remote_name, remote, cwd=path, cancel=cancel)
        elif current.stdout.strip() != remote:
            logger.info("Updating %s URL in %s to %s", remote_name, path, remote)
            self._run("remote", "set-url", remote_name, remote, cwd=path, cancel=cancel)

    def _has_commit(self, path: Path, commit: str, cancel: Event | None = None) -> bool:
        result = self._run(
            "cat-file", "-e", f"{commit}^{{commit}}", cwd=path, cancel=cancel, check=False
        )
        return result.returncode == 0

    def _fetch(
        self,
        path: Path,
        remote_name: str,
        commit: str,
        depth: int | None,
        cancel: Event | None,
    ) -> None:
        if depth:
            self._run(
                "fetch", "--quiet", "--force", "--depth", str(depth), remote_name, commit,
                cwd=path, cancel=cancel,
            )
        else:
            self._run(
                "fetch", "--quiet", "--force", "--tags", remote_name,
                f"+refs/heads/*:refs/remotes/{remote_name}/*",
                cwd=path, cancel=cancel,
            )
            if not self._has_commit(path, commit, cancel):
                # Commits that are not a ref tip need an explicit fetch.
                self._run("fetch", "--quiet", remote_name, commit, cwd=path, cancel=cancel)
        if not self._has_commit(path, commit, cancel):
            raise VcsError(ErrorKind.NOT_FOUND, f"commit {commit[:12]} not found after fetch")

    def _checkout(
        self,
        path: Path,
        commit: str,
        branch: str | None,
        force: bool,
        remote_name: str,
        depth: int | None,
        exclude: Sequence[str],
        cancel: Event | None,
    ) -> None:
        args = ["checkout", "--quiet"]
        if force:
            args.append("--force")
        if branch:
            args += ["-B", branch, commit]
        else:
            args += ["--detach", commit]
        self._run(*args, cwd=path, cancel=cancel)

        if force:
            clean = ["clean", "-fd"]
            for pattern in exclude:
                clean += ["-e", pattern]
            self._run(*clean, cwd=path, cancel=cancel)

        if branch and not depth:
            # Best effort so ahead/behind can be reported later.
            self._run(
                "branch", f"--set-upstream-to={remote_name}/{branch}", branch,
                cwd=path, cancel=cancel, check=False,
            )

    def clone(
        self,
        remote: str,
        path: Path,
        commit: str,
        *,
        branch: str | None = None,
        depth: int | None = None,
        remote_name: str = "origin",
        exclude: Sequence[str] = (),
        cancel: Event | None = None,
    ) -> None:
        """Create a repository at ``path`` and check out ``commit``.

        Safe to call again on a directory left behind by an interrupted clone.
        """
        path.mkdir(parents=True, exist_ok=True)
        if not (path / ".git").exists():
            self._run("init", "--quiet", cwd=path, cancel=cancel)
        self._ensure_remote(path, remote_name, remote, cancel)
        self._fetch(path, remote_name, commit, depth, cancel)
        self._checkout(path, commit, branch, True, remote_name, depth, exclude, cancel)

    def fetch_and_checkout(
        self,
        path: Path,
        remote: str,
        commit: str,
        *,
        branch: str | None = None,
        force: bool = False,
        stash: bool = False,
        depth: int | None = None,
        remote_name: str = "origin",
        exclude: Sequence[str] = (),
        cancel: Event | None = None,
    ) -> None:
        """Bring an existing repository to ``commit``.

        With ``stash`` local changes are stashed before the checkout and
        re-applied afterwards. If they no longer apply they stay in the stash
        and a ``ConflictError`` is raised.
        """
        if not (path / ".git").exists():
            raise VcsError(ErrorKind.NOT_FOUND, f"{path} is not a git repository")
        self._ensure_remote(path, remote_name, remote, cancel)
        self._fetch(path, remote_name, commit, depth, cancel)

        stashed = stash and not force and self._stash(path, cancel)
        try:
            self._checkout(path, commit, branch, force, remote_name, depth, exclude, cancel)
        except VcsError:
            if stashed:
                self._pop_stash(path, None)
            raise
        if stashed:
            self._pop_stash(path, commit)

    def fetch(
        self,
        path: Path,
        remote: str,
        commit: str,
        *,
        depth: int | None = None,
        remote_name: str = "origin",
        cancel: Event | None = None,
    ) -> None:
        """Download ``commit`` into an existing repository without moving HEAD."""
        if not (path / ".git").exists():
            raise VcsError(ErrorKind.NOT_FOUND, f"{path} is not a git repository")
        self._ensure_remote(path, remote_name, remote, cancel)
        self._fetch(path, remote_name, commit, depth, cancel)

    def _stash_ref(self, path: Path, cancel: Event | None) -> str:
        result = self._run(
            "rev-parse", "--verify", "--quiet", "refs/stash", cwd=path, cancel=cancel, check=False
        )
        return result.stdout.strip() if result.returncode == 0 else ""

    def _stash(self, path: Path, cancel: Event | None) -> bool:
        """Stash tracked and untracked changes. True if a stash entry was made."""
        before = self._stash_ref(path, cancel)
        self._run(
            "stash", "push", "--include-untracked", "--quiet", "-m", "git-flotilla sync",
            cwd=path, cancel=cancel,
        )
        stashed = self._stash_ref(path, cancel) != before
        if stashed:
            logger.info("Stashed local changes in %s", path)
        return stashed

    def _pop_stash(self, path: Path, commit: str | None) -> None:
        # Never cancelled: a half-applied stash is worse than a late exit.
        result = self._run("stash", "pop", "--quiet", cwd=path, check=False)
        if result.returncode != 0:
            raise ConflictError(
                "local changes do not apply on the new revision; they are kept in the stash",
                commit=commit,
            )

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def inspect(
        self, path: Path, *, remote_name: str = "origin", cancel: Event | None = None
    ) -> RepoState:
        """Observe a directory without modifying it."""
        if not path.exists():
            return RepoState(path=path, presence=Presence.ABSENT)
        if not path.is_dir():
            return RepoState(path=path, presence=Presence.NOT_A_REPOSITORY)
        if not (path / ".git").exists():
            return RepoState(
                path=path,
                presence=Presence.NOT_A_REPOSITORY,
                is_empty_dir=not any(path.iterdir()),
            )

        toplevel = self._run("rev-parse", "--show-toplevel", cwd=path, cancel=cancel, check=False)
        if toplevel.returncode != 0 or Path(toplevel.stdout.strip()).resolve() != path.resolve():
            return RepoState(path=path, presence=Presence.NOT_A_REPOSITORY)

        head = self._run(
            "rev-parse", "--verify", "--quiet", "HEAD", cwd=path, cancel=cancel, check=False
        )
        commit = head.stdout.strip() if head.returncode == 0 and head.stdout.strip() else None

        info = self._status_porcelain(path, cancel)
        return RepoState(
            path=path,
            presence=Presence.PRESENT,
            commit=commit,
            branch=info["branch"],
            dirty=info["dirty"],
            untracked_files=tuple(info["untracked"]),
            ahead=info["ahead"],
            behind=info["behind"],
            remote_url=self._remote_url(path, remote_name, cancel),
        )

    def _status_porcelain(self, path: Path, cancel: Event | None) -> dict:
        """Branch, ahead/behind, dirty flag and untracked files in one command."""
        info: dict = {
            "branch": None,
            "ahead": None,
            "behind": None,
            "dirty": False,
            "untracked": [],
        }
        result = self._run("status", "--porcelain=v2", "--branch", cwd=path, cancel=cancel)
        for line in result.stdout.splitlines():
            if line.startswith("# branch.head "):
                head = line[len("# branch.head ") :]
                info["branch"] = None if head == "(detached)" else head
            elif line.startswith("# branch.ab "):
                # Format: # branch.ab +<ahead> -<behind>
                parts = line.split()
                if len(parts) == 4:
                    info["ahead"] = abs(int(parts[2]))
                    info["behind"] = abs(int(parts[3]))
            elif line.startswith(("1 ", "2 ", "u ")):
                info["dirty"] = True
            elif line.startswith("? "):
                info["untracked"].append(line[2:])
        return info

    def _remote_url(
        self, path: Path, remote_name: str, cancel: Event | None = None
    ) -> str | None:
        result = self._run("remote", "get-url", remote_name, cwd=path, cancel=cancel, check=False)
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip()
        names = self._run("remote", cwd=path, cancel=cancel, check=False)
        for name in names.stdout.split():
            other = self._run("remote", "get-url", name, cwd=path, cancel=cancel, check=False)
            if other.returncode == 0 and other.stdout.strip():
                return other.stdout.strip()
        return None
