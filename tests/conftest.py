"""
Pytest configuration and shared fixtures.

Provides an in-memory version-control client, manifest builders and
environment isolation used across the test suite.
"""

from __future__ import annotations

import textwrap
import threading
import time
from collections import defaultdict
from pathlib import Path

import pytest

from git_flotilla.errors import ConflictError, ErrorKind, ResolutionError, VcsError
from git_flotilla.manifest import Manifest, RevisionSelector, SelectorKind
from git_flotilla.models import Presence, RepoState
from git_flotilla.retry import RetryPolicy
from git_flotilla.vcs import pick_version

SHA_A1 = "a" * 40
SHA_A2 = "a" * 39 + "2"
SHA_B1 = "b" * 40
SHA_B2 = "b" * 39 + "2"
SHA_C1 = "c" * 40

REMOTE_A = "https://example.com/a.git"
REMOTE_B = "https://example.com/b.git"
REMOTE_C = "https://example.com/c.git"

TWO_PROJECTS = """\
[[projects]]
name = "A"
path = "libs/a"
remote = "https://example.com/a.git"
revision = "main"

[[projects]]
name = "B"
path = "libs/b"
remote = "https://example.com/b.git"
revision = "v1.2.0"
"""


# ==============================================================================
# Fake version-control client
# ==============================================================================


class FakeClient:
    """In-memory ``VersionControlClient`` that records every call.

    Remotes are dictionaries of branches and tags; repository states live in
    ``states`` keyed by path and are updated by clone/fetch_and_checkout;
    ``fetch`` only records the call.
    Errors queued with ``fail()`` are raised in order before the real work.
    """

    def __init__(self):
        self.remotes: dict[str, dict[str, dict[str, str]]] = {}
        self.states: dict[Path, RepoState] = {}
        self.calls: list[tuple] = []
        self.failures: dict[tuple[str, str], list[Exception]] = defaultdict(list)
        self.delay = 0.0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    # -- setup helpers ------------------------------------------------------

    def add_remote(
        self,
        url: str,
        branches: dict[str, str] | None = None,
        tags: dict[str, str] | None = None,
    ) -> None:
        self.remotes[url] = {"branches": dict(branches or {}), "tags": dict(tags or {})}

    def set_state(self, path: Path, **kwargs) -> RepoState:
        kwargs.setdefault("presence", Presence.PRESENT)
        state = RepoState(path=path, **kwargs)
        self.states[path] = state
        return state

    def fail(self, operation: str, key: str, *errors: Exception) -> None:
        self.failures[(operation, key)].extend(errors)

    def calls_for(self, operation: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == operation]

    # -- internals ----------------------------------------------------------

    def _record(self, *call) -> None:
        with self._lock:
            self.calls.append(call)

    def _maybe_fail(self, operation: str, key: str) -> None:
        with self._lock:
            queue = self.failures.get((operation, key))
            error = queue.pop(0) if queue else None
        if error is not None:
            raise error

    def _work(self, cancel) -> None:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if cancel is not None and cancel.is_set():
                raise VcsError(ErrorKind.CANCELLED, "cancelled")
        finally:
            with self._lock:
                self.active -= 1

    # -- protocol -----------------------------------------------------------

    def resolve(self, remote, selector: RevisionSelector, cancel=None) -> str:
        self._record("resolve", remote, selector.raw)
        self._maybe_fail("resolve", remote)
        if selector.kind == SelectorKind.COMMIT:
            return selector.value
        refs = self.remotes.get(remote)
        if refs is None:
            raise VcsError(ErrorKind.NOT_FOUND, f"repository {remote} not found")
        if selector.kind == SelectorKind.BRANCH:
            if selector.value not in refs["branches"]:
                raise ResolutionError(f"branch {selector.value!r} not found")
            return refs["branches"][selector.value]
        if selector.kind == SelectorKind.TAG:
            if selector.value not in refs["tags"]:
                raise ResolutionError(f"tag {selector.value!r} not found")
            return refs["tags"][selector.value]
        picked = pick_version(refs["tags"], selector.specifier)
        if picked is None:
            raise ResolutionError(f"no tag satisfies {selector.value!r}")
        return picked[1]

    def clone(self, remote, path, commit, *, branch=None, depth=None, remote_name="origin",
              exclude=(), cancel=None) -> None:
        self._record("clone", remote, path, commit, branch)
        self._maybe_fail("clone", remote)
        self._work(cancel)
        self.set_state(path, commit=commit, branch=branch, remote_url=remote)

    def fetch_and_checkout(self, path, remote, commit, *, branch=None, force=False, stash=False,
                           depth=None, remote_name="origin", exclude=(), cancel=None) -> None:
        self._record("fetch_and_checkout", remote, path, commit, branch, force, stash)
        self._maybe_fail("fetch_and_checkout", remote)
        self._work(cancel)
        state = self.states.get(path)
        if state is not None and not state.is_clean and not (force or stash):
            raise ConflictError("Your local changes would be overwritten by checkout")
        kept = {}
        if state is not None and stash:
            kept = {"dirty": state.dirty, "untracked_files": state.untracked_files}
        self.set_state(path, commit=commit, branch=branch, remote_url=remote, **kept)

    def fetch(self, path, remote, commit, *, depth=None, remote_name="origin",
              cancel=None) -> None:
        self._record("fetch", remote, path, commit)
        self._maybe_fail("fetch", remote)
        self._work(cancel)

    def inspect(self, path, *, remote_name="origin", cancel=None) -> RepoState:
        self._record("inspect", path)
        return self.states.get(path, RepoState(path=path))


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep user config and environment overrides out of every test."""
    monkeypatch.setenv("FLOTILLA_CONFIG", str(tmp_path / "no-such-config.toml"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.delenv("FLOTILLA_WORKSPACE", raising=False)
    monkeypatch.delenv("FLOTILLA_MANIFEST", raising=False)


@pytest.fixture
def fake_client():
    """FakeClient with remotes for projects A, B and C."""
    client = FakeClient()
    client.add_remote(REMOTE_A, branches={"main": SHA_A1, "dev": SHA_A2}, tags={"v1.0.0": SHA_A2})
    client.add_remote(
        REMOTE_B,
        branches={"main": SHA_B2},
        tags={"v1.2.0": SHA_B1, "v1.3.0": SHA_B2, "v2.0.0rc1": SHA_C1},
    )
    client.add_remote(REMOTE_C, branches={"main": SHA_C1})
    return client


@pytest.fixture
def no_wait_policy():
    """Retry policy without backoff delays."""
    return RetryPolicy(max_attempts=3, backoff_base=0.0)


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "ws"
    root.mkdir()
    return root


def make_manifest(text: str, source: Path | None = None) -> Manifest:
    return Manifest.parse(textwrap.dedent(text), source=source)


def write_manifest(root: Path, text: str, name: str = ".gitrepos") -> Path:
    path = root / name
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path
