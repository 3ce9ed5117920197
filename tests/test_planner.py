"""Tests for revision resolution and sync planning."""

from dataclasses import replace

import pytest
from conftest import (
    REMOTE_A,
    REMOTE_B,
    SHA_A1,
    SHA_A2,
    SHA_B1,
    SHA_B2,
    TWO_PROJECTS,
    make_manifest,
)

from git_flotilla.errors import ErrorKind, VcsError
from git_flotilla.models import ActionKind, Presence, RepoState
from git_flotilla.planner import Resolution, RevisionResolver, SyncPlanner
from git_flotilla.scanner import ObservedWorkspace


def observed(root, manifest, **states):
    projects = {
        p.name: states.get(p.name, RepoState(path=p.local_path(root))) for p in manifest.projects
    }
    return ObservedWorkspace(root=root, projects=projects)


def resolved(**commits):
    return {name: Resolution(name, commit=commit) for name, commit in commits.items()}


class TestRevisionResolver:
    def test_resolves_each_selector_kind(self, fake_client, no_wait_policy):
        manifest = make_manifest(
            f"""
            [[projects]]
            name = "branch"
            remote = "{REMOTE_A}"
            revision = "main"

            [[projects]]
            name = "tag"
            remote = "{REMOTE_B}"
            revision = "v1.2.0"

            [[projects]]
            name = "range"
            remote = "{REMOTE_B}"
            revision = ">=1.2,<2"

            [[projects]]
            name = "commit"
            remote = "{REMOTE_A}"
            revision = "{SHA_A2}"
            """
        )
        results = RevisionResolver(fake_client, no_wait_policy).resolve_all(manifest)
        assert {name: r.commit for name, r in results.items()} == {
            "branch": SHA_A1,
            "tag": SHA_B1,
            "range": SHA_B2,
            "commit": SHA_A2,
        }
        assert list(results) == ["branch", "tag", "range", "commit"]

    def test_commit_selector_needs_no_remote(self, fake_client, no_wait_policy):
        manifest = make_manifest(
            f"""
            [[projects]]
            name = "pinned"
            remote = "https://unreachable.example.com/x.git"
            revision = "{SHA_A1}"
            """
        )
        results = RevisionResolver(fake_client, no_wait_policy).resolve_all(manifest)
        assert results["pinned"].commit == SHA_A1
        assert fake_client.calls_for("resolve") == []

    def test_retries_transient_errors(self, fake_client, no_wait_policy):
        fake_client.fail("resolve", REMOTE_A, VcsError(ErrorKind.NETWORK, "Could not resolve host"))
        manifest = make_manifest(TWO_PROJECTS)
        results = RevisionResolver(fake_client, no_wait_policy).resolve_all(manifest)
        assert results["A"].ok
        assert results["A"].attempts == 2

    def test_gives_up_after_max_attempts(self, fake_client, no_wait_policy):
        error = VcsError(ErrorKind.NETWORK, "Connection refused")
        fake_client.fail("resolve", REMOTE_A, error, error, error)
        manifest = make_manifest(TWO_PROJECTS)
        results = RevisionResolver(fake_client, no_wait_policy).resolve_all(manifest)
        assert not results["A"].ok
        assert results["A"].attempts == 3
        assert results["A"].error.cause.kind == ErrorKind.NETWORK
        assert results["B"].ok

    def test_falls_back_to_next_remote(self, fake_client, no_wait_policy):
        manifest = make_manifest(
            f"""
            [[projects]]
            name = "A"
            remote = ["https://down.example.com/a.git", "{REMOTE_A}"]
            revision = "main"
            """
        )
        result = RevisionResolver(fake_client, no_wait_policy).resolve_all(manifest)["A"]
        assert result.commit == SHA_A1
        assert result.remote == REMOTE_A
        assert result.attempts == 1

    def test_missing_ref_is_not_retried(self, fake_client, no_wait_policy):
        manifest = make_manifest(
            f"""
            [[projects]]
            name = "A"
            remote = "{REMOTE_A}"
            revision = "no-such-branch"
            """
        )
        result = RevisionResolver(fake_client, no_wait_policy).resolve_all(manifest)["A"]
        assert not result.ok
        assert result.attempts == 1
        assert "no-such-branch" in result.error.message

    def test_cancelled_resolution_is_marked(self, fake_client, no_wait_policy):
        from threading import Event

        cancel = Event()
        cancel.set()
        manifest = make_manifest(TWO_PROJECTS)
        results = RevisionResolver(fake_client, no_wait_policy).resolve_all(manifest, cancel)
        assert results["A"].cancelled


class TestSyncPlanner:
    def test_status_scenario_skip_and_clone(self, workspace):
        manifest = make_manifest(TWO_PROJECTS)
        a_state = RepoState(
            path=workspace / "libs/a", presence=Presence.PRESENT, commit=SHA_A1, branch="main"
        )
        plan = SyncPlanner().plan(
            manifest, observed(workspace, manifest, A=a_state), resolved(A=SHA_A1, B=SHA_B1)
        )
        assert [(a.name, a.kind) for a in plan.actions] == [
            ("A", ActionKind.SKIP),
            ("B", ActionKind.CLONE),
        ]

    @pytest.mark.parametrize(
        "state_kwargs, expected",
        [
            ({"commit": SHA_A1, "branch": "main"}, ActionKind.SKIP),
            ({"commit": SHA_A2, "branch": "main"}, ActionKind.UPDATE_CLEANLY),
            ({"commit": SHA_A1, "branch": "dev"}, ActionKind.UPDATE_CLEANLY),
            ({"commit": SHA_A2, "branch": "main", "dirty": True}, ActionKind.UPDATE_WITH_CONFLICT),
            (
                {"commit": SHA_A2, "branch": "main", "untracked_files": ("new.txt",)},
                ActionKind.UPDATE_WITH_CONFLICT,
            ),
            ({"commit": None, "branch": "main"}, ActionKind.UPDATE_CLEANLY),
        ],
    )
    def test_repository_states(self, workspace, state_kwargs, expected):
        manifest = make_manifest(TWO_PROJECTS)
        state = RepoState(path=workspace / "libs/a", presence=Presence.PRESENT, **state_kwargs)
        plan = SyncPlanner().plan(
            manifest, observed(workspace, manifest, A=state), resolved(A=SHA_A1, B=SHA_B1)
        )
        assert plan.action("A").kind == expected

    def test_dirty_at_target_is_skip_with_note(self, workspace):
        manifest = make_manifest(TWO_PROJECTS)
        state = RepoState(
            path=workspace / "libs/a",
            presence=Presence.PRESENT,
            commit=SHA_A1,
            branch="main",
            dirty=True,
        )
        plan = SyncPlanner().plan(
            manifest, observed(workspace, manifest, A=state), resolved(A=SHA_A1, B=SHA_B1)
        )
        action = plan.action("A")
        assert action.kind == ActionKind.SKIP
        assert "uncommitted changes" in action.note
        assert plan.diagnostics["A"] == [action.note]

    def test_unpushed_commits_block_the_update(self, workspace):
        manifest = make_manifest(TWO_PROJECTS)
        state = RepoState(
            path=workspace / "libs/a",
            presence=Presence.PRESENT,
            commit=SHA_A2,
            branch="main",
            ahead=3,
            behind=0,
        )
        plan = SyncPlanner().plan(
            manifest, observed(workspace, manifest, A=state), resolved(A=SHA_A1, B=SHA_B1)
        )
        action = plan.action("A")
        assert action.kind == ActionKind.UPDATE_WITH_CONFLICT
        assert action.note == "has 3 unpushed commits"
        assert plan.diagnostics["A"] == ["has 3 unpushed commits"]

    def test_unpushed_commits_on_another_branch_do_not_block(self, workspace):
        manifest = make_manifest(TWO_PROJECTS)
        state = RepoState(
            path=workspace / "libs/a",
            presence=Presence.PRESENT,
            commit=SHA_A2,
            branch="feature",
            ahead=1,
        )
        plan = SyncPlanner().plan(
            manifest, observed(workspace, manifest, A=state), resolved(A=SHA_A1, B=SHA_B1)
        )
        assert plan.action("A").kind == ActionKind.UPDATE_CLEANLY

    def test_non_repository_directories(self, workspace):
        manifest = make_manifest(TWO_PROJECTS)
        empty = RepoState(
            path=workspace / "libs/a", presence=Presence.NOT_A_REPOSITORY, is_empty_dir=True
        )
        occupied = RepoState(path=workspace / "libs/b", presence=Presence.NOT_A_REPOSITORY)
        plan = SyncPlanner().plan(
            manifest,
            observed(workspace, manifest, A=empty, B=occupied),
            resolved(A=SHA_A1, B=SHA_B1),
        )
        assert plan.action("A").kind == ActionKind.CLONE
        assert plan.action("B").kind == ActionKind.UPDATE_WITH_CONFLICT

    def test_invalid_spec_for_bad_selector_and_failed_resolution(self, workspace):
        manifest = make_manifest(
            f"""
            [[projects]]
            name = "bad"
            remote = "{REMOTE_A}"
            revision = "bad..ref"

            [[projects]]
            name = "unresolved"
            remote = "{REMOTE_B}"
            revision = "gone"
            """
        )
        from git_flotilla.errors import ResolutionError

        resolutions = {
            "bad": Resolution("bad", error=ResolutionError("invalid ref name", "bad")),
            "unresolved": Resolution(
                "unresolved", error=ResolutionError("branch 'gone' not found", "unresolved")
            ),
        }
        plan = SyncPlanner().plan(manifest, observed(workspace, manifest), resolutions)
        assert [a.kind for a in plan.actions] == [ActionKind.INVALID_SPEC] * 2
        assert "gone" in plan.action("unresolved").note

    def test_remote_mismatch_is_diagnosed(self, workspace):
        manifest = make_manifest(TWO_PROJECTS)
        state = RepoState(
            path=workspace / "libs/a",
            presence=Presence.PRESENT,
            commit=SHA_A1,
            branch="main",
            remote_url="https://old.example.com/a.git",
        )
        plan = SyncPlanner().plan(
            manifest, observed(workspace, manifest, A=state), resolved(A=SHA_A1, B=SHA_B1)
        )
        assert plan.action("A").kind == ActionKind.SKIP
        assert "old.example.com" in plan.diagnostics["A"][0]

    def test_untracked_repositories_are_listed_in_path_order(self, workspace):
        manifest = make_manifest(TWO_PROJECTS)
        found = (
            RepoState(path=workspace / "zeta", presence=Presence.PRESENT),
            RepoState(path=workspace / "alpha", presence=Presence.PRESENT),
        )
        base = observed(workspace, manifest)
        plan = SyncPlanner().plan(
            manifest, replace(base, untracked=found), resolved(A=SHA_A1, B=SHA_B1)
        )
        assert [u.path for u in plan.untracked] == ["alpha", "zeta"]
        assert all(u.kind == ActionKind.UNTRACK for u in plan.untracked)
        assert plan.counts()[ActionKind.UNTRACK] == 2

    def test_plan_is_pure(self, workspace, fake_client):
        manifest = make_manifest(TWO_PROJECTS)
        state = RepoState(
            path=workspace / "libs/a", presence=Presence.PRESENT, commit=SHA_A2, branch="main"
        )
        inputs = (manifest, observed(workspace, manifest, A=state), resolved(A=SHA_A1, B=SHA_B1))
        first = SyncPlanner().plan(*inputs)
        second = SyncPlanner().plan(*inputs)
        assert first == second
        assert fake_client.calls == []

    def test_interrupted_plan(self, workspace):
        manifest = make_manifest(TWO_PROJECTS)
        plan = SyncPlanner.interrupted(manifest, workspace)
        assert all(a.interrupted for a in plan.actions)
        assert len(plan.actions) == 2
