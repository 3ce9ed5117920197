"""End-to-end tests for the command-line interface with an in-memory client."""

import json

import pytest
from conftest import REMOTE_C, SHA_A1, SHA_A2, SHA_B1, SHA_C1, TWO_PROJECTS, write_manifest
from typer.testing import CliRunner

from git_flotilla import __version__
from git_flotilla.core import app
from git_flotilla.manifest import Manifest

runner = CliRunner()


@pytest.fixture
def cli_workspace(workspace, fake_client, monkeypatch):
    """Workspace with the two-project manifest and git replaced by the fake client."""
    root = workspace.resolve()
    write_manifest(root, TWO_PROJECTS)
    monkeypatch.setattr("git_flotilla.core.GitClient", lambda *args, **kwargs: fake_client)
    return root


def invoke_json(*args):
    result = runner.invoke(app, [*args, "--json"])
    return result, json.loads(result.stdout)


class TestGlobalOptions:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"git-flotilla {__version__}" in result.stdout

    def test_schema_lists_every_command(self):
        result = runner.invoke(app, ["--schema"])
        assert result.exit_code == 0
        schema = json.loads(result.stdout)
        assert [tool["name"] for tool in schema["tools"]] == ["status", "sync", "snapshot", "track"]


class TestStatus:
    def test_reports_plan_without_touching_anything(self, cli_workspace, fake_client):
        result, data = invoke_json("status", str(cli_workspace))

        assert result.exit_code == 0
        assert [a["action"] for a in data["plan"]["actions"]] == ["clone", "clone"]
        assert data["report"]["summary"]["planned"] == 2
        assert fake_client.calls_for("clone") == []
        assert not (cli_workspace / "libs").exists()

    def test_missing_manifest_is_a_config_error(self, workspace):
        result, data = invoke_json("status", str(workspace))
        assert result.exit_code == 2
        assert "No manifest" in data["error"]

    def test_invalid_manifest_lists_issues(self, workspace):
        write_manifest(
            workspace,
            """
            [[projects]]
            name = "A"
            revision = "main"

            [[projects]]
            name = "A"
            remote = "https://example.com/a.git"
            revision = "main"
            """,
        )
        result, data = invoke_json("status", str(workspace))
        assert result.exit_code == 2
        assert len(data["issues"]) >= 2


class TestSync:
    def test_converges_and_writes_report(self, cli_workspace, fake_client, tmp_path):
        report_file = tmp_path / "report.json"
        result, data = invoke_json("sync", str(cli_workspace), "--report", str(report_file))

        assert result.exit_code == 0
        assert data["report"]["summary"]["succeeded"] == 2
        assert json.loads(report_file.read_text()) == data["report"]

        result, data = invoke_json("sync", str(cli_workspace))
        assert result.exit_code == 0
        assert data["report"]["summary"]["skipped"] == 2
        assert len(fake_client.calls_for("clone")) == 2

    def test_dry_run_changes_nothing(self, cli_workspace, fake_client):
        result, data = invoke_json("sync", str(cli_workspace), "--dry-run")
        assert result.exit_code == 0
        assert data["report"]["dry_run"]
        assert data["report"]["summary"]["planned"] == 2
        assert fake_client.calls_for("clone") == []

    def test_conflict_exits_with_one(self, cli_workspace, fake_client):
        fake_client.set_state(cli_workspace / "libs/a", commit=SHA_A2, branch="main", dirty=True)
        result, data = invoke_json("sync", str(cli_workspace))

        assert result.exit_code == 1
        statuses = {o["name"]: o["status"] for o in data["report"]["outcomes"]}
        assert statuses == {"A": "conflict", "B": "succeeded"}
        assert fake_client.calls_for("fetch_and_checkout") == []

    def test_force_overrides_conflict(self, cli_workspace, fake_client):
        fake_client.set_state(cli_workspace / "libs/a", commit=SHA_A2, branch="main", dirty=True)
        result, data = invoke_json("sync", str(cli_workspace), "--force")

        assert result.exit_code == 0
        assert fake_client.states[cli_workspace / "libs/a"].commit == SHA_A1

    def test_ignore_leaves_project_out(self, cli_workspace, fake_client):
        result, data = invoke_json("sync", str(cli_workspace), "--ignore", "B")
        assert result.exit_code == 0
        assert [o["name"] for o in data["report"]["outcomes"]] == ["A"]

    def test_no_checkout_fetches_without_moving_head(self, cli_workspace, fake_client):
        path = cli_workspace / "libs/a"
        fake_client.set_state(path, commit=SHA_A2, branch="main", dirty=True)
        result, data = invoke_json("sync", str(cli_workspace), "--no-checkout")

        assert result.exit_code == 0
        statuses = {o["name"]: o["status"] for o in data["report"]["outcomes"]}
        assert statuses == {"A": "succeeded", "B": "succeeded"}
        assert [c[2] for c in fake_client.calls_for("fetch")] == [path]
        assert fake_client.states[path].commit == SHA_A2


class TestSnapshot:
    def test_sync_then_snapshot(self, cli_workspace):
        result, data = invoke_json("snapshot", str(cli_workspace))

        assert result.exit_code == 0
        assert data["snapshot"]["pinned"] == ["A", "B"]
        pinned = Manifest.load(cli_workspace / ".gitrepos.snapshot")
        assert [p.revision for p in pinned.projects] == [SHA_A1, SHA_B1]
        assert (cli_workspace / ".gitrepos").read_text() == TWO_PROJECTS

    def test_from_report_does_not_sync(self, cli_workspace, fake_client, tmp_path):
        report_file = tmp_path / "report.json"
        runner.invoke(app, ["sync", str(cli_workspace), "--report", str(report_file)])
        clones = len(fake_client.calls_for("clone"))

        output = tmp_path / "pinned.toml"
        result, data = invoke_json(
            "snapshot", str(cli_workspace), "--from-report", str(report_file), "-o", str(output)
        )
        assert result.exit_code == 0
        assert "report" not in data
        assert len(fake_client.calls_for("clone")) == clones
        assert SHA_A1 in output.read_text()

    def test_in_place_and_output_conflict(self, cli_workspace, tmp_path):
        result = runner.invoke(
            app, ["snapshot", str(cli_workspace), "--in-place", "-o", str(tmp_path / "x")]
        )
        assert result.exit_code == 2

    def test_unreadable_report(self, cli_workspace, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text("{not json")
        result, data = invoke_json("snapshot", str(cli_workspace), "--from-report", str(bad))
        assert result.exit_code == 2
        assert "cannot read report" in data["error"]


class TestTrack:
    def test_track_all(self, cli_workspace, fake_client):
        extra = cli_workspace / "tools" / "extra"
        (extra / ".git").mkdir(parents=True)
        fake_client.set_state(extra, commit=SHA_C1, branch="main", remote_url=REMOTE_C)

        result, data = invoke_json("track", "--all", "-w", str(cli_workspace))

        assert result.exit_code == 0
        assert data["tracked"] == ["extra"]
        project = Manifest.load(cli_workspace / ".gitrepos").project("extra")
        assert project.path == "tools/extra"
        assert project.remote == REMOTE_C
        assert project.revision == "main"

    def test_track_all_disambiguates_directory_names(self, cli_workspace, fake_client):
        for parent in ("x", "y"):
            repo = cli_workspace / parent / "lib"
            (repo / ".git").mkdir(parents=True)
            fake_client.set_state(repo, commit=SHA_C1, branch="main", remote_url=REMOTE_C)

        result, data = invoke_json("track", "--all", "-w", str(cli_workspace))

        assert result.exit_code == 0
        assert data["tracked"] == ["lib", "y/lib"]
        manifest = Manifest.load(cli_workspace / ".gitrepos")
        assert manifest.project("lib").path == "x/lib"
        assert manifest.project("y/lib").path == "y/lib"

    def test_track_all_writes_nothing_when_an_entry_fails(self, cli_workspace, fake_client):
        manifest_file = cli_workspace / ".gitrepos"
        manifest_file.write_text(
            TWO_PROJECTS
            + '\n[[projects]]\nname = "y/lib"\npath = "other"\nremote = "'
            + REMOTE_C
            + '"\nrevision = "main"\n'
        )
        before = manifest_file.read_text()
        for parent in ("x", "y"):
            repo = cli_workspace / parent / "lib"
            (repo / ".git").mkdir(parents=True)
            fake_client.set_state(repo, commit=SHA_C1, branch="main", remote_url=REMOTE_C)

        result, data = invoke_json("track", "--all", "-w", str(cli_workspace))

        assert result.exit_code == 2
        assert "already exists" in data["error"]
        assert manifest_file.read_text() == before

    def test_track_single_with_overrides(self, cli_workspace, fake_client):
        repo = cli_workspace / "vendor"
        fake_client.set_state(repo, commit=SHA_C1, remote_url=REMOTE_C)

        result, data = invoke_json(
            "track", "vendor", "-w", str(cli_workspace), "--name", "v", "--revision", "main"
        )
        assert result.exit_code == 0
        assert data["tracked"] == ["v"]
        project = Manifest.load(cli_workspace / ".gitrepos").project("v")
        assert (project.path, project.revision) == ("vendor", "main")

    def test_needs_path_or_all(self, cli_workspace):
        assert runner.invoke(app, ["track", "-w", str(cli_workspace)]).exit_code == 2
        assert runner.invoke(app, ["track", "x", "--all", "-w", str(cli_workspace)]).exit_code == 2

    def test_not_a_repository(self, cli_workspace):
        result, data = invoke_json("track", "nowhere", "-w", str(cli_workspace))
        assert result.exit_code == 2
        assert "not a git repository" in data["error"]
