"""Tests for the migrapack command-line interface."""

import json
import logging
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from migrapack.checkpoint import CheckpointStore
from migrapack.cli import cli
from migrapack.config import get_state_dir
from migrapack.manifest import ChangeKind
from migrapack.project_lock import ProjectLock


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers bound to CliRunner's streams."""
    yield
    logger = logging.getLogger("migrapack")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


@pytest.fixture
def cli_runner():
    return CliRunner()


@pytest.fixture
def manifest(tmp_path, make_patch):
    patches = [
        make_patch("mod", "go.mod", content="module example.com/app\n\ngo 1.22\n", kind=ChangeKind.MODIFY),
        make_patch("ent", "internal/user/entity.go", content="package user\n"),
    ]
    path = tmp_path / "manifest.json"
    path.write_text(json.dumps({"patches": [p.to_dict() for p in patches]}), encoding="utf-8")
    return path


@pytest.fixture
def subprocess_run(fake_runner):
    with patch(
        "subprocess.run",
        side_effect=lambda argv, **kwargs: fake_runner(argv, cwd=kwargs.get("cwd")),
    ) as mock_run:
        yield mock_run


def _write_config(project, **values):
    lines = ["migration:"] + [f"  {k}: {json.dumps(v)}" for k, v in values.items()]
    (project / "migrapack.yaml").write_text("\n".join(lines) + "\n", encoding="utf-8")


class TestPlan:
    def test_shows_stages(self, cli_runner, project, manifest):
        result = cli_runner.invoke(cli, ["plan", str(project), "--manifest", str(manifest)], obj={})

        assert result.exit_code == 0, result.output
        assert "Foundation Setup" in result.output
        assert "critical" in result.output

    def test_invalid_manifest(self, cli_runner, project, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text("[", encoding="utf-8")

        result = cli_runner.invoke(cli, ["plan", str(project), "--manifest", str(bad)], obj={})

        assert result.exit_code == 1
        assert "not valid JSON" in result.output


class TestRun:
    def test_dry_run(self, cli_runner, project, manifest, subprocess_run):
        result = cli_runner.invoke(
            cli, ["run", str(project), "--manifest", str(manifest), "--dry-run"], obj={}
        )

        assert result.exit_code == 0, result.output
        assert "SUCCESS" in result.output
        assert "dry run" in result.output
        assert subprocess_run.call_count == 0
        assert not (project / ".migrapack").exists()

    def test_successful_run(self, cli_runner, project, manifest, subprocess_run):
        _write_config(project, create_stage_backups=False)

        result = cli_runner.invoke(cli, ["run", str(project), "--manifest", str(manifest)], obj={})

        assert result.exit_code == 0, result.output
        assert (project / "internal/user/entity.go").exists()
        assert not (get_state_dir(project) / "migrapack.lock").exists()
        logs = list((get_state_dir(project) / "logs").glob("mig-*.log"))
        assert logs

    def test_json_log_format(self, cli_runner, project, manifest, subprocess_run):
        _write_config(project, create_stage_backups=False)

        result = cli_runner.invoke(
            cli, ["--log-format", "json", "run", str(project), "--manifest", str(manifest)], obj={}
        )

        assert result.exit_code == 0, result.output
        (log_file,) = (get_state_dir(project) / "logs").glob("mig-*.log")
        records = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
        assert records
        assert {r["run_id"] for r in records} == {log_file.stem}
        assert any(r["logger"] == "migrapack.runner" for r in records)

    def test_unknown_log_format_rejected(self, cli_runner, project, manifest):
        result = cli_runner.invoke(
            cli, ["--log-format", "xml", "run", str(project), "--manifest", str(manifest)], obj={}
        )
        assert result.exit_code == 2

    def test_failed_run_exits_1(self, cli_runner, project, manifest, fake_runner, subprocess_run):
        _write_config(project, create_stage_backups=False)
        fake_runner.when("go build", returncode=1, stderr="main.go:1:1: syntax error\n")

        result = cli_runner.invoke(cli, ["run", str(project), "--manifest", str(manifest)], obj={})

        assert result.exit_code == 1
        assert "FAILED" in result.output

    def test_locked_project_exits_2(self, cli_runner, project, manifest, subprocess_run):
        with ProjectLock(get_state_dir(project)):
            result = cli_runner.invoke(
                cli, ["run", str(project), "--manifest", str(manifest)], obj={}
            )

        assert result.exit_code == 2
        assert "lock already held" in result.output

    def test_precondition_error_exits_1(self, cli_runner, project, manifest, fake_runner, subprocess_run):
        fake_runner.when("git rev-parse --is-inside-work-tree", returncode=128, stderr="fatal")

        result = cli_runner.invoke(
            cli, ["run", str(project), "--manifest", str(manifest), "--auto-apply"], obj={}
        )

        assert result.exit_code == 1
        assert "git repository" in result.output

    def test_invalid_config(self, cli_runner, project, manifest):
        _write_config(project, max_stage_size=0)

        result = cli_runner.invoke(cli, ["run", str(project), "--manifest", str(manifest)], obj={})

        assert result.exit_code == 1
        assert "invalid migration config" in result.output

    def test_unknown_step_rejected(self, cli_runner, project, manifest):
        result = cli_runner.invoke(
            cli,
            ["run", str(project), "--manifest", str(manifest), "--from-step", "deploy"],
            obj={},
        )
        assert result.exit_code == 2


class TestStatusAndClear:
    def test_status_without_checkpoint(self, cli_runner, project):
        result = cli_runner.invoke(cli, ["status", str(project)], obj={})
        assert result.exit_code == 0
        assert "No checkpoint found" in result.output

    def test_status_after_run(self, cli_runner, project, manifest, subprocess_run):
        _write_config(project, create_stage_backups=False)
        cli_runner.invoke(cli, ["run", str(project), "--manifest", str(manifest)], obj={})

        result = cli_runner.invoke(cli, ["status", str(project)], obj={})

        assert result.exit_code == 0, result.output
        assert "Resumable migration found" in result.output
        assert "Last run" in result.output

    def test_clear(self, cli_runner, project):
        store = CheckpointStore(project)
        store.save(store.create(current_step="apply", total_files=1))

        result = cli_runner.invoke(cli, ["clear", str(project)], obj={})

        assert result.exit_code == 0
        assert "Checkpoint cleared" in result.output
        assert not store.exists()

        result = cli_runner.invoke(cli, ["clear", str(project)], obj={})
        assert "No checkpoint to clear" in result.output
