import json
import os
from pathlib import Path

import pytest
from fakes import FakeGit, FakeProvider, NullController
from typer.testing import CliRunner

from ralph_loop import cli
from ralph_loop.cli import app
from ralph_loop.control import DONE_FILENAME, PAUSE_FILENAME
from ralph_loop.state import new_state, save_state


def _env() -> dict[str, str]:
    return {"RALPH_MODEL": "", "RALPH_PLAN": "", "RALPH_SERVER": "", "CI": "1"}


def test_help_lists_commands():
    result = CliRunner().invoke(app, ["--help"])
    assert result.exit_code == 0
    for command in ("run", "status", "pause", "resume", "done", "cleanup"):
        assert command in result.output


def test_pause_resume_done(project: Path):
    runner = CliRunner()

    result = runner.invoke(app, ["pause", "--repo", str(project)], env=_env())
    assert result.exit_code == 0
    payload = json.loads((project / PAUSE_FILENAME).read_text(encoding="utf-8"))
    assert payload["pid"] == os.getpid()

    result = runner.invoke(app, ["resume", "--repo", str(project)], env=_env())
    assert result.exit_code == 0
    assert not (project / PAUSE_FILENAME).exists()

    result = runner.invoke(app, ["resume", "--repo", str(project)], env=_env())
    assert "Not paused" in result.output

    result = runner.invoke(app, ["done", "--repo", str(project)], env=_env())
    assert result.exit_code == 0
    assert (project / DONE_FILENAME).exists()


def test_status_json(project: Path):
    state = new_state("plan.md", "abc123")
    state.iteration_times.extend([1000, 2000])
    save_state(project / ".ralph-state.json", state)

    result = CliRunner().invoke(
        app, ["status", "--repo", str(project), "--json"], env=_env()
    )

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["iterations"] == 2
    assert (payload["tasks_complete"], payload["total_tasks"]) == (1, 2)
    assert payload["initial_commit"] == "abc123"
    assert payload["paused"] is False


def test_run_rejects_unknown_format(project: Path):
    result = CliRunner().invoke(
        app, ["run", "--repo", str(project), "--format", "xml"], env=_env()
    )
    assert result.exit_code != 0
    assert "Invalid format" in result.output


def test_run_refuses_second_runner(project: Path, monkeypatch):
    (project / ".ralph-lock").write_text(json.dumps({"pid": 424242}), encoding="utf-8")
    monkeypatch.setattr("ralph_loop.locks.process_alive", lambda pid: True)

    result = CliRunner().invoke(app, ["run", "--repo", str(project)], env=_env())

    assert result.exit_code != 0
    assert "Another ralph run is active" in result.output


@pytest.fixture()
def fake_backend(monkeypatch):
    provider = FakeProvider()
    monkeypatch.setattr(cli, "OpenCodeProvider", lambda *args, **kwargs: provider)
    monkeypatch.setattr(cli, "GitReader", lambda root: FakeGit())
    monkeypatch.setattr(cli, "create_process_controller", lambda: NullController())
    return provider


def test_run_headless_jsonl(project: Path, fake_backend: FakeProvider):
    result = CliRunner().invoke(
        app,
        [
            "run",
            "--repo",
            str(project),
            "--format",
            "jsonl",
            "--max-iterations",
            "1",
            "--yes",
            "--prompt",
            "Do {plan}",
        ],
        env=_env(),
    )

    assert result.exit_code == 3
    lines = [json.loads(line) for line in result.stdout.splitlines() if line.startswith("{")]
    assert lines[0]["type"] == "start"
    assert lines[-1]["type"] == "summary"
    assert lines[-1]["iterations"] == 1
    assert fake_backend.prompts[0]["text"] == "Do plan.md"
    saved = json.loads((project / ".ralph-state.json").read_text(encoding="utf-8"))
    assert len(saved["iteration_times"]) == 1
    assert not (project / ".ralph-lock").exists()


def test_run_reset_discards_state_and_sentinels(project: Path, fake_backend: FakeProvider):
    state = new_state("plan.md", "old")
    state.iteration_times.extend([1, 2, 3])
    save_state(project / ".ralph-state.json", state)
    (project / PAUSE_FILENAME).write_text("", encoding="utf-8")
    (project / DONE_FILENAME).write_text("", encoding="utf-8")

    result = CliRunner().invoke(
        app,
        [
            "run",
            "--repo",
            str(project),
            "--format",
            "jsonl",
            "--max-iterations",
            "1",
            "--reset",
        ],
        env=_env(),
    )

    assert result.exit_code == 3
    saved = json.loads((project / ".ralph-state.json").read_text(encoding="utf-8"))
    assert saved["iteration_times"][:-1] == []
    assert saved["initial_commit_hash"] == "abc123"
    assert not (project / PAUSE_FILENAME).exists()
