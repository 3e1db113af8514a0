import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from conductor.backends.base import AgentBackend
from conductor.cli import cli
from conductor.config import load_config, save_config


class FakeBackend(AgentBackend):
    """Answers planner and reflector prompts with canned JSON."""

    name = "fake"

    def __init__(self, reflections: list[dict[str, Any]] | None = None) -> None:
        self.reflections = list(reflections or [{"goal_achieved": True, "progress": 1.0, "content": "All done."}])

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = context
        if "planner" in system_prompt.lower():
            yield json.dumps(
                {
                    "description": "two steps",
                    "tasks": [
                        {"id": "look", "description": "Look around", "execution_type": "subagent", "agent_type": "explore"},
                        {"id": "answer", "description": "Answer the question", "dependencies": ["look"]},
                    ],
                }
            )
            return
        if "reflector" in system_prompt.lower():
            reflection = self.reflections.pop(0) if len(self.reflections) > 1 else self.reflections[0]
            yield json.dumps(reflection)
            return
        yield f"done: {user_prompt}"


def _use_backend(monkeypatch: pytest.MonkeyPatch, backend: AgentBackend) -> None:
    monkeypatch.setattr("conductor.cli._build_backend", lambda config, repo_root: backend)


def test_init_writes_config_and_state_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["init"])

    assert result.exit_code == 0
    assert (tmp_path / "conductor.toml").exists()
    assert (tmp_path / ".conductor" / "runs").is_dir()
    assert "Initialized Conductor" in result.output


def test_run_then_inspect(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    _use_backend(monkeypatch, FakeBackend())
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0

    run_result = runner.invoke(cli, ["run", "What does this repo do?", "--mode", "workflow"])
    assert run_result.exit_code == 0, run_result.output
    assert "- Phase: complete" in run_result.output
    assert "All done." in run_result.output
    run_id = run_result.output.strip().splitlines()[-1].removeprefix("Run ID: ").strip()

    runs_result = runner.invoke(cli, ["runs"])
    assert runs_result.output.split() == [run_id]

    status_result = runner.invoke(cli, ["status", run_id])
    assert status_result.exit_code == 0
    assert json.loads(status_result.output)["phase"] == "complete"

    tasks_result = runner.invoke(cli, ["tasks", run_id])
    assert tasks_result.exit_code == 0
    lines = tasks_result.output.strip().splitlines()
    assert len(lines) == 2
    assert all("completed" in line for line in lines)
    assert "Look around" in lines[0]


def test_run_prompts_on_intervention(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    _use_backend(
        monkeypatch,
        FakeBackend(
            [
                {"goal_achieved": False, "progress": 0.2, "content": "Unsure", "requires_user_intervention": True, "issues": ["ambiguous"]},
                {"goal_achieved": True, "progress": 1.0, "content": "Finished"},
            ]
        ),
    )

    result = CliRunner().invoke(cli, ["run", "Do something", "--mode", "workflow"], input="deny\nnot now\n")

    assert result.exit_code != 0
    assert "ambiguous" in result.output
    assert "denied by user: not now" in result.output


def test_run_auto_approve_and_iteration_limit(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    _use_backend(
        monkeypatch,
        FakeBackend([{"goal_achieved": False, "progress": 0.5, "content": "Again", "requires_user_intervention": True}]),
    )

    result = CliRunner().invoke(cli, ["run", "Loop", "--mode", "workflow", "--auto-approve", "--max-iterations", "2"])

    assert result.exit_code != 0
    assert "max iterations reached" in result.output
    assert "- Iterations: 2/2" in result.output


def test_persist_disabled_leaves_no_runs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    _use_backend(monkeypatch, FakeBackend())
    config_path = tmp_path / "conductor.toml"
    config = load_config(config_path)
    config.state.persist = False
    save_config(config_path, config)
    runner = CliRunner()

    assert runner.invoke(cli, ["run", "Quick question", "--mode", "workflow"]).exit_code == 0
    assert runner.invoke(cli, ["runs"]).output.strip() == "No runs found."


def test_unknown_run_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    status_result = runner.invoke(cli, ["status", "missing"])
    tasks_result = runner.invoke(cli, ["tasks", "missing"])

    assert status_result.exit_code != 0
    assert "Run not found: missing" in status_result.output
    assert tasks_result.exit_code != 0


def test_simple_request_is_answered_directly(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    _use_backend(monkeypatch, FakeBackend())
    runner = CliRunner()

    result = runner.invoke(cli, ["run", "hello"])

    assert result.exit_code == 0, result.output
    assert "done: hello" in result.output
    assert "Run ID:" not in result.output
    assert runner.invoke(cli, ["runs"]).output.strip() == "No runs found."


def test_complex_request_uses_the_plan_loop(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    _use_backend(monkeypatch, FakeBackend())

    result = CliRunner().invoke(cli, ["run", "Refactor the entire codebase, then migrate the config loader"])

    assert result.exit_code == 0, result.output
    assert "- Phase: complete" in result.output
    assert "Run ID:" in result.output


def test_direct_mode_from_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    _use_backend(monkeypatch, FakeBackend())
    config_path = tmp_path / "conductor.toml"
    config = load_config(config_path)
    config.workflow.mode = "direct"
    save_config(config_path, config)

    result = CliRunner().invoke(cli, ["run", "Refactor the entire codebase #workflow"])

    assert result.exit_code == 0, result.output
    assert "done: Refactor the entire codebase #workflow" in result.output
    assert "Run ID:" not in result.output
