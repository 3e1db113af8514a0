import json
from pathlib import Path

import pytest

from conductor.errors import RunNotFound
from conductor.graph import TaskGraph
from conductor.models import Observation, Phase, TaskStatus, WorkflowState
from conductor.store import RunStore


def test_state_tasks_and_observations_roundtrip(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    state = WorkflowState(run_id="run-1", request="tidy imports", phase=Phase.ACTING, iteration=2)
    graph = TaskGraph()
    first = graph.create_task("scan modules")
    second = graph.create_task("rewrite imports")
    graph.add_dependency(second, first)
    graph.set_status(first, TaskStatus.RUNNING)

    store.save_state(state, {"phase_history": [{"phase": "planning", "iteration": 1, "at": "x"}]})
    store.save_tasks("run-1", graph.tasks())
    store.save_observations("run-1", [Observation.tool_execution("grep", output={"hits": 2})])

    loaded_state = store.load_workflow_state("run-1")
    assert loaded_state.phase == Phase.ACTING
    assert loaded_state.iteration == 2
    assert store.load_state("run-1")["phase_history"][0]["phase"] == "planning"
    assert [task.id for task in store.load_tasks("run-1")] == [first, second]
    assert store.load_tasks("run-1")[1].blocked_by == [first]
    observations = store.load_observations("run-1")
    assert observations[0]["source"] == "tool_execution"
    assert observations[0]["output"] == {"hits": 2}


def test_files_use_envelope_layout(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    graph = TaskGraph()
    task_id = graph.create_task("one")
    store.save_state(WorkflowState(run_id="run-2", request="r"))
    store.save_tasks("run-2", graph.tasks())

    run_dir = tmp_path / "runs" / "run-2"
    state_payload = json.loads((run_dir / "state.json").read_text(encoding="utf-8"))
    task_payload = json.loads((run_dir / "tasks" / f"{task_id}.json").read_text(encoding="utf-8"))

    assert state_payload["schema_version"] == RunStore.SCHEMA_VERSION
    assert state_payload["data"]["run_id"] == "run-2"
    assert task_payload["data"]["subject"] == "one"
    assert not list(run_dir.glob(".*.tmp"))


def test_missing_runs_and_listing(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    assert store.list_runs() == []
    with pytest.raises(RunNotFound):
        store.load_state("nope")
    with pytest.raises(RunNotFound):
        store.load_tasks("nope")
    assert store.load_observations("nope") == []

    store.save_state(WorkflowState(run_id="b-run", request="r"))
    store.save_state(WorkflowState(run_id="a-run", request="r"))
    assert store.list_runs() == ["a-run", "b-run"]


def test_run_ids_cannot_escape_root(tmp_path: Path) -> None:
    store = RunStore(tmp_path)

    with pytest.raises(ValueError):
        store.run_dir("../outside")
