import pytest

from conductor.errors import InvalidTransition, MaxIterationsExceeded
from conductor.models import Phase
from conductor.state_machine import TRANSITIONS, WorkflowStateMachine


def _cycle_to_reflecting(machine: WorkflowStateMachine) -> None:
    machine.advance(Phase.ACTING)
    machine.advance(Phase.OBSERVING)
    machine.advance(Phase.REFLECTING)


def test_start_enters_planning_once() -> None:
    machine = WorkflowStateMachine("run-1")

    state = machine.start("fix the login bug")

    assert state.phase == Phase.PLANNING
    assert state.iteration == 1
    assert state.request == "fix the login bug"
    with pytest.raises(InvalidTransition):
        machine.start("again")


def test_full_cycle_to_complete() -> None:
    machine = WorkflowStateMachine("run-1")
    machine.start("request")
    _cycle_to_reflecting(machine)

    state = machine.complete("all done")

    assert state.phase == Phase.COMPLETE
    assert state.completion_summary == "all done"
    assert machine.is_terminal()


def test_illegal_transitions_are_rejected() -> None:
    for current, allowed in TRANSITIONS.items():
        for requested in Phase:
            if requested in allowed:
                continue
            machine = WorkflowStateMachine("run-x")
            machine._state.phase = current
            with pytest.raises(InvalidTransition):
                machine.advance(requested)
            assert machine.phase == current


def test_iteration_only_increments_on_replanning() -> None:
    machine = WorkflowStateMachine("run-1", max_iterations=5)
    machine.start("request")
    _cycle_to_reflecting(machine)
    assert machine.iteration == 1

    machine.advance(Phase.PLANNING)

    assert machine.iteration == 2
    assert machine.remaining_iterations() == 3


def test_ceiling_blocks_replanning() -> None:
    machine = WorkflowStateMachine("run-1", max_iterations=2)
    machine.start("request")
    _cycle_to_reflecting(machine)
    machine.advance(Phase.PLANNING)
    _cycle_to_reflecting(machine)

    with pytest.raises(MaxIterationsExceeded):
        machine.advance(Phase.PLANNING)

    assert machine.phase == Phase.REFLECTING
    assert machine.iteration == 2
    assert machine.remaining_iterations() == 0


def test_fail_from_any_non_terminal_phase() -> None:
    machine = WorkflowStateMachine("run-1")
    machine.start("request")
    machine.advance(Phase.ACTING)

    state = machine.fail("cancelled by caller")

    assert state.phase == Phase.FAILED
    assert state.failure_reason == "cancelled by caller"
    with pytest.raises(InvalidTransition):
        machine.fail("twice")


def test_advance_updates_timestamp(monkeypatch) -> None:
    machine = WorkflowStateMachine("run-1")
    machine.start("request")
    monkeypatch.setattr("conductor.state_machine.utcnow_iso", lambda: "2030-01-01T00:00:00+00:00")

    state = machine.advance(Phase.ACTING)

    assert state.updated_at == "2030-01-01T00:00:00+00:00"


def test_suspend_and_resume_only_while_reflecting() -> None:
    machine = WorkflowStateMachine("run-1")
    machine.start("request")
    with pytest.raises(InvalidTransition):
        machine.suspend()

    _cycle_to_reflecting(machine)
    state = machine.suspend()
    assert state.awaiting_user_input is True
    assert state.phase == Phase.REFLECTING
    with pytest.raises(InvalidTransition):
        machine.advance(Phase.PLANNING)

    assert machine.resume().awaiting_user_input is False
    with pytest.raises(InvalidTransition):
        machine.resume()


def test_snapshot_is_detached() -> None:
    machine = WorkflowStateMachine("run-1")
    snapshot = machine.start("request")
    snapshot.phase = Phase.COMPLETE

    assert machine.phase == Phase.PLANNING


def test_max_iterations_is_clamped() -> None:
    machine = WorkflowStateMachine("run-1", max_iterations=0)

    assert machine.snapshot().max_iterations == 1
