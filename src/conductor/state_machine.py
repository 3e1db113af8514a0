from __future__ import annotations

import logging
from uuid import uuid4

from conductor.errors import InvalidTransition, MaxIterationsExceeded
from conductor.models import Phase, WorkflowState, utcnow_iso

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 15

# Any non-terminal phase may also abort to FAILED.
TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.IDLE: frozenset({Phase.PLANNING, Phase.FAILED}),
    Phase.PLANNING: frozenset({Phase.ACTING, Phase.FAILED}),
    Phase.ACTING: frozenset({Phase.OBSERVING, Phase.FAILED}),
    Phase.OBSERVING: frozenset({Phase.REFLECTING, Phase.FAILED}),
    Phase.REFLECTING: frozenset({Phase.PLANNING, Phase.COMPLETE, Phase.FAILED}),
    Phase.COMPLETE: frozenset(),
    Phase.FAILED: frozenset(),
}


class WorkflowStateMachine:
    """Phase bookkeeping for one run. Knows nothing about plans or reflections."""

    def __init__(
        self,
        run_id: str | None = None,
        *,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> None:
        self._state = WorkflowState(
            run_id=run_id or uuid4().hex[:12],
            request="",
            max_iterations=max(1, int(max_iterations)),
        )

    @property
    def phase(self) -> Phase:
        return self._state.phase

    @property
    def iteration(self) -> int:
        return self._state.iteration

    @property
    def run_id(self) -> str:
        return self._state.run_id

    def snapshot(self) -> WorkflowState:
        return self._state.copy()

    def is_terminal(self) -> bool:
        return self._state.phase.is_terminal

    def remaining_iterations(self) -> int:
        return max(0, self._state.max_iterations - self._state.iteration)

    def start(self, request: str) -> WorkflowState:
        if self._state.phase != Phase.IDLE:
            raise InvalidTransition(
                f"Workflow {self._state.run_id} already started (phase={self._state.phase.value})."
            )
        now = utcnow_iso()
        self._state.request = request
        self._state.phase = Phase.PLANNING
        self._state.iteration = 1
        self._state.started_at = now
        self._state.updated_at = now
        logger.info("Workflow %s started", self._state.run_id)
        return self.snapshot()

    def advance(self, next_phase: Phase) -> WorkflowState:
        current = self._state.phase
        if next_phase not in TRANSITIONS[current]:
            raise InvalidTransition(
                f"Illegal phase transition {current.value} -> {next_phase.value}."
            )
        if self._state.awaiting_user_input:
            raise InvalidTransition(
                f"Workflow {self._state.run_id} is awaiting user input."
            )
        if current == Phase.REFLECTING and next_phase == Phase.PLANNING:
            if self._state.iteration >= self._state.max_iterations:
                raise MaxIterationsExceeded(
                    f"Workflow {self._state.run_id} reached {self._state.max_iterations} iterations."
                )
            self._state.iteration += 1
        self._state.phase = next_phase
        self._state.updated_at = utcnow_iso()
        logger.debug(
            "Workflow %s: %s -> %s (iteration %d)",
            self._state.run_id,
            current.value,
            next_phase.value,
            self._state.iteration,
        )
        return self.snapshot()

    def complete(self, summary: str) -> WorkflowState:
        self.advance(Phase.COMPLETE)
        self._state.completion_summary = summary
        return self.snapshot()

    def fail(self, reason: str) -> WorkflowState:
        if self.is_terminal():
            raise InvalidTransition(
                f"Workflow {self._state.run_id} already finished (phase={self._state.phase.value})."
            )
        self._state.awaiting_user_input = False
        self.advance(Phase.FAILED)
        self._state.failure_reason = reason
        logger.warning("Workflow %s failed: %s", self._state.run_id, reason)
        return self.snapshot()

    def suspend(self) -> WorkflowState:
        if self._state.phase != Phase.REFLECTING:
            raise InvalidTransition(
                f"Workflow {self._state.run_id} can only wait for input while reflecting."
            )
        self._state.awaiting_user_input = True
        self._state.updated_at = utcnow_iso()
        return self.snapshot()

    def resume(self) -> WorkflowState:
        if not self._state.awaiting_user_input:
            raise InvalidTransition(f"Workflow {self._state.run_id} is not awaiting user input.")
        self._state.awaiting_user_input = False
        self._state.updated_at = utcnow_iso()
        return self.snapshot()
