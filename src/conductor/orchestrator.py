from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import uuid4

from conductor.collaborators.base import PlanGenerator, Reflector, ToolExecutor
from conductor.errors import (
    ConductorError,
    CycleDetected,
    ExternalCollaboratorError,
    InterventionNotPending,
    MaxIterationsExceeded,
    RunNotFound,
    TaskNotFound,
)
from conductor.executors import failed_observation, stringify_output
from conductor.graph import TaskGraph
from conductor.ledger import ObservationLedger, digest
from conductor.models import (
    Deny,
    InterventionRequest,
    InterventionResponse,
    ModifyPlan,
    Observation,
    ObservationDigest,
    Phase,
    Plan,
    Reflection,
    Suggest,
    Task,
    TaskStatus,
    TaskSummary,
    WorkflowState,
    utcnow_iso,
)
from conductor.state_machine import DEFAULT_MAX_ITERATIONS, WorkflowStateMachine
from conductor.store import RunStore

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]
InterventionHandler = Callable[
    [InterventionRequest], InterventionResponse | Awaitable[InterventionResponse]
]

DEFAULT_MAX_PARALLEL_TASKS = 8
CANCELLED_REASON = "cancelled by caller"
MAX_ITERATIONS_REASON = "max iterations reached"
CYCLIC_PLAN_REASON = "planner produced a cyclic plan"


class WorkflowRun:
    """One Plan -> Act -> Observe -> Reflect run over its own graph and ledger."""

    def __init__(
        self,
        request: str,
        *,
        plan_generator: PlanGenerator,
        reflector: Reflector,
        tool_executor: ToolExecutor,
        run_id: str | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        max_parallel_tasks: int = DEFAULT_MAX_PARALLEL_TASKS,
        store: RunStore | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.request = request
        self.plan_generator = plan_generator
        self.reflector = reflector
        self.tool_executor = tool_executor
        self.max_parallel_tasks = max(1, int(max_parallel_tasks))
        self.store = store
        self.event_hook = event_hook

        self.machine = WorkflowStateMachine(
            run_id or uuid4().hex[:12], max_iterations=max_iterations
        )
        self.graph = TaskGraph()
        self.ledger = ObservationLedger()

        self.plan: Plan | None = None
        self.plans: list[Plan] = []
        self.reflections: list[Reflection] = []
        self.phase_history: list[dict[str, Any]] = []
        self.last_digest: ObservationDigest | None = None
        self.last_error: ExternalCollaboratorError | None = None

        self._plan_checkpoint = 0
        self._observe_checkpoint = 0
        self._reflect_delta: list[Observation] = []
        self._guidance: list[str] = []
        self._staged_plan: dict[str, str] | None = None
        self._cancel_requested = False
        self._pending: InterventionRequest | None = None
        self._response: asyncio.Future[InterventionResponse | None] | None = None
        self._settled = asyncio.Event()
        self._started_monotonic: float | None = None

    @property
    def run_id(self) -> str:
        return self.machine.run_id

    @property
    def state(self) -> WorkflowState:
        return self.machine.snapshot()

    @property
    def pending_intervention(self) -> InterventionRequest | None:
        return self._pending

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def guidance(self) -> list[str]:
        return list(self._guidance)

    def _emit(self, event: str, **fields: Any) -> None:
        if self.event_hook:
            self.event_hook({"event": event, "run_id": self.run_id, "at": utcnow_iso(), **fields})

    def _record_phase(self) -> None:
        state = self.machine.snapshot()
        self.phase_history.append(
            {"phase": state.phase.value, "iteration": state.iteration, "at": state.updated_at}
        )
        self._emit("phase_changed", phase=state.phase.value, iteration=state.iteration)
        self._persist()

    def _persist(self) -> None:
        if self.store is None:
            return
        extra = {
            "phase_history": list(self.phase_history),
            "plan": self.plan.to_dict() if self.plan else None,
            "reflections": [item.to_dict() for item in self.reflections],
        }
        self.store.save_state(self.machine.snapshot(), extra)
        self.store.save_tasks(self.run_id, self.graph.tasks(include_deleted=True))
        self.store.save_observations(self.run_id, self.ledger.all())

    def _advance(self, phase: Phase) -> None:
        self.machine.advance(phase)
        logger.info("Run %s entered %s", self.run_id, phase.value)
        self._record_phase()

    def _fail(self, reason: str) -> None:
        self._abandon_pending(reason)
        self._staged_plan = None
        self.machine.fail(reason)
        self._record_phase()

    def _abandon_pending(self, reason: str) -> None:
        abandoned = [
            task.id for task in self.graph.tasks() if task.status == TaskStatus.PENDING
        ]
        for task_id in abandoned:
            self.graph.delete(task_id, f"run failed before task ran: {reason}")
        if abandoned:
            self._emit("tasks_discarded", task_ids=abandoned)

    def start(self) -> WorkflowState:
        state = self.machine.start(self.request)
        self._started_monotonic = time.monotonic()
        self._record_phase()
        return state

    def cancel(self) -> None:
        if self.machine.is_terminal():
            return
        self._cancel_requested = True
        logger.info("Cancellation requested for run %s", self.run_id)
        if self._response is not None and not self._response.done():
            self._settled.clear()
            self._response.set_result(None)

    def respond(self, response: InterventionResponse) -> None:
        if self._response is None or self._response.done():
            raise InterventionNotPending(f"Run {self.run_id} is not awaiting user input.")
        if isinstance(response, ModifyPlan):
            self._staged_plan = self.graph.replace_pending(response.steps)
        self._settled.clear()
        self._response.set_result(response)

    async def settled(self) -> WorkflowState:
        """Wait until the run is suspended on an intervention or has finished."""
        await self._settled.wait()
        return self.state

    async def drive(self) -> WorkflowState:
        try:
            if self.machine.phase == Phase.IDLE:
                self.start()
            while not self.machine.is_terminal():
                if self._cancel_requested:
                    self._fail(CANCELLED_REASON)
                    break
                phase = self.machine.phase
                if phase == Phase.PLANNING:
                    await self._plan()
                elif phase == Phase.ACTING:
                    await self._act()
                elif phase == Phase.OBSERVING:
                    self._observe()
                elif phase == Phase.REFLECTING:
                    await self._reflect()
        except Exception as exc:
            if not self.machine.is_terminal():
                self._fail(f"internal error: {exc}")
            raise
        finally:
            self._settled.set()
        state = self.state
        self._emit(
            "run_finished",
            phase=state.phase.value,
            iterations=state.iteration,
            failure_reason=state.failure_reason,
        )
        return state

    async def _plan(self) -> None:
        if self._staged_plan is not None:
            task_ids = list(self._staged_plan.values())
            description = "Plan supplied by operator"
            self._staged_plan = None
        else:
            delta = self.ledger.since(self._plan_checkpoint)
            self._plan_checkpoint = self.ledger.checkpoint()
            guidance = tuple(self._guidance)
            self._guidance.clear()
            try:
                draft = await self.plan_generator.generate(
                    self.request, delta, tuple(self.reflections), guidance=guidance
                )
            except Exception as exc:
                self.last_error = ExternalCollaboratorError("plan generator", str(exc))
                logger.warning("Run %s: %s", self.run_id, self.last_error)
                self._fail(f"plan generation failed: {exc}")
                return
            try:
                mapping = self.graph.add_plan(draft.steps)
            except CycleDetected as exc:
                logger.warning("Run %s: %s", self.run_id, exc)
                self._fail(CYCLIC_PLAN_REASON)
                return
            except TaskNotFound as exc:
                self._fail(f"planner referenced unknown task '{exc.task_id}'")
                return
            except ValueError as exc:
                self._fail(f"planner produced an invalid plan: {exc}")
                return
            task_ids = list(mapping.values())
            description = draft.description

        self.plan = Plan(
            id=uuid4().hex[:12],
            description=description,
            task_ids=task_ids,
            estimated_steps=len(task_ids),
        )
        self.plans.append(self.plan)
        logger.info("Run %s planned %d task(s)", self.run_id, len(task_ids))
        self._advance(Phase.ACTING)

    async def _act(self) -> None:
        semaphore = asyncio.Semaphore(self.max_parallel_tasks)
        while not self._cancel_requested:
            ready = self.graph.ready_tasks()
            if not ready:
                break
            await asyncio.gather(*(self._dispatch(task, semaphore) for task in ready))

        discarded = self.graph.discard_blocked()
        if discarded:
            self._emit("tasks_discarded", task_ids=discarded)
        if self.plan is not None:
            self.plan.progress = self.graph.progress(self.plan.task_ids)
        self._advance(Phase.OBSERVING)

    async def _dispatch(self, task: Task, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            self.graph.set_status(task.id, TaskStatus.RUNNING)
            self._emit("task_dispatched", task_id=task.id, subject=task.subject)
            started = time.perf_counter()
            try:
                observation = await self.tool_executor.execute(task)
            except Exception as exc:
                error = ExternalCollaboratorError("tool executor", str(exc))
                logger.warning("Run %s task %s: %s", self.run_id, task.id, error)
                observation = failed_observation(
                    task, str(error), duration_ms=(time.perf_counter() - started) * 1000.0
                )
            if observation.task_id is None:
                observation = dataclasses.replace(observation, task_id=task.id)

            self.ledger.record(observation)
            if observation.success:
                self.graph.set_status(
                    task.id, TaskStatus.COMPLETED, result=stringify_output(observation.output)
                )
            else:
                logger.warning("Run %s task %s failed: %s", self.run_id, task.id, observation.error)
                self.graph.set_status(
                    task.id, TaskStatus.FAILED, error=observation.error or "task failed"
                )
            self._emit("task_finished", task_id=task.id, success=observation.success)

    def _observe(self) -> None:
        delta = self.ledger.since(self._observe_checkpoint)
        self.last_digest = digest(delta)
        self._reflect_delta = delta
        self._observe_checkpoint = self.ledger.checkpoint()
        summary = self.ledger.summary()
        logger.info(
            "Run %s observed %d new result(s), %d failed (%d total)",
            self.run_id,
            self.last_digest.total,
            self.last_digest.failed,
            summary.total,
        )
        self._advance(Phase.REFLECTING)

    async def _reflect(self) -> None:
        error: str | None = None
        try:
            reflection = await self.reflector.reflect(
                self._reflect_delta, self.graph.snapshot(), request=self.request
            )
        except Exception as exc:
            self.last_error = ExternalCollaboratorError("reflector", str(exc))
            logger.warning("Run %s: %s", self.run_id, self.last_error)
            error = str(self.last_error)
            reflection = Reflection.intervention_required(error)
        self.reflections.append(reflection)

        # A cancel that arrived during the reflector call outranks its verdict.
        if self._cancel_requested:
            self._fail(CANCELLED_REASON)
            return

        if reflection.goal_achieved:
            self.machine.complete(reflection.analysis.strip() or "Goal achieved.")
            self._record_phase()
            return

        if reflection.requires_user_intervention:
            response = await self._await_intervention(reflection, error=error)
            if response is None:
                self._fail(CANCELLED_REASON)
                return
            if isinstance(response, Deny):
                self._fail(f"denied by user: {response.reason or 'no reason given'}")
                return
            if isinstance(response, Suggest):
                self._guidance.append(response.guidance)

        self._continue()

    def _continue(self) -> None:
        if self._cancel_requested:
            self._fail(CANCELLED_REASON)
            return
        try:
            self._advance(Phase.PLANNING)
        except MaxIterationsExceeded:
            self._fail(MAX_ITERATIONS_REASON)

    async def _await_intervention(
        self, reflection: Reflection, *, error: str | None = None
    ) -> InterventionResponse | None:
        self._response = asyncio.get_running_loop().create_future()
        self._pending = InterventionRequest(run_id=self.run_id, reflection=reflection, error=error)
        self.machine.suspend()
        self._persist()
        logger.info("Run %s is waiting for user input", self.run_id)
        self._emit("intervention_requested", issues=list(reflection.issues))
        self._settled.set()
        try:
            response = await self._response
        finally:
            self._response = None
            self._pending = None
        self.machine.resume()
        self._emit(
            "intervention_resolved",
            response=type(response).__name__ if response is not None else "Cancelled",
        )
        return response

    def render_summary(self) -> str:
        state = self.state
        summary = self.ledger.summary()
        elapsed = 0.0
        if self._started_monotonic is not None:
            elapsed = time.monotonic() - self._started_monotonic
        lines = [
            f"# Run {state.run_id}",
            "",
            f"- Request: {state.request}",
            f"- Phase: {state.phase.value}",
            f"- Iterations: {state.iteration}/{state.max_iterations}",
            f"- Elapsed: {elapsed:.1f}s",
            f"- Observations: {summary.total} ({summary.succeeded} succeeded, {summary.failed} failed)",
        ]
        if state.failure_reason:
            lines.append(f"- Failure reason: {state.failure_reason}")
        if state.completion_summary:
            lines.extend(["", "## Summary", "", state.completion_summary])

        tasks = self.graph.tasks(include_deleted=True)
        if tasks:
            lines.extend(["", "## Tasks", ""])
            lines.extend(f"- [{task.status.value}] {task.subject}" for task in tasks)
        if self.reflections:
            lines.extend(["", "## Reflections", ""])
            for index, reflection in enumerate(self.reflections, start=1):
                lines.append(f"{index}. progress {reflection.progress:.0%}: {reflection.analysis}")
        return "\n".join(lines)


class RunHandle:
    def __init__(self, run: WorkflowRun, task: asyncio.Task[WorkflowState]) -> None:
        self.run = run
        self._task = task

    @property
    def run_id(self) -> str:
        return self.run.run_id

    @property
    def state(self) -> WorkflowState:
        return self.run.state

    @property
    def intervention(self) -> InterventionRequest | None:
        return self.run.pending_intervention

    def done(self) -> bool:
        return self._task.done()

    async def settled(self) -> WorkflowState:
        return await self.run.settled()

    async def wait(self) -> WorkflowState:
        return await self._task


class Orchestrator:
    """Entry point for the rest of the system: starts runs and answers queries about them."""

    def __init__(
        self,
        plan_generator: PlanGenerator,
        reflector: Reflector,
        tool_executor: ToolExecutor,
        *,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        max_parallel_tasks: int = DEFAULT_MAX_PARALLEL_TASKS,
        store: RunStore | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.plan_generator = plan_generator
        self.reflector = reflector
        self.tool_executor = tool_executor
        self.max_iterations = max_iterations
        self.max_parallel_tasks = max_parallel_tasks
        self.store = store
        self.event_hook = event_hook
        self._runs: dict[str, WorkflowRun] = {}
        self._handles: dict[str, RunHandle] = {}

    def _run(self, run_id: str) -> WorkflowRun:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    def start(self, request: str, *, run_id: str | None = None) -> RunHandle:
        """Begin a run on the current event loop and return a handle to it."""
        if run_id is not None and run_id in self._runs:
            raise ConductorError(f"Run already exists: {run_id}")
        run = WorkflowRun(
            request,
            plan_generator=self.plan_generator,
            reflector=self.reflector,
            tool_executor=self.tool_executor,
            run_id=run_id,
            max_iterations=self.max_iterations,
            max_parallel_tasks=self.max_parallel_tasks,
            store=self.store,
            event_hook=self.event_hook,
        )
        run.start()
        task = asyncio.get_running_loop().create_task(
            run.drive(), name=f"conductor-run-{run.run_id}"
        )
        handle = RunHandle(run, task)
        self._runs[run.run_id] = run
        self._handles[run.run_id] = handle
        return handle

    async def run(
        self,
        request: str,
        *,
        on_intervention: InterventionHandler | None = None,
        run_id: str | None = None,
    ) -> WorkflowState:
        """Run to a terminal phase, answering interventions with ``on_intervention``.

        Without a handler every intervention is denied.
        """
        handle = self.start(request, run_id=run_id)
        while True:
            state = await handle.settled()
            if state.phase.is_terminal or handle.done():
                return await handle.wait()
            intervention = handle.intervention
            if intervention is None:
                continue
            if on_intervention is None:
                reason = "no operator available"
                if intervention.error:
                    reason = f"{reason} ({intervention.error})"
                response: InterventionResponse = Deny(reason)
            else:
                outcome = on_intervention(intervention)
                response = await outcome if inspect.isawaitable(outcome) else outcome
            try:
                self.respond_to_intervention(handle.run_id, response)
            except (CycleDetected, TaskNotFound, ValueError) as exc:
                logger.warning("Rejected intervention response for run %s: %s", handle.run_id, exc)

    def handle(self, run_id: str) -> RunHandle:
        self._run(run_id)
        return self._handles[run_id]

    def get_run(self, run_id: str) -> WorkflowRun:
        return self._run(run_id)

    def run_ids(self) -> list[str]:
        return list(self._runs)

    def forget(self, run_id: str) -> WorkflowState:
        """Drop a finished run from memory. Persisted files are left in the store."""
        run = self._run(run_id)
        if not self._handles[run_id].done():
            raise ConductorError(f"Run {run_id} is still active")
        del self._runs[run_id]
        del self._handles[run_id]
        return run.state

    def cancel(self, run_id: str) -> None:
        self._run(run_id).cancel()

    def status(self, run_id: str) -> WorkflowState:
        return self._run(run_id).state

    def respond_to_intervention(self, run_id: str, response: InterventionResponse) -> None:
        self._run(run_id).respond(response)

    def pending_intervention(self, run_id: str) -> InterventionRequest | None:
        return self._run(run_id).pending_intervention

    def list_tasks(self, run_id: str) -> list[TaskSummary]:
        return [task.summary() for task in self._run(run_id).graph.tasks()]

    def get_task(self, run_id: str, task_id: str) -> Task:
        return self._run(run_id).graph.get(task_id)
