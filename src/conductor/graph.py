from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from uuid import uuid4

from conductor.errors import CycleDetected, InvalidStatusTransition, TaskNotFound
from conductor.models import (
    STATUS_TRANSITIONS,
    Execution,
    GraphSnapshot,
    PlanStep,
    Task,
    TaskStatus,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

BLOCKING_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.DELETED})


def _reaches(start: str, target: str, edges: Mapping[str, Iterable[str]]) -> bool:
    """Depth-first search from ``start`` along ``blocked_by`` edges looking for ``target``."""
    visited: set[str] = set()
    stack = [start]
    while stack:
        node = stack.pop()
        if node == target:
            return True
        if node in visited:
            continue
        visited.add(node)
        stack.extend(next_node for next_node in edges.get(node, ()) if next_node not in visited)
    return False


@dataclass(slots=True)
class _PreparedStep:
    key: str
    task_id: str
    step: PlanStep
    parent_id: str | None
    depends_on: list[str]


class TaskGraph:
    """All tasks of one run plus their dependency edges.

    The ``blocked_by`` relation is kept acyclic: every edge is checked against the
    current graph before anything is written. Tasks are never removed, only moved to
    ``deleted``. All methods take the graph lock and hand out copies, so concurrent
    workers never observe a half-applied update.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        self._sequence = 0

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for task in self._tasks.values() if task.status != TaskStatus.DELETED)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)  # type: ignore[arg-type]
            return task is not None and task.status != TaskStatus.DELETED

    def _new_id(self) -> str:
        while True:
            candidate = f"task-{uuid4().hex[:8]}"
            if candidate not in self._tasks:
                return candidate

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _live(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None or task.status == TaskStatus.DELETED:
            raise TaskNotFound(task_id)
        return task

    def _edge_map(self) -> dict[str, list[str]]:
        return {task_id: list(task.blocked_by) for task_id, task in self._tasks.items()}

    def create_task(
        self,
        description: str,
        parent_id: str | None = None,
        *,
        subject: str | None = None,
        owner: str | None = None,
        execution: Execution | None = None,
        metadata: dict | None = None,
    ) -> str:
        with self._lock:
            if parent_id is not None:
                self._live(parent_id)
            task_id = self._new_id()
            task = Task(
                id=task_id,
                description=description,
                subject=subject or "",
                parent_id=parent_id,
                owner=owner,
                metadata=dict(metadata or {}),
                sequence=self._next_sequence(),
            )
            if execution is not None:
                task.execution = execution
            self._tasks[task_id] = task
            logger.debug("Created task %s: %s", task_id, task.subject)
            return task_id

    def add_dependency(self, task_id: str, depends_on_id: str) -> None:
        with self._lock:
            task = self._live(task_id)
            dependency = self._live(depends_on_id)
            if depends_on_id in task.blocked_by:
                return
            if task_id == depends_on_id or _reaches(depends_on_id, task_id, self._edge_map()):
                raise CycleDetected(task_id, depends_on_id)
            now = utcnow_iso()
            task.blocked_by.append(depends_on_id)
            task.updated_at = now
            dependency.blocks.append(task_id)
            dependency.updated_at = now

    def set_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        result: str | None = None,
        error: str | None = None,
    ) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFound(task_id)
            if task.status == TaskStatus.DELETED and status == TaskStatus.DELETED:
                return task.copy()
            if status not in STATUS_TRANSITIONS[task.status]:
                raise InvalidStatusTransition(task_id, task.status.value, status.value)

            now = utcnow_iso()
            task.status = status
            task.updated_at = now
            if status == TaskStatus.RUNNING:
                task.started_at = now
            elif status in {TaskStatus.COMPLETED, TaskStatus.FAILED}:
                task.completed_at = now
            if result is not None:
                task.result = result
            if error is not None:
                task.error = error
            return task.copy()

    def delete(self, task_id: str, note: str | None = None) -> Task:
        return self.set_status(task_id, TaskStatus.DELETED, error=note)

    def ready_tasks(self) -> list[Task]:
        with self._lock:
            ready = [
                task
                for task in self._tasks.values()
                if task.status == TaskStatus.PENDING
                and all(
                    self._tasks[dep_id].status == TaskStatus.COMPLETED
                    for dep_id in task.blocked_by
                )
            ]
            ready.sort(key=lambda task: task.sequence)
            return [task.copy() for task in ready]

    def get(self, task_id: str) -> Task:
        with self._lock:
            return self._live(task_id).copy()

    def get_including_deleted(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFound(task_id)
            return task.copy()

    def tasks(self, *, include_deleted: bool = False) -> list[Task]:
        with self._lock:
            ordered = sorted(self._tasks.values(), key=lambda task: task.sequence)
            return [
                task.copy()
                for task in ordered
                if include_deleted or task.status != TaskStatus.DELETED
            ]

    def edges(self) -> list[tuple[str, str]]:
        """Every ``(task_id, depends_on_id)`` pair, in task creation order."""
        with self._lock:
            ordered = sorted(self._tasks.values(), key=lambda task: task.sequence)
            return [(task.id, dep_id) for task in ordered for dep_id in task.blocked_by]

    def snapshot(self) -> GraphSnapshot:
        return GraphSnapshot(tasks=tuple(self.tasks(include_deleted=True)))

    def progress(self, task_ids: Sequence[str]) -> float:
        if not task_ids:
            return 1.0
        with self._lock:
            finished = sum(
                1
                for task_id in task_ids
                if task_id in self._tasks and self._tasks[task_id].is_finished
            )
            return finished / len(task_ids)

    def add_plan(self, steps: Sequence[PlanStep]) -> dict[str, str]:
        """Insert a batch of steps, returning ``{step.key: task_id}``.

        Either every step and edge is committed or nothing is.
        """
        with self._lock:
            prepared = self._prepare(steps, excluded=frozenset())
            return self._commit(prepared)

    def replace_pending(self, steps: Sequence[PlanStep], note: str = "replaced by user plan") -> dict[str, str]:
        with self._lock:
            pending = frozenset(
                task.id for task in self._tasks.values() if task.status == TaskStatus.PENDING
            )
            prepared = self._prepare(steps, excluded=pending)
            for task_id in sorted(pending, key=lambda item: self._tasks[item].sequence):
                self.delete(task_id, note)
            logger.info("Replaced %d pending task(s) with %d new step(s)", len(pending), len(prepared))
            return self._commit(prepared)

    def discard_blocked(self) -> list[str]:
        """Soft-delete pending tasks that can no longer run because a dependency failed."""
        discarded: list[str] = []
        with self._lock:
            changed = True
            while changed:
                changed = False
                for task in sorted(self._tasks.values(), key=lambda item: item.sequence):
                    if task.status != TaskStatus.PENDING:
                        continue
                    blocker = next(
                        (
                            dep_id
                            for dep_id in task.blocked_by
                            if self._tasks[dep_id].status in BLOCKING_STATUSES
                        ),
                        None,
                    )
                    if blocker is None:
                        continue
                    self.delete(task.id, f"blocked by failed dependency {blocker}")
                    discarded.append(task.id)
                    changed = True
        if discarded:
            logger.info("Discarded %d task(s) blocked by failed dependencies", len(discarded))
        return discarded

    def _prepare(self, steps: Sequence[PlanStep], *, excluded: frozenset[str]) -> list[_PreparedStep]:
        ids_by_key: dict[str, str] = {}
        for step in steps:
            if step.key in ids_by_key:
                raise ValueError(f"Duplicate plan step key: {step.key}")
            ids_by_key[step.key] = self._new_id()

        def resolve(reference: str) -> str:
            if reference in ids_by_key:
                return ids_by_key[reference]
            task = self._tasks.get(reference)
            if task is None or task.status == TaskStatus.DELETED or reference in excluded:
                raise TaskNotFound(reference)
            return reference

        edges = self._edge_map()
        prepared: list[_PreparedStep] = []
        for step in steps:
            task_id = ids_by_key[step.key]
            edges.setdefault(task_id, [])
            depends_on: list[str] = []
            for reference in step.depends_on:
                dep_id = resolve(reference)
                if dep_id in depends_on:
                    continue
                if dep_id == task_id or _reaches(dep_id, task_id, edges):
                    raise CycleDetected(step.key, reference)
                edges[task_id].append(dep_id)
                depends_on.append(dep_id)
            parent_id = resolve(step.parent) if step.parent else None
            prepared.append(_PreparedStep(step.key, task_id, step, parent_id, depends_on))
        return prepared

    def _commit(self, prepared: list[_PreparedStep]) -> dict[str, str]:
        for item in prepared:
            self._tasks[item.task_id] = Task(
                id=item.task_id,
                description=item.step.description,
                subject=item.step.subject or "",
                parent_id=item.parent_id,
                owner=item.step.owner,
                execution=item.step.execution,
                metadata={"plan_key": item.key},
                sequence=self._next_sequence(),
            )
        now = utcnow_iso()
        for item in prepared:
            task = self._tasks[item.task_id]
            for dep_id in item.depends_on:
                task.blocked_by.append(dep_id)
                dependency = self._tasks[dep_id]
                dependency.blocks.append(item.task_id)
                dependency.updated_at = now
        return {item.key: item.task_id for item in prepared}
