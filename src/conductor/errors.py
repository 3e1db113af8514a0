from __future__ import annotations


class ConductorError(RuntimeError):
    """Base class for orchestration errors."""


class CycleDetected(ConductorError):
    """Raised when a dependency edge would close a cycle in the task graph."""

    def __init__(self, task_id: str, depends_on_id: str) -> None:
        super().__init__(
            f"Dependency {task_id} -> {depends_on_id} would create a cycle."
        )
        self.task_id = task_id
        self.depends_on_id = depends_on_id


class InvalidStatusTransition(ConductorError):
    """Raised when a task status change is not allowed by the status lattice."""

    def __init__(self, task_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Task {task_id} cannot move from {current} to {requested}."
        )
        self.task_id = task_id
        self.current = current
        self.requested = requested


class InvalidTransition(ConductorError):
    """Raised when the workflow state machine is asked for an illegal phase change."""


class TaskNotFound(ConductorError, LookupError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class MaxIterationsExceeded(ConductorError):
    """Raised when another planning cycle would exceed the iteration ceiling."""


class ExternalCollaboratorError(ConductorError):
    """Wraps a failure raised by a plan generator, reflector or tool executor."""

    def __init__(self, collaborator: str, message: str) -> None:
        super().__init__(f"{collaborator} failed: {message}")
        self.collaborator = collaborator


class RunNotFound(ConductorError, LookupError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


class InterventionNotPending(ConductorError):
    """Raised when a response arrives for a run that is not awaiting user input."""
