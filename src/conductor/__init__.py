from conductor.complexity import ComplexityEvaluator, ComplexityLevel
from conductor.errors import (
    ConductorError,
    CycleDetected,
    ExternalCollaboratorError,
    InterventionNotPending,
    InvalidStatusTransition,
    InvalidTransition,
    MaxIterationsExceeded,
    RunNotFound,
    TaskNotFound,
)
from conductor.graph import TaskGraph
from conductor.ledger import ObservationLedger
from conductor.orchestrator import Orchestrator, RunHandle, WorkflowRun
from conductor.state_machine import WorkflowStateMachine

__version__ = "0.1.0"

__all__ = [
    "ComplexityEvaluator",
    "ComplexityLevel",
    "ConductorError",
    "CycleDetected",
    "ExternalCollaboratorError",
    "InterventionNotPending",
    "InvalidStatusTransition",
    "InvalidTransition",
    "MaxIterationsExceeded",
    "ObservationLedger",
    "Orchestrator",
    "RunHandle",
    "RunNotFound",
    "TaskGraph",
    "TaskNotFound",
    "WorkflowRun",
    "WorkflowStateMachine",
    "__version__",
]
