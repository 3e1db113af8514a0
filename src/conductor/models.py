from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

SUBJECT_MAX_LENGTH = 80


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def derive_subject(description: str) -> str:
    first_line = description.strip().splitlines()[0] if description.strip() else ""
    if len(first_line) <= SUBJECT_MAX_LENGTH:
        return first_line
    return first_line[: SUBJECT_MAX_LENGTH - 3].rstrip() + "..."


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    DELETED = "deleted"


STATUS_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.DELETED}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.DELETED}
    ),
    TaskStatus.COMPLETED: frozenset({TaskStatus.DELETED}),
    TaskStatus.FAILED: frozenset({TaskStatus.DELETED}),
    TaskStatus.DELETED: frozenset(),
}


class Phase(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    ACTING = "acting"
    OBSERVING = "observing"
    REFLECTING = "reflecting"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {Phase.COMPLETE, Phase.FAILED}


class ObservationSource(str, Enum):
    TOOL_EXECUTION = "tool_execution"
    SUBAGENT_RESULT = "subagent_result"


class AgentRole(str, Enum):
    EXPLORE = "explore"
    PLAN = "plan"
    CODE_REVIEWER = "code_reviewer"
    FRONTEND_DEVELOPER = "frontend_developer"
    GENERAL = "general"


@dataclass(frozen=True, slots=True)
class ToolCall:
    tool_name: str


@dataclass(frozen=True, slots=True)
class SubagentDelegation:
    role: AgentRole = AgentRole.GENERAL


@dataclass(frozen=True, slots=True)
class DirectLLM:
    pass


Execution = ToolCall | SubagentDelegation | DirectLLM


def execution_to_dict(execution: Execution) -> dict[str, str]:
    if isinstance(execution, ToolCall):
        return {"type": "tool_call", "tool_name": execution.tool_name}
    if isinstance(execution, SubagentDelegation):
        return {"type": "subagent", "role": execution.role.value}
    return {"type": "llm"}


def execution_from_dict(payload: dict[str, Any] | None) -> Execution:
    if not isinstance(payload, dict):
        return DirectLLM()
    kind = str(payload.get("type", "llm"))
    if kind == "tool_call":
        return ToolCall(tool_name=str(payload.get("tool_name") or "unknown"))
    if kind == "subagent":
        try:
            return SubagentDelegation(role=AgentRole(str(payload.get("role", "general"))))
        except ValueError:
            return SubagentDelegation()
    return DirectLLM()


@dataclass(slots=True)
class Task:
    id: str
    description: str
    subject: str = ""
    parent_id: str | None = None
    blocked_by: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    result: str | None = None
    error: str | None = None
    owner: str | None = None
    execution: Execution = field(default_factory=DirectLLM)
    metadata: dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None

    def __post_init__(self) -> None:
        if not self.subject:
            self.subject = derive_subject(self.description)

    @property
    def is_finished(self) -> bool:
        return self.status in {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.DELETED}

    def copy(self) -> Task:
        return replace(
            self,
            blocked_by=list(self.blocked_by),
            blocks=list(self.blocks),
            metadata=dict(self.metadata),
        )

    def summary(self) -> TaskSummary:
        return TaskSummary(
            id=self.id,
            subject=self.subject,
            status=self.status,
            owner=self.owner,
            blocked_by=tuple(self.blocked_by),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject": self.subject,
            "description": self.description,
            "status": self.status.value,
            "blocks": list(self.blocks),
            "blocked_by": list(self.blocked_by),
            "owner": self.owner,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "parent_id": self.parent_id,
            "result": self.result,
            "error": self.error,
            "execution": execution_to_dict(self.execution),
            "metadata": dict(self.metadata),
            "sequence": self.sequence,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_record(cls, payload: dict[str, Any]) -> Task:
        return cls(
            id=str(payload["id"]),
            description=str(payload.get("description", "")),
            subject=str(payload.get("subject") or ""),
            parent_id=payload.get("parent_id"),
            blocked_by=[str(item) for item in payload.get("blocked_by", [])],
            blocks=[str(item) for item in payload.get("blocks", [])],
            status=TaskStatus(str(payload.get("status", "pending"))),
            result=payload.get("result"),
            error=payload.get("error"),
            owner=payload.get("owner"),
            execution=execution_from_dict(payload.get("execution")),
            metadata=dict(payload.get("metadata") or {}),
            sequence=int(payload.get("sequence", 0)),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
        )


@dataclass(frozen=True, slots=True)
class TaskSummary:
    id: str
    subject: str
    status: TaskStatus
    owner: str | None
    blocked_by: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class GraphSnapshot:
    tasks: tuple[Task, ...]

    def by_status(self, status: TaskStatus) -> list[Task]:
        return [task for task in self.tasks if task.status == status]

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self.tasks:
            counts[task.status.value] += 1
        return counts


@dataclass(frozen=True, slots=True)
class Observation:
    source: ObservationSource
    source_name: str
    input: dict[str, Any] = field(default_factory=dict)
    output: Any = None
    success: bool = True
    error: str | None = None
    duration_ms: float = 0.0
    task_id: str | None = None
    id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: str = field(default_factory=utcnow_iso)

    @classmethod
    def tool_execution(
        cls,
        tool_name: str,
        *,
        input: dict[str, Any] | None = None,
        output: Any = None,
        success: bool = True,
        error: str | None = None,
        duration_ms: float = 0.0,
        task_id: str | None = None,
    ) -> Observation:
        return cls(
            source=ObservationSource.TOOL_EXECUTION,
            source_name=tool_name,
            input=dict(input or {}),
            output=output,
            success=success,
            error=error,
            duration_ms=duration_ms,
            task_id=task_id,
        )

    @classmethod
    def subagent_result(
        cls,
        role: str,
        *,
        request: str,
        output: Any = None,
        success: bool = True,
        error: str | None = None,
        duration_ms: float = 0.0,
        task_id: str | None = None,
    ) -> Observation:
        return cls(
            source=ObservationSource.SUBAGENT_RESULT,
            source_name=role,
            input={"request": request},
            output=output,
            success=success,
            error=error,
            duration_ms=duration_ms,
            task_id=task_id,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["source"] = self.source.value
        return payload


@dataclass(frozen=True, slots=True)
class ObservationSummary:
    total: int
    succeeded: int
    failed: int
    avg_duration_ms: float
    total_duration_ms: float = 0.0
    tool_executions: int = 0
    subagent_results: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class ObservationDigest:
    """What one Acting pass produced, as seen by the Observing phase."""

    total: int
    succeeded: int
    failed: int
    avg_duration_ms: float
    blockers: tuple[str, ...] = ()
    progress_indicators: tuple[str, ...] = ()

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 1.0
        return self.succeeded / self.total

    @property
    def has_blockers(self) -> bool:
        return bool(self.blockers)


@dataclass(frozen=True, slots=True)
class PlanStep:
    """One task proposed by a plan generator.

    ``key`` is local to the draft; ``depends_on`` may name other keys of the same
    draft or ids of tasks already in the graph.
    """

    key: str
    description: str
    depends_on: tuple[str, ...] = ()
    execution: Execution = field(default_factory=DirectLLM)
    subject: str | None = None
    owner: str | None = None
    parent: str | None = None


@dataclass(frozen=True, slots=True)
class PlanDraft:
    description: str
    steps: tuple[PlanStep, ...] = ()


@dataclass(slots=True)
class Plan:
    id: str
    description: str
    task_ids: list[str] = field(default_factory=list)
    estimated_steps: int = 0
    progress: float = 0.0
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class Reflection:
    goal_achieved: bool
    progress: float
    analysis: str
    next_action: str | None = None
    requires_user_intervention: bool = False
    issues: tuple[str, ...] = ()
    id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: str = field(default_factory=utcnow_iso)

    @classmethod
    def intervention_required(cls, issue: str, *, progress: float = 0.0) -> Reflection:
        return cls(
            goal_achieved=False,
            progress=progress,
            analysis=issue,
            requires_user_intervention=True,
            issues=(issue,),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["issues"] = list(self.issues)
        return payload


@dataclass(slots=True)
class WorkflowState:
    run_id: str
    request: str
    phase: Phase = Phase.IDLE
    iteration: int = 0
    max_iterations: int = 15
    started_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    awaiting_user_input: bool = False
    failure_reason: str | None = None
    completion_summary: str | None = None

    def copy(self) -> WorkflowState:
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["phase"] = self.phase.value
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkflowState:
        return cls(
            run_id=str(payload["run_id"]),
            request=str(payload.get("request", "")),
            phase=Phase(str(payload.get("phase", "idle"))),
            iteration=int(payload.get("iteration", 0)),
            max_iterations=int(payload.get("max_iterations", 15)),
            started_at=str(payload.get("started_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
            awaiting_user_input=bool(payload.get("awaiting_user_input", False)),
            failure_reason=payload.get("failure_reason"),
            completion_summary=payload.get("completion_summary"),
        )


class InterventionOption(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    SUGGEST = "suggest"
    MODIFY_PLAN = "modify_plan"


@dataclass(frozen=True, slots=True)
class Allow:
    pass


@dataclass(frozen=True, slots=True)
class Deny:
    reason: str = ""


@dataclass(frozen=True, slots=True)
class Suggest:
    guidance: str


@dataclass(frozen=True, slots=True)
class ModifyPlan:
    steps: tuple[PlanStep, ...]


InterventionResponse = Allow | Deny | Suggest | ModifyPlan


@dataclass(frozen=True, slots=True)
class InterventionRequest:
    run_id: str
    reflection: Reflection
    options: tuple[InterventionOption, ...] = tuple(InterventionOption)
    # Set when the reflection was synthesized because a collaborator failed.
    error: str | None = None
