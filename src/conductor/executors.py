from __future__ import annotations

import inspect
import json
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from conductor.agents import GeneralAgent, SubAgent
from conductor.collaborators.base import ToolExecutor
from conductor.models import (
    DirectLLM,
    Observation,
    ObservationSource,
    SubagentDelegation,
    Task,
    ToolCall,
)

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Task], Awaitable[Any] | Any]


def stringify_output(output: Any) -> str | None:
    if output is None:
        return None
    if isinstance(output, str):
        return output
    return json.dumps(output, ensure_ascii=False, default=str)


def source_for(task: Task) -> tuple[ObservationSource, str]:
    execution = task.execution
    if isinstance(execution, ToolCall):
        return ObservationSource.TOOL_EXECUTION, execution.tool_name
    if isinstance(execution, SubagentDelegation):
        return ObservationSource.SUBAGENT_RESULT, execution.role.value
    return ObservationSource.SUBAGENT_RESULT, "llm"


def failed_observation(task: Task, error: str, *, duration_ms: float = 0.0) -> Observation:
    source, name = source_for(task)
    return Observation(
        source=source,
        source_name=name,
        input={"task_id": task.id, "description": task.description},
        success=False,
        error=error,
        duration_ms=duration_ms,
        task_id=task.id,
    )


class ToolRegistry:
    """Tool handlers keyed by the capability name a ``ToolCall`` asks for."""

    def __init__(self) -> None:
        self._handlers: dict[str, ToolHandler] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def register(self, name: str, handler: ToolHandler) -> None:
        normalized = name.strip()
        if not normalized:
            raise ValueError("Tool name must not be empty.")
        if normalized in self._handlers:
            raise ValueError(f"Tool already registered: {normalized}")
        self._handlers[normalized] = handler

    def tool(self, name: str) -> Callable[[ToolHandler], ToolHandler]:
        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register(name, handler)
            return handler

        return decorator

    def get(self, name: str) -> ToolHandler | None:
        return self._handlers.get(name)

    def names(self) -> list[str]:
        return sorted(self._handlers)


class RegistryToolExecutor(ToolExecutor):
    """Dispatches a task by its execution variant and always returns an observation."""

    def __init__(
        self,
        registry: ToolRegistry,
        agents: Mapping[Any, SubAgent] | None = None,
        *,
        llm_agent: SubAgent | None = None,
    ) -> None:
        self.registry = registry
        self.agents = dict(agents or {})
        self.llm_agent = llm_agent

    async def execute(self, task: Task) -> Observation:
        started = time.perf_counter()
        execution = task.execution
        try:
            if isinstance(execution, ToolCall):
                return await self._run_tool(task, execution, started)
            if isinstance(execution, SubagentDelegation):
                agent = self.agents.get(execution.role)
                if agent is None:
                    return failed_observation(
                        task, f"No sub-agent available for role {execution.role.value}"
                    )
                return await self._run_agent(task, agent, execution.role.value, started)
            if isinstance(execution, DirectLLM):
                if self.llm_agent is None:
                    return failed_observation(task, "No language model configured for direct tasks")
                return await self._run_agent(task, self.llm_agent, "llm", started)
        except Exception as exc:
            logger.warning("Task %s raised during execution: %s", task.id, exc)
            return failed_observation(
                task, f"{type(exc).__name__}: {exc}", duration_ms=_elapsed_ms(started)
            )
        return failed_observation(task, f"Unsupported execution: {execution!r}")

    async def _run_tool(self, task: Task, execution: ToolCall, started: float) -> Observation:
        handler = self.registry.get(execution.tool_name)
        if handler is None:
            return failed_observation(task, f"Unknown tool: {execution.tool_name}")
        output = handler(task)
        if inspect.isawaitable(output):
            output = await output
        return Observation.tool_execution(
            execution.tool_name,
            input={"task_id": task.id, "description": task.description},
            output=output,
            duration_ms=_elapsed_ms(started),
            task_id=task.id,
        )

    async def _run_agent(self, task: Task, agent: SubAgent, role: str, started: float) -> Observation:
        response = await agent.run(task.description, {"task_id": task.id, "subject": task.subject})
        return Observation.subagent_result(
            role,
            request=task.description,
            output=response.content,
            duration_ms=_elapsed_ms(started),
            task_id=task.id,
        )


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


def build_tool_executor(
    registry: ToolRegistry,
    agents: Mapping[Any, SubAgent],
    backend=None,
    *,
    model: str | None = None,
) -> RegistryToolExecutor:
    llm_agent = GeneralAgent(backend, model=model) if backend is not None else None
    return RegistryToolExecutor(registry, agents, llm_agent=llm_agent)
