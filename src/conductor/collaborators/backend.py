from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from conductor.agents import PlannerAgent, ReflectorAgent
from conductor.backends.base import AgentBackend
from conductor.collaborators.base import PlanGenerator, Reflector
from conductor.collaborators.parsing import parse_plan, parse_reflection
from conductor.models import AgentRole, GraphSnapshot, Observation, PlanDraft, Reflection

MAX_OUTPUT_CHARS = 2000


def _observation_payload(observation: Observation) -> dict[str, Any]:
    output = observation.output
    if output is not None and not isinstance(output, str):
        output = json.dumps(output, ensure_ascii=False, default=str)
    if isinstance(output, str) and len(output) > MAX_OUTPUT_CHARS:
        output = output[:MAX_OUTPUT_CHARS] + "..."
    return {
        "source": observation.source.value,
        "name": observation.source_name,
        "task_id": observation.task_id,
        "success": observation.success,
        "output": output,
        "error": observation.error,
        "duration_ms": round(observation.duration_ms, 1),
    }


class BackendPlanGenerator(PlanGenerator):
    def __init__(
        self,
        backend: AgentBackend,
        *,
        model: str | None = None,
        available_tools: Sequence[str] = (),
    ) -> None:
        self.agent = PlannerAgent(backend, model=model)
        self.available_tools = list(available_tools)

    def build_prompt(
        self,
        request: str,
        observation_delta: Sequence[Observation],
        prior_reflections: Sequence[Reflection],
        guidance: Sequence[str],
    ) -> str:
        sections = [f"User request:\n{request}"]
        if guidance:
            sections.append("Operator guidance:\n" + "\n".join(f"- {item}" for item in guidance))
        if prior_reflections:
            latest = prior_reflections[-1]
            lines = [f"Progress: {latest.progress:.0%}", f"Analysis: {latest.analysis}"]
            if latest.next_action:
                lines.append(f"Suggested next action: {latest.next_action}")
            lines.extend(f"Issue: {issue}" for issue in latest.issues)
            sections.append("Previous reflection:\n" + "\n".join(lines))
        if observation_delta:
            sections.append(
                "Observations since the last plan:\n"
                + json.dumps(
                    [_observation_payload(item) for item in observation_delta],
                    ensure_ascii=False,
                    indent=2,
                )
            )
        sections.append(
            "Available tools: " + (", ".join(self.available_tools) or "none")
        )
        sections.append(
            "Available sub-agents: " + ", ".join(role.value for role in AgentRole)
        )
        return "\n\n".join(sections)

    async def generate(
        self,
        request: str,
        observation_delta: Sequence[Observation],
        prior_reflections: Sequence[Reflection],
        *,
        guidance: Sequence[str] = (),
    ) -> PlanDraft:
        prompt = self.build_prompt(request, observation_delta, prior_reflections, guidance)
        response = await self.agent.run(prompt)
        return parse_plan(response.content, request)


class BackendReflector(Reflector):
    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.agent = ReflectorAgent(backend, model=model)

    def build_prompt(
        self,
        observation_delta: Sequence[Observation],
        snapshot: GraphSnapshot,
        request: str,
    ) -> str:
        tasks = [
            {
                "id": task.id,
                "subject": task.subject,
                "status": task.status.value,
                "blocked_by": list(task.blocked_by),
                "result": task.result,
                "error": task.error,
            }
            for task in snapshot.tasks
        ]
        return "\n\n".join(
            [
                f"User request:\n{request}",
                "Observations since the last reflection:\n"
                + json.dumps(
                    [_observation_payload(item) for item in observation_delta],
                    ensure_ascii=False,
                    indent=2,
                ),
                "Task graph:\n" + json.dumps(tasks, ensure_ascii=False, indent=2),
            ]
        )

    async def reflect(
        self,
        observation_delta: Sequence[Observation],
        snapshot: GraphSnapshot,
        *,
        request: str = "",
    ) -> Reflection:
        response = await self.agent.run(self.build_prompt(observation_delta, snapshot, request))
        return parse_reflection(response.content)
