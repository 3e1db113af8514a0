from __future__ import annotations

import json
import logging
import re
from typing import Any

from conductor.models import (
    AgentRole,
    DirectLLM,
    Execution,
    PlanDraft,
    PlanStep,
    Reflection,
    SubagentDelegation,
    ToolCall,
)

logger = logging.getLogger(__name__)

JSON_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
DEFAULT_PROGRESS = 0.5


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Find the JSON object in a model reply.

    Tries the whole reply, then a fenced ```json block, then the outermost braces.
    """
    stripped = text.strip()
    candidates = [stripped]
    fence = JSON_FENCE_PATTERN.search(stripped)
    if fence:
        candidates.append(fence.group(1))
    start, end = stripped.find("{"), stripped.rfind("}")
    if start != -1 and end > start:
        candidates.append(stripped[start : end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1"}
    return bool(value)


def _as_progress(value: Any) -> float:
    try:
        progress = float(value)
    except (TypeError, ValueError):
        return DEFAULT_PROGRESS
    if progress != progress:
        return DEFAULT_PROGRESS
    return min(1.0, max(0.0, progress))


def _execution_from_item(item: dict[str, Any]) -> Execution:
    kind = str(item.get("execution_type") or "llm").strip().lower()
    if kind == "tool_call" and item.get("tool_name"):
        return ToolCall(tool_name=str(item["tool_name"]))
    if kind == "subagent":
        try:
            return SubagentDelegation(role=AgentRole(str(item.get("agent_type") or "general")))
        except ValueError:
            return SubagentDelegation(role=AgentRole.GENERAL)
    return DirectLLM()


def fallback_plan(request: str) -> PlanDraft:
    return PlanDraft(
        description=f"Fallback plan for: {request}",
        steps=(PlanStep(key="task_1", description=f"Analyze and complete the request: {request}"),),
    )


def parse_plan(text: str, request: str) -> PlanDraft:
    payload = extract_json_object(text)
    if payload is None or not isinstance(payload.get("tasks"), list):
        logger.warning("Planner reply was not a JSON plan, using fallback plan")
        return fallback_plan(request)

    steps: list[PlanStep] = []
    seen: set[str] = set()
    for index, item in enumerate(payload["tasks"], start=1):
        if not isinstance(item, dict):
            continue
        description = str(item.get("description") or "").strip()
        if not description:
            continue
        key = str(item.get("id") or f"task_{index}")
        if key in seen:
            key = f"task_{index}"
            suffix = 1
            while key in seen:
                suffix += 1
                key = f"task_{index}_{suffix}"
        seen.add(key)
        dependencies = item.get("dependencies") or []
        if not isinstance(dependencies, list):
            dependencies = [dependencies]
        steps.append(
            PlanStep(
                key=key,
                description=description,
                depends_on=tuple(str(dep) for dep in dependencies if dep),
                execution=_execution_from_item(item),
                subject=str(item["subject"]) if item.get("subject") else None,
                owner=str(item["owner"]) if item.get("owner") else None,
            )
        )
    return PlanDraft(
        description=str(payload.get("description") or f"Plan for: {request}"),
        steps=tuple(steps),
    )


def parse_reflection(text: str) -> Reflection:
    payload = extract_json_object(text)
    if payload is None:
        logger.warning("Reflector reply was not JSON, continuing with a default reflection")
        return Reflection(
            goal_achieved=False,
            progress=DEFAULT_PROGRESS,
            analysis=text.strip() or "No reflection returned.",
            next_action="continue",
        )

    issues = payload.get("issues") or []
    if not isinstance(issues, list):
        issues = [issues]
    next_action = payload.get("next_action")
    return Reflection(
        goal_achieved=_as_bool(payload.get("goal_achieved", False)),
        progress=_as_progress(payload.get("progress", DEFAULT_PROGRESS)),
        analysis=str(payload.get("content") or payload.get("analysis") or ""),
        next_action=str(next_action) if next_action else None,
        requires_user_intervention=_as_bool(payload.get("requires_user_intervention", False)),
        issues=tuple(str(issue) for issue in issues if issue),
    )
