from conductor.collaborators.backend import BackendPlanGenerator, BackendReflector
from conductor.collaborators.base import PlanGenerator, Reflector, ToolExecutor
from conductor.collaborators.parsing import (
    extract_json_object,
    fallback_plan,
    parse_plan,
    parse_reflection,
)

__all__ = [
    "BackendPlanGenerator",
    "BackendReflector",
    "PlanGenerator",
    "Reflector",
    "ToolExecutor",
    "extract_json_object",
    "fallback_plan",
    "parse_plan",
    "parse_reflection",
]
