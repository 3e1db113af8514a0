from conductor.agents.base import AgentResponse, SubAgent, load_prompt
from conductor.agents.roles import (
    ROLE_AGENTS,
    CodeReviewerAgent,
    ExploreAgent,
    FrontendDeveloperAgent,
    GeneralAgent,
    PlanAgent,
    PlannerAgent,
    ReflectorAgent,
    build_role_agents,
)

__all__ = [
    "ROLE_AGENTS",
    "AgentResponse",
    "CodeReviewerAgent",
    "ExploreAgent",
    "FrontendDeveloperAgent",
    "GeneralAgent",
    "PlanAgent",
    "PlannerAgent",
    "ReflectorAgent",
    "SubAgent",
    "build_role_agents",
    "load_prompt",
]
