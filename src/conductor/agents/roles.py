from __future__ import annotations

from conductor.agents.base import SubAgent
from conductor.models import AgentRole


class ExploreAgent(SubAgent):
    role = AgentRole.EXPLORE.value
    fallback_prompt = """
You are the Explore sub-agent.
Search and read the codebase to answer the question you are given.
Report file paths and the facts you found. Do not modify anything.
""".strip()


class PlanAgent(SubAgent):
    role = AgentRole.PLAN.value
    fallback_prompt = """
You are the Plan sub-agent.
Design an implementation approach for the task you are given.
List concrete steps, the files involved, and the risks. Do not write code.
""".strip()


class CodeReviewerAgent(SubAgent):
    role = AgentRole.CODE_REVIEWER.value
    fallback_prompt = """
You are the Code Reviewer sub-agent.
Review the referenced change for correctness, maintainability and security.
Classify each finding as BLOCKER, MAJOR, MINOR, or SUGGESTION.
""".strip()


class FrontendDeveloperAgent(SubAgent):
    role = AgentRole.FRONTEND_DEVELOPER.value
    fallback_prompt = """
You are the Frontend Developer sub-agent.
Implement user interface work following the project's existing components and styling.
""".strip()


class GeneralAgent(SubAgent):
    role = AgentRole.GENERAL.value
    fallback_prompt = """
You are a general-purpose software engineering sub-agent.
Complete the task you are given and report what you did.
""".strip()


class PlannerAgent(SubAgent):
    role = "planner"
    prompt_file = "planner.md"
    fallback_prompt = """
You are the planner of an autonomous task orchestrator.
Break the user's request into small tasks with explicit dependencies.
Answer with a single JSON object and nothing else.
""".strip()


class ReflectorAgent(SubAgent):
    role = "reflector"
    prompt_file = "reflector.md"
    fallback_prompt = """
You are the reflector of an autonomous task orchestrator.
Judge from the observations whether the user's goal has been achieved.
Answer with a single JSON object and nothing else.
""".strip()


ROLE_AGENTS: dict[AgentRole, type[SubAgent]] = {
    AgentRole.EXPLORE: ExploreAgent,
    AgentRole.PLAN: PlanAgent,
    AgentRole.CODE_REVIEWER: CodeReviewerAgent,
    AgentRole.FRONTEND_DEVELOPER: FrontendDeveloperAgent,
    AgentRole.GENERAL: GeneralAgent,
}


def build_role_agents(backend, *, model: str | None = None) -> dict[AgentRole, SubAgent]:
    return {role: agent_type(backend, model=model) for role, agent_type in ROLE_AGENTS.items()}
