from __future__ import annotations

import logging
from dataclasses import dataclass, field
from importlib import resources
from typing import Any

from conductor.backends.base import AgentBackend

logger = logging.getLogger(__name__)


def load_prompt(prompt_file: str | None, fallback: str) -> str:
    if not prompt_file:
        return fallback.strip()
    try:
        prompt_path = resources.files("conductor.prompts").joinpath(prompt_file)
        return prompt_path.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, ModuleNotFoundError):
        logger.debug("Prompt %s not packaged, using fallback", prompt_file)
        return fallback.strip()


@dataclass(slots=True)
class AgentResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class SubAgent:
    role: str = "general"
    prompt_file: str | None = None
    fallback_prompt: str = "You are a capable software engineering assistant."

    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = load_prompt(self.prompt_file, self.fallback_prompt)

    async def run(self, instruction: str, context: dict[str, Any] | None = None) -> AgentResponse:
        run_context = dict(context or {})
        if self.model:
            run_context["model"] = self.model
        content = await self.backend.complete(self.system_prompt, instruction, run_context)
        return AgentResponse(
            role=self.role,
            content=content,
            metadata={"instruction": instruction, "backend": self.backend.name},
        )
