from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence

from conductor.models import GraphSnapshot, Observation, PlanDraft, Reflection, Task


class PlanGenerator(ABC):
    @abstractmethod
    async def generate(
        self,
        request: str,
        observation_delta: Sequence[Observation],
        prior_reflections: Sequence[Reflection],
        *,
        guidance: Sequence[str] = (),
    ) -> PlanDraft:
        """Turn the request and what happened so far into the next batch of steps.

        ``guidance`` carries operator suggestions collected since the previous call.
        """


class Reflector(ABC):
    @abstractmethod
    async def reflect(
        self,
        observation_delta: Sequence[Observation],
        snapshot: GraphSnapshot,
        *,
        request: str = "",
    ) -> Reflection:
        """Judge progress from the observations recorded since the last reflection."""


class ToolExecutor(ABC):
    @abstractmethod
    async def execute(self, task: Task) -> Observation:
        """Run one task. Failures are returned as unsuccessful observations."""
