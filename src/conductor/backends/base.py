from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class BackendExecutionError(RuntimeError):
    """A model call failed. ``retriable`` tells wrappers whether another attempt may help."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    pass


class BackendProcessError(BackendExecutionError):
    pass


class AgentBackend(ABC):
    """A language model reachable through a system prompt, a user prompt and a context dict."""

    name: str = "backend"

    @abstractmethod
    def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Stream the reply as text chunks."""

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any] | None = None,
    ) -> str:
        stream = self.execute(system_prompt, user_prompt, dict(context or {}))
        return "".join([chunk async for chunk in stream]).strip()
