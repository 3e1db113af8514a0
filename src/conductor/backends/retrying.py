from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from conductor.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0

    @property
    def attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


class RetryingBackend(AgentBackend):
    """Adds a per-attempt timeout and exponential-backoff retries to another backend.

    A reply is only streamed once an attempt has finished, so callers never see
    output from a failed try.
    """

    def __init__(
        self,
        backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.backend = backend
        self.name = backend.name
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: str, **fields: Any) -> None:
        if self.event_hook:
            self.event_hook({"event": event, "backend": self.name, **fields})

    async def _attempt(
        self, system_prompt: str, user_prompt: str, context: dict[str, Any]
    ) -> list[str]:
        stream = self.backend.execute(system_prompt, user_prompt, context)
        timeout = self.retry_policy.timeout_seconds
        try:
            return await asyncio.wait_for(_drain(stream), timeout=timeout)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"{self.name} timed out after {timeout:.1f}s", backend=self.name
            ) from exc

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        failures: list[str] = []
        for attempt in range(self.retry_policy.attempts):
            if attempt:
                delay = self.retry_policy.delay_for(attempt)
                self._emit("backend_retry", attempt=attempt, delay_seconds=delay)
                await asyncio.sleep(delay)
            try:
                chunks = await self._attempt(system_prompt, user_prompt, context)
            except BackendExecutionError as exc:
                failures.append(f"#{attempt}: {exc}")
                logger.warning("%s attempt %d failed: %s", self.name, attempt, exc)
                self._emit(
                    "backend_attempt_failed",
                    attempt=attempt,
                    error=str(exc),
                    retriable=exc.retriable,
                )
                if exc.retriable:
                    continue
                break
            for chunk in chunks:
                yield chunk
            return

        raise BackendExecutionError(
            f"All backend attempts failed. {'; '.join(failures[-6:])}",
            backend=self.name,
            retriable=False,
        )


async def _drain(stream: AsyncIterator[str]) -> list[str]:
    return [chunk async for chunk in stream]
