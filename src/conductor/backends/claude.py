from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from pathlib import Path
from typing import Any

from conductor.backends.base import AgentBackend, BackendExecutionError, BackendProcessError

logger = logging.getLogger(__name__)


def _unbalanced(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


def _message_text(event: dict[str, Any]) -> str:
    """Pull the assistant text out of one ``stream-json`` event."""
    if event.get("type") == "result":
        # The final event repeats the assistant text.
        return ""
    body = event.get("message") if isinstance(event.get("message"), dict) else event
    content = body.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block["text"]
            for block in content
            if isinstance(block, dict) and isinstance(block.get("text"), str)
        )
    delta = body.get("delta")
    return delta if isinstance(delta, str) else ""


async def _decode_stream(stream: AsyncIterable[bytes]) -> AsyncIterator[dict[str, Any] | str]:
    """Yield parsed events, joining JSON split over several lines; plain lines pass through."""
    pending = ""
    async for raw_line in stream:
        line = raw_line.decode("utf-8", errors="replace").strip()
        if not line:
            continue
        candidate = pending + line
        try:
            event = json.loads(candidate)
        except json.JSONDecodeError:
            pending = candidate if _unbalanced(candidate) else ""
            if not pending:
                yield line
            continue
        pending = ""
        if isinstance(event, dict):
            yield event
    if pending:
        yield pending


class ClaudeCodeBackend(AgentBackend):
    """Runs ``claude -p`` as a subprocess and streams the text of its JSON events."""

    name = "claude"

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(
        self, system_prompt: str, user_prompt: str, model: str | None = None
    ) -> list[str]:
        command = [self.binary, "-p", user_prompt, "--output-format", "stream-json", "--verbose"]
        if system_prompt:
            command += ["--append-system-prompt", system_prompt]
        if model:
            command += ["--model", model]
        return command

    async def _spawn(self, command: list[str]) -> asyncio.subprocess.Process:
        cwd = str(self.working_directory) if self.working_directory else None
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.binary} not found on PATH", backend=self.name, retriable=False
            ) from exc

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        extra = dict(context)
        model = extra.pop("model", None)
        if extra:
            rendered = json.dumps(extra, ensure_ascii=False, indent=2, default=str)
            user_prompt = f"{user_prompt}\n\nContext JSON:\n{rendered}"

        logger.debug("Starting %s (model=%s)", self.binary, model or "default")
        process = await self._spawn(self.build_command(system_prompt, user_prompt, model))
        if process.stdout is None:
            raise BackendProcessError("no stdout pipe", backend=self.name, retriable=False)

        async for item in _decode_stream(process.stdout):
            text = item if isinstance(item, str) else _message_text(item)
            if text:
                yield text

        exit_code = await process.wait()
        if exit_code == 0:
            return
        stderr = b"" if process.stderr is None else await process.stderr.read()
        raise BackendExecutionError(
            f"{self.binary} exited with {exit_code}: "
            f"{stderr.decode('utf-8', errors='replace').strip()}",
            backend=self.name,
            exit_code=exit_code,
            retriable=True,
        )
