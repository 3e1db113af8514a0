import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from conductor.backends import RetryingBackend, RetryPolicy
from conductor.backends.base import AgentBackend, BackendExecutionError, BackendProcessError
from conductor.backends.claude import ClaudeCodeBackend


class FlakyBackend(AgentBackend):
    name = "flaky"

    def __init__(self, failures: int, *, retriable: bool = True) -> None:
        self.failures = failures
        self.retriable = retriable
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, context
        self.calls += 1
        yield "partial "
        if self.calls <= self.failures:
            raise BackendExecutionError("boom", backend=self.name, retriable=self.retriable)
        yield f"answer to {user_prompt}"


class SlowBackend(AgentBackend):
    name = "slow"

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        await asyncio.sleep(1)
        yield "too late"


def _policy(**overrides: Any) -> RetryPolicy:
    values = {"max_retries": 1, "backoff_seconds": 0.0, "timeout_seconds": 5.0}
    values.update(overrides)
    return RetryPolicy(**values)


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("system", "plan the work", model="sonnet")

    assert command[0:3] == ["claude", "-p", "plan the work"]
    assert "stream-json" in command
    assert command[command.index("--append-system-prompt") + 1] == "system"
    assert command[command.index("--model") + 1] == "sonnet"
    assert "--model" not in backend.build_command("", "x")


def test_retrying_backend_recovers_and_discards_partial_output() -> None:
    events: list[dict[str, Any]] = []
    inner = FlakyBackend(failures=1)
    backend = RetryingBackend(inner, _policy(), event_hook=events.append)

    output = asyncio.run(backend.complete("system", "hello"))

    assert output == "partial answer to hello"
    assert inner.calls == 2
    names = [event["event"] for event in events]
    assert names == ["backend_attempt_failed", "backend_retry"]


def test_retrying_backend_gives_up_after_max_retries() -> None:
    inner = FlakyBackend(failures=5)
    backend = RetryingBackend(inner, _policy(max_retries=2))

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(backend.complete("system", "hello"))

    assert inner.calls == 3
    assert "All backend attempts failed" in str(excinfo.value)
    assert excinfo.value.retriable is False


def test_retrying_backend_stops_on_non_retriable_error() -> None:
    inner = FlakyBackend(failures=5, retriable=False)
    backend = RetryingBackend(inner, _policy(max_retries=3))

    with pytest.raises(BackendExecutionError):
        asyncio.run(backend.complete("system", "hello"))

    assert inner.calls == 1


def test_retrying_backend_times_out() -> None:
    events: list[dict[str, Any]] = []
    backend = RetryingBackend(
        SlowBackend(), _policy(max_retries=0, timeout_seconds=0.01), event_hook=events.append
    )

    with pytest.raises(BackendExecutionError):
        asyncio.run(backend.complete("system", "hello"))

    assert "timed out" in events[0]["error"]


def test_retry_policy_backoff_doubles() -> None:
    policy = RetryPolicy(backoff_seconds=0.5)

    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [0.5, 1.0, 2.0]


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, payload: bytes = b"") -> None:
        self.payload = payload

    async def read(self) -> bytes:
        return self.payload


class FakeProcess:
    def __init__(self, lines: list[bytes], return_code: int = 0, stderr: bytes = b"") -> None:
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr(stderr)
        self.return_code = return_code

    async def wait(self) -> int:
        return self.return_code


def test_claude_backend_streams_message_text(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = args
        return FakeProcess(
            [
                b'{"type":"assistant","message":{"content":[{"type":"text","text":"hello "}]}}\n',
                b"not json at all\n",
                b'{"type":"assistant","message":{"content":[{"type":"text","text":"world"}]}}\n',
                b'{"type":"result","result":"hello world"}\n',
            ]
        )

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    backend = ClaudeCodeBackend()

    output = asyncio.run(backend.complete("system", "greet", {"model": "haiku", "task_id": "t1"}))

    assert output == "hello not json at allworld"
    args = list(captured["args"])
    assert args[args.index("--model") + 1] == "haiku"
    assert "Context JSON:" in args[2]
    assert '"task_id": "t1"' in args[2]


def test_claude_backend_raises_on_exit_code(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        return FakeProcess([], return_code=2, stderr=b"bad flag")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(ClaudeCodeBackend().complete("system", "x"))

    assert excinfo.value.exit_code == 2
    assert "bad flag" in str(excinfo.value)


def test_claude_backend_missing_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(BackendProcessError) as excinfo:
        asyncio.run(ClaudeCodeBackend(binary="no-such-claude").complete("system", "x"))

    assert excinfo.value.retriable is False
