from conductor.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from conductor.backends.claude import ClaudeCodeBackend
from conductor.backends.retrying import RetryingBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "RetryPolicy",
    "RetryingBackend",
]
