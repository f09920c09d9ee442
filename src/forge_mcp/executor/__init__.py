"""External code-generation executor orchestration utilities."""

from .runner import (
    ExecutionResult,
    ExecutorNotFoundError,
    ExecutorRunner,
    ExecutorRunnerError,
    ExecutorTimeoutError,
    FakeExecutorRunner,
)

__all__ = [
    "ExecutionResult",
    "ExecutorNotFoundError",
    "ExecutorRunner",
    "ExecutorRunnerError",
    "ExecutorTimeoutError",
    "FakeExecutorRunner",
]
