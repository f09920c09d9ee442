"""Async runner for the external code-generation executor CLI."""

from __future__ import annotations

import asyncio
import inspect
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

from .utils import sanitize_environment

DEFAULT_EXECUTABLE = "claude"


class ExecutorRunnerError(RuntimeError):
    """Base class for executor runner errors."""


class ExecutorNotFoundError(ExecutorRunnerError):
    """Raised when the executor executable cannot be located."""


class ExecutorTimeoutError(ExecutorRunnerError):
    """Raised when an executor run exceeds its timeout."""


@dataclass(slots=True)
class ExecutionResult:
    """Holds the outcome of an executor invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ExecutorRunner:
    """Execute the code-generation CLI asynchronously inside a working copy."""

    def __init__(self, executable: Path | None = None, *, name: str = DEFAULT_EXECUTABLE) -> None:
        self._executable_path = self._resolve_executable(executable, name)

    @staticmethod
    def _resolve_executable(explicit: Path | None, name: str) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise ExecutorNotFoundError(f"Executor not found at {candidate}")

        binary = shutil.which(name)
        if binary is None:
            raise ExecutorNotFoundError(f"Executor '{name}' not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def version(self) -> ExecutionResult:
        return await self._invoke("--version")

    async def run(
        self,
        prompt: str,
        *,
        cwd: Path,
        model: str | None = None,
        flags: Sequence[str] | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        args: list[str] = []
        if model and not (flags and "--model" in flags):
            args.extend(["--model", model])
        args.extend(flags or [])
        args.extend(["-p", prompt])
        return await self._invoke(*args, cwd=cwd, env=env, timeout=timeout)

    async def _invoke(
        self,
        *args: str,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(env),
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise ExecutorTimeoutError(f"Executor timed out after {timeout}s") from exc
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return ExecutionResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


class FakeExecutorRunner(ExecutorRunner):
    """Test double that simulates executor responses.

    ``on_invoke`` is called with the working directory before each response is
    returned and may be a coroutine function; tests use it to edit and commit.
    """

    def __init__(  # type: ignore[override]
        self,
        responses: Iterable[ExecutionResult] | None = None,
        *,
        on_invoke: Callable[[Path | None], Any] | None = None,
    ) -> None:
        self._responses = list(responses or [])
        self._invocations: list[tuple[str, ...]] = []
        self._on_invoke = on_invoke
        self._executable_path = Path("/tmp/fake-executor")

    async def _invoke(  # type: ignore[override]
        self,
        *args: str,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        self._invocations.append(tuple(args))
        if self._on_invoke is not None:
            outcome = self._on_invoke(cwd)
            if inspect.isawaitable(outcome):
                await outcome
        if self._responses:
            return self._responses.pop(0)
        return ExecutionResult(args=tuple(args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations
