"""Async runner for the git CLI."""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

from ..executor.utils import sanitize_environment
from .models import GitResult

_GIT_ENVIRONMENT = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_EDITOR": "true",
    "LC_ALL": "C",
}


class GitError(RuntimeError):
    """Base class for git runner errors."""


class GitNotFoundError(GitError):
    """Raised when the git executable cannot be located."""


class GitCommandError(GitError):
    """Raised when a git command that must succeed exits non-zero."""

    def __init__(self, result: GitResult) -> None:
        detail = result.stderr.strip() or result.stdout.strip() or "no output"
        super().__init__(
            f"git {' '.join(result.args[1:])} exited with {result.returncode}: {detail}"
        )
        self.result = result


class GitTimeoutError(GitError):
    """Raised when a git command exceeds its timeout; the child process is killed."""


class GitClient:
    """Execute git commands asynchronously with a bounded runtime."""

    def __init__(self, executable: Path | None = None, *, timeout: float | None = None) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._timeout = timeout

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise GitNotFoundError(f"git executable not found at {candidate}")

        binary = shutil.which("git")
        if binary is None:
            raise GitNotFoundError("git executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def run(
        self,
        *args: str,
        cwd: Path | None = None,
        check: bool = False,
        timeout: float | None = None,
    ) -> GitResult:
        prefix: list[str] = ["-C", str(cwd)] if cwd is not None else []
        cmd = [str(self._executable_path), *prefix, *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(_GIT_ENVIRONMENT),
        )
        limit = timeout if timeout is not None else self._timeout
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), limit)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise GitTimeoutError(f"git {' '.join(args)} timed out after {limit}s") from exc
        except asyncio.CancelledError:
            process.kill()
            raise

        result = GitResult(
            args=tuple(cmd),
            returncode=process.returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )
        if check and not result.ok:
            raise GitCommandError(result)
        return result


__all__ = [
    "GitClient",
    "GitCommandError",
    "GitError",
    "GitNotFoundError",
    "GitTimeoutError",
]
