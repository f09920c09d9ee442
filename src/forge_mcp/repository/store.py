"""Shared bare store and the working copies cloned from it."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from .git import GitClient
from .models import Commit, GitResult

_FIELD_SEPARATOR = "\x1f"
_LOG_FORMAT = "%H%x1f%an%x1f%s%x1f%cr"

logger = logging.getLogger(__name__)


def parse_log(output: str) -> list[Commit]:
    """Parse ``git log`` output produced with the unit-separated log format."""

    commits: list[Commit] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        parts = line.split(_FIELD_SEPARATOR)
        if len(parts) != 4:
            continue
        hash_, author, message, age = parts
        commits.append(Commit(hash=hash_.strip(), author=author, message=message, age=age))
    return commits


class WorkingCopy:
    """A checked-out clone tracking one branch of the shared store."""

    def __init__(
        self,
        path: Path,
        *,
        git: GitClient,
        branch: str = "main",
        remote: str = "origin",
    ) -> None:
        self.path = Path(path)
        self.branch = branch
        self.remote = remote
        self._git = git

    @property
    def remote_ref(self) -> str:
        return f"{self.remote}/{self.branch}"

    async def git(self, *args: str, check: bool = False) -> GitResult:
        return await self._git.run(*args, cwd=self.path, check=check)

    async def fetch(self) -> GitResult:
        return await self.git("fetch", self.remote, check=True)

    async def rebase_onto_remote(self) -> GitResult:
        """Replay local commits on the remote tip. Returns the result without raising."""

        return await self.git("rebase", self.remote_ref)

    async def abort_rebase(self) -> GitResult:
        # fails harmlessly when no rebase is in progress
        return await self.git("rebase", "--abort")

    async def reset_to_remote(self) -> GitResult:
        """Discard every local commit and tracked change in favour of the remote tip."""

        return await self.git("reset", "--hard", self.remote_ref, check=True)

    async def push(self) -> GitResult:
        return await self.git("push", self.remote, f"HEAD:{self.branch}")

    async def head(self) -> str:
        result = await self.git("rev-parse", "HEAD", check=True)
        return result.stdout.strip()

    async def remote_head(self) -> str:
        result = await self.git("rev-parse", self.remote_ref, check=True)
        return result.stdout.strip()

    async def ahead_count(self) -> int:
        result = await self.git("rev-list", "--count", f"{self.remote_ref}..HEAD", check=True)
        return int(result.stdout.strip() or "0")

    async def log_window(self, limit: int) -> list[Commit]:
        result = await self.git("log", f"--format={_LOG_FORMAT}", f"-n{limit}", check=True)
        return parse_log(result.stdout)

    async def commit_count(self) -> int:
        result = await self.git("rev-list", "--count", "HEAD", check=True)
        return int(result.stdout.strip() or "0")

    async def commit_all(self, message: str) -> GitResult:
        await self.git("add", "-A", check=True)
        return await self.git("commit", "-m", message, check=True)

    async def configure_author(self, name: str, email: str) -> None:
        await self.git("config", "user.name", name, check=True)
        await self.git("config", "user.email", email, check=True)


class SharedRepository:
    """The durable bare store every worker pushes to and pulls from."""

    def __init__(self, bare_path: Path, *, git: GitClient, branch: str = "main") -> None:
        self.bare_path = Path(bare_path)
        self.branch = branch
        self._git = git

    async def create_bare(self) -> None:
        """Create an empty store, replacing any store already at the path."""

        if self.bare_path.exists():
            logger.info("Removing existing store", extra={"path": str(self.bare_path)})
            shutil.rmtree(self.bare_path)
        self.bare_path.parent.mkdir(parents=True, exist_ok=True)
        await self._git.run("init", "--bare", str(self.bare_path), check=True)
        await self._git.run(
            "symbolic-ref", "HEAD", f"refs/heads/{self.branch}", cwd=self.bare_path, check=True
        )
        logger.info("Bare store created", extra={"path": str(self.bare_path)})

    async def clone(self, dest: Path, *, author: str | None = None) -> WorkingCopy:
        """Clone a working copy; ``author`` sets the commit identity used inside it."""

        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        await self._git.run("clone", str(self.bare_path), str(dest), check=True)
        copy = WorkingCopy(dest, git=self._git, branch=self.branch)
        if author:
            await copy.configure_author(author, f"{author}@forge")
        return copy

    def open(self, path: Path) -> WorkingCopy:
        return WorkingCopy(path, git=self._git, branch=self.branch)

    async def seed(self, copy: WorkingCopy, message: str) -> str:
        """Publish the seed copy's content as the first commit of the store."""

        await copy.commit_all(message)
        await copy.git("branch", "-M", self.branch, check=True)
        await copy.git("push", "-u", copy.remote, self.branch, check=True)
        head = await copy.head()
        logger.info("Initial commit pushed", extra={"head": head, "path": str(self.bare_path)})
        return head


__all__ = ["SharedRepository", "WorkingCopy", "parse_log"]
