"""Polling engine that rebuilds fleet state from repository content.

Each tick re-reads the observer's working copy and the task ledger and
publishes a complete snapshot. Nothing here writes to the repository or
the ledger. Commit-derived counters are keyed by commit hash across every
commit ever observed, so the number of ticks has no effect on them.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from .config import ForgeSettings
from .ledger import (
    PLACEHOLDER_WORKER_ID,
    TaskRecord,
    count_completed_tasks,
    list_current_tasks,
)
from .repository import Commit, GitError, WorkingCopy

STATE_EVENT = "state"
NEW_COMMIT_EVENT = "new_commit"

AGENT_AUTHOR_PATTERN = re.compile(r"agent-(\d+)")
SPEC_MODULE_PATTERN = re.compile(r"^###?\s+\d+\.\s+\*\*(.+?)\*\*", re.MULTILINE)

Subscriber = Callable[[str, Any], None]
T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentStatus:
    id: str
    status: str = "idle"
    current_task: str | None = None
    commit_count: int = 0
    task_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "currentTask": self.current_task,
            "commitCount": self.commit_count,
            "taskCount": self.task_count,
        }


@dataclass(slots=True)
class SpecModule:
    name: str
    status: str = "pending"

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "status": self.status}


@dataclass(slots=True)
class FleetSnapshot:
    agents: dict[str, AgentStatus] = field(default_factory=dict)
    commits: list[Commit] = field(default_factory=list)
    current_tasks: list[TaskRecord] = field(default_factory=list)
    completed_task_count: int = 0
    total_lines: int = 0
    total_commits: int = 0
    spec_modules: list[SpecModule] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agents": {agent_id: agent.to_dict() for agent_id, agent in self.agents.items()},
            "commits": [commit.to_dict() for commit in self.commits],
            "currentTasks": [task.to_dict() for task in self.current_tasks],
            "completedTaskCount": self.completed_task_count,
            "totalLines": self.total_lines,
            "totalCommits": self.total_commits,
            "specModules": [module.to_dict() for module in self.spec_modules],
        }


def count_source_lines(root: Path, extensions: Iterable[str]) -> int:
    """Count lines in every file under ``root`` whose suffix is in ``extensions``."""

    suffixes = tuple(extensions)
    total = 0
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            if not name.endswith(suffixes):
                continue
            try:
                content = (Path(dirpath) / name).read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue
            total += content.count("\n") + 1
    return total


def parse_spec_modules(text: str) -> list[str]:
    """Return module names from headings shaped like ``### 1. **Name** ...``."""

    return [match.group(1).strip() for match in SPEC_MODULE_PATTERN.finditer(text)]


@dataclass(slots=True)
class _WorktreeReading:
    current_tasks: list[TaskRecord]
    completed_task_count: int
    total_lines: int
    module_names: list[str]


class Reconciler:
    """Periodically derive fleet state from the observer's working copy."""

    def __init__(
        self,
        working_copy: WorkingCopy,
        *,
        poll_interval: float = 2.0,
        commit_window: int = 30,
        git_timeout: float = 5.0,
        completion_marker: str = "[done]",
        source_dir: str = "src",
        source_extensions: Iterable[str] = (".js", ".html", ".css"),
        spec_document: str = "SPEC.md",
        known_workers: Iterable[str] = (),
    ) -> None:
        self.working_copy = working_copy
        self._poll_interval = poll_interval
        self._commit_window = commit_window
        self._git_timeout = git_timeout
        self._completion_marker = completion_marker
        self._source_dir = source_dir
        self._source_extensions = tuple(source_extensions)
        self._spec_document = spec_document

        self._last_head: str | None = None
        self._seen_commits: set[str] = set()
        self._agents: dict[str, AgentStatus] = {
            str(worker_id): AgentStatus(id=str(worker_id)) for worker_id in known_workers
        }
        self._snapshot = FleetSnapshot(agents=self._copy_agents())
        self._subscribers: list[Subscriber] = []
        self._task: asyncio.Task[None] | None = None
        self.ticks = 0

    @classmethod
    def from_settings(
        cls,
        working_copy: WorkingCopy,
        settings: ForgeSettings,
        *,
        known_workers: Iterable[str] = (),
    ) -> "Reconciler":
        return cls(
            working_copy,
            poll_interval=settings.poll_interval,
            commit_window=settings.commit_window,
            git_timeout=settings.git_timeout,
            completion_marker=settings.completion_marker,
            source_dir=settings.source_dir,
            source_extensions=settings.source_extensions,
            spec_document=settings.spec_document,
            known_workers=known_workers,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def seen_commit_count(self) -> int:
        return len(self._seen_commits)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback(event, payload)``; returns an unsubscribe function."""

        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def get_state(self) -> FleetSnapshot:
        return self._snapshot

    def start(self) -> None:
        if self.running:
            return
        logger.info("Monitoring repository", extra={"path": str(self.working_copy.path)})
        self._task = asyncio.get_running_loop().create_task(self.run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Poll error")
            await asyncio.sleep(self._poll_interval)

    async def _observe(self, operation: Awaitable[T], default: T) -> T:
        try:
            return await asyncio.wait_for(operation, self._git_timeout)
        except (GitError, asyncio.TimeoutError, ValueError) as exc:
            logger.debug("Observation failed: %s", exc)
            return default

    async def _sync_observer(self) -> None:
        await self.working_copy.fetch()
        await self.working_copy.reset_to_remote()

    def _read_worktree(self) -> _WorktreeReading:
        root = self.working_copy.path
        try:
            spec_text = (root / self._spec_document).read_text(encoding="utf-8", errors="replace")
        except OSError:
            spec_text = ""
        return _WorktreeReading(
            current_tasks=list_current_tasks(root),
            completed_task_count=count_completed_tasks(root),
            total_lines=count_source_lines(root / self._source_dir, self._source_extensions),
            module_names=parse_spec_modules(spec_text),
        )

    async def tick(self) -> FleetSnapshot:
        """Run one poll-derive-emit cycle and return the published snapshot."""

        self.ticks += 1
        await self._observe(self._sync_observer(), None)

        commits = await self._observe(self.working_copy.log_window(self._commit_window), None)
        new_commit: Commit | None = None
        if commits is None:
            # keep the previous window until the log is readable again
            commits = self._snapshot.commits
            total_commits = self._snapshot.total_commits
        else:
            if commits and commits[0].hash != self._last_head:
                self._last_head = commits[0].hash
                new_commit = commits[0]
            total_commits = await self._observe(self.working_copy.commit_count(), 0)

        reading = await asyncio.to_thread(self._read_worktree)
        self._record_commits(commits)
        self._derive_status(reading.current_tasks)

        snapshot = FleetSnapshot(
            agents=self._copy_agents(),
            commits=list(commits),
            current_tasks=reading.current_tasks,
            completed_task_count=reading.completed_task_count,
            total_lines=reading.total_lines,
            total_commits=total_commits,
            spec_modules=self._module_status(reading.module_names, reading.current_tasks),
        )
        self._snapshot = snapshot

        self._publish(STATE_EVENT, snapshot)
        if new_commit is not None:
            self._publish(NEW_COMMIT_EVENT, new_commit)
        return snapshot

    def _agent(self, worker_id: str) -> AgentStatus:
        agent = self._agents.get(worker_id)
        if agent is None:
            agent = self._agents[worker_id] = AgentStatus(id=worker_id)
        return agent

    def _record_commits(self, commits: Iterable[Commit]) -> None:
        for commit in commits:
            if commit.hash in self._seen_commits:
                continue
            self._seen_commits.add(commit.hash)
            match = AGENT_AUTHOR_PATTERN.search(commit.author)
            if match is None:
                continue
            agent = self._agent(match.group(1))
            agent.commit_count += 1
            if self._completion_marker in commit.message:
                agent.task_count += 1

    def _derive_status(self, current_tasks: list[TaskRecord]) -> None:
        active: dict[str, TaskRecord] = {}
        for task in current_tasks:
            if task.worker_id == PLACEHOLDER_WORKER_ID:
                continue
            # records are sorted by name, so the newest per worker wins
            active[task.worker_id] = task

        for worker_id, task in active.items():
            agent = self._agent(worker_id)
            agent.status = "working"
            agent.current_task = task.description

        for worker_id, agent in self._agents.items():
            if worker_id not in active:
                agent.status = "idle"
                agent.current_task = None

    @staticmethod
    def _module_status(names: list[str], current_tasks: list[TaskRecord]) -> list[SpecModule]:
        descriptions = [task.description.lower() for task in current_tasks]
        modules: list[SpecModule] = []
        for name in names:
            needle = name.lower()
            in_progress = any(needle in description for description in descriptions)
            modules.append(SpecModule(name=name, status="in-progress" if in_progress else "pending"))
        return modules

    def _copy_agents(self) -> dict[str, AgentStatus]:
        return {worker_id: replace(agent) for worker_id, agent in self._agents.items()}

    def _publish(self, event: str, payload: Any) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event, payload)
            except Exception:
                logger.exception("Subscriber failed", extra={"event": event})


__all__ = [
    "AgentStatus",
    "FleetSnapshot",
    "NEW_COMMIT_EVENT",
    "Reconciler",
    "STATE_EVENT",
    "SpecModule",
    "count_source_lines",
    "parse_spec_modules",
]
