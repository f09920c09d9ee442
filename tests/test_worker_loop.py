from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest

from conftest import Origin, commit_file, git, push, requires_git
from forge_mcp.executor import ExecutionResult, FakeExecutorRunner
from forge_mcp.profiles import DEFAULT_PROFILE
from forge_mcp.repository import GitClient, WorkingCopy
from forge_mcp.worker import WorkerLoop, WorkerState

pytestmark = requires_git


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def make_loop(path: Path, executor: FakeExecutorRunner, sleep: RecordingSleep, worker_id: str = "1") -> WorkerLoop:
    return WorkerLoop(
        worker_id,
        WorkingCopy(path, git=GitClient()),
        executor,
        DEFAULT_PROFILE,
        session="demo",
        conflict_backoff=3.0,
        cooldown=5.0,
        sleep=sleep,
    )


def test_three_workers_converge_after_conflict(origin: Origin) -> None:
    paths = {worker_id: origin.clone(f"agent-{worker_id}", f"agent-{worker_id}") for worker_id in "123"}
    # worker 2 holds an unpublished edit to the line worker 1 publishes
    commit_file(paths["2"], "shared.txt", "from two\n", "two edits shared")
    commit_file(paths["1"], "shared.txt", "from one\n", "one edits shared")
    push(paths["1"])
    commit_file(paths["3"], "src/three.js", "3\n", "three adds a file")

    sleeps = {worker_id: RecordingSleep() for worker_id in paths}
    executors = {worker_id: FakeExecutorRunner() for worker_id in paths}
    loops = {
        worker_id: make_loop(path, executors[worker_id], sleeps[worker_id], worker_id=worker_id)
        for worker_id, path in paths.items()
    }

    # worker 3 rebases cleanly and publishes on top of worker 1
    asyncio.run(loops["3"].run_iteration())
    assert loops["3"].published == 1

    trace = asyncio.run(loops["2"].run_iteration())

    assert trace == [WorkerState.SYNCING, WorkerState.CONFLICT, WorkerState.RESETTING]
    assert git(paths["2"], "rev-parse", "HEAD") == origin.head()
    assert (paths["2"] / "shared.txt").read_text(encoding="utf-8") == "from one\n"
    assert not (paths["2"] / ".git" / "rebase-merge").exists()
    assert loops["2"].conflicts == 1
    assert sleeps["2"].calls == [3.0]
    assert executors["2"].invocations == []

    trace = asyncio.run(loops["2"].run_iteration())

    assert trace == [
        WorkerState.SYNCING,
        WorkerState.EXECUTING,
        WorkerState.PUBLISHING,
        WorkerState.COOLDOWN,
    ]
    assert sleeps["2"].calls == [3.0, 5.0]

    asyncio.run(loops["1"].run_iteration())
    heads = {git(path, "rev-parse", "HEAD") for path in paths.values()}
    assert heads == {origin.head()}


def test_executor_commits_are_published(origin: Origin) -> None:
    worker = origin.clone("agent-1", "agent-1")

    def edit(cwd: Path | None) -> None:
        assert cwd == worker
        commit_file(worker, "src/game.js", "console.log('hi')\n", "add game [done]")

    sleep = RecordingSleep()
    loop = make_loop(worker, FakeExecutorRunner(on_invoke=edit), sleep)

    asyncio.run(loop.run_iteration())

    assert loop.published == 1
    assert origin.head() == git(worker, "rev-parse", "HEAD")
    assert git(origin.bare, "log", "-1", "--format=%an %s", "main") == "agent-1 add game [done]"


def test_executor_receives_prompt_and_worker_env(origin: Origin) -> None:
    worker = origin.clone("agent-2", "agent-2")
    executor = FakeExecutorRunner()
    loop = make_loop(worker, executor, RecordingSleep(), worker_id="2")

    asyncio.run(loop.run_iteration())

    (args,) = executor.invocations
    assert "--dangerously-skip-permissions" in args
    assert args[-2] == "-p"
    assert "CLAUDE.md" in args[-1]
    assert "agent-2" in args[-1]


def test_failed_execution_still_cools_down(origin: Origin) -> None:
    worker = origin.clone("agent-1", "agent-1")
    executor = FakeExecutorRunner(
        [ExecutionResult(args=("claude",), returncode=1, stdout="", stderr="rate limited")]
    )
    sleep = RecordingSleep()
    loop = make_loop(worker, executor, sleep)

    trace = asyncio.run(loop.run_iteration())

    assert trace[-1] is WorkerState.COOLDOWN
    assert loop.last_result is not None and loop.last_result.returncode == 1
    assert loop.published == 0
    assert sleep.calls == [5.0]


def test_executor_exception_is_not_fatal(origin: Origin) -> None:
    worker = origin.clone("agent-1", "agent-1")

    def explode(_cwd: Path | None) -> None:
        raise RuntimeError("executor crashed")

    loop = make_loop(worker, FakeExecutorRunner(on_invoke=explode), RecordingSleep())

    trace = asyncio.run(loop.run_iteration())

    assert trace[-1] is WorkerState.COOLDOWN
    assert loop.last_result is None


class _Stop(BaseException):
    pass


def test_run_forever_keeps_looping_on_sync_failure(tmp_path: Path) -> None:
    calls: list[float] = []

    async def sleep(seconds: float) -> None:
        calls.append(seconds)
        if len(calls) == 3:
            raise _Stop()

    loop = WorkerLoop(
        "1",
        WorkingCopy(tmp_path / "not-a-repo", git=GitClient()),
        FakeExecutorRunner(),
        DEFAULT_PROFILE,
        sleep=sleep,
    )

    with pytest.raises(_Stop):
        asyncio.run(loop.run_forever())

    assert loop.conflicts == 3
    assert loop.iterations == 3
    assert calls == [3.0, 3.0, 3.0]


def test_successful_execution_logs_stderr(origin: Origin, caplog: pytest.LogCaptureFixture) -> None:
    worker = origin.clone("agent-1", "agent-1")
    executor = FakeExecutorRunner(
        [ExecutionResult(args=("claude",), returncode=0, stdout="", stderr="warning: deprecated flag")]
    )
    loop = make_loop(worker, executor, RecordingSleep())
    caplog.set_level(logging.INFO, logger="forge_mcp.worker.loop")

    asyncio.run(loop.run_iteration())

    messages = [record.getMessage() for record in caplog.records]
    assert "Executor stderr:\nwarning: deprecated flag" in messages
    assert "Executor exited with code 0" in messages
