from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from conftest import Origin, commit_file, push, requires_git
from forge_mcp.ledger import CURRENT_TASKS_DIR, ensure_ledger, remove_task, write_task
from forge_mcp.reconciler import (
    NEW_COMMIT_EVENT,
    STATE_EVENT,
    Reconciler,
    count_source_lines,
    parse_spec_modules,
)
from forge_mcp.repository import Commit, GitClient, GitCommandError, GitResult, WorkingCopy


class StubWorkingCopy:
    """In-memory stand-in for the observer clone; the ledger lives under ``path``."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.commits: list[Commit] = []
        self.fail_log = False
        self.syncs = 0

    def add_commit(self, hash_: str, author: str, message: str) -> Commit:
        commit = Commit(hash=hash_, author=author, message=message, age="1 second ago")
        self.commits.insert(0, commit)
        return commit

    async def fetch(self) -> GitResult:
        self.syncs += 1
        return GitResult(args=("git", "fetch"), returncode=0, stdout="", stderr="")

    async def reset_to_remote(self) -> GitResult:
        return GitResult(args=("git", "reset"), returncode=0, stdout="", stderr="")

    async def log_window(self, limit: int) -> list[Commit]:
        if self.fail_log:
            raise GitCommandError(GitResult(args=("git", "log"), returncode=128, stdout="", stderr="locked"))
        return self.commits[:limit]

    async def commit_count(self) -> int:
        return len(self.commits)


def make_reconciler(copy: StubWorkingCopy, **kwargs: Any) -> Reconciler:
    return Reconciler(copy, known_workers=kwargs.pop("known_workers", ("1", "2")), **kwargs)  # type: ignore[arg-type]


def test_working_and_idle_status(tmp_path: Path) -> None:
    ensure_ledger(tmp_path)
    write_task(tmp_path, 2, "implement scoring", millis=1700000000000)
    copy = StubWorkingCopy(tmp_path)

    snapshot = asyncio.run(make_reconciler(copy).tick())

    assert snapshot.agents["2"].status == "working"
    assert snapshot.agents["2"].current_task == "implement scoring"
    assert snapshot.agents["1"].status == "idle"
    assert snapshot.agents["1"].current_task is None
    assert [task.file_name for task in snapshot.current_tasks] == ["agent-2-1700000000000"]


def test_status_returns_to_idle_when_record_removed(tmp_path: Path) -> None:
    record = write_task(tmp_path, 1, "build board", millis=5)
    reconciler = make_reconciler(StubWorkingCopy(tmp_path))

    assert asyncio.run(reconciler.tick()).agents["1"].status == "working"
    remove_task(tmp_path, record.file_name)
    snapshot = asyncio.run(reconciler.tick())

    assert snapshot.agents["1"].status == "idle"
    assert snapshot.agents["1"].current_task is None


def test_newest_record_per_worker_wins(tmp_path: Path) -> None:
    write_task(tmp_path, 1, "old task", millis=100)
    write_task(tmp_path, 1, "new task", millis=200)

    snapshot = asyncio.run(make_reconciler(StubWorkingCopy(tmp_path)).tick())

    assert snapshot.agents["1"].current_task == "new task"


def test_counters_are_invariant_across_polls(tmp_path: Path) -> None:
    copy = StubWorkingCopy(tmp_path)
    copy.add_commit("a1", "agent-1", "add board")
    copy.add_commit("a2", "agent-1", "finish board [done]")
    reconciler = make_reconciler(copy)

    async def poll(times: int) -> None:
        for _ in range(times):
            await reconciler.tick()

    asyncio.run(poll(5))
    agent = reconciler.get_state().agents["1"]

    assert agent.commit_count == 2
    assert agent.task_count == 1
    assert reconciler.seen_commit_count == 2

    copy.add_commit("a3", "agent-1", "polish")
    asyncio.run(poll(3))
    agent = reconciler.get_state().agents["1"]

    assert agent.commit_count == 3
    assert agent.task_count == 1


def test_unattributed_commits_are_ignored(tmp_path: Path) -> None:
    copy = StubWorkingCopy(tmp_path)
    copy.add_commit("f1", "forge", "init: scaffold demo project")

    snapshot = asyncio.run(make_reconciler(copy, known_workers=()).tick())

    assert snapshot.agents == {}
    assert snapshot.total_commits == 1


def test_commit_author_registers_unknown_worker(tmp_path: Path) -> None:
    copy = StubWorkingCopy(tmp_path)
    copy.add_commit("c1", "agent-4", "sneaky [done]")

    snapshot = asyncio.run(make_reconciler(copy).tick())

    assert snapshot.agents["4"].commit_count == 1
    assert snapshot.agents["4"].status == "idle"


def test_placeholder_records_never_create_agents(tmp_path: Path) -> None:
    ensure_ledger(tmp_path)
    (tmp_path / CURRENT_TASKS_DIR / "scratch-notes").write_text("someone", encoding="utf-8")

    snapshot = asyncio.run(make_reconciler(StubWorkingCopy(tmp_path), known_workers=()).tick())

    assert snapshot.agents == {}
    assert snapshot.to_dict()["currentTasks"][0]["agentId"] == "unknown"


def test_new_commit_event_fires_once_per_head(tmp_path: Path) -> None:
    copy = StubWorkingCopy(tmp_path)
    copy.add_commit("h1", "forge", "init")
    reconciler = make_reconciler(copy)
    events: list[tuple[str, Any]] = []
    unsubscribe = reconciler.subscribe(lambda event, payload: events.append((event, payload)))

    async def scenario() -> None:
        await reconciler.tick()
        await reconciler.tick()
        copy.add_commit("h2", "agent-2", "add scoring")
        await reconciler.tick()

    asyncio.run(scenario())

    new_commits = [payload.hash for event, payload in events if event == NEW_COMMIT_EVENT]
    assert new_commits == ["h1", "h2"]
    assert [event for event, _ in events].count(STATE_EVENT) == 3

    unsubscribe()
    asyncio.run(reconciler.tick())
    assert len(events) == 5


def test_failing_subscriber_does_not_stop_others(tmp_path: Path) -> None:
    reconciler = make_reconciler(StubWorkingCopy(tmp_path))
    received: list[str] = []

    def broken(_event: str, _payload: Any) -> None:
        raise RuntimeError("boom")

    reconciler.subscribe(broken)
    reconciler.subscribe(lambda event, _payload: received.append(event))

    asyncio.run(reconciler.tick())

    assert received == [STATE_EVENT]


def test_log_failure_keeps_previous_commits(tmp_path: Path) -> None:
    copy = StubWorkingCopy(tmp_path)
    copy.add_commit("k1", "agent-1", "work")
    reconciler = make_reconciler(copy)

    first = asyncio.run(reconciler.tick())
    copy.fail_log = True
    second = asyncio.run(reconciler.tick())

    assert [commit.hash for commit in second.commits] == ["k1"]
    assert second.total_commits == first.total_commits == 1


def test_spec_modules_and_line_count(tmp_path: Path) -> None:
    (tmp_path / "SPEC.md").write_text(
        "# Game\n\n### 1. **Board** - grid\n## 2. **Scoring** - points\n#### 3. **Ignored**\n",
        encoding="utf-8",
    )
    source = tmp_path / "src"
    source.mkdir()
    (source / "game.js").write_text("a\nb\n", encoding="utf-8")
    (source / "index.html").write_text("<p></p>", encoding="utf-8")
    (source / "notes.md").write_text("x\ny\nz\n", encoding="utf-8")
    write_task(tmp_path, 2, "implement scoring", millis=1)

    snapshot = asyncio.run(make_reconciler(StubWorkingCopy(tmp_path)).tick())

    assert [module.to_dict() for module in snapshot.spec_modules] == [
        {"name": "Board", "status": "pending"},
        {"name": "Scoring", "status": "in-progress"},
    ]
    assert snapshot.total_lines == 4


def test_parse_spec_modules_requires_numbered_bold_heading() -> None:
    text = "### 1. **Input**\n### **Unnumbered**\n## 10. **Audio** handling\n"
    assert parse_spec_modules(text) == ["Input", "Audio"]


def test_count_source_lines_missing_directory(tmp_path: Path) -> None:
    assert count_source_lines(tmp_path / "src", (".js",)) == 0


def test_snapshot_serialization_keys(tmp_path: Path) -> None:
    snapshot = asyncio.run(make_reconciler(StubWorkingCopy(tmp_path)).tick())

    assert set(snapshot.to_dict()) == {
        "agents",
        "commits",
        "currentTasks",
        "completedTaskCount",
        "totalLines",
        "totalCommits",
        "specModules",
    }
    assert snapshot.to_dict()["agents"]["1"] == {
        "id": "1",
        "status": "idle",
        "currentTask": None,
        "commitCount": 0,
        "taskCount": 0,
    }


def test_snapshots_are_independent_copies(tmp_path: Path) -> None:
    copy = StubWorkingCopy(tmp_path)
    reconciler = make_reconciler(copy)
    first = asyncio.run(reconciler.tick())

    copy.add_commit("z1", "agent-1", "more")
    asyncio.run(reconciler.tick())

    assert first.agents["1"].commit_count == 0


def test_start_and_stop_background_polling(tmp_path: Path) -> None:
    copy = StubWorkingCopy(tmp_path)
    reconciler = make_reconciler(copy, poll_interval=0.01)

    async def scenario() -> bool:
        reconciler.start()
        await asyncio.sleep(0.1)
        running = reconciler.running
        await reconciler.stop()
        return running

    assert asyncio.run(scenario()) is True
    assert reconciler.running is False
    assert reconciler.ticks >= 2


@requires_git
def test_reconciles_pushed_worker_progress(origin: Origin) -> None:
    observer = origin.clone("observer", "forge")
    worker = origin.clone("agent-2", "agent-2")
    write_task(worker, 2, "implement scoring", millis=1700000000000)
    commit_file(worker, "src/score.js", "let score = 0;\n", "claim scoring")
    push(worker)

    reconciler = Reconciler(WorkingCopy(observer, git=GitClient()), known_workers=("1", "2"))
    snapshot = asyncio.run(reconciler.tick())

    assert snapshot.agents["2"].status == "working"
    assert snapshot.agents["2"].current_task == "implement scoring"
    assert snapshot.agents["2"].commit_count == 1
    assert snapshot.agents["1"].status == "idle"
    assert snapshot.total_commits == 2
    assert snapshot.total_lines == 2
    assert snapshot.spec_modules[0].to_dict() == {"name": "Scoring", "status": "in-progress"}
    assert snapshot.commits[0].message == "claim scoring"
