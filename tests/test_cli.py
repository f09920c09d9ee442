from __future__ import annotations

import argparse
import importlib.util
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from forge_mcp.ledger import complete_task, ensure_ledger, write_task
from forge_mcp.storage import ChromaUnavailableError, CommitEventRecord, SessionStatusRecord


def load_diag():
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "forge_diag.py"
    spec = importlib.util.spec_from_file_location("forge_diag_test_module", module_path)
    assert spec and spec.loader
    diag = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(diag)
    return diag


STAMP = datetime(2025, 1, 1, tzinfo=timezone.utc)


class StubStore:
    def list_commits(self, session_id=None):
        return [
            CommitEventRecord("s1", "a", "agent-1", "add board", "1", STAMP),
            CommitEventRecord("s1", "b", "agent-1", "finish board [done]", "1", STAMP),
            CommitEventRecord("s1", "c", "forge", "init", None, STAMP),
        ]

    def list_session_history(self, session_id=None):
        return [
            SessionStatusRecord("s1", "demo", "running", "launching-agents", STAMP, {}),
            SessionStatusRecord("s1", "demo", "stopped", "running", STAMP, {}),
        ]


def test_metrics_reports_per_worker_counts(monkeypatch, capsys) -> None:
    diag = load_diag()
    monkeypatch.setattr(diag, "load_store", lambda _settings: StubStore())

    diag.cmd_metrics(argparse.Namespace(session_id=None))

    payload = json.loads(capsys.readouterr().out)
    assert payload["per_worker"] == {
        "1": {"commits": 2, "completed": 1},
        "unattributed": {"commits": 1, "completed": 0},
    }
    assert payload["unique_commits"] == 3
    assert payload["session_status"] == {"s1": "stopped"}


def test_commits_limit(monkeypatch, capsys) -> None:
    diag = load_diag()
    monkeypatch.setattr(diag, "load_store", lambda _settings: StubStore())

    diag.cmd_commits(argparse.Namespace(session_id="s1", limit=1))

    payload = json.loads(capsys.readouterr().out)
    assert [entry["hash"] for entry in payload] == ["c"]


def test_sessions_text_output(monkeypatch, capsys) -> None:
    diag = load_diag()
    monkeypatch.setattr(diag, "load_store", lambda _settings: StubStore())

    diag.cmd_sessions(argparse.Namespace(session_id=None, json=False))

    lines = capsys.readouterr().out.splitlines()
    assert lines[1].startswith("s1 demo: running -> stopped")


def test_ledger_command_reads_working_copy(tmp_path: Path, capsys) -> None:
    ensure_ledger(tmp_path)
    write_task(tmp_path, 2, "implement scoring", millis=1700000000000)
    done = write_task(tmp_path, 1, "board", millis=1)
    complete_task(tmp_path, done.file_name)

    load_diag().main(["ledger", str(tmp_path)])

    payload = json.loads(capsys.readouterr().out)
    assert payload["completed_task_count"] == 1
    assert payload["current_tasks"][0]["agentId"] == "2"


def test_unavailable_store_exits(monkeypatch, capsys) -> None:
    diag = load_diag()

    class BrokenStore:
        def list_commits(self, session_id=None):
            raise ChromaUnavailableError("chromadb package is not installed")

    monkeypatch.setattr(diag, "load_store", lambda _settings: BrokenStore())

    with pytest.raises(SystemExit):
        diag.cmd_commits(argparse.Namespace(session_id=None, limit=None))
    assert "Chroma unavailable" in capsys.readouterr().out
