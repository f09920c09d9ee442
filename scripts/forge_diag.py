"""Forge MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from forge_mcp.config import ForgeSettings
from forge_mcp.ledger import count_completed_tasks, list_current_tasks
from forge_mcp.storage import ChromaStore, ChromaUnavailableError


def load_store(settings: ForgeSettings) -> ChromaStore:
    try:
        return ChromaStore(settings.chroma_persist_path)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def cmd_commits(args: argparse.Namespace) -> None:
    settings = ForgeSettings()
    store = load_store(settings)
    try:
        records = store.list_commits(session_id=args.session_id)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    if args.limit is not None and args.limit > 0:
        records = records[-args.limit :]
    payload = [
        {
            "session_id": record.session_id,
            "hash": record.hash,
            "author": record.author,
            "worker_id": record.worker_id,
            "message": record.message,
            "observed_at": record.observed_at.isoformat(),
        }
        for record in records
    ]
    print(json.dumps(payload, indent=2))


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = ForgeSettings()
    store = load_store(settings)
    try:
        records = store.list_session_history(session_id=args.session_id)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    if args.json:
        payload = [
            {
                "session_id": record.session_id,
                "name": record.name,
                "status": record.status,
                "previous_status": record.previous_status,
                "recorded_at": record.recorded_at.isoformat(),
            }
            for record in records
        ]
        print(json.dumps(payload, indent=2))
    else:
        for record in records:
            print(
                f"{record.session_id} {record.name}: "
                f"{record.previous_status or '-'} -> {record.status} ({record.recorded_at.isoformat()})"
            )


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = ForgeSettings()
    store = load_store(settings)
    try:
        commits = store.list_commits(session_id=args.session_id)
        transitions = store.list_session_history(session_id=args.session_id)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    marker = settings.completion_marker
    per_worker: dict[str, dict[str, int]] = {}
    for record in commits:
        worker = record.worker_id or "unattributed"
        counts = per_worker.setdefault(worker, {"commits": 0, "completed": 0})
        counts["commits"] += 1
        if marker in record.message:
            counts["completed"] += 1

    latest_status: dict[str, str] = {}
    for record in transitions:
        latest_status[record.session_id] = record.status

    metrics = {
        "commit_events": len(commits),
        "unique_commits": len({record.hash for record in commits}),
        "per_worker": per_worker,
        "completion_marker": marker,
        "sessions_total": len(latest_status),
        "session_status": latest_status,
    }
    print(json.dumps(metrics, indent=2))


def cmd_ledger(args: argparse.Namespace) -> None:
    root = Path(args.path)
    tasks = list_current_tasks(root)
    payload = {
        "path": str(root),
        "current_tasks": [task.to_dict() for task in tasks],
        "completed_task_count": count_completed_tasks(root),
    }
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Forge MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_commits = sub.add_parser("commits", help="List persisted new-commit events")
    p_commits.add_argument("--session-id")
    p_commits.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N commits",
    )
    p_commits.set_defaults(func=cmd_commits)

    p_sessions = sub.add_parser("sessions", help="List session status transitions")
    p_sessions.add_argument("--session-id")
    p_sessions.add_argument("--json", action="store_true", help="Output JSON")
    p_sessions.set_defaults(func=cmd_sessions)

    p_metrics = sub.add_parser("metrics", help="Show per-worker commit counts and session status")
    p_metrics.add_argument("--session-id")
    p_metrics.set_defaults(func=cmd_metrics)

    p_ledger = sub.add_parser("ledger", help="Read the task ledger of a working copy")
    p_ledger.add_argument("path", help="Working copy containing current_tasks/ and completed_tasks/")
    p_ledger.set_defaults(func=cmd_ledger)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
