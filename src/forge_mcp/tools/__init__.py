"""Tool registration for Forge MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..config import ForgeSettings
from ..controller import ForgeController
from ..session import SessionAlreadyActiveError
from ..storage import ChromaStore


@dataclass(slots=True)
class ToolHandles:
    create_session: Any
    active_session: Any
    stop_session: Any
    fleet_state: Any
    worker_logs: Any
    session_history: Any


def register_tools(
    server: FastMCP,
    *,
    controller: ForgeController,
    settings: ForgeSettings,
    chroma_store: ChromaStore | None,
) -> ToolHandles:
    """Register Forge's MCP tools on the server."""

    async def _create_session(
        name: str,
        worker_count: int = 3,
        description: str = "",
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create the single live session and start bootstrapping its fleet."""

        try:
            session = controller.start_session(name, worker_count, description=description)
        except SessionAlreadyActiveError as exc:
            _emit_log(
                context,
                "warning",
                "Session creation rejected",
                extra={"session_id": exc.existing.id, "requested": name},
            )
            return {"error": str(exc), "session": exc.existing.to_dict()}

        _emit_log(
            context,
            "info",
            "Session created",
            extra={"session_id": session.id, "worker_count": session.worker_count},
        )
        return {"session": session.to_dict()}

    def _active_session(context: Context | None = None) -> dict[str, Any]:
        session = controller.get_active()
        return {"session": session.to_dict() if session else None}

    async def _stop_session(
        session_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        session = await controller.stop_session(session_id)
        _emit_log(context, "info", "Session stopped", extra={"session_id": session.id})
        return {"ok": True, "session": session.to_dict()}

    def _fleet_state(log_tail: int = 50, context: Context | None = None) -> dict[str, Any]:
        session = controller.get_active()
        if session is None:
            # a stopped reconciler's last snapshot is stale
            return {"session": None, "state": None, "workers": {}, "logs": {}}

        fleet = controller.fleet
        return {
            "session": session.to_dict(),
            "state": controller.state(),
            "workers": fleet.status(),
            "logs": {worker_id: fleet.read_log(worker_id, log_tail) for worker_id in fleet.log_workers()},
        }

    def _worker_logs(
        worker_id: str,
        tail: int = 50,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return the tail of one worker's executor and loop output."""

        lines = controller.fleet.read_log(str(worker_id), tail)
        _emit_log(
            context,
            "debug",
            "Loaded worker log",
            extra={"worker_id": worker_id, "lines": len(lines)},
        )
        return {"workerId": str(worker_id), "lines": lines}

    def _session_history(
        session_id: str | None = None,
        limit: int = 50,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return persisted status transitions and commit notifications."""

        if chroma_store is None:
            raise RuntimeError("Chroma store is unavailable; enable persistence before using this tool")

        transitions = chroma_store.list_session_history(session_id)
        commits = chroma_store.list_commits(session_id)
        _emit_log(
            context,
            "debug",
            "Loaded session history",
            extra={"session_id": session_id, "transitions": len(transitions), "commits": len(commits)},
        )
        return {
            "session_id": session_id,
            "transitions": [
                {
                    "session_id": record.session_id,
                    "name": record.name,
                    "status": record.status,
                    "previous_status": record.previous_status,
                    "recorded_at": record.recorded_at.isoformat(),
                }
                for record in transitions[-limit:]
            ],
            "commits": [
                {
                    "hash": record.hash,
                    "author": record.author,
                    "message": record.message,
                    "worker_id": record.worker_id,
                    "observed_at": record.observed_at.isoformat(),
                }
                for record in commits[-limit:]
            ],
        }

    tool_create = server.tool(
        name="create_session",
        description=(
            "Create a fleet session: scaffold the shared repository, launch the requested "
            f"number of workers (1-{settings.max_workers}) and start reconciliation. "
            "Fails while another session is live."
        ),
    )(_create_session)

    tool_active = server.tool(
        name="active_session",
        description="Return the live session, or null when none is running.",
    )(_active_session)

    tool_stop = server.tool(
        name="stop_session",
        description="Force-stop the fleet and reconciler of the live (or given) session.",
    )(_stop_session)

    tool_state = server.tool(
        name="fleet_state",
        description=(
            "Latest reconciled fleet snapshot: per-worker status, recent commits, "
            "in-progress tasks, completed task count, line count, spec modules and "
            "the tail of each worker log. Empty while no session is live."
        ),
    )(_fleet_state)

    tool_logs = server.tool(
        name="worker_logs",
        description="Tail a worker's output log (executor output and loop events), 50 lines by default.",
    )(_worker_logs)

    tool_history = server.tool(
        name="session_history",
        description="List persisted session status transitions and new-commit events.",
    )(_session_history)

    return ToolHandles(
        create_session=tool_create,
        active_session=tool_active,
        stop_session=tool_stop,
        fleet_state=tool_state,
        worker_logs=tool_logs,
        session_history=tool_history,
    )


__all__ = ["register_tools", "ToolHandles"]

logger = logging.getLogger(__name__)


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
