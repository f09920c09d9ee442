"""Session state and the single-active-session registry."""

from __future__ import annotations

import logging
import re
import time
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

SESSION_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

FORGE_STEPS = (
    "Checking prerequisites",
    "Creating bare repository",
    "Scaffolding project",
    "Generating specification",
    "Initial commit & push",
    "Launching workers",
)

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    INITIALIZING = "initializing"
    SCAFFOLDING = "scaffolding"
    GENERATING_SPEC = "generating-spec"
    LAUNCHING_AGENTS = "launching-agents"
    RUNNING = "running"
    STOPPED = "stopped"


_STATUS_ORDER = list(SessionStatus)


class SessionAlreadyActiveError(RuntimeError):
    """Raised when a session is requested while another one is still live."""

    def __init__(self, existing: "Session") -> None:
        super().__init__(f"Session already active: {existing.name} ({existing.id})")
        self.existing = existing


class SessionNotFoundError(LookupError):
    """Raised when no session matches the request."""


StatusListener = Callable[["Session", SessionStatus, SessionStatus], None]


class Session:
    """One fleet run. Status only ever moves forward; ``stopped`` is terminal."""

    def __init__(
        self,
        name: str,
        worker_count: int,
        *,
        description: str = "",
        log_limit: int = 500,
        listener: StatusListener | None = None,
    ) -> None:
        self.id = uuid4().hex[:8]
        self.name = name
        self.worker_count = worker_count
        self.description = description
        self.status = SessionStatus.INITIALIZING
        self.repo_path: Path | None = None
        self.work_dir: Path | None = None
        self.forge_step = 0
        self.worker_ids: list[str] = [str(index) for index in range(1, worker_count + 1)]
        self.error: str | None = None
        self.created_at = datetime.now(timezone.utc)
        self.logs: deque[dict[str, Any]] = deque(maxlen=log_limit)
        self.listener = listener

    @property
    def active(self) -> bool:
        return self.status is not SessionStatus.STOPPED

    def set_status(self, status: SessionStatus | str) -> None:
        new = SessionStatus(status)
        old = self.status
        if new is old:
            return
        if old is SessionStatus.STOPPED:
            raise ValueError(f"Session {self.id} is stopped and cannot move to '{new.value}'")
        if new is not SessionStatus.STOPPED and _STATUS_ORDER.index(new) < _STATUS_ORDER.index(old):
            raise ValueError(f"Session {self.id} cannot move from '{old.value}' back to '{new.value}'")

        self.status = new
        logger.info(
            "Session status %s -> %s",
            old.value,
            new.value,
            extra={"session_id": self.id, "session_name": self.name},
        )
        if self.listener is not None:
            self.listener(self, old, new)

    def set_forge_step(self, step: int) -> None:
        self.forge_step = step

    def add_log(self, message: str) -> dict[str, Any]:
        entry = {"time": int(time.time() * 1000), "message": message}
        self.logs.append(entry)
        return entry

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "workerCount": self.worker_count,
            "workerIds": list(self.worker_ids),
            "status": self.status.value,
            "repoPath": str(self.repo_path) if self.repo_path else None,
            "workDir": str(self.work_dir) if self.work_dir else None,
            "forgeStep": self.forge_step,
            "forgeSteps": list(FORGE_STEPS),
            "error": self.error,
            "createdAt": self.created_at.isoformat(),
            "logs": list(self.logs)[-50:],
        }


class SessionRegistry:
    """Holds every session and enforces that at most one is not stopped."""

    def __init__(self, *, max_workers: int = 5, log_limit: int = 500) -> None:
        self._sessions: dict[str, Session] = {}
        self._active_id: str | None = None
        self._max_workers = max_workers
        self._log_limit = log_limit

    def create(
        self,
        name: str,
        worker_count: int | str = 3,
        *,
        description: str = "",
        listener: StatusListener | None = None,
    ) -> Session:
        """Create the live session. Fails without side effects if one already exists."""

        if not isinstance(name, str) or not SESSION_NAME_PATTERN.match(name):
            raise ValueError("Session name must be alphanumeric (hyphens and underscores allowed)")

        existing = self.get_active()
        if existing is not None:
            raise SessionAlreadyActiveError(existing)

        try:
            requested = int(worker_count)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Worker count must be an integer, got {worker_count!r}") from exc
        count = min(max(requested, 1), self._max_workers)

        session = Session(
            name,
            count,
            description=description,
            log_limit=self._log_limit,
            listener=listener,
        )
        self._sessions[session.id] = session
        self._active_id = session.id
        logger.info(
            "Session created",
            extra={"session_id": session.id, "session_name": name, "worker_count": count},
        )
        return session

    def get_active(self) -> Session | None:
        if self._active_id is None:
            return None
        session = self._sessions.get(self._active_id)
        if session is None or not session.active:
            return None
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def stop(self, session_id: str | None = None) -> Session | None:
        session = self._sessions.get(session_id or self._active_id or "")
        if session is not None:
            session.set_status(SessionStatus.STOPPED)
        return session

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())


__all__ = [
    "FORGE_STEPS",
    "Session",
    "SessionAlreadyActiveError",
    "SessionNotFoundError",
    "SessionRegistry",
    "SessionStatus",
]
