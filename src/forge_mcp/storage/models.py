"""Data models for persistent fleet history."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class CommitEventRecord:
    session_id: str
    hash: str
    author: str
    message: str
    worker_id: str | None
    observed_at: datetime


@dataclass(slots=True)
class SessionStatusRecord:
    session_id: str
    name: str
    status: str
    previous_status: str | None
    recorded_at: datetime
    metadata: dict[str, Any]


__all__ = ["CommitEventRecord", "SessionStatusRecord"]
