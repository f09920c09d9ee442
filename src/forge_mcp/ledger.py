"""Filesystem task ledger shared by workers and the observer.

Workers declare in-progress work by creating a record under ``current_tasks/``
and signal completion by moving it to ``completed_tasks/``. No locks are
taken: every write lands under a hidden temporary name first and is then
renamed into place, so readers see either the whole record or nothing.
Readers must still tolerate records appearing or vanishing between a
directory listing and the subsequent read.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

CURRENT_TASKS_DIR = "current_tasks"
COMPLETED_TASKS_DIR = "completed_tasks"
PLACEHOLDER_WORKER_ID = "unknown"

_TASK_NAME_PATTERN = re.compile(r"agent-(\d+)-(\d+)")

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskRecord:
    """An in-progress task declared by a worker."""

    file_name: str
    worker_id: str
    timestamp: int
    description: str

    def to_dict(self) -> dict[str, object]:
        return {
            "file": self.file_name,
            "agentId": self.worker_id,
            "timestamp": self.timestamp,
            "description": self.description,
        }


def parse_task_filename(file_name: str) -> tuple[str, int]:
    """Return ``(worker_id, epoch_millis)`` encoded in a ledger file name.

    Names that do not follow ``agent-<id>-<millis>`` degrade to the
    placeholder id and a zero timestamp.
    """

    match = _TASK_NAME_PATTERN.search(file_name)
    if match is None:
        return PLACEHOLDER_WORKER_ID, 0
    return match.group(1), int(match.group(2))


def task_filename(worker_id: int | str, millis: int | None = None) -> str:
    worker = str(worker_id).strip()
    if not worker.isdigit():
        raise ValueError(f"Worker id must be numeric, got '{worker_id}'")
    stamp = int(time.time() * 1000) if millis is None else int(millis)
    return f"agent-{worker}-{stamp}"


def _is_record_name(name: str) -> bool:
    return not name.startswith(".")


def _atomic_write(target: Path, content: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, target)
    except BaseException:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        raise


def write_task(
    root: Path,
    worker_id: int | str,
    description: str,
    *,
    millis: int | None = None,
) -> TaskRecord:
    """Declare in-progress work for ``worker_id`` under ``current_tasks/``."""

    file_name = task_filename(worker_id, millis)
    _atomic_write(Path(root) / CURRENT_TASKS_DIR / file_name, description)
    parsed_id, timestamp = parse_task_filename(file_name)
    logger.debug("Task record written", extra={"file": file_name, "worker_id": parsed_id})
    return TaskRecord(
        file_name=file_name,
        worker_id=parsed_id,
        timestamp=timestamp,
        description=description.strip(),
    )


def complete_task(root: Path, file_name: str, *, summary: str | None = None) -> Path:
    """Move a current record to ``completed_tasks/``.

    The completed counterpart is written atomically before the current
    record is removed, so an observer may briefly see both but never neither.
    """

    root = Path(root)
    current = root / CURRENT_TASKS_DIR / file_name
    description = current.read_text(encoding="utf-8")
    content = description if summary is None else f"{description.rstrip()}\n\n{summary}"
    completed = root / COMPLETED_TASKS_DIR / file_name
    _atomic_write(completed, content)
    current.unlink(missing_ok=True)
    logger.debug("Task record completed", extra={"file": file_name})
    return completed


def remove_task(root: Path, file_name: str) -> bool:
    """Drop a current record without completing it. Returns whether it existed."""

    path = Path(root) / CURRENT_TASKS_DIR / file_name
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def _record_entries(directory: Path) -> list[Path]:
    try:
        entries = sorted(directory.iterdir())
    except OSError:
        return []
    return [entry for entry in entries if _is_record_name(entry.name) and entry.is_file()]


def list_current_tasks(root: Path) -> list[TaskRecord]:
    """Return every readable in-progress record, ordered by file name."""

    records: list[TaskRecord] = []
    for entry in _record_entries(Path(root) / CURRENT_TASKS_DIR):
        try:
            description = entry.read_text(encoding="utf-8", errors="replace").strip()
        except OSError:
            # removed between listing and read
            continue
        worker_id, timestamp = parse_task_filename(entry.name)
        records.append(
            TaskRecord(
                file_name=entry.name,
                worker_id=worker_id,
                timestamp=timestamp,
                description=description,
            )
        )
    return records


def count_completed_tasks(root: Path) -> int:
    return len(_record_entries(Path(root) / COMPLETED_TASKS_DIR))


def ensure_ledger(root: Path) -> None:
    """Create both ledger directories with a ``.gitkeep`` so git tracks them."""

    for name in (CURRENT_TASKS_DIR, COMPLETED_TASKS_DIR):
        directory = Path(root) / name
        directory.mkdir(parents=True, exist_ok=True)
        (directory / ".gitkeep").touch(exist_ok=True)


__all__ = [
    "COMPLETED_TASKS_DIR",
    "CURRENT_TASKS_DIR",
    "PLACEHOLDER_WORKER_ID",
    "TaskRecord",
    "complete_task",
    "count_completed_tasks",
    "ensure_ledger",
    "list_current_tasks",
    "parse_task_filename",
    "remove_task",
    "task_filename",
    "write_task",
]
