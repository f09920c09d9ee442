"""Launch and tear down worker processes for a session."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Sequence

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FleetMember:
    worker_id: str
    workdir: Path
    log_path: Path
    process: asyncio.subprocess.Process | None = None
    log_handle: IO[bytes] | None = field(default=None, repr=False)

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "workerId": self.worker_id,
            "pid": self.pid,
            "running": self.running,
            "returncode": self.process.returncode if self.process is not None else None,
            "workdir": str(self.workdir),
            "logPath": str(self.log_path),
        }


class ProcessFleet:
    """Runs each worker loop as an independent local process.

    Workers share nothing but the bare store on disk. Each worker leads its
    own process group so stopping reaches the executor and git children it
    spawned. Stopping is forceful: groups are terminated mid-iteration
    without waiting for a safe point.
    """

    def __init__(
        self,
        *,
        python: str | None = None,
        grace_period: float = 5.0,
        extra_env: dict[str, str] | None = None,
    ) -> None:
        self._python = python or sys.executable
        self._grace_period = grace_period
        self._extra_env = dict(extra_env or {})
        self._members: dict[str, FleetMember] = {}
        # outlives stop_all so logs stay readable until the next launch
        self._log_paths: dict[str, Path] = {}

    @property
    def members(self) -> list[FleetMember]:
        return list(self._members.values())

    def command_for(
        self,
        worker_id: str,
        *,
        origin: Path,
        workdir: Path,
        session: str,
    ) -> list[str]:
        return [
            self._python,
            "-m",
            "forge_mcp.worker",
            "--worker-id",
            worker_id,
            "--origin",
            str(origin),
            "--workdir",
            str(workdir),
            "--session",
            session,
        ]

    async def launch(
        self,
        *,
        session: str,
        origin: Path,
        work_root: Path,
        worker_ids: Sequence[str],
    ) -> list[FleetMember]:
        """Start one process per worker id; output goes to ``logs/agent-<id>.log``."""

        launched: list[FleetMember] = []
        log_dir = Path(work_root) / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        self._log_paths = {}

        for worker_id in worker_ids:
            member = FleetMember(
                worker_id=str(worker_id),
                workdir=Path(work_root) / f"agent-{worker_id}",
                log_path=log_dir / f"agent-{worker_id}.log",
            )
            env = {**os.environ, **self._extra_env, "AGENT_ID": member.worker_id}
            member.log_handle = open(member.log_path, "ab")
            self._members[member.worker_id] = member
            self._log_paths[member.worker_id] = member.log_path

            spawn = asyncio.ensure_future(
                asyncio.create_subprocess_exec(
                    *self.command_for(
                        member.worker_id,
                        origin=origin,
                        workdir=member.workdir,
                        session=session,
                    ),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=member.log_handle,
                    stderr=asyncio.subprocess.STDOUT,
                    env=env,
                    start_new_session=True,
                )
            )
            try:
                member.process = await asyncio.shield(spawn)
            except asyncio.CancelledError:
                # the spawn may still complete; a started process must not outlive the launch
                try:
                    member.process = await spawn
                except Exception:
                    member.process = None
                await self._stop_member(member)
                self._members.pop(member.worker_id, None)
                raise
            except BaseException:
                member.log_handle.close()
                member.log_handle = None
                self._members.pop(member.worker_id, None)
                raise

            launched.append(member)
            logger.info(
                "Worker %s started (pid %s)",
                member.worker_id,
                member.pid,
                extra={"session": session, "worker_id": member.worker_id},
            )

        return launched

    @staticmethod
    def _signal_group(pgid: int, signum: int) -> bool:
        try:
            os.killpg(pgid, signum)
        except ProcessLookupError:
            return False
        return True

    async def _stop_member(self, member: FleetMember) -> None:
        """Terminate the worker's whole process group, killing it after the grace period."""

        process = member.process
        try:
            if process is not None:
                # the worker leads its group, so pid == pgid
                if self._signal_group(process.pid, signal.SIGTERM):
                    try:
                        await asyncio.wait_for(process.wait(), self._grace_period)
                    except asyncio.TimeoutError:
                        logger.warning(
                            "Worker %s ignored terminate; killing", member.worker_id
                        )
                # sweeps executor and git children that outlived the worker
                self._signal_group(process.pid, signal.SIGKILL)
                await process.wait()
        finally:
            if member.log_handle is not None:
                member.log_handle.close()
                member.log_handle = None

    async def stop_all(self) -> None:
        members = list(self._members.values())
        for member in members:
            logger.info("Stopping worker %s...", member.worker_id)
        await asyncio.gather(*(self._stop_member(member) for member in members))
        self._members.clear()
        logger.info("All workers stopped")

    def status(self) -> dict[str, dict[str, Any]]:
        return {member.worker_id: member.to_dict() for member in self._members.values()}

    def log_workers(self) -> list[str]:
        return list(self._log_paths)

    def read_log(self, worker_id: str, tail: int = 50) -> list[str]:
        """Return the last ``tail`` lines of a worker's output log."""

        path = self._log_paths.get(str(worker_id))
        if path is None:
            raise LookupError(f"Unknown worker '{worker_id}'")
        if tail <= 0:
            return []
        try:
            with open(path, encoding="utf-8", errors="replace") as handle:
                lines = deque(handle, maxlen=tail)
        except FileNotFoundError:
            return []
        return [line.rstrip("\n") for line in lines]


__all__ = ["FleetMember", "ProcessFleet"]
