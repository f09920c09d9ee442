"""Per-worker synchronize, execute, publish loop.

Conflicts are resolved destructively: when the local branch cannot be
rebased onto the remote tip, the rebase is aborted and the branch is hard
reset to the remote, discarding unpublished commits. Liveness wins over
durability here; executors must treat their edits as regenerable from the
instruction document and the task ledger.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

from ..executor import ExecutionResult, ExecutorRunner
from ..executor.utils import preview
from ..profiles import WorkerProfile
from ..repository import GitResult, WorkingCopy

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    CONFLICT = "conflict"
    RESETTING = "resetting"
    EXECUTING = "executing"
    PUBLISHING = "publishing"
    COOLDOWN = "cooldown"


class WorkerLoop:
    """Drive one worker against the shared repository until the process is killed."""

    def __init__(
        self,
        worker_id: str,
        working_copy: WorkingCopy,
        executor: ExecutorRunner,
        profile: WorkerProfile,
        *,
        instruction_document: str = "CLAUDE.md",
        session: str = "",
        model: str | None = None,
        conflict_backoff: float = 3.0,
        cooldown: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_state: Callable[[WorkerState], None] | None = None,
    ) -> None:
        self.worker_id = str(worker_id)
        self.working_copy = working_copy
        self._executor = executor
        self._profile = profile
        self._instruction_document = instruction_document
        self._session = session
        self._model = model
        self._conflict_backoff = conflict_backoff
        self._cooldown = cooldown
        self._sleep = sleep
        self._on_state = on_state

        self.state = WorkerState.IDLE
        self.iterations = 0
        self.conflicts = 0
        self.published = 0
        self.last_result: ExecutionResult | None = None

    @property
    def log_extra(self) -> dict[str, object]:
        return {"worker_id": self.worker_id, "iteration": self.iterations}

    def _enter(self, state: WorkerState, trace: list[WorkerState]) -> None:
        self.state = state
        trace.append(state)
        logger.debug("Worker state -> %s", state.value, extra=self.log_extra)
        if self._on_state is not None:
            self._on_state(state)

    async def run_forever(self) -> None:
        """Loop indefinitely. Errors are logged and retried, never raised."""

        while True:
            try:
                await self.run_iteration()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Worker iteration failed; retrying", extra=self.log_extra)
                await self._sleep(self._conflict_backoff)

    async def run_iteration(self) -> list[WorkerState]:
        """Run a single cycle and return the states it passed through."""

        trace: list[WorkerState] = []
        self.iterations += 1
        logger.info("=== Loop iteration %d ===", self.iterations, extra=self.log_extra)

        if not await self._synchronize(trace):
            return trace

        await self._execute(trace)
        await self._publish(trace)

        self._enter(WorkerState.COOLDOWN, trace)
        await self._sleep(self._cooldown)
        return trace

    async def _synchronize(self, trace: list[WorkerState]) -> bool:
        self._enter(WorkerState.SYNCING, trace)
        result: GitResult | None = None
        try:
            await self.working_copy.fetch()
            result = await self.working_copy.rebase_onto_remote()
        except Exception:
            logger.exception("Synchronization failed", extra=self.log_extra)

        if result is not None and result.ok:
            return True

        self._enter(WorkerState.CONFLICT, trace)
        detail = preview(result.stderr or result.stdout) if result is not None else ""
        logger.warning(
            "Rebase conflict detected, discarding local state: %s",
            detail or "sync error",
            extra=self.log_extra,
        )
        await self._reset(trace)
        return False

    async def _reset(self, trace: list[WorkerState]) -> None:
        self._enter(WorkerState.RESETTING, trace)
        self.conflicts += 1
        try:
            await self.working_copy.abort_rebase()
            await self.working_copy.reset_to_remote()
            logger.info("Local branch reset to %s", self.working_copy.remote_ref, extra=self.log_extra)
        except Exception:
            logger.exception("Reset to remote failed", extra=self.log_extra)
        await self._sleep(self._conflict_backoff)

    async def _execute(self, trace: list[WorkerState]) -> None:
        self._enter(WorkerState.EXECUTING, trace)
        prompt = self._profile.render_prompt(
            worker_id=self.worker_id,
            instruction_document=self._instruction_document,
            session=self._session,
        )
        logger.info("Invoking executor...", extra=self.log_extra)
        try:
            result = await self._executor.run(
                prompt,
                cwd=self.working_copy.path,
                model=self._model or self._profile.model,
                flags=self._profile.flags,
                env={"AGENT_ID": self.worker_id, **self._profile.env},
                timeout=self._profile.timeout,
            )
        except Exception:
            logger.exception("Executor failed to run", extra=self.log_extra)
            self.last_result = None
            return

        self.last_result = result
        if result.stdout.strip():
            logger.info("Executor output:\n%s", result.stdout.rstrip(), extra=self.log_extra)
        if result.stderr.strip():
            logger.info("Executor stderr:\n%s", result.stderr.rstrip(), extra=self.log_extra)
        if result.ok:
            logger.info("Executor exited with code 0", extra=self.log_extra)
        else:
            logger.warning(
                "Executor exited with code %s%s",
                result.returncode,
                "" if result.stderr.strip() or result.stdout.strip() else " (no output)",
                extra=self.log_extra,
            )

    async def _publish(self, trace: list[WorkerState]) -> None:
        self._enter(WorkerState.PUBLISHING, trace)
        try:
            ahead = await self.working_copy.ahead_count()
            if ahead == 0:
                logger.debug("Nothing to publish", extra=self.log_extra)
                return
            result = await self.working_copy.push()
        except Exception:
            logger.exception("Publish failed", extra=self.log_extra)
            return

        if result.ok:
            self.published += ahead
            logger.info("Published %d commit(s)", ahead, extra=self.log_extra)
        else:
            # the next sync integrates or resets
            logger.warning(
                "Push rejected: %s",
                preview(result.stderr) or "no output",
                extra=self.log_extra,
            )


__all__ = ["WorkerLoop", "WorkerState"]
