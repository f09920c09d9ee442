"""Fleet orchestration: bootstrap a session, launch workers, tear everything down."""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any, Protocol, Sequence

from .config import ForgeSettings
from .ledger import ensure_ledger
from .reconciler import NEW_COMMIT_EVENT, Reconciler
from .repository import Commit, GitClient, SharedRepository, WorkingCopy
from .session import (
    FORGE_STEPS,
    Session,
    SessionNotFoundError,
    SessionRegistry,
    SessionStatus,
)
from .storage import ChromaStore, ChromaUnavailableError

DEFAULT_INSTRUCTIONS = """# {name}: worker instructions

You are one of several autonomous workers sharing this repository.
Your id is given in the prompt as `agent-<id>`.

1. Read `{spec_document}` and pick a module nobody is working on.
   Check `current_tasks/` first: every file there is a claim.
2. Claim it by creating `current_tasks/agent-<id>-<epoch millis>` whose
   content is a one-line description. Write to a temporary name and rename it.
3. Implement the work under `src/`, commit with a descriptive message and
   push to `origin main`.
4. When the task is finished, move the claim to `completed_tasks/` and commit
   with a message containing `{completion_marker}`.

Pushes may be rejected when another worker published first. Local work can
be discarded at any time; always re-read the ledger before resuming.
"""

DEFAULT_SPEC = """# {name} Specification

{description}

## Module Breakdown
"""

logger = logging.getLogger(__name__)


class FleetLauncher(Protocol):
    """Starts and force-stops the worker processes of one session."""

    async def launch(
        self,
        *,
        session: str,
        origin: Path,
        work_root: Path,
        worker_ids: Sequence[str],
    ) -> Sequence[Any]:
        ...

    async def stop_all(self) -> None:
        ...

    def status(self) -> dict[str, dict[str, Any]]:
        ...

    def log_workers(self) -> list[str]:
        ...

    def read_log(self, worker_id: str, tail: int = 50) -> list[str]:
        ...


class SpecGenerator(Protocol):
    """Produces the specification document workers build from."""

    async def generate(self, session: Session, workdir: Path) -> str:
        ...


class StaticSpecGenerator:
    """Writes a fixed specification template, formatted with the session name."""

    def __init__(self, template: str = DEFAULT_SPEC, *, document: str = "SPEC.md") -> None:
        self._template = template
        self._document = document

    async def generate(self, session: Session, workdir: Path) -> str:
        content = self._template.format(name=session.name, description=session.description)
        (Path(workdir) / self._document).write_text(content, encoding="utf-8")
        return content


class BootstrapError(RuntimeError):
    """Raised when a session cannot be brought up; no worker is left running."""


class ForgeController:
    """Owns the session registry and the per-session fleet and reconciler."""

    def __init__(
        self,
        settings: ForgeSettings,
        *,
        fleet: FleetLauncher,
        registry: SessionRegistry | None = None,
        git: GitClient | None = None,
        spec_generator: SpecGenerator | None = None,
        event_store: ChromaStore | None = None,
        instructions: str = DEFAULT_INSTRUCTIONS,
    ) -> None:
        self.settings = settings
        self.registry = registry or SessionRegistry(
            max_workers=settings.max_workers,
            log_limit=settings.session_log_limit,
        )
        self.fleet = fleet
        self._git = git
        self._spec_generator = spec_generator or StaticSpecGenerator(
            document=settings.spec_document
        )
        self.event_store = event_store
        self._instructions = instructions
        self.reconciler: Reconciler | None = None
        self._bootstrap_task: asyncio.Task[None] | None = None

    @property
    def git(self) -> GitClient:
        if self._git is None:
            self._git = GitClient(timeout=self.settings.git_timeout * 12)
        return self._git

    def get_active(self) -> Session | None:
        return self.registry.get_active()

    def state(self) -> dict[str, Any] | None:
        if self.reconciler is None:
            return None
        return self.reconciler.get_state().to_dict()

    def start_session(self, name: str, worker_count: int | str = 3, *, description: str = "") -> Session:
        """Create the session and bootstrap it in the background.

        Raises ``SessionAlreadyActiveError`` without touching the live session.
        """

        session = self.registry.create(
            name,
            worker_count,
            description=description,
            listener=self._on_status,
        )
        self._bootstrap_task = asyncio.get_running_loop().create_task(self.bootstrap(session))
        return session

    async def wait_bootstrapped(self) -> None:
        if self._bootstrap_task is not None:
            await asyncio.shield(self._bootstrap_task)

    def _log(self, session: Session, message: str) -> None:
        session.add_log(message)
        logger.info(message, extra={"session_id": session.id})

    def _step(self, session: Session, step: int) -> None:
        session.set_forge_step(step)
        if step <= 2:
            session.set_status(SessionStatus.SCAFFOLDING)
        elif step <= 4:
            session.set_status(SessionStatus.GENERATING_SPEC)
        else:
            session.set_status(SessionStatus.LAUNCHING_AGENTS)
        self._log(session, FORGE_STEPS[step])

    async def bootstrap(self, session: Session) -> None:
        """Bring a session from ``initializing`` to ``running``.

        Any failure tears down whatever was started and stops the session.
        """

        try:
            await self._bootstrap(session)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Bootstrap failed", extra={"session_id": session.id})
            session.error = str(exc)
            session.add_log(f"Bootstrap failed: {exc}")
            await self._teardown()
            if session.active:
                session.set_status(SessionStatus.STOPPED)

    async def _bootstrap(self, session: Session) -> None:
        settings = self.settings
        repo_path = settings.repo_base / f"{session.name}.git"
        work_dir = settings.work_base / session.name
        project_dir = work_dir / "project"

        self._step(session, 0)
        version = await self.git.run("--version")
        if not version.ok:
            raise BootstrapError(f"git is not usable: {version.stderr.strip()}")
        self._log(session, f"  {version.stdout.strip()}")

        self._step(session, 1)
        repository = SharedRepository(repo_path, git=self.git, branch=settings.default_branch)
        await repository.create_bare()
        session.repo_path = repo_path

        self._step(session, 2)
        if work_dir.exists():
            self._log(session, f"Cleaning existing work dir: {work_dir}")
            shutil.rmtree(work_dir)
        observer = await repository.clone(project_dir, author="forge")
        self._scaffold(session, project_dir)
        session.work_dir = project_dir

        self._step(session, 3)
        await self._spec_generator.generate(session, project_dir)

        self._step(session, 4)
        await repository.seed(observer, f"init: scaffold {session.name} project")

        self._step(session, 5)
        self._start_reconciler(session, observer)
        self._log(session, f"Launching {session.worker_count} workers...")
        members = await self.fleet.launch(
            session=session.name,
            origin=repo_path,
            work_root=work_dir,
            worker_ids=session.worker_ids,
        )
        for member in members:
            self._log(session, f"  Worker {member.worker_id}: pid {member.pid}")

        session.set_status(SessionStatus.RUNNING)
        self._log(session, "All workers running")

    def _scaffold(self, session: Session, project_dir: Path) -> None:
        settings = self.settings
        ensure_ledger(project_dir)
        logs = project_dir / "logs"
        logs.mkdir(exist_ok=True)
        (logs / ".gitkeep").touch()
        (project_dir / settings.source_dir).mkdir(exist_ok=True)
        (project_dir / ".gitignore").write_text("logs/*.log\n.DS_Store\n*.swp\n", encoding="utf-8")
        (project_dir / settings.instruction_document).write_text(
            self._instructions.format(
                name=session.name,
                spec_document=settings.spec_document,
                completion_marker=settings.completion_marker,
            ),
            encoding="utf-8",
        )

    def _start_reconciler(self, session: Session, observer: WorkingCopy) -> None:
        reconciler = Reconciler.from_settings(
            observer,
            self.settings,
            known_workers=session.worker_ids,
        )

        def _record_commit(event: str, payload: Any) -> None:
            if event != NEW_COMMIT_EVENT or self.event_store is None:
                return
            commit: Commit = payload
            try:
                self.event_store.record_commit(
                    session_id=session.id,
                    hash=commit.hash,
                    author=commit.author,
                    message=commit.message,
                )
            except ChromaUnavailableError as exc:
                logger.warning("Commit event not persisted: %s", exc)

        reconciler.subscribe(_record_commit)
        self.reconciler = reconciler
        reconciler.start()

    async def _teardown(self) -> None:
        try:
            await self.fleet.stop_all()
        finally:
            if self.reconciler is not None:
                await self.reconciler.stop()

    async def stop_session(self, session_id: str | None = None) -> Session:
        """Force-stop the fleet and the reconciler, then mark the session stopped."""

        session = self.registry.get(session_id) if session_id else self.registry.get_active()
        if session is None or not session.active:
            raise SessionNotFoundError(
                f"Session '{session_id}' is not active" if session_id else "No active session"
            )

        task, self._bootstrap_task = self._bootstrap_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._teardown()
        self.registry.stop(session.id)
        self._log(session, "Session stopped")
        return session

    def _on_status(self, session: Session, old: SessionStatus, new: SessionStatus) -> None:
        if self.event_store is None:
            return
        try:
            self.event_store.record_session_status(
                session_id=session.id,
                name=session.name,
                status=new.value,
                previous_status=old.value,
                metadata={"forge_step": session.forge_step},
            )
        except ChromaUnavailableError as exc:
            logger.warning("Session status not persisted: %s", exc)


__all__ = [
    "BootstrapError",
    "DEFAULT_INSTRUCTIONS",
    "FleetLauncher",
    "ForgeController",
    "SpecGenerator",
    "StaticSpecGenerator",
]
