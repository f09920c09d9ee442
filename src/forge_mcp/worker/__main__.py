"""Worker process entry point: ``python -m forge_mcp.worker``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from ..config import ForgeSettings, get_settings
from ..executor import ExecutorRunner, ExecutorRunnerError
from ..profiles import ProfileLoader, ProfileLoadError
from ..repository import GitClient, GitError, SharedRepository
from .loop import WorkerLoop

# bounds a hung fetch or push; the loop treats the timeout as a sync failure
WORKER_GIT_TIMEOUT = 120.0

logger = logging.getLogger("forge_mcp.worker")


def configure_logging(level: str, worker_id: str, log_file: Path | None = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=f"[%(asctime)s] [%(levelname)s] [agent-{worker_id}] %(name)s: %(message)s",
        handlers=handlers,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one autonomous worker loop")
    parser.add_argument("--worker-id", required=True, help="Numeric worker id")
    parser.add_argument("--origin", required=True, type=Path, help="Path to the shared bare store")
    parser.add_argument("--workdir", required=True, type=Path, help="Working copy location")
    parser.add_argument("--session", default="", help="Session name passed to the prompt")
    parser.add_argument("--profile", default=None, help="Worker profile id")
    parser.add_argument("--log-file", type=Path, default=None)
    return parser


async def run_worker(args: argparse.Namespace, settings: ForgeSettings) -> None:
    git = GitClient(timeout=WORKER_GIT_TIMEOUT)
    repository = SharedRepository(args.origin, git=git, branch=settings.default_branch)

    if (args.workdir / ".git").exists():
        working_copy = repository.open(args.workdir)
    else:
        logger.info("Cloning repository into %s", args.workdir)
        working_copy = await repository.clone(args.workdir, author=f"agent-{args.worker_id}")

    executor = ExecutorRunner(Path(settings.executor_path) if settings.executor_path else None)
    profile = ProfileLoader(settings.profile_paths).resolve(args.profile or settings.worker_profile)

    loop = WorkerLoop(
        args.worker_id,
        working_copy,
        executor,
        profile,
        instruction_document=settings.instruction_document,
        session=args.session,
        model=settings.executor_model,
        conflict_backoff=settings.conflict_backoff,
        cooldown=settings.cooldown,
    )
    logger.info("Starting worker loop for session %s", args.session or "-")
    await loop.run_forever()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if not str(args.worker_id).isdigit():
        print("--worker-id must be numeric", file=sys.stderr)
        return 2

    settings = get_settings()
    configure_logging(settings.log_level, args.worker_id, args.log_file)

    try:
        asyncio.run(run_worker(args, settings))
    except (ExecutorRunnerError, GitError, ProfileLoadError) as exc:
        logger.error("Worker failed to start: %s", exc)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
