"""Shared repository access for workers and the observer."""

from .git import GitClient, GitCommandError, GitError, GitNotFoundError, GitTimeoutError
from .models import Commit, GitResult
from .store import SharedRepository, WorkingCopy, parse_log

__all__ = [
    "Commit",
    "GitClient",
    "GitCommandError",
    "GitError",
    "GitNotFoundError",
    "GitResult",
    "GitTimeoutError",
    "SharedRepository",
    "WorkingCopy",
    "parse_log",
]
