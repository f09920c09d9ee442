"""Value types returned by the repository layer."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class GitResult:
    """Holds the outcome of a git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True, slots=True)
class Commit:
    hash: str
    author: str
    message: str
    age: str

    def to_dict(self) -> dict[str, str]:
        return {
            "hash": self.hash,
            "author": self.author,
            "message": self.message,
            "timeAgo": self.age,
        }


__all__ = ["Commit", "GitResult"]
