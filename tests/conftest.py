from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

import pytest

from forge_mcp.ledger import ensure_ledger

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git binary not available")


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", "-C", str(cwd), *args],
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def clone(bare: Path, dest: Path, author: str) -> Path:
    subprocess.run(["git", "clone", str(bare), str(dest)], capture_output=True, check=True)
    git(dest, "config", "user.name", author)
    git(dest, "config", "user.email", f"{author}@forge")
    git(dest, "config", "commit.gpgsign", "false")
    return dest


def commit_file(repo: Path, relpath: str, content: str, message: str) -> str:
    target = repo / relpath
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    git(repo, "add", "-A")
    git(repo, "commit", "-m", message)
    return git(repo, "rev-parse", "HEAD")


def push(repo: Path) -> None:
    git(repo, "push", "origin", "HEAD:main")


@dataclass
class Origin:
    bare: Path
    seed: Path
    root: Path

    def clone(self, name: str, author: str) -> Path:
        return clone(self.bare, self.root / name, author)

    def head(self) -> str:
        return git(self.bare, "rev-parse", "main")


@pytest.fixture
def origin(tmp_path: Path) -> Origin:
    """A bare store seeded with a ledger, a shared file and a spec document."""

    bare = tmp_path / "origin.git"
    subprocess.run(["git", "init", "--bare", str(bare)], capture_output=True, check=True)
    git(bare, "symbolic-ref", "HEAD", "refs/heads/main")

    seed = clone(bare, tmp_path / "seed", "forge")
    ensure_ledger(seed)
    (seed / "shared.txt").write_text("base\n", encoding="utf-8")
    (seed / "SPEC.md").write_text("# Demo\n\n### 1. **Scoring** - points\n", encoding="utf-8")
    git(seed, "add", "-A")
    git(seed, "commit", "-m", "init")
    git(seed, "branch", "-M", "main")
    git(seed, "push", "-u", "origin", "main")
    return Origin(bare=bare, seed=seed, root=tmp_path)
