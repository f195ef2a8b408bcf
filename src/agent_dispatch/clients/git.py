"""Thin wrapper around the git CLI for per-epic worktrees."""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import List

from pydantic import BaseModel

from agent_dispatch import constants

LOG = logging.getLogger(__name__)

GIT_TIMEOUT = 60


class GitError(RuntimeError):
    """Raised when git interactions fail."""


class Worktree(BaseModel):
    worktree_path: str
    branch_name: str


def slugify(text: str, max_length: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_length]


def epic_branch_name(epic_id: str, epic_title: str) -> str:
    return f"feature/epic-{epic_id}-{slugify(epic_title)}"


class GitClient:
    """Creates and removes worktrees next to a repository."""

    def _run(self, repo_path: str, *args: str) -> subprocess.CompletedProcess:
        command = ["git", "-C", repo_path, *args]
        try:
            result = subprocess.run(
                command, capture_output=True, text=True, timeout=GIT_TIMEOUT
            )
        except FileNotFoundError as exc:
            raise GitError("git executable not found on PATH") from exc
        except subprocess.TimeoutExpired as exc:
            raise GitError(f"git {' '.join(args)} timed out") from exc

        if result.returncode != 0:
            raise GitError(f"git {' '.join(args)} failed: {result.stderr.strip()}")
        return result

    def local_branches(self, repo_path: str) -> List[str]:
        result = self._run(repo_path, "branch", "--format=%(refname:short)")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def create_worktree(self, repo_path: str, epic_id: str, epic_title: str) -> Worktree:
        """Return the epic's worktree, creating branch and directory when missing."""
        branch_name = epic_branch_name(epic_id, epic_title)
        base = Path(repo_path).resolve().parent / constants.WORKTREE_DIR_NAME
        base.mkdir(parents=True, exist_ok=True)
        worktree_path = base / branch_name.replace("/", "-")

        if worktree_path.exists():
            return Worktree(worktree_path=str(worktree_path), branch_name=branch_name)

        if branch_name in self.local_branches(repo_path):
            self._run(repo_path, "worktree", "add", str(worktree_path), branch_name)
        else:
            self._run(repo_path, "worktree", "add", "-b", branch_name, str(worktree_path))
        LOG.info("Created worktree %s on %s", worktree_path, branch_name)
        return Worktree(worktree_path=str(worktree_path), branch_name=branch_name)

    def remove_worktree(self, repo_path: str, worktree_path: str) -> None:
        if Path(worktree_path).exists():
            self._run(repo_path, "worktree", "remove", worktree_path, "--force")
        self._run(repo_path, "worktree", "prune")
