# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""Local git worktrees for PR branches.

Layout:
  <source_dir>/<repo name>            local clone of <owner>/<repo name> (owner is ignored)
  <repo dir>/<branch>                 default worktree path for a branch

<repo dir> is the directory holding `.git`, or the git dir itself for a bare clone.
A worktree already registered for the branch (`git worktree list`) wins over the
default path, wherever it lives.

New worktrees take their branch from, in order: the local branch, origin/<branch>
(tracked), or a new branch tracking origin/main.

All methods are blocking (GitPython shells out to git); callers on the event loop
run them in a worker thread.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import git  # type: ignore[import-not-found]

_logger = logging.getLogger(__name__)

DEFAULT_BASE_BRANCH = "main"

_GIT_ERRORS = (
    git.exc.InvalidGitRepositoryError,
    git.exc.NoSuchPathError,
    git.exc.GitCommandError,
)


@dataclass(frozen=True)
class WorktreeEntry:
    path: str
    branch: Optional[str] = None


def parse_worktree_list(porcelain: str) -> List[WorktreeEntry]:
    """Parse `git worktree list --porcelain`. Entries without a path are dropped."""
    entries: List[WorktreeEntry] = []
    path: Optional[str] = None
    branch: Optional[str] = None
    for raw in (porcelain or "").splitlines():
        line = raw.strip()
        if not line:
            if path:
                entries.append(WorktreeEntry(path, branch))
            path, branch = None, None
        elif line.startswith("worktree "):
            if path:
                entries.append(WorktreeEntry(path, branch))
            path, branch = line[len("worktree "):].strip(), None
        elif line.startswith("branch "):
            branch = line[len("branch "):].strip()
    if path:
        entries.append(WorktreeEntry(path, branch))
    return entries


def normalize_branch_ref(ref: Optional[str]) -> Optional[str]:
    if not ref:
        return None
    for prefix in ("refs/heads/", "refs/remotes/origin/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


def validate_branch_name(branch: str) -> None:
    """Reject names that are not plain relative paths (they become directory names)."""
    if not branch or branch.startswith(("-", "/")) or "\\" in branch:
        raise ValueError(f"Invalid branch name: {branch!r}")
    if any(part in ("", ".", "..") for part in branch.split("/")):
        raise ValueError(f"Invalid branch name: {branch!r}")


def _parse_counts(out: str) -> Tuple[int, int]:
    parts = (out or "").split()
    counts = []
    for raw in parts[:2]:
        try:
            counts.append(int(raw))
        except ValueError:
            counts.append(0)
    while len(counts) < 2:
        counts.append(0)
    return counts[0], counts[1]


class WorktreeManager:
    def __init__(self, source_dir: Union[str, Path]):
        self.source_dir = Path(source_dir).expanduser()
        self.logger = logging.getLogger(self.__class__.__name__)

    def repo_path(self, repo_full_name: str) -> Path:
        owner, _, name = (repo_full_name or "").partition("/")
        if not owner or not name or "/" in name or name in (".", ".."):
            raise ValueError(f"Invalid repo format: {repo_full_name!r}")
        return self.source_dir / name

    # ----------------------------
    # git helpers
    # ----------------------------

    @staticmethod
    def _open(repo_path: Path) -> Tuple[git.Repo, Path]:
        repo = git.Repo(repo_path)
        git_dir = Path(repo.git_dir).resolve()
        repo_dir = git_dir.parent if git_dir.name == ".git" else git_dir
        return repo, repo_dir

    def _registered_worktree(self, repo: git.Repo, branch: str) -> Optional[str]:
        try:
            out = repo.git.worktree("list", "--porcelain")
        except git.exc.GitCommandError as e:
            self.logger.error("Error reading worktree list in %s: %s", repo.git_dir, e)
            return None
        for entry in parse_worktree_list(out):
            if normalize_branch_ref(entry.branch) == branch:
                return entry.path
        return None

    @staticmethod
    def _has_ref(repo: git.Repo, ref: str) -> bool:
        try:
            repo.git.show_ref("--verify", "--quiet", ref)
        except git.exc.GitCommandError:
            return False
        return True

    # ----------------------------
    # Operations
    # ----------------------------

    def check(self, repo_full_name: str, branch: str) -> Dict[str, Any]:
        """Return {exists, path} for the branch's worktree, or {exists: False, error}."""
        validate_branch_name(branch)
        repo_path = self.repo_path(repo_full_name)
        if not repo_path.exists():
            return {"exists": False, "error": "Repository not found locally"}
        try:
            repo, repo_dir = self._open(repo_path)
            registered = self._registered_worktree(repo, branch)
        except _GIT_ERRORS as e:
            self.logger.error("Error checking worktree for %s@%s: %s", repo_full_name, branch, e)
            return {"exists": False, "error": str(e)}
        default_path = repo_dir / branch
        return {
            "exists": bool(registered) or default_path.exists(),
            "path": registered or str(default_path),
        }

    def create(self, repo_full_name: str, branch: str) -> Tuple[int, Dict[str, Any]]:
        """Create the branch's worktree unless one exists. Returns (http_status, payload)."""
        validate_branch_name(branch)
        repo_path = self.repo_path(repo_full_name)
        if not repo_path.exists():
            return 500, {"error": f"Repository not found at {repo_path}"}
        try:
            repo, repo_dir = self._open(repo_path)
            registered = self._registered_worktree(repo, branch)
            default_path = repo_dir / branch
            if registered or default_path.exists():
                return 200, {
                    "success": True,
                    "path": registered or str(default_path),
                    "message": "Worktree already exists",
                }

            if self._has_ref(repo, f"refs/heads/{branch}"):
                repo.git.worktree("add", str(default_path), branch)
            elif self._has_ref(repo, f"refs/remotes/origin/{branch}"):
                repo.git.worktree("add", "--track", "-b", branch, str(default_path), f"origin/{branch}")
            else:
                repo.git.worktree(
                    "add", "--track", "-b", branch, str(default_path), f"origin/{DEFAULT_BASE_BRANCH}"
                )
        except _GIT_ERRORS as e:
            self.logger.error("Error creating worktree for %s@%s: %s", repo_full_name, branch, e)
            return 500, {"error": str(e)}

        self.logger.info("Created worktree %s", default_path)
        return 200, {"success": True, "path": str(default_path)}

    def compare(self, repo_full_name: str, branch: str) -> Dict[str, Any]:
        """Commits on origin/<branch> not on <branch> (incoming) and the reverse (outgoing)."""
        validate_branch_name(branch)
        repo_path = self.repo_path(repo_full_name)
        if not repo_path.exists():
            return {"exists": False, "error": "Repository not found locally"}
        try:
            repo, _ = self._open(repo_path)
            if not self._registered_worktree(repo, branch):
                return {"exists": False, "error": "Worktree not found"}
            if not self._has_ref(repo, f"refs/heads/{branch}"):
                return {"exists": True, "incoming": 0, "outgoing": 0, "error": "Local branch not found"}
            if not self._has_ref(repo, f"refs/remotes/origin/{branch}"):
                return {"exists": True, "incoming": 0, "outgoing": 0, "error": "Remote branch not found"}
            out = repo.git.rev_list("--left-right", "--count", f"origin/{branch}...{branch}", "--")
        except _GIT_ERRORS as e:
            self.logger.error("Error comparing worktree for %s@%s: %s", repo_full_name, branch, e)
            return {"exists": False, "error": str(e)}
        incoming, outgoing = _parse_counts(out)
        return {"exists": True, "incoming": incoming, "outgoing": outgoing}
