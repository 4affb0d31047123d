#!/usr/bin/env python3
"""
Git Operations Abstraction

Context repository and per-hypothesis worktree management. Every hypothesis
gets its own worktree on its own branch, all branched from a single context
repository under the working directory.
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List

from .subprocess_utils import run_command

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 120


class GitOperationError(Exception):
    """Raised when git operation fails"""
    pass


@dataclass
class ContextRepo:
    """Location of the prepared context repository"""
    repo_path: Path
    relative_path: str  # context directory relative to the repo root ("" = root)


def _git(args: List[str], cwd: Path, action: str) -> str:
    """
    Run a git command, raising GitOperationError on failure.

    Returns:
        Stripped stdout
    """
    result = run_command(["git", *args], cwd=cwd, timeout=GIT_TIMEOUT)
    if result.failed:
        detail = (result.stderr or result.error_message or "").strip()
        logger.error(f"Failed to {action}: {detail}")
        raise GitOperationError(f"Failed to {action}: {detail}")
    return result.stdout.strip()


def is_git_repo(path: Path) -> bool:
    """Check whether path is inside a git work tree"""
    if not Path(path).is_dir():
        return False
    result = run_command(["git", "rev-parse", "--is-inside-work-tree"], cwd=path,
                         timeout=GIT_TIMEOUT)
    return result.success and result.stdout.strip() == "true"


def get_repo_root(path: Path) -> Path:
    """
    Get the top-level directory of the repository containing path.

    Raises:
        GitOperationError: If path is not inside a repository
    """
    return Path(_git(["rev-parse", "--show-toplevel"], Path(path), "find repository root")).resolve()


def get_current_branch(repo_path: Path) -> str:
    """
    Get the current branch name.

    Raises:
        GitOperationError: If unable to get current branch
    """
    branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], repo_path, "get current branch")
    logger.debug(f"Current branch: {branch}")
    return branch


def setup_context_repo(context_dir: Path, working_dir_id: str, repo_path: Path) -> ContextRepo:
    """
    Prepare the repository all hypothesis worktrees branch from.

    If context_dir lives in a git repository, a worktree of that repository
    is added at repo_path on branch ``dilagent/<working_dir_id>/root``.
    Otherwise the files are copied to repo_path and committed into a fresh
    repository. An existing repository at repo_path is reused.

    Args:
        context_dir: Directory holding the code under investigation
        working_dir_id: Run identifier, used in branch names
        repo_path: Where the context repository should live

    Returns:
        ContextRepo with the repository path and the context directory's
        path relative to the repository root

    Raises:
        GitOperationError: If any git step fails
    """
    context_dir = Path(context_dir).resolve()
    repo_path = Path(repo_path)
    branch = f"dilagent/{working_dir_id}/root"

    if not context_dir.is_dir():
        raise GitOperationError(f"Context directory does not exist: {context_dir}")

    relative_path = ""
    source_is_repo = is_git_repo(context_dir)
    if source_is_repo:
        relative = context_dir.relative_to(get_repo_root(context_dir))
        relative_path = "" if str(relative) == "." else str(relative)

    if repo_path.exists() and is_git_repo(repo_path):
        logger.info(f"Reusing context repo: {repo_path}")
        return ContextRepo(repo_path=repo_path, relative_path=relative_path)

    repo_path.parent.mkdir(parents=True, exist_ok=True)

    if source_is_repo:
        source_root = get_repo_root(context_dir)
        _git(["worktree", "add", "-b", branch, str(repo_path), "HEAD"], source_root,
             f"create context worktree at {repo_path}")
        logger.info(f"Created context worktree: {repo_path} (branch: {branch})")
    else:
        ignore = shutil.ignore_patterns(".git", ".dilagent", "node_modules", "__pycache__")
        shutil.copytree(context_dir, repo_path, ignore=ignore, dirs_exist_ok=True)
        _git(["init", "-q"], repo_path, f"initialize repository at {repo_path}")
        _git(["config", "user.email", "dilagent@localhost"], repo_path, "configure git user")
        _git(["config", "user.name", "dilagent"], repo_path, "configure git user")
        _git(["add", "-A"], repo_path, "stage context files")
        _git(["commit", "-q", "--allow-empty", "-m", "Initial context snapshot"], repo_path,
             "create initial commit")
        _git(["checkout", "-q", "-b", branch], repo_path, f"create branch {branch}")
        logger.info(f"Initialized git repo: {repo_path} (branch: {branch})")

    return ContextRepo(repo_path=repo_path, relative_path=relative_path)


def create_hypothesis_worktree(repo_path: Path, worktree_path: Path, branch_name: str) -> Path:
    """
    Create the isolated worktree for one hypothesis.

    Args:
        repo_path: Context repository
        worktree_path: Where the worktree should be created
        branch_name: New branch for the worktree

    Returns:
        Path to the worktree (existing worktrees are reused)

    Raises:
        GitOperationError: If repo_path is not a repository or creation fails
    """
    worktree_path = Path(worktree_path)
    if worktree_path.exists():
        logger.warning(f"Worktree already exists: {worktree_path}, reusing")
        return worktree_path

    if not is_git_repo(repo_path):
        raise GitOperationError(f"Context repo not found or not a git repository: {repo_path}")

    worktree_path.parent.mkdir(parents=True, exist_ok=True)
    _git(["worktree", "add", "-b", branch_name, str(worktree_path), "HEAD"], repo_path,
         f"create hypothesis worktree at {worktree_path}")
    logger.info(f"Created hypothesis worktree: {worktree_path} (branch: {branch_name})")
    return worktree_path
