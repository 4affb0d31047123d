#!/usr/bin/env python3
"""
Git/workspace collaborator

The two git operations the orchestrator depends on. Kept behind a small
class so runs can be driven against another workspace implementation.
"""

import logging
from pathlib import Path

from ..shared.git_utils import ContextRepo, create_hypothesis_worktree, setup_context_repo

logger = logging.getLogger(__name__)


class GitWorkspace:
    """Context repository and per-hypothesis worktrees backed by git"""

    def setup_context_repo(self, context_dir: Path, working_dir_id: str,
                           repo_path: Path) -> ContextRepo:
        """
        Raises:
            GitOperationError: If the repository cannot be prepared
        """
        return setup_context_repo(context_dir, working_dir_id, repo_path)

    def create_hypothesis_worktree(self, repo_path: Path, worktree_path: Path,
                                   branch_name: str) -> Path:
        """
        Raises:
            GitOperationError: If the worktree cannot be created
        """
        return create_hypothesis_worktree(repo_path, worktree_path, branch_name)
