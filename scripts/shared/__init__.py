#!/usr/bin/env python3
"""
Shared Infrastructure Module

Git worktree management, subprocess execution and logging helpers used by
the dilagent orchestrator.

Usage:
    from scripts.shared.git_utils import setup_context_repo, create_hypothesis_worktree
    from scripts.shared.subprocess_utils import run_command_async, CommandResult
    from scripts.shared.logging_utils import setup_logging, LogSection
"""

# Git utilities
from .git_utils import (
    ContextRepo,
    GitOperationError,
    create_hypothesis_worktree,
    get_current_branch,
    get_repo_root,
    is_git_repo,
    setup_context_repo,
)

# Subprocess utilities
from .subprocess_utils import (
    TIMEOUT_EXIT_CODE,
    CommandResult,
    run_command,
    run_command_async,
)

# Logging utilities
from .logging_utils import (
    Colors,
    ColoredFormatter,
    LogSection,
    ProgressLogger,
    log_exception,
    setup_logging,
)

__all__ = [
    # Git
    'ContextRepo',
    'GitOperationError',
    'create_hypothesis_worktree',
    'get_current_branch',
    'get_repo_root',
    'is_git_repo',
    'setup_context_repo',

    # Subprocess
    'TIMEOUT_EXIT_CODE',
    'CommandResult',
    'run_command',
    'run_command_async',

    # Logging
    'Colors',
    'ColoredFormatter',
    'LogSection',
    'ProgressLogger',
    'log_exception',
    'setup_logging',
]

__version__ = '2.0.0'
