#!/usr/bin/env python3
"""
Tests for context repository and worktree management

Needs a git binary; skipped otherwise.
"""

import shutil

import pytest

from scripts.dilagent.workspace import GitWorkspace
from scripts.shared.git_utils import (
    GitOperationError,
    create_hypothesis_worktree,
    get_current_branch,
    get_repo_root,
    is_git_repo,
    setup_context_repo,
)
from scripts.shared.subprocess_utils import run_command

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def git(cwd, *args):
    result = run_command(["git", *args], cwd=cwd)
    assert result.success, result.stderr
    return result.stdout.strip()


@pytest.fixture
def plain_dir(temp_dir):
    """Directory with code that is not under version control"""
    path = temp_dir / "service"
    (path / "auth").mkdir(parents=True)
    (path / "auth" / "cache.py").write_text("TTL = 60\n")
    (path / "node_modules").mkdir()
    (path / "node_modules" / "huge.js").write_text("//")
    return path


@pytest.fixture
def source_repo(temp_dir):
    """Git repository with the code in a subdirectory"""
    path = temp_dir / "monorepo"
    (path / "services" / "auth").mkdir(parents=True)
    (path / "services" / "auth" / "cache.py").write_text("TTL = 60\n")
    git(path, "init", "-q")
    git(path, "config", "user.email", "dev@example.com")
    git(path, "config", "user.name", "dev")
    git(path, "add", "-A")
    git(path, "commit", "-q", "-m", "initial")
    return path


class TestContextRepo:
    """setup_context_repo"""

    def test_snapshot_of_plain_directory(self, plain_dir, temp_dir):
        repo = temp_dir / "run" / ".dilagent" / "context-repo"

        context = setup_context_repo(plain_dir, "abc123", repo)

        assert context.relative_path == ""
        assert is_git_repo(repo)
        assert (repo / "auth" / "cache.py").read_text() == "TTL = 60\n"
        assert not (repo / "node_modules").exists()
        assert get_current_branch(repo) == "dilagent/abc123/root"

    def test_worktree_of_existing_repo(self, source_repo, temp_dir):
        repo = temp_dir / "context-repo"

        context = setup_context_repo(source_repo / "services" / "auth", "abc123", repo)

        assert context.relative_path == "services/auth"
        assert get_repo_root(repo) == repo.resolve()
        assert (repo / "services" / "auth" / "cache.py").exists()
        assert get_current_branch(repo) == "dilagent/abc123/root"

    def test_existing_repo_is_reused(self, plain_dir, temp_dir):
        repo = temp_dir / "context-repo"
        setup_context_repo(plain_dir, "abc123", repo)
        (repo / "marker").write_text("still here")

        setup_context_repo(plain_dir, "abc123", repo)

        assert (repo / "marker").exists()

    def test_missing_context_dir(self, temp_dir):
        with pytest.raises(GitOperationError):
            setup_context_repo(temp_dir / "nope", "abc123", temp_dir / "repo")


class TestHypothesisWorktree:
    """create_hypothesis_worktree"""

    def test_creates_branch(self, plain_dir, temp_dir):
        repo = temp_dir / "context-repo"
        setup_context_repo(plain_dir, "abc123", repo)
        worktree = temp_dir / "h001-stale-cache"

        GitWorkspace().create_hypothesis_worktree(repo, worktree, "dilagent/abc123/h001-stale-cache")

        assert (worktree / "auth" / "cache.py").exists()
        assert get_current_branch(worktree) == "dilagent/abc123/h001-stale-cache"

    def test_existing_worktree_is_reused(self, plain_dir, temp_dir):
        repo = temp_dir / "context-repo"
        setup_context_repo(plain_dir, "abc123", repo)
        worktree = temp_dir / "h001"
        create_hypothesis_worktree(repo, worktree, "dilagent/abc123/h001")

        assert create_hypothesis_worktree(repo, worktree, "dilagent/abc123/h001") == worktree

    def test_requires_repository(self, temp_dir):
        (temp_dir / "not-a-repo").mkdir()
        with pytest.raises(GitOperationError):
            create_hypothesis_worktree(temp_dir / "not-a-repo", temp_dir / "h001", "b")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
