#!/usr/bin/env python3
"""
Shared fixtures: temporary working directories, loaded store/timeline, and
stand-ins for the agent CLI and git workspace.
"""

import re
import shutil
import tempfile
from pathlib import Path

import pytest

from scripts.dilagent.agent import AgentRunner
from scripts.dilagent.errors import AgentExecutionError
from scripts.dilagent.state_store import RunStateStore
from scripts.dilagent.timeline import Timeline
from scripts.dilagent.working_dir import WorkingDir
from scripts.shared.git_utils import ContextRepo

WORKER_PROMPT_ID = re.compile(r"Test hypothesis (H\d+)")


class ScriptedAgent(AgentRunner):
    """
    Agent runner that answers from a script instead of a subprocess.

    Either pops canned responses (exceptions are raised) or delegates to an
    async ``handler(prompt, options)``.
    """

    def __init__(self, responses=None, handler=None):
        self.responses = list(responses or [])
        self.handler = handler
        self.calls = []

    async def prompt(self, prompt, options=None):
        self.calls.append((prompt, options))
        if self.handler is not None:
            return await self.handler(prompt, options)
        if not self.responses:
            raise AgentExecutionError("no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


class FakeWorkspace:
    """Workspace collaborator that only creates directories"""

    def __init__(self):
        self.context_calls = []
        self.worktrees = []

    def setup_context_repo(self, context_dir, working_dir_id, repo_path):
        self.context_calls.append((Path(context_dir), working_dir_id))
        Path(repo_path).mkdir(parents=True, exist_ok=True)
        return ContextRepo(repo_path=Path(repo_path), relative_path="")

    def create_hypothesis_worktree(self, repo_path, worktree_path, branch_name):
        self.worktrees.append((Path(worktree_path), branch_name))
        Path(worktree_path).mkdir(parents=True, exist_ok=True)
        return Path(worktree_path)


def hypothesis_id_from_prompt(prompt: str) -> str:
    return WORKER_PROMPT_ID.search(prompt).group(1)


def proven(hypothesis_id: str) -> dict:
    return {
        "_tag": "Proven",
        "hypothesisId": hypothesis_id,
        "findings": "Token cache returns expired entries",
        "evidence": ["E01: stale token served after expiry"],
        "rootCauses": [{"type": "algorithmic", "description": "TTL compared in seconds vs ms",
                        "location": "auth/cache.py:42"}],
        "solutionProposals": ["Normalize TTL units"],
        "nextSteps": ["Add a regression test for token expiry"],
        "confidenceLevel": {"level": "High", "justification": "Counter-experiments held"},
    }


def disproven(hypothesis_id: str) -> dict:
    return {
        "_tag": "Disproven",
        "hypothesisId": hypothesis_id,
        "reason": "Clock skew is under 10ms on every host",
        "evidence": ["E01: NTP offsets"],
        "newHypothesisIdeas": ["Check the refresh race"],
    }


@pytest.fixture
def temp_dir():
    """Create temporary directory"""
    temp = Path(tempfile.mkdtemp())
    yield temp
    shutil.rmtree(temp, ignore_errors=True)


@pytest.fixture
def working_dir(temp_dir):
    """Initialized working directory"""
    wd = WorkingDir.at(temp_dir / "run")
    wd.initialize()
    return wd


@pytest.fixture
def store(working_dir):
    """Loaded run state store"""
    s = RunStateStore(working_dir)
    s.load_or_create()
    return s


@pytest.fixture
def timeline(working_dir):
    """Loaded (empty) timeline"""
    t = Timeline(working_dir.timeline_file)
    t.load()
    return t


@pytest.fixture
def workspace():
    return FakeWorkspace()
