#!/usr/bin/env python3
"""
Exception hierarchy for dilagent

Run-level errors (state, timeline, phase gates) propagate to the CLI and end
the run. Per-hypothesis errors are caught by the supervisor and turned into
that hypothesis's terminal state.
"""

from typing import List, Optional


class DilagentError(Exception):
    """Base class for all dilagent errors"""
    pass


class StatePersistenceError(DilagentError):
    """Raised when state or timeline could not be written to disk"""
    pass


class StateDecodeError(DilagentError):
    """Raised when a persisted state or timeline file cannot be decoded"""
    pass


class DuplicateHypothesisError(DilagentError):
    """Raised when registering a hypothesis id that already exists"""
    pass


class HypothesisNotFoundError(DilagentError):
    """Raised when referring to a hypothesis id the run does not know"""
    pass


class InvalidTransitionError(DilagentError):
    """Raised when a status or phase change violates the lifecycle"""
    pass


class ReproductionRequiredError(DilagentError):
    """Raised when hypothesis generation runs without a successful reproduction"""
    pass


class AgentExecutionError(DilagentError):
    """Raised when an agent subprocess fails or returns unusable output"""

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class ValidationError(DilagentError):
    """Raised when externally supplied data does not match the expected schema"""

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        self.problems = list(problems or [])
        if self.problems:
            message = f"{message}: " + "; ".join(self.problems)
        super().__init__(message)
