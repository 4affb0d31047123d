"""
dilagent - Root-Cause Debugging with Competing Hypotheses

Main components:
  - Timeline: Append-only event log of a run
  - RunStateStore: Authoritative, crash-recoverable run state
  - HypothesisSupervisor: Parallel hypothesis workers with failure isolation
  - PhaseOrchestrator: setup -> reproduction -> generation -> testing -> summary
  - ResultTools / ToolBridge: Result reporting surface for agents
  - SummaryAnalyzer: Summary report
"""

from .config import DilagentConfig, ConfigValidationError, load_config
from .errors import (
    DilagentError,
    StatePersistenceError,
    StateDecodeError,
    DuplicateHypothesisError,
    HypothesisNotFoundError,
    InvalidTransitionError,
    ReproductionRequiredError,
    AgentExecutionError,
    ValidationError
)
from .models import (
    Phase,
    HypothesisStatus,
    HypothesisRecord,
    RunState,
    ProvenResult,
    DisprovenResult,
    InconclusiveResult
)
from .timeline import Timeline
from .state_store import RunStateStore
from .agent import AgentRunner, ClaudeAgentRunner, AgentOptions
from .tools import ResultTools
from .tool_bridge import ToolBridge
from .supervisor import HypothesisSupervisor
from .orchestrator import PhaseOrchestrator
from .summary import SummaryAnalyzer
from .working_dir import WorkingDir

__version__ = "0.1.0"
__all__ = [
    "DilagentConfig",
    "ConfigValidationError",
    "load_config",
    "DilagentError",
    "StatePersistenceError",
    "StateDecodeError",
    "DuplicateHypothesisError",
    "HypothesisNotFoundError",
    "InvalidTransitionError",
    "ReproductionRequiredError",
    "AgentExecutionError",
    "ValidationError",
    "Phase",
    "HypothesisStatus",
    "HypothesisRecord",
    "RunState",
    "ProvenResult",
    "DisprovenResult",
    "InconclusiveResult",
    "Timeline",
    "RunStateStore",
    "AgentRunner",
    "ClaudeAgentRunner",
    "AgentOptions",
    "ResultTools",
    "ToolBridge",
    "HypothesisSupervisor",
    "PhaseOrchestrator",
    "SummaryAnalyzer",
    "WorkingDir"
]
