#!/usr/bin/env python3
"""
Hypothesis Worker Supervisor

Runs one agent per hypothesis with bounded concurrency. Each worker claims
its hypothesis, drives the agent in the hypothesis worktree and waits for it
to report a result through the tool bridge. Worker failures (agent crash,
timeout, finishing without a result) are converted into an Inconclusive
result for that hypothesis only; the other workers keep going.

State store and timeline persistence errors are not worker failures: they
propagate out of run_all.
"""

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional

from ..shared.logging_utils import ProgressLogger, log_exception
from .agent import AgentOptions, AgentRunner
from .errors import (
    AgentExecutionError,
    InvalidTransitionError,
    StateDecodeError,
    StatePersistenceError,
)
from .models import HypothesisRecord, HypothesisStatus, InconclusiveResult, Phase
from .prompts import worker_prompt, worker_system_prompt
from .state_store import RunStateStore
from .timeline import Timeline
from .working_dir import WorkingDir

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 4
DEFAULT_TIMEOUT = 30 * 60  # seconds

ERROR_EXPERIMENT = "Hypothesis testing failed due to execution error"

FATAL_ERRORS = (StatePersistenceError, StateDecodeError)


def error_result(hypothesis_id: str, error: BaseException) -> InconclusiveResult:
    """Inconclusive result standing in for a worker that could not finish"""
    return InconclusiveResult(
        hypothesis_id=hypothesis_id,
        attempted_experiments=[ERROR_EXPERIMENT],
        intractable_reason=f"Error: {error}",
    )


class HypothesisSupervisor:
    """Executes hypothesis workers in parallel with failure isolation"""

    def __init__(self, store: RunStateStore, timeline: Timeline, agent: AgentRunner,
                 concurrency: int = DEFAULT_CONCURRENCY,
                 timeout: float = DEFAULT_TIMEOUT,
                 tool_env: Optional[Dict[str, str]] = None,
                 working_dir: Optional[WorkingDir] = None):
        """
        Initialize supervisor

        Args:
            store: Run state store shared with the tool bridge
            timeline: Run timeline
            agent: Agent runner used for every worker
            concurrency: Maximum simultaneously running workers
            timeout: Seconds each worker's agent may run
            tool_env: Environment telling agents where the tool bridge is
            working_dir: Working directory (for per-agent debug logs)
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")

        self.store = store
        self.timeline = timeline
        self.agent = agent
        self.concurrency = concurrency
        self.timeout = timeout
        self.tool_env = dict(tool_env or {})
        self.working_dir = working_dir
        self._progress: Optional[ProgressLogger] = None

    async def run_all(self, hypotheses: List[HypothesisRecord]) -> Dict[str, HypothesisRecord]:
        """
        Run a worker for every pending or interrupted (running) hypothesis.

        At most ``concurrency`` workers run at once; the rest wait for a slot.

        Args:
            hypotheses: Records to run (terminal ones are ignored)

        Returns:
            Final record of every hypothesis that was run, by id

        Raises:
            StatePersistenceError: If state or timeline could not be persisted
        """
        runnable = []
        for record in hypotheses:
            if record.status in (HypothesisStatus.PENDING, HypothesisStatus.RUNNING):
                runnable.append(record)
            else:
                logger.info(f"Skipping {record.id}: already {record.status.value}")

        if not runnable:
            logger.info("No hypotheses to run")
            return {}

        logger.info(
            f"Starting {len(runnable)} hypothesis workers (concurrency={self.concurrency}, "
            f"timeout={self.timeout}s)"
        )
        semaphore = asyncio.Semaphore(self.concurrency)
        self._progress = ProgressLogger("Hypothesis testing", len(runnable), logger)

        async def bounded(record: HypothesisRecord) -> None:
            async with semaphore:
                await self._execute(record)

        outcomes = await asyncio.gather(
            *(bounded(record) for record in runnable), return_exceptions=True
        )

        # Workers only let fatal errors out; surface the first one
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        self._progress.complete()
        return {record.id: self.store.get_hypothesis(record.id) for record in runnable}

    async def _execute(self, record: HypothesisRecord) -> None:
        """Run one worker from claim to terminal state"""
        hypothesis_id = record.id

        # Another agent may have reported for this hypothesis while it was queued
        current = self.store.get_hypothesis(hypothesis_id)
        if current.status not in (HypothesisStatus.PENDING, HypothesisStatus.RUNNING):
            logger.info(f"Not starting {hypothesis_id}: already {current.status.value}")
            self._progress.increment(f"{hypothesis_id} skipped")
            return

        try:
            await self.store.mark_running(hypothesis_id)
            await self.timeline.record_hypothesis(
                "hypothesis.started", Phase.HYPOTHESIS_TESTING, hypothesis_id,
                f"Worker started for {hypothesis_id}",
                {"worktreePath": record.worktree_path},
            )

            await asyncio.wait_for(self._run_agent(record), timeout=self.timeout)

            final = self.store.get_hypothesis(hypothesis_id)
            if final.status != HypothesisStatus.COMPLETED:
                raise AgentExecutionError(
                    f"Agent finished without reporting a result for {hypothesis_id}"
                )
        except FATAL_ERRORS:
            raise
        except asyncio.TimeoutError:
            error = AgentExecutionError(f"Agent timed out after {self.timeout}s")
            log_exception(logger, error, f"hypothesis {hypothesis_id}")
            await self._record_failure(hypothesis_id, error)
        except Exception as e:
            log_exception(logger, e, f"hypothesis {hypothesis_id}")
            await self._record_failure(hypothesis_id, e)
        else:
            final = self.store.get_hypothesis(hypothesis_id)
            logger.info(f"{hypothesis_id} completed: {final.result.TAG}")

        self._progress.increment(f"{hypothesis_id} done")

    async def _run_agent(self, record: HypothesisRecord) -> str:
        options = AgentOptions(
            system_prompt=worker_system_prompt(record.id),
            working_dir=Path(record.worktree_path) if record.worktree_path else None,
            env=self.tool_env,
            debug_log_path=self.working_dir.agent_log(record.id) if self.working_dir else None,
        )
        instructions = record.metadata_path or "instructions.md"
        return await self.agent.prompt(worker_prompt(record.id, instructions), options)

    async def _record_failure(self, hypothesis_id: str, error: BaseException) -> None:
        """Complete a failed worker's hypothesis with a synthesized Inconclusive result"""
        result = error_result(hypothesis_id, error)
        try:
            await self.store.complete_hypothesis(hypothesis_id, result)
        except InvalidTransitionError:
            # The agent reported a result before failing; keep it
            logger.warning(f"{hypothesis_id} already has a result, keeping it")
            return

        await self.timeline.record_hypothesis(
            "hypothesis.failed", Phase.HYPOTHESIS_TESTING, hypothesis_id,
            f"{hypothesis_id} failed: {error}",
            {"error": str(error), "errorType": type(error).__name__,
             "result": InconclusiveResult.TAG},
        )
