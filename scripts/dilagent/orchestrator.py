#!/usr/bin/env python3
"""
Phase Orchestrator

Sequences a run: setup -> reproduction -> hypothesis-generation ->
hypothesis-testing -> completed. Every phase can be invoked on its own to
resume an interrupted run and tolerates being re-run after partial
completion.

Hypothesis generation is gated on a persisted, successful reproduction;
without one it refuses to start and leaves the run phase untouched.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..shared.logging_utils import LogSection
from .agent import AgentOptions, AgentRunner, extract_json
from .config import DilagentConfig
from .errors import (
    DilagentError,
    InvalidTransitionError,
    ReproductionRequiredError,
    StateDecodeError,
    ValidationError,
)
from .models import (
    HypothesisInput,
    HypothesisRecord,
    HypothesisStatus,
    Phase,
    ReproductionNeedMoreInfo,
    ReproductionResult,
    ReproductionSuccess,
    generation_from_dict,
    reproduction_from_dict,
)
from .prompts import (
    GENERATION_SYSTEM_PROMPT,
    REPRODUCTION_SYSTEM_PROMPT,
    generation_prompt,
    instructions_markdown,
    reproduction_prompt,
)
from .state_store import RunStateStore
from .summary import SummaryAnalyzer
from .supervisor import HypothesisSupervisor
from .timeline import Timeline
from .tool_bridge import ToolBridge
from .tools import ResultTools
from .utils import (
    HYPOTHESIS_ID_PATTERN,
    hypothesis_slug,
    load_json_file,
    next_hypothesis_id,
    save_json_file,
    write_text_atomic,
)
from .working_dir import WorkingDir
from .workspace import GitWorkspace

logger = logging.getLogger(__name__)

AnswerProvider = Callable[[List[str]], str]

SCRIPT_EXTENSIONS = {
    "sh": "sh",
    "bash": "sh",
    "shell": "sh",
    "python": "py",
    "javascript": "js",
    "typescript": "ts",
    "ruby": "rb",
}


class PhaseOrchestrator:
    """
    Drives the phases of one run.

    Usage:
        orchestrator = PhaseOrchestrator(working_dir, store, timeline, agent, config)
        await orchestrator.run_all("Login fails after upgrade", Path("./service"))
    """

    def __init__(self, working_dir: WorkingDir, store: RunStateStore, timeline: Timeline,
                 agent: AgentRunner, config: Optional[DilagentConfig] = None,
                 answer_provider: Optional[AnswerProvider] = None,
                 workspace: Optional[GitWorkspace] = None):
        """
        Initialize orchestrator

        Args:
            working_dir: Working directory layout
            store: Loaded run state store
            timeline: Loaded timeline
            agent: Agent runner for every agent-driven phase
            config: Configuration (defaults if None)
            answer_provider: Asks the operator reproduction questions; without
                one, a NeedMoreInfo reproduction fails the phase
            workspace: Git/workspace collaborator (git-backed if None)
        """
        self.working_dir = working_dir
        self.store = store
        self.timeline = timeline
        self.agent = agent
        self.config = config or DilagentConfig()
        self.answer_provider = answer_provider
        self.workspace = workspace or GitWorkspace()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def context_workdir(self) -> Path:
        """Directory inside the context repo the agents start in"""
        relative = self.store.get_state().context_relative_path
        return self.working_dir.context_repo / relative if relative else self.working_dir.context_repo

    def _require_setup(self) -> None:
        if not self.store.get_state().problem_prompt:
            raise InvalidTransitionError("No problem configured for this working directory; "
                                         "run `dilagent setup` first")

    async def _record_failure(self, phase: Phase, error: BaseException) -> None:
        """Record a fatal phase error on the timeline and mark the run failed"""
        try:
            await self.timeline.record_phase(
                "phase.failed", phase, f"{phase.value} failed: {error}",
                {"errorType": type(error).__name__},
            )
            await self.timeline.record_system("system.error", phase, str(error))
            await self.store.fail_run(f"{phase.value} failed: {error}")
        except DilagentError as record_error:
            logger.error(f"Could not record failure of {phase.value}: {record_error}")

    def load_reproduction(self) -> Optional[ReproductionResult]:
        """
        Read the persisted reproduction artifact.

        Returns:
            The reproduction result, or None when there is none

        Raises:
            StateDecodeError: If the artifact exists but is corrupt
        """
        path = self.working_dir.reproduction_file
        if not path.exists():
            return None
        try:
            return reproduction_from_dict(load_json_file(path))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise StateDecodeError(f"Corrupt reproduction artifact {path}: {e}") from e

    def require_reproduction(self) -> ReproductionSuccess:
        """
        Phase gate for hypothesis generation.

        Raises:
            ReproductionRequiredError: If there is no successful reproduction
        """
        reproduction = self.load_reproduction()
        if reproduction is None:
            raise ReproductionRequiredError(
                "No reproduction found. Run `dilagent repro` first; hypotheses are only "
                "generated for a reproduced problem."
            )
        if isinstance(reproduction, ReproductionNeedMoreInfo):
            raise ReproductionRequiredError(
                "The last reproduction attempt needs more information "
                f"({len(reproduction.questions)} open questions). "
                "Run `dilagent repro` again and answer them."
            )
        return reproduction

    # ------------------------------------------------------------------
    # Phase: setup
    # ------------------------------------------------------------------

    async def setup(self, problem_prompt: str, context_dir: Path) -> None:
        """
        Prepare the working directory and context repository.

        Args:
            problem_prompt: Problem statement (immutable once set)
            context_dir: Directory holding the code to debug
        """
        if not problem_prompt or not problem_prompt.strip():
            raise ValidationError("invalid setup", ["problem prompt cannot be empty"])
        context_dir = Path(context_dir).resolve()

        with LogSection("Phase: setup", logger):
            self.working_dir.initialize()
            try:
                state = self.store.get_state()
                await self.timeline.record_phase(
                    "phase.started", Phase.SETUP, "Setting up working directory",
                    {"contextDirectory": str(context_dir)},
                )
                if not state.problem_prompt:
                    await self.timeline.record_system(
                        "system.initialized", Phase.SETUP,
                        f"Run {state.working_dir_id} initialized",
                        {"workingDirectory": str(self.working_dir.root)},
                    )

                context_repo = await asyncio.to_thread(
                    self.workspace.setup_context_repo,
                    context_dir, state.working_dir_id, self.working_dir.context_repo,
                )
                await self.timeline.record_git(
                    "git.worktree.created", Phase.SETUP,
                    f"Context repository ready at {context_repo.repo_path}",
                    {"repoPath": str(context_repo.repo_path),
                     "relativePath": context_repo.relative_path},
                )

                await self.store.set_problem(
                    problem_prompt, str(context_dir), context_repo.relative_path,
                    str(self.working_dir.root),
                )
                await self.store.advance_phase(Phase.REPRODUCTION)
                await self.timeline.record_phase("phase.completed", Phase.SETUP, "Setup complete")
            except Exception as e:
                await self._record_failure(Phase.SETUP, e)
                raise

    # ------------------------------------------------------------------
    # Phase: reproduction
    # ------------------------------------------------------------------

    async def repro(self, force: bool = False) -> ReproductionSuccess:
        """
        Have the agent reproduce the problem, asking the operator when it needs more info.

        Args:
            force: Reproduce again even if a successful reproduction exists

        Returns:
            The successful reproduction

        Raises:
            ReproductionRequiredError: If no reproduction succeeded within
                max_repro_attempts (or questions could not be answered)
        """
        self._require_setup()
        existing = self.load_reproduction()
        if isinstance(existing, ReproductionSuccess) and not force:
            logger.info("Problem already reproduced, skipping (use --force to redo)")
            await self.store.advance_phase(Phase.HYPOTHESIS_GENERATION)
            return existing

        with LogSection("Phase: reproduction", logger):
            try:
                return await self._reproduce()
            except Exception as e:
                await self._record_failure(Phase.REPRODUCTION, e)
                raise

    async def _reproduce(self) -> ReproductionSuccess:
        await self.store.advance_phase(Phase.REPRODUCTION)
        await self.timeline.record_phase("phase.started", Phase.REPRODUCTION,
                                         "Reproducing the problem")
        state = self.store.get_state()
        max_attempts = self.config.execution.max_repro_attempts
        feedback: List[str] = []

        for attempt in range(1, max_attempts + 1):
            await self.store.update_progress(current=attempt, total=max_attempts,
                                             message=f"Reproduction attempt {attempt}")
            logger.info(f"Reproduction attempt {attempt}/{max_attempts}")

            output = await self.agent.prompt(
                reproduction_prompt(state.problem_prompt, str(self.context_workdir),
                                    state.context_relative_path, feedback),
                AgentOptions(
                    use_best_model=True,
                    system_prompt=REPRODUCTION_SYSTEM_PROMPT,
                    working_dir=self.context_workdir,
                    debug_log_path=self.working_dir.agent_log("reproduction"),
                    timeout=self.config.execution.reproduction_timeout,
                ),
            )

            try:
                result = reproduction_from_dict(extract_json(output))
            except ValidationError as e:
                logger.warning(f"Invalid reproduction output: {e}")
                await self.timeline.record_system(
                    "system.warning", Phase.REPRODUCTION,
                    f"Attempt {attempt} returned invalid output", {"problems": e.problems},
                )
                feedback.append(f"Your previous response was not valid: {e}. "
                                f"Respond with JSON matching the schema only.")
                continue

            save_json_file(self.working_dir.reproduction_file, result.to_dict())

            if isinstance(result, ReproductionSuccess):
                script = self._write_repro_script(result)
                await self.timeline.record_phase(
                    "phase.completed", Phase.REPRODUCTION, "Problem reproduced",
                    {"attempts": attempt, "confidence": result.confidence,
                     "script": str(script)},
                )
                await self.store.advance_phase(Phase.HYPOTHESIS_GENERATION)
                logger.info(f"Reproduced in {attempt} attempt(s), script: {script}")
                return result

            answer = await self._ask_operator(result)
            await self.timeline.record_user(
                "user.feedback", Phase.REPRODUCTION, "Answered reproduction questions",
                {"questions": result.questions, "answer": answer},
            )
            qa = "\n".join(f"Q: {q}" for q in result.questions)
            feedback.append(f"{qa}\nA: {answer}")

        raise ReproductionRequiredError(
            f"Could not reproduce the problem in {max_attempts} attempts. "
            f"Add details to the problem description and run `dilagent repro` again."
        )

    async def _ask_operator(self, result: ReproductionNeedMoreInfo) -> str:
        if self.answer_provider is None:
            raise ReproductionRequiredError(
                "Reproduction needs more information: " + " | ".join(result.questions)
            )
        logger.info(f"Reproduction needs more information ({len(result.questions)} questions)")
        return await asyncio.to_thread(self.answer_provider, list(result.questions))

    def _write_repro_script(self, result: ReproductionSuccess) -> Path:
        language = result.script_language.lower()
        path = self.working_dir.repro_script(SCRIPT_EXTENSIONS.get(language, language))
        write_text_atomic(path, result.repro_script)
        os.chmod(path, 0o755)
        return path

    # ------------------------------------------------------------------
    # Phase: hypothesis generation
    # ------------------------------------------------------------------

    async def generate_hypotheses(self) -> List[HypothesisInput]:
        """
        Generate hypotheses, create their worktrees and register them.

        Re-running after a partial failure reuses the saved hypotheses.json
        and only creates and registers what is missing.

        Returns:
            The hypotheses of this run

        Raises:
            ReproductionRequiredError: Without a successful reproduction (the
                run phase is left unchanged)
        """
        reproduction = self.require_reproduction()
        self._require_setup()

        with LogSection("Phase: hypothesis generation", logger):
            try:
                return await self._generate(reproduction)
            except Exception as e:
                await self._record_failure(Phase.HYPOTHESIS_GENERATION, e)
                raise

    async def _generate(self, reproduction: ReproductionSuccess) -> List[HypothesisInput]:
        await self.store.advance_phase(Phase.HYPOTHESIS_GENERATION)

        hypotheses = self._load_saved_hypotheses()
        if hypotheses is None:
            await self.timeline.record_phase("phase.started", Phase.HYPOTHESIS_GENERATION,
                                             "Generating hypotheses")
            hypotheses = await self._ask_for_hypotheses(reproduction)
            save_json_file(self.working_dir.hypotheses_file,
                           {"hypotheses": [h.to_dict() for h in hypotheses]})
        else:
            logger.info(f"Reusing {len(hypotheses)} saved hypotheses")

        state = self.store.get_state()
        missing = [h for h in hypotheses if h.hypothesis_id not in state.hypotheses]
        if not missing:
            logger.info("All hypotheses already registered")
        limit = self.config.execution.max_hypotheses

        for index, hypothesis in enumerate(hypotheses):
            if hypothesis.hypothesis_id in state.hypotheses:
                continue
            await self._register(hypothesis, state.working_dir_id, state.problem_prompt,
                                 create_worktree=not limit or index < limit)
            if limit and index >= limit:
                await self.store.skip_hypothesis(hypothesis.hypothesis_id)
                await self.timeline.record_hypothesis(
                    "hypothesis.skipped", Phase.HYPOTHESIS_GENERATION, hypothesis.hypothesis_id,
                    f"Skipped {hypothesis.hypothesis_id}: beyond max_hypotheses={limit}",
                )

        await self.timeline.record_phase(
            "phase.completed", Phase.HYPOTHESIS_GENERATION,
            f"{len(hypotheses)} hypotheses ready",
            {"hypotheses": [h.hypothesis_id for h in hypotheses]},
        )
        await self.store.advance_phase(Phase.HYPOTHESIS_TESTING)
        return hypotheses

    def _load_saved_hypotheses(self) -> Optional[List[HypothesisInput]]:
        path = self.working_dir.hypotheses_file
        if not path.exists():
            return None
        try:
            data = load_json_file(path)
            return [HypothesisInput.from_dict(h) for h in data["hypotheses"]]
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValidationError) as e:
            raise StateDecodeError(f"Corrupt hypotheses artifact {path}: {e}") from e

    async def _ask_for_hypotheses(self, reproduction: ReproductionSuccess) -> List[HypothesisInput]:
        state = self.store.get_state()
        output = await self.agent.prompt(
            generation_prompt(state.problem_prompt, str(self.context_workdir), reproduction,
                              state.context_relative_path),
            AgentOptions(
                use_best_model=True,
                system_prompt=GENERATION_SYSTEM_PROMPT,
                working_dir=self.context_workdir,
                debug_log_path=self.working_dir.agent_log("hypothesis-generation"),
                timeout=self.config.execution.generation_timeout,
            ),
        )
        hypotheses = generation_from_dict(extract_json(output))
        return assign_hypothesis_ids(hypotheses, state.hypotheses.keys())

    async def _register(self, hypothesis: HypothesisInput, working_dir_id: str,
                        problem_prompt: str, create_worktree: bool = True) -> None:
        hypothesis_id = hypothesis.hypothesis_id
        slug = hypothesis_slug(hypothesis_id, hypothesis.title)
        worktree = self.working_dir.worktree_path(slug)
        branch = f"dilagent/{working_dir_id}/{slug}"
        instructions = worktree / "instructions.md"

        if create_worktree:
            await asyncio.to_thread(self.workspace.create_hypothesis_worktree,
                                    self.working_dir.context_repo, worktree, branch)
            write_text_atomic(instructions, instructions_markdown(hypothesis, problem_prompt))
            await self.timeline.record_git(
                "git.worktree.created", Phase.HYPOTHESIS_GENERATION,
                f"Worktree for {hypothesis_id} at {worktree}",
                {"hypothesisId": hypothesis_id, "branch": branch},
            )

        await self.store.register_hypothesis(
            hypothesis_id, slug, f"{hypothesis.title}\n\n{hypothesis.description}",
            worktree_path=str(worktree), branch_name=branch,
            metadata_path=str(instructions) if create_worktree else "",
        )
        await self.timeline.record_hypothesis(
            "hypothesis.generated", Phase.HYPOTHESIS_GENERATION, hypothesis_id,
            hypothesis.title, {"slug": slug},
        )

    # ------------------------------------------------------------------
    # Phase: hypothesis testing
    # ------------------------------------------------------------------

    async def run_hypotheses(self, concurrency: Optional[int] = None) -> Dict[str, HypothesisRecord]:
        """
        Test every pending (or interrupted) hypothesis in parallel.

        Args:
            concurrency: Override of execution.concurrency

        Returns:
            Final records of the hypotheses that ran
        """
        if not self.store.list_hypotheses():
            raise InvalidTransitionError("No hypotheses registered; "
                                         "run `dilagent generate-hypotheses` first")

        with LogSection("Phase: hypothesis testing", logger):
            try:
                return await self._run_hypotheses(concurrency or self.config.execution.concurrency)
            except Exception as e:
                await self._record_failure(Phase.HYPOTHESIS_TESTING, e)
                raise

    async def _run_hypotheses(self, concurrency: int) -> Dict[str, HypothesisRecord]:
        await self.store.advance_phase(Phase.HYPOTHESIS_TESTING)
        await self.timeline.record_phase("phase.started", Phase.HYPOTHESIS_TESTING,
                                         "Testing hypotheses", {"concurrency": concurrency})

        tools = ResultTools(self.store, self.timeline)
        async with ToolBridge(tools, self.config.tools.host, self.config.tools.port) as bridge:
            supervisor = HypothesisSupervisor(
                self.store, self.timeline, self.agent,
                concurrency=concurrency,
                timeout=self.config.execution.hypothesis_timeout,
                tool_env=bridge.agent_env(),
                working_dir=self.working_dir,
            )
            results = await supervisor.run_all(self.store.list_hypotheses())
        bridge.raise_if_failed()

        for record in self.store.list_hypotheses(HypothesisStatus.PENDING):
            await self.store.skip_hypothesis(record.id)
            await self.timeline.record_hypothesis(
                "hypothesis.skipped", Phase.HYPOTHESIS_TESTING, record.id,
                f"{record.id} was never claimed",
            )

        metrics = self.store.get_state().metrics
        await self.timeline.record_phase(
            "phase.completed", Phase.HYPOTHESIS_TESTING, "Hypothesis testing complete",
            metrics.to_dict(),
        )
        return results

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    async def summary(self, format: str = "markdown") -> str:
        """
        Write summary.md and summary.json; complete the run when nothing is left to test.

        Args:
            format: Format of the returned text (markdown, json, text)

        Returns:
            The report in the requested format
        """
        unfinished = [
            h for h in self.store.list_hypotheses()
            if h.status in (HypothesisStatus.PENDING, HypothesisStatus.RUNNING)
        ]
        state = self.store.get_state()
        if state.hypotheses and not unfinished and state.current_phase != Phase.COMPLETED:
            await self.store.complete_run()
            await self.timeline.record_phase("phase.completed", Phase.COMPLETED, "Run completed")

        reproduction = self.load_reproduction()
        if not isinstance(reproduction, ReproductionSuccess):
            reproduction = None

        analyzer = SummaryAnalyzer()
        report = analyzer.generate_report(self.store.get_state(),
                                          self.timeline.get_statistics(), reproduction)
        write_text_atomic(self.working_dir.summary_markdown,
                          analyzer.export_report(report, "markdown"))
        write_text_atomic(self.working_dir.summary_json, analyzer.export_report(report, "json"))
        logger.info(f"Summary written to {self.working_dir.summary_markdown}")
        return analyzer.export_report(report, format)

    # ------------------------------------------------------------------
    # Full pipeline
    # ------------------------------------------------------------------

    async def run_all(self, problem_prompt: str, context_dir: Path,
                      concurrency: Optional[int] = None) -> str:
        """
        Run every phase in order.

        Returns:
            Markdown summary
        """
        await self.setup(problem_prompt, context_dir)
        await self.repro()
        await self.generate_hypotheses()
        await self.run_hypotheses(concurrency)
        return await self.summary()


def assign_hypothesis_ids(hypotheses: List[HypothesisInput], taken) -> List[HypothesisInput]:
    """
    Give every hypothesis a unique id (H001, H002, ...).

    Ids proposed by the agent are kept when well-formed and unused; anything
    else gets the next free id. Ids already in ``taken`` are never reused.

    Args:
        hypotheses: Generated hypotheses
        taken: Ids already registered in the run

    Returns:
        The same hypotheses with ids set
    """
    used = set(taken)
    for hypothesis in hypotheses:
        proposed = hypothesis.hypothesis_id
        if not (proposed and HYPOTHESIS_ID_PATTERN.match(proposed) and proposed not in used):
            hypothesis.hypothesis_id = next_hypothesis_id(used)
        used.add(hypothesis.hypothesis_id)
    return hypotheses
