#!/usr/bin/env python3
"""
Tests for the phase orchestrator

The agent is scripted and the git workspace is faked; the tool bridge,
supervisor, store and timeline are real.
"""

import json
import os

import pytest

from scripts.dilagent.config import DilagentConfig
from scripts.dilagent.errors import InvalidTransitionError, ReproductionRequiredError, ValidationError
from scripts.dilagent.models import HypothesisInput, HypothesisStatus, Phase
from scripts.dilagent.orchestrator import PhaseOrchestrator, assign_hypothesis_ids
from scripts.dilagent.tool_bridge import PORT_ENV, call_tool

from conftest import ScriptedAgent, disproven, hypothesis_id_from_prompt, proven

PROBLEM = "Login fails with 401 after the token refresh"

REPRO_SUCCESS = json.dumps({
    "_tag": "Success",
    "reproScript": "#!/bin/sh\ncurl -sf localhost:8080/login\n",
    "scriptLanguage": "bash",
    "observedBehavior": "401 Unauthorized",
    "expectedBehavior": "200 OK",
    "confidence": 0.8,
})

NEED_MORE_INFO = json.dumps({
    "_tag": "NeedMoreInfo",
    "questions": ["Which identity provider is configured?"],
})

GENERATION = "Here are my hypotheses:\n```json\n" + json.dumps({
    "_tag": "Success",
    "hypotheses": [
        {"title": "Stale token cache", "description": "TTL compared in the wrong unit"},
        {"title": "Clock skew", "description": "Hosts disagree on time"},
        {"title": "Refresh race", "description": "Two refreshes overwrite each other"},
    ],
}) + "\n```"


def make_orchestrator(working_dir, store, timeline, workspace, agent, **kwargs):
    return PhaseOrchestrator(working_dir, store, timeline, agent,
                             workspace=workspace, **kwargs)


def event_names(timeline):
    return [e.event for e in timeline.get_events()]


@pytest.fixture
def context_dir(temp_dir):
    path = temp_dir / "service"
    path.mkdir()
    return path


class TestSetup:
    """Working directory and context repository preparation"""

    @pytest.mark.asyncio
    async def test_setup(self, working_dir, store, timeline, workspace, context_dir):
        orchestrator = make_orchestrator(working_dir, store, timeline, workspace, ScriptedAgent())

        await orchestrator.setup(PROBLEM, context_dir)

        state = store.get_state()
        assert state.problem_prompt == PROBLEM
        assert state.context_directory == str(context_dir.resolve())
        assert state.current_phase == Phase.REPRODUCTION
        assert workspace.context_calls == [(context_dir.resolve(), state.working_dir_id)]
        assert event_names(timeline) == [
            "phase.started", "system.initialized", "git.worktree.created", "phase.completed",
        ]

    @pytest.mark.asyncio
    async def test_rejects_empty_prompt(self, working_dir, store, timeline, workspace,
                                        context_dir):
        orchestrator = make_orchestrator(working_dir, store, timeline, workspace, ScriptedAgent())
        with pytest.raises(ValidationError):
            await orchestrator.setup("   ", context_dir)
        assert workspace.context_calls == []


class TestReproduction:
    """Reproduction loop and the generation gate"""

    @pytest.mark.asyncio
    async def test_generation_requires_reproduction(self, working_dir, store, timeline,
                                                    workspace, context_dir):
        agent = ScriptedAgent()
        orchestrator = make_orchestrator(working_dir, store, timeline, workspace, agent)
        await orchestrator.setup(PROBLEM, context_dir)
        events_before = len(timeline)

        with pytest.raises(ReproductionRequiredError):
            await orchestrator.generate_hypotheses()

        assert store.get_state().current_phase == Phase.REPRODUCTION
        assert len(timeline) == events_before
        assert agent.calls == []

    @pytest.mark.asyncio
    async def test_success_writes_script(self, working_dir, store, timeline, workspace,
                                         context_dir):
        agent = ScriptedAgent([REPRO_SUCCESS])
        orchestrator = make_orchestrator(working_dir, store, timeline, workspace, agent)
        await orchestrator.setup(PROBLEM, context_dir)

        result = await orchestrator.repro()

        assert result.observed_behavior == "401 Unauthorized"
        script = working_dir.repro_script("sh")
        assert script.read_text().startswith("#!/bin/sh")
        assert os.access(script, os.X_OK)
        assert store.get_state().current_phase == Phase.HYPOTHESIS_GENERATION
        assert orchestrator.require_reproduction() == result

        prompt, options = agent.calls[0]
        assert PROBLEM in prompt
        assert options.use_best_model

    @pytest.mark.asyncio
    async def test_existing_success_is_reused(self, working_dir, store, timeline, workspace,
                                              context_dir):
        agent = ScriptedAgent([REPRO_SUCCESS])
        orchestrator = make_orchestrator(working_dir, store, timeline, workspace, agent)
        await orchestrator.setup(PROBLEM, context_dir)
        await orchestrator.repro()

        await orchestrator.repro()

        assert len(agent.calls) == 1

    @pytest.mark.asyncio
    async def test_invalid_output_is_retried(self, working_dir, store, timeline, workspace,
                                             context_dir):
        agent = ScriptedAgent(["I could not figure out a JSON answer", REPRO_SUCCESS])
        orchestrator = make_orchestrator(working_dir, store, timeline, workspace, agent)
        await orchestrator.setup(PROBLEM, context_dir)

        await orchestrator.repro()

        assert len(agent.calls) == 2
        assert "system.warning" in event_names(timeline)
        assert "not valid" in agent.calls[1][0]

    @pytest.mark.asyncio
    async def test_questions_are_answered(self, working_dir, store, timeline, workspace,
                                          context_dir):
        asked = []

        def answer(questions):
            asked.extend(questions)
            return "Keycloak 22"

        agent = ScriptedAgent([NEED_MORE_INFO, REPRO_SUCCESS])
        orchestrator = make_orchestrator(working_dir, store, timeline, workspace, agent,
                                         answer_provider=answer)
        await orchestrator.setup(PROBLEM, context_dir)

        await orchestrator.repro()

        assert asked == ["Which identity provider is configured?"]
        assert "user.feedback" in event_names(timeline)
        assert "Keycloak 22" in agent.calls[1][0]

    @pytest.mark.asyncio
    async def test_questions_without_operator_fail(self, working_dir, store, timeline,
                                                   workspace, context_dir):
        agent = ScriptedAgent([NEED_MORE_INFO])
        orchestrator = make_orchestrator(working_dir, store, timeline, workspace, agent)
        await orchestrator.setup(PROBLEM, context_dir)

        with pytest.raises(ReproductionRequiredError):
            await orchestrator.repro()

        assert store.get_state().current_phase == Phase.FAILED
        assert "phase.failed" in event_names(timeline)
        with pytest.raises(ReproductionRequiredError) as exc_info:
            orchestrator.require_reproduction()
        assert "open questions" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, working_dir, store, timeline, workspace,
                                               context_dir):
        config = DilagentConfig()
        config.execution.max_repro_attempts = 2
        agent = ScriptedAgent(["nope", "still nope"])
        orchestrator = make_orchestrator(working_dir, store, timeline, workspace, agent,
                                         config=config)
        await orchestrator.setup(PROBLEM, context_dir)

        with pytest.raises(ReproductionRequiredError):
            await orchestrator.repro()
        assert len(agent.calls) == 2

    @pytest.mark.asyncio
    async def test_repro_requires_setup(self, working_dir, store, timeline, workspace):
        orchestrator = make_orchestrator(working_dir, store, timeline, workspace, ScriptedAgent())
        with pytest.raises(InvalidTransitionError):
            await orchestrator.repro()


class TestGeneration:
    """Hypothesis generation and registration"""

    async def reproduced(self, working_dir, store, timeline, workspace, context_dir,
                         responses, **kwargs):
        agent = ScriptedAgent([REPRO_SUCCESS] + responses)
        orchestrator = make_orchestrator(working_dir, store, timeline, workspace, agent, **kwargs)
        await orchestrator.setup(PROBLEM, context_dir)
        await orchestrator.repro()
        return orchestrator, agent

    @pytest.mark.asyncio
    async def test_registers_hypotheses(self, working_dir, store, timeline, workspace,
                                        context_dir):
        orchestrator, _ = await self.reproduced(working_dir, store, timeline, workspace,
                                                context_dir, [GENERATION])

        hypotheses = await orchestrator.generate_hypotheses()

        assert [h.hypothesis_id for h in hypotheses] == ["H001", "H002", "H003"]
        state = store.get_state()
        assert state.current_phase == Phase.HYPOTHESIS_TESTING
        assert state.metrics.hypotheses_generated == 3

        record = store.get_hypothesis("H002")
        assert record.slug == "h002-clock-skew"
        assert record.status == HypothesisStatus.PENDING
        assert record.branch_name == f"dilagent/{state.working_dir_id}/h002-clock-skew"
        instructions = working_dir.worktree_path("h002-clock-skew") / "instructions.md"
        assert "Hosts disagree on time" in instructions.read_text()
        assert len(workspace.worktrees) == 3

        saved = json.loads(working_dir.hypotheses_file.read_text())
        assert [h["hypothesisId"] for h in saved["hypotheses"]] == ["H001", "H002", "H003"]

    @pytest.mark.asyncio
    async def test_rerun_reuses_saved_hypotheses(self, working_dir, store, timeline, workspace,
                                                 context_dir):
        orchestrator, agent = await self.reproduced(working_dir, store, timeline, workspace,
                                                    context_dir, [GENERATION])
        await orchestrator.generate_hypotheses()
        calls = len(agent.calls)

        again = await orchestrator.generate_hypotheses()

        assert len(agent.calls) == calls
        assert len(again) == 3
        assert len(workspace.worktrees) == 3
        generated = [e for e in timeline.get_events() if e.event == "hypothesis.generated"]
        assert len(generated) == 3

    @pytest.mark.asyncio
    async def test_extra_hypotheses_are_skipped(self, working_dir, store, timeline, workspace,
                                                context_dir):
        config = DilagentConfig()
        config.execution.max_hypotheses = 2
        orchestrator, _ = await self.reproduced(working_dir, store, timeline, workspace,
                                                context_dir, [GENERATION], config=config)

        await orchestrator.generate_hypotheses()

        assert store.get_hypothesis("H003").status == HypothesisStatus.SKIPPED
        assert len(workspace.worktrees) == 2
        assert store.get_state().metrics.hypotheses_skipped == 1

    @pytest.mark.asyncio
    async def test_generation_error_fails_phase(self, working_dir, store, timeline, workspace,
                                                context_dir):
        error = json.dumps({"_tag": "Error", "error": "repository is empty"})
        orchestrator, _ = await self.reproduced(working_dir, store, timeline, workspace,
                                                context_dir, [error])

        with pytest.raises(ValidationError):
            await orchestrator.generate_hypotheses()

        assert store.get_state().current_phase == Phase.FAILED
        assert store.list_hypotheses() == []

    def test_assign_ids_keeps_valid_proposals(self):
        hypotheses = [
            HypothesisInput("a", "a", hypothesis_id="H005"),
            HypothesisInput("b", "b", hypothesis_id="H001"),
            HypothesisInput("c", "c", hypothesis_id="not-an-id"),
            HypothesisInput("d", "d"),
        ]

        assigned = assign_hypothesis_ids(hypotheses, ["H001"])

        ids = [h.hypothesis_id for h in assigned]
        assert ids[0] == "H005"
        assert "H001" not in ids
        assert len(set(ids)) == 4


class TestFullRun:
    """Hypothesis testing through the real tool bridge, then the summary"""

    @pytest.mark.asyncio
    async def test_run_and_summarize(self, working_dir, store, timeline, workspace, context_dir):
        responses = [REPRO_SUCCESS, GENERATION]

        async def agent_handler(prompt, options):
            if "Test hypothesis" not in prompt:
                return responses.pop(0)
            hid = hypothesis_id_from_prompt(prompt)
            result = proven(hid) if hid == "H002" else disproven(hid)
            response = await call_tool("127.0.0.1", int(options.env[PORT_ENV]),
                                       "hypothesis_set_result",
                                       {"hypothesisId": hid, "result": result})
            assert response["ok"], response
            return "reported"

        orchestrator = make_orchestrator(working_dir, store, timeline, workspace,
                                         ScriptedAgent(handler=agent_handler))

        markdown = await orchestrator.run_all(PROBLEM, context_dir, concurrency=2)

        state = store.get_state()
        assert state.current_phase == Phase.COMPLETED
        assert state.metrics.hypotheses_completed == 3
        assert state.metrics.hypotheses_successful == 1
        assert state.metrics.end_time is not None

        assert "Implement the fix for H002" in markdown
        assert working_dir.summary_markdown.read_text() == markdown
        summary = json.loads(working_dir.summary_json.read_text())
        assert summary["results"]["proven"] == ["H002"]

    @pytest.mark.asyncio
    async def test_run_requires_hypotheses(self, working_dir, store, timeline, workspace):
        orchestrator = make_orchestrator(working_dir, store, timeline, workspace, ScriptedAgent())
        with pytest.raises(InvalidTransitionError):
            await orchestrator.run_hypotheses()

    @pytest.mark.asyncio
    async def test_summary_does_not_complete_unfinished_run(self, working_dir, store, timeline,
                                                            workspace):
        await store.register_hypothesis("H001", "h001-a")
        orchestrator = make_orchestrator(working_dir, store, timeline, workspace, ScriptedAgent())

        text = await orchestrator.summary("text")

        assert "Unfinished:    1" in text
        assert store.get_state().current_phase != Phase.COMPLETED
        assert working_dir.summary_json.exists()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
