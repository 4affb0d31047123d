#!/usr/bin/env python3
"""
Tests for the hypothesis worker supervisor

Agents are scripted: each "agent run" reports its result straight through
ResultTools, the same handlers the tool bridge serves.
"""

import asyncio

import pytest

from scripts.dilagent.errors import (
    AgentExecutionError,
    InvalidTransitionError,
    StatePersistenceError,
)
from scripts.dilagent.models import HypothesisStatus
from scripts.dilagent.supervisor import ERROR_EXPERIMENT, HypothesisSupervisor
from scripts.dilagent.tools import ResultTools

from conftest import ScriptedAgent, disproven, hypothesis_id_from_prompt, proven


async def register(store, count: int):
    ids = [f"H{i:03d}" for i in range(1, count + 1)]
    for hid in ids:
        await store.register_hypothesis(hid, f"{hid.lower()}-idea", f"Idea {hid}")
    return ids


def reporting_agent(store, timeline, crash=(), sleep=None, proven_ids=("H001",)):
    """Agent that reports a result for its hypothesis, or crashes/sleeps on request"""
    tools = ResultTools(store, timeline)
    sleep = sleep or {}

    async def handler(prompt, options):
        hid = hypothesis_id_from_prompt(prompt)
        if hid in sleep:
            await asyncio.sleep(sleep[hid])
        if hid in crash:
            raise AgentExecutionError(f"agent for {hid} crashed", exit_code=1)
        result = proven(hid) if hid in proven_ids else disproven(hid)
        response = await tools.call("hypothesis_set_result",
                                    {"hypothesisId": hid, "result": result})
        assert response["ok"], response
        return "done"

    return ScriptedAgent(handler=handler)


class TestFailureIsolation:
    """One failing worker never affects the others"""

    @pytest.mark.asyncio
    async def test_crash_becomes_inconclusive(self, store, timeline):
        ids = await register(store, 5)
        agent = reporting_agent(store, timeline, crash=("H003",))
        supervisor = HypothesisSupervisor(store, timeline, agent, concurrency=3, timeout=5)

        results = await supervisor.run_all(store.list_hypotheses())

        assert sorted(results) == ids
        assert all(r.status == HypothesisStatus.COMPLETED for r in results.values())

        failed = results["H003"].result
        assert failed.TAG == "Inconclusive"
        assert failed.attempted_experiments == [ERROR_EXPERIMENT]
        assert failed.intractable_reason.startswith("Error: ")
        assert "crashed" in failed.intractable_reason

        for hid in ("H002", "H004", "H005"):
            assert results[hid].result.TAG == "Disproven"
        assert results["H001"].result.TAG == "Proven"

        metrics = store.get_state().metrics
        assert metrics.hypotheses_completed == 5
        assert metrics.hypotheses_successful == 1
        assert metrics.hypotheses_failed == 4

        failed_events = [e for e in timeline.get_events() if e.event == "hypothesis.failed"]
        assert [e.hypothesis_id for e in failed_events] == ["H003"]

    @pytest.mark.asyncio
    async def test_timeout_becomes_inconclusive(self, store, timeline):
        await register(store, 3)
        agent = reporting_agent(store, timeline, sleep={"H002": 5})
        supervisor = HypothesisSupervisor(store, timeline, agent, concurrency=2, timeout=0.2)

        results = await supervisor.run_all(store.list_hypotheses())

        assert results["H002"].result.TAG == "Inconclusive"
        assert "timed out" in results["H002"].result.intractable_reason
        assert results["H003"].result.TAG == "Disproven"

        metrics = store.get_state().metrics
        assert metrics.hypotheses_completed == 3
        assert metrics.hypotheses_failed >= 1

    @pytest.mark.asyncio
    async def test_finishing_without_result(self, store, timeline):
        await register(store, 1)

        async def silent(prompt, options):
            return "I looked around and found nothing"

        supervisor = HypothesisSupervisor(store, timeline, ScriptedAgent(handler=silent))
        results = await supervisor.run_all(store.list_hypotheses())

        result = results["H001"].result
        assert result.TAG == "Inconclusive"
        assert "without reporting a result" in result.intractable_reason

    @pytest.mark.asyncio
    async def test_result_reported_before_crash_is_kept(self, store, timeline):
        await register(store, 1)
        tools = ResultTools(store, timeline)

        async def report_then_crash(prompt, options):
            await tools.call("hypothesis_set_result",
                             {"hypothesisId": "H001", "result": proven("H001")})
            raise AgentExecutionError("exit code 1 after reporting", exit_code=1)

        supervisor = HypothesisSupervisor(store, timeline, ScriptedAgent(handler=report_then_crash))
        results = await supervisor.run_all(store.list_hypotheses())

        assert results["H001"].result.TAG == "Proven"
        assert not [e for e in timeline.get_events() if e.event == "hypothesis.failed"]

    @pytest.mark.asyncio
    async def test_queued_hypothesis_completed_by_another_agent(self, store, timeline):
        await register(store, 2)
        tools = ResultTools(store, timeline)

        async def reports_for_both(prompt, options):
            hid = hypothesis_id_from_prompt(prompt)
            for target in ("H001", "H002"):
                await tools.call("hypothesis_set_result",
                                 {"hypothesisId": target, "result": disproven(target)})
            return f"{hid} done"

        agent = ScriptedAgent(handler=reports_for_both)
        supervisor = HypothesisSupervisor(store, timeline, agent, concurrency=1)

        results = await supervisor.run_all(store.list_hypotheses())

        assert len(agent.calls) == 1
        assert results["H002"].status == HypothesisStatus.COMPLETED
        assert results["H002"].result.TAG == "Disproven"
        assert not [e for e in timeline.get_events() if e.event == "hypothesis.failed"]

    @pytest.mark.asyncio
    async def test_claim_error_is_contained(self, store, timeline, monkeypatch):
        await register(store, 2)
        real_mark_running = store.mark_running

        async def flaky_claim(hypothesis_id):
            if hypothesis_id == "H001":
                raise InvalidTransitionError(f"{hypothesis_id}: cannot be claimed")
            return await real_mark_running(hypothesis_id)

        monkeypatch.setattr(store, "mark_running", flaky_claim)
        agent = reporting_agent(store, timeline)

        results = await HypothesisSupervisor(store, timeline, agent).run_all(
            store.list_hypotheses()
        )

        assert results["H001"].result.TAG == "Inconclusive"
        assert "cannot be claimed" in results["H001"].result.intractable_reason
        assert results["H002"].result.TAG == "Disproven"


class TestConcurrency:
    """Bounded parallelism"""

    @pytest.mark.asyncio
    async def test_never_exceeds_limit(self, store, timeline):
        await register(store, 6)
        tools = ResultTools(store, timeline)
        active = 0
        peak = 0

        async def tracked(prompt, options):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.05)
            active -= 1
            hid = hypothesis_id_from_prompt(prompt)
            await tools.call("hypothesis_set_result",
                             {"hypothesisId": hid, "result": disproven(hid)})
            return "done"

        supervisor = HypothesisSupervisor(store, timeline, ScriptedAgent(handler=tracked),
                                          concurrency=2)
        await supervisor.run_all(store.list_hypotheses())

        assert peak == 2
        assert store.get_state().metrics.hypotheses_completed == 6

    @pytest.mark.asyncio
    async def test_workers_get_bridge_env_and_worktree(self, store, timeline, temp_dir):
        await store.register_hypothesis("H001", "h001-idea", worktree_path=str(temp_dir))
        agent = reporting_agent(store, timeline)
        supervisor = HypothesisSupervisor(store, timeline, agent,
                                          tool_env={"DILAGENT_BRIDGE_PORT": "4242"})

        await supervisor.run_all(store.list_hypotheses())

        prompt, options = agent.calls[0]
        assert "H001" in prompt
        assert options.env == {"DILAGENT_BRIDGE_PORT": "4242"}
        assert options.working_dir == temp_dir
        assert "hypothesis_set_result" in options.system_prompt

    @pytest.mark.asyncio
    async def test_terminal_hypotheses_are_not_rerun(self, store, timeline):
        await register(store, 2)
        await store.skip_hypothesis("H002")
        agent = reporting_agent(store, timeline)

        results = await HypothesisSupervisor(store, timeline, agent).run_all(
            store.list_hypotheses()
        )

        assert list(results) == ["H001"]
        assert len(agent.calls) == 1

    def test_rejects_zero_concurrency(self, store, timeline):
        with pytest.raises(ValueError):
            HypothesisSupervisor(store, timeline, ScriptedAgent(), concurrency=0)


class TestFatalErrors:
    """Persistence failures are not worker failures"""

    @pytest.mark.asyncio
    async def test_state_persistence_error_propagates(self, store, timeline, monkeypatch):
        await register(store, 2)

        async def breaks_the_disk(prompt, options):
            def failing_persist(state):
                raise StatePersistenceError("disk full")
            monkeypatch.setattr(store, "_persist", failing_persist)
            raise AgentExecutionError("agent crashed")

        supervisor = HypothesisSupervisor(store, timeline, ScriptedAgent(handler=breaks_the_disk),
                                          concurrency=1)

        with pytest.raises(StatePersistenceError):
            await supervisor.run_all(store.list_hypotheses())


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
