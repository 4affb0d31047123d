#!/usr/bin/env python3
"""
Tests for the summary report
"""

import json

import pytest

from scripts.dilagent.models import InconclusiveResult, result_from_dict
from scripts.dilagent.summary import SummaryAnalyzer

from conftest import disproven, proven


async def finish(store, hypothesis_id: str, result) -> None:
    await store.register_hypothesis(hypothesis_id, f"{hypothesis_id.lower()}-idea",
                                    f"Idea {hypothesis_id}")
    await store.mark_running(hypothesis_id)
    await store.complete_hypothesis(hypothesis_id, result)


@pytest.fixture
def analyzer():
    return SummaryAnalyzer()


class TestNextAction:
    """Recommended action decision tree"""

    @pytest.mark.asyncio
    async def test_single_proven(self, store, timeline, analyzer):
        await finish(store, "H001", result_from_dict(proven("H001")))
        await finish(store, "H002", result_from_dict(disproven("H002")))

        report = analyzer.generate_report(store.get_state(), timeline.get_statistics())

        assert report.recommended_action.startswith("Implement the fix for H001")
        assert report.next_steps == ["Add a regression test for token expiry"]

    @pytest.mark.asyncio
    async def test_several_proven(self, store, timeline, analyzer):
        await finish(store, "H001", result_from_dict(proven("H001")))
        await finish(store, "H002", result_from_dict(proven("H002")))

        report = analyzer.generate_report(store.get_state(), timeline.get_statistics())

        assert "interact" in report.recommended_action

    @pytest.mark.asyncio
    async def test_inconclusive(self, store, timeline, analyzer):
        await finish(store, "H001", InconclusiveResult("H001", intractable_reason="needs prod"))
        await finish(store, "H002", result_from_dict(disproven("H002")))

        report = analyzer.generate_report(store.get_state(), timeline.get_statistics())

        assert report.recommended_action.startswith("Investigate inconclusive")
        assert "Investigate 1 inconclusive result(s)" in report.next_steps
        assert "  Check the refresh race" in report.next_steps

    @pytest.mark.asyncio
    async def test_all_disproven(self, store, timeline, analyzer):
        await finish(store, "H001", result_from_dict(disproven("H001")))

        report = analyzer.generate_report(store.get_state(), timeline.get_statistics())

        assert report.recommended_action.startswith("Generate new hypotheses")

    @pytest.mark.asyncio
    async def test_unfinished_hypotheses(self, store, timeline, analyzer):
        await store.register_hypothesis("H001", "h001-idea")

        report = analyzer.generate_report(store.get_state(), timeline.get_statistics())

        assert [r.id for r in report.unfinished] == ["H001"]
        assert any("run-hypotheses" in step for step in report.next_steps)


class TestExport:
    """Markdown, json and text renderings"""

    @pytest.mark.asyncio
    async def test_markdown(self, store, timeline, analyzer):
        await finish(store, "H001", result_from_dict(proven("H001")))
        await finish(store, "H002", result_from_dict(disproven("H002")))
        await store.set_problem("Login fails", "/srv/app", "", "/tmp/run")

        text = analyzer.export_report(
            analyzer.generate_report(store.get_state(), timeline.get_statistics()), "markdown"
        )

        assert text.startswith("# Debugging Session Summary")
        assert "## Problem\nLogin fails" in text
        assert "- **✅ Proven**: 1" in text
        assert "### ✅ H001: h001-idea" in text
        assert "### ❌ H002: h002-idea" in text
        assert "[algorithmic] TTL compared in seconds vs ms (auth/cache.py:42)" in text
        assert "No successful reproduction recorded" in text

    @pytest.mark.asyncio
    async def test_json(self, store, timeline, analyzer):
        await finish(store, "H001", result_from_dict(disproven("H001")))

        data = json.loads(analyzer.export_report(
            analyzer.generate_report(store.get_state(), timeline.get_statistics()), "json"
        ))

        assert data["results"]["disproven"] == ["H001"]
        assert data["hypotheses"][0]["result"]["_tag"] == "Disproven"
        assert data["metrics"]["hypothesesCompleted"] == 1
        assert data["reproduction"] is None

    @pytest.mark.asyncio
    async def test_text(self, store, timeline, analyzer):
        await finish(store, "H001", result_from_dict(proven("H001")))

        text = analyzer.export_report(
            analyzer.generate_report(store.get_state(), timeline.get_statistics()), "text"
        )

        assert "DILAGENT SUMMARY" in text
        assert "Proven:        1" in text
        assert "H001  Proven" in text


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
