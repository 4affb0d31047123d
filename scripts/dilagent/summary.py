#!/usr/bin/env python3
"""
Summary Report

Aggregates the final run state and timeline statistics into a report and
exports it as markdown, json or text.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .models import (
    DisprovenResult,
    HypothesisRecord,
    HypothesisStatus,
    InconclusiveResult,
    ProvenResult,
    ReproductionSuccess,
    RunState,
)
from .utils import format_duration, truncate

logger = logging.getLogger(__name__)

STATUS_ICONS = {
    ProvenResult.TAG: "✅",
    DisprovenResult.TAG: "❌",
    InconclusiveResult.TAG: "❔",
    HypothesisStatus.RUNNING.value: "🔄",
    HypothesisStatus.FAILED.value: "💥",
    HypothesisStatus.SKIPPED.value: "⏭️",
    HypothesisStatus.PENDING.value: "⏸️",
}


@dataclass
class RunSummary:
    """Everything the summary report shows"""
    working_dir_id: str
    problem_prompt: str
    context_directory: str
    current_phase: str
    hypotheses: List[HypothesisRecord]
    proven: List[HypothesisRecord] = field(default_factory=list)
    disproven: List[HypothesisRecord] = field(default_factory=list)
    inconclusive: List[HypothesisRecord] = field(default_factory=list)
    unfinished: List[HypothesisRecord] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    timeline_statistics: Dict[str, Any] = field(default_factory=dict)
    reproduction: Optional[ReproductionSuccess] = None
    total_execution_ms: int = 0
    wall_clock_seconds: Optional[float] = None
    recommended_action: str = ""
    next_steps: List[str] = field(default_factory=list)

    def icon(self, record: HypothesisRecord) -> str:
        if record.result is not None:
            return STATUS_ICONS[record.result.TAG]
        return STATUS_ICONS.get(record.status.value, "")


class SummaryAnalyzer:
    """Classifies hypothesis outcomes and renders the run report"""

    def generate_report(self, state: RunState, timeline_statistics: Dict[str, Any],
                        reproduction: Optional[ReproductionSuccess] = None) -> RunSummary:
        """
        Build the summary for a run.

        Args:
            state: Final run state
            timeline_statistics: Output of Timeline.get_statistics()
            reproduction: Successful reproduction, when one exists

        Returns:
            RunSummary with outcomes grouped by result
        """
        records = list(state.hypotheses.values())
        report = RunSummary(
            working_dir_id=state.working_dir_id,
            problem_prompt=state.problem_prompt,
            context_directory=state.context_directory,
            current_phase=state.current_phase.value,
            hypotheses=records,
            metrics=state.metrics.to_dict(),
            timeline_statistics=timeline_statistics,
            reproduction=reproduction,
        )

        for record in records:
            if isinstance(record.result, ProvenResult):
                report.proven.append(record)
            elif isinstance(record.result, DisprovenResult):
                report.disproven.append(record)
            elif isinstance(record.result, InconclusiveResult):
                report.inconclusive.append(record)
            else:
                report.unfinished.append(record)

        report.total_execution_ms = sum(r.duration_ms or 0 for r in records)
        report.wall_clock_seconds = self._wall_clock(state.metrics.start_time,
                                                     state.metrics.end_time)
        report.recommended_action = self._determine_next_action(report)
        report.next_steps = self._generate_next_steps(report)

        logger.info(
            f"Summary: {len(report.proven)} proven, {len(report.disproven)} disproven, "
            f"{len(report.inconclusive)} inconclusive, {len(report.unfinished)} unfinished"
        )
        return report

    @staticmethod
    def _wall_clock(start: str, end: Optional[str]) -> Optional[float]:
        try:
            started = datetime.fromisoformat(start)
            ended = datetime.fromisoformat(end) if end else datetime.now(started.tzinfo)
        except (TypeError, ValueError):
            return None
        return max(0.0, (ended - started).total_seconds())

    def _determine_next_action(self, report: RunSummary) -> str:
        """
        Recommended next action.

        Decision tree:
            - 1 proven → "Implement the fix for ..."
            - >1 proven → "Check whether the proven causes interact"
            - none proven, some inconclusive → "Investigate inconclusive ..."
            - all disproven → "Generate new hypotheses"
        """
        if len(report.proven) == 1:
            return f"Implement the fix for {report.proven[0].id}: {truncate(report.proven[0].description)}"
        elif len(report.proven) > 1:
            return "Several hypotheses were proven; check whether the root causes interact"
        elif report.inconclusive or report.unfinished:
            return "Investigate inconclusive hypotheses or re-run them with more time"
        else:
            return "Generate new hypotheses - all current hypotheses were disproven"

    def _generate_next_steps(self, report: RunSummary) -> List[str]:
        steps = []
        for record in report.proven:
            steps.extend(record.result.next_steps)

        if report.inconclusive:
            steps.append(f"Investigate {len(report.inconclusive)} inconclusive result(s)")

        ideas = [idea for r in report.disproven for idea in r.result.new_hypothesis_ideas]
        if not report.proven and ideas:
            steps.append("Consider the new hypothesis ideas from disproven hypotheses:")
            steps.extend(f"  {idea}" for idea in ideas)

        if report.unfinished:
            steps.append(f"Run the {len(report.unfinished)} unfinished hypotheses "
                         f"(dilagent run-hypotheses)")
        return steps

    def export_report(self, report: RunSummary, format: str = "markdown") -> str:
        """
        Export report in specified format

        Args:
            report: RunSummary to export
            format: Export format (json, markdown, text)

        Returns:
            Formatted report string
        """
        if format == "json":
            return self._export_json(report)
        elif format == "markdown":
            return self._export_markdown(report)
        else:
            return self._export_text(report)

    def _export_json(self, report: RunSummary) -> str:
        """Export as JSON"""
        data = {
            "workingDirId": report.working_dir_id,
            "problemPrompt": report.problem_prompt,
            "contextDirectory": report.context_directory,
            "currentPhase": report.current_phase,
            "results": {
                "proven": [r.id for r in report.proven],
                "disproven": [r.id for r in report.disproven],
                "inconclusive": [r.id for r in report.inconclusive],
                "unfinished": [r.id for r in report.unfinished],
            },
            "hypotheses": [r.to_dict() for r in report.hypotheses],
            "metrics": report.metrics,
            "timeline": report.timeline_statistics,
            "reproduction": report.reproduction.to_dict() if report.reproduction else None,
            "totalExecutionMs": report.total_execution_ms,
            "wallClockSeconds": report.wall_clock_seconds,
            "recommendedAction": report.recommended_action,
            "nextSteps": report.next_steps,
        }
        return json.dumps(data, indent=2)

    def _export_markdown(self, report: RunSummary) -> str:
        """Export as Markdown"""
        total = len(report.hypotheses)
        completed = report.metrics.get("hypothesesCompleted", 0)
        lines = [
            "# Debugging Session Summary",
            "",
            "## Overview",
            f"- **Run ID**: {report.working_dir_id}",
            f"- **Context**: {report.context_directory}",
            f"- **Started**: {report.metrics.get('startTime')}",
            f"- **Current Phase**: {report.current_phase}",
            "",
            "## Problem",
            report.problem_prompt,
            "",
            "## Results Summary",
            f"- **Total Hypotheses**: {total}",
            f"- **Completed**: {completed}/{total}",
            f"- **✅ Proven**: {len(report.proven)}",
            f"- **❌ Disproven**: {len(report.disproven)}",
            f"- **❔ Inconclusive**: {len(report.inconclusive)}",
            f"- **Skipped**: {report.metrics.get('hypothesesSkipped', 0)}",
            "",
            "## Performance Metrics",
        ]
        if report.wall_clock_seconds is not None:
            lines.append(f"- **Wall Clock Time**: {format_duration(report.wall_clock_seconds)}")
        lines += [
            f"- **Total Execution Time**: {format_duration(report.total_execution_ms / 1000)}",
            f"- **Timeline Events**: {report.timeline_statistics.get('totalEvents', 0)}",
            "",
            "## Reproduction",
        ]
        if report.reproduction:
            lines.append(f"✅ **Successful** ({report.reproduction.confidence:.0%} confidence)")
            lines.append(f"- **Observed**: {report.reproduction.observed_behavior}")
            lines.append(f"- **Expected**: {report.reproduction.expected_behavior}")
        else:
            lines.append("No successful reproduction recorded")

        lines += ["", "## Hypothesis Details", ""]
        for record in report.hypotheses:
            lines.append(f"### {report.icon(record)} {record.id}: {record.slug}")
            lines.append(f"- **Status**: {record.status.value}")
            if record.result is not None:
                lines.append(f"- **Result**: {record.result.TAG}")
            lines.append(f"- **Branch**: {record.branch_name}")
            lines.append(f"- **Worktree**: {record.worktree_path}")
            if record.duration_ms is not None:
                lines.append(f"- **Duration**: {format_duration(record.duration_ms / 1000)}")
            lines += self._result_details(record)
            lines.append("")

        if report.proven:
            lines += ["## Root Causes", ""]
            for record in report.proven:
                for cause in record.result.root_causes:
                    location = f" ({cause.location})" if cause.location else ""
                    lines.append(f"- **{record.id}** [{cause.type.value}] "
                                 f"{cause.description}{location}")
            lines.append("")

        lines += ["## Timeline Summary by Phase"]
        for phase, count in report.timeline_statistics.get("eventsByPhase", {}).items():
            lines.append(f"- **{phase}**: {count} events")

        lines += ["", "## Recommended Action", report.recommended_action, "", "## Next Steps"]
        for i, step in enumerate(report.next_steps, 1):
            lines.append(f"{i}. {step}")

        return "\n".join(lines) + "\n"

    @staticmethod
    def _result_details(record: HypothesisRecord) -> List[str]:
        result = record.result
        if isinstance(result, ProvenResult):
            lines = [f"- **Findings**: {result.findings}"]
            if result.confidence_level:
                lines.append(f"- **Confidence**: {result.confidence_level.level.value} - "
                             f"{result.confidence_level.justification}")
            lines += [f"- Solution: {s}" for s in result.solution_proposals]
            return lines
        if isinstance(result, DisprovenResult):
            return [f"- **Reason**: {result.reason}"]
        if isinstance(result, InconclusiveResult):
            return [f"- **Why inconclusive**: {result.intractable_reason}"]
        return []

    def _export_text(self, report: RunSummary) -> str:
        """Export as plain text"""
        lines = [
            "=" * 60,
            "DILAGENT SUMMARY",
            "=" * 60,
            f"\nRun: {report.working_dir_id}",
            f"Problem: {truncate(report.problem_prompt, 200)}",
            f"Phase: {report.current_phase}",
            "\nResults:",
            f"  Proven:        {len(report.proven)}",
            f"  Disproven:     {len(report.disproven)}",
            f"  Inconclusive:  {len(report.inconclusive)}",
            f"  Unfinished:    {len(report.unfinished)}",
            "\nHypotheses:",
        ]
        for record in report.hypotheses:
            outcome = record.result.TAG if record.result else record.status.value
            lines.append(f"  {record.id}  {outcome:<13} {truncate(record.description, 60)}")

        lines += ["\nRecommended Action:", f"  {report.recommended_action}", "\nNext Steps:"]
        for i, step in enumerate(report.next_steps, 1):
            lines.append(f"  {i}. {step}")
        lines.append("\n" + "=" * 60)

        return "\n".join(lines)
