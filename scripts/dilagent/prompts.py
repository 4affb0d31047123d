#!/usr/bin/env python3
"""
Prompt text for the reproduction, generation and hypothesis-testing agents
"""

import json
from typing import List, Optional

from .models import HypothesisInput, ReproductionSuccess

REPRODUCTION_SCHEMA = """\
Either
  {"_tag": "Success", "reproScript": str, "scriptLanguage": "sh"|"python"|...,
   "observedBehavior": str, "expectedBehavior": str, "reproductionSteps": [str],
   "isFlaky": bool, "confidence": 0..1,
   "reproductionType": "immediate"|"delayed"|"environmental",
   "diagnostics": {...}, "notes": str}
or
  {"_tag": "NeedMoreInfo", "questions": [str], "context": str,
   "attemptedApproaches": [str], "blockers": [str]}"""

GENERATION_SCHEMA = """\
Either
  {"_tag": "Success", "hypotheses": [
     {"title": str, "description": str, "files": [str],
      "reproductionSteps": [str], "observedBehavior": str}]}
or
  {"_tag": "Error", "error": str}"""

RESULT_SCHEMA = """\
One of
  {"_tag": "Proven", "hypothesisId": str, "findings": str, "evidence": [str],
   "rootCauses": [{"type": "tooling"|"algorithmic"|"configuration"|"environmental",
                   "description": str, "location": str}],
   "solutionProposals": [str], "nextSteps": [str],
   "confidenceLevel": {"level": "High"|"Medium"|"Low", "justification": str}}
  {"_tag": "Disproven", "hypothesisId": str, "reason": str, "evidence": [str],
   "newHypothesisIdeas": [str]}
  {"_tag": "Inconclusive", "hypothesisId": str, "attemptedExperiments": [str],
   "intractableReason": str}"""

REPRODUCTION_SYSTEM_PROMPT = """\
You are a debugging expert focused on reproducing issues to understand their root causes.
Explore the codebase, run code, and produce a script that reliably demonstrates the problem.
If the problem cannot be reproduced without more information, ask precise questions.

Your final response must be ONLY valid JSON matching the response schema."""

GENERATION_SYSTEM_PROMPT = """\
You are a debugging expert generating competing, independently testable hypotheses
about the root cause of a reproduced problem. Prefer a small number of distinct,
concrete hypotheses over many vague ones.

Your final response must be ONLY valid JSON matching the response schema."""


def _focus_area(context_relative_path: str) -> str:
    if not context_relative_path or context_relative_path == ".":
        return ""
    return (
        f"<context-focus-area>\n"
        f'The issue is located in the "{context_relative_path}" subdirectory. '
        f"Start your investigation there.\n"
        f"</context-focus-area>\n\n"
    )


def reproduction_prompt(problem_prompt: str, context_directory: str,
                        context_relative_path: str = "",
                        feedback: Optional[List[str]] = None) -> str:
    """Prompt for one reproduction attempt, including operator answers so far"""
    parts = [
        f"<problem>\n{problem_prompt}\n</problem>\n\n",
        f"<context-directory>\n{context_directory}\n</context-directory>\n\n",
        _focus_area(context_relative_path),
    ]
    if feedback:
        answers = "\n\n".join(feedback)
        parts.append(f"<operator-answers>\n{answers}\n</operator-answers>\n\n")
    parts.append(f"<response-schema>\n{REPRODUCTION_SCHEMA}\n</response-schema>\n")
    return "".join(parts)


def generation_prompt(problem_prompt: str, context_directory: str,
                      reproduction: ReproductionSuccess,
                      context_relative_path: str = "") -> str:
    """Prompt asking for hypotheses grounded in a successful reproduction"""
    return (
        f"<problem>\n{problem_prompt}\n</problem>\n\n"
        f"<context-directory>\n{context_directory}\n</context-directory>\n\n"
        f"{_focus_area(context_relative_path)}"
        f"<reproduction>\n{json.dumps(reproduction.to_dict(), indent=2)}\n</reproduction>\n\n"
        f"<response-schema>\n{GENERATION_SCHEMA}\n</response-schema>\n"
    )


def instructions_markdown(hypothesis: HypothesisInput, problem_prompt: str) -> str:
    """Contents of instructions.md written into each hypothesis worktree"""
    lines = [
        f"# {hypothesis.hypothesis_id}: {hypothesis.title}",
        "",
        "## Problem",
        problem_prompt,
        "",
        "## Hypothesis",
        hypothesis.description,
    ]
    if hypothesis.observed_behavior:
        lines += ["", "## Observed Behavior", hypothesis.observed_behavior]
    if hypothesis.files:
        lines += ["", "## Relevant Files"] + [f"- {f}" for f in hypothesis.files]
    if hypothesis.reproduction_steps:
        lines += ["", "## Reproduction Steps"]
        lines += [f"{i}. {step}" for i, step in enumerate(hypothesis.reproduction_steps, 1)]
    lines += [
        "",
        "## Method",
        "Run experiments (E01, E02, ...). Each one tests a single aspect of the hypothesis:",
        "design it, run it, collect evidence and diagnose. When an experiment confirms the",
        "hypothesis, design counter-experiments that could invalidate it. The root cause is",
        "found only when no counter-experiment invalidates the finding.",
        "",
    ]
    return "\n".join(lines)


def worker_system_prompt(hypothesis_id: str) -> str:
    """System prompt for a hypothesis-testing agent, including the reporting tools"""
    return f"""\
You are testing exactly one hypothesis ({hypothesis_id}) about the root cause of a bug.
Work only inside the current directory; it is a dedicated git worktree.

Report progress and your final verdict with the dilagent tool command. The bridge
address is in the DILAGENT_BRIDGE_HOST and DILAGENT_BRIDGE_PORT environment variables.

Progress (call whenever you change investigation phase):
  dilagent tool hypothesis_update_status --port "$DILAGENT_BRIDGE_PORT" --args '{{
    "hypothesisId": "{hypothesis_id}",
    "statusUpdate": {{"_tag": "HypothesisStatusUpdate", "hypothesisId": "{hypothesis_id}",
      "phase": "DESIGNING"|"TESTING"|"DIAGNOSING"|"COUNTER_TESTING",
      "experimentId": "E01", "status": "...", "evidence": "..."}}}}'

Final result (call exactly once, before you finish):
  dilagent tool hypothesis_set_result --port "$DILAGENT_BRIDGE_PORT" --args '{{
    "hypothesisId": "{hypothesis_id}", "result": <result>}}'

where <result> is
{RESULT_SCHEMA}

If a tool call answers with "ok": false, fix the arguments and call it again."""


def worker_prompt(hypothesis_id: str, instructions_path: str) -> str:
    return (
        f"Test hypothesis {hypothesis_id}. Read {instructions_path} for the problem, "
        f"the hypothesis and the method, then investigate and report your result "
        f"with hypothesis_set_result."
    )
