#!/usr/bin/env python3
"""
Data model for dilagent runs

Run state, hypothesis records, agent-reported results and reproduction
outcomes. Everything that crosses a process boundary (state file, agent
tool calls, agent JSON output) is converted through the ``from_dict``
constructors here, which validate the closed set of tagged shapes and
raise ValidationError listing every problem found.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union

from .errors import ValidationError


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string"""
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# ENUMS
# ============================================================================

class Phase(Enum):
    """Top-level run phases, in execution order"""
    SETUP = "setup"
    REPRODUCTION = "reproduction"
    HYPOTHESIS_GENERATION = "hypothesis-generation"
    HYPOTHESIS_TESTING = "hypothesis-testing"
    COMPLETED = "completed"
    FAILED = "failed"


PHASE_ORDER = [
    Phase.SETUP,
    Phase.REPRODUCTION,
    Phase.HYPOTHESIS_GENERATION,
    Phase.HYPOTHESIS_TESTING,
    Phase.COMPLETED,
]


class HypothesisStatus(Enum):
    """Hypothesis lifecycle states"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATUSES = {
    HypothesisStatus.COMPLETED,
    HypothesisStatus.FAILED,
    HypothesisStatus.SKIPPED,
}

ALLOWED_TRANSITIONS = {
    HypothesisStatus.PENDING: {HypothesisStatus.RUNNING, HypothesisStatus.SKIPPED},
    HypothesisStatus.RUNNING: {HypothesisStatus.COMPLETED, HypothesisStatus.FAILED},
    HypothesisStatus.COMPLETED: set(),
    HypothesisStatus.FAILED: set(),
    HypothesisStatus.SKIPPED: set(),
}


def can_transition(old: HypothesisStatus, new: HypothesisStatus) -> bool:
    """
    Check whether a status change is allowed.

    Staying in the same status is always allowed (it is a no-op for metrics).

    Args:
        old: Current status
        new: Requested status

    Returns:
        True if the move is a legal edge of the lifecycle
    """
    return old == new or new in ALLOWED_TRANSITIONS[old]


def phase_index(phase: Phase) -> int:
    """Position of phase in PHASE_ORDER (FAILED sorts last)"""
    if phase == Phase.FAILED:
        return len(PHASE_ORDER)
    return PHASE_ORDER.index(phase)


def parse_enum(enum_cls, value: Any, what: str):
    """Convert a raw value into enum_cls, raising ValidationError on mismatch"""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as e:
        allowed = [m.value for m in enum_cls]
        raise ValidationError(f"invalid {what} {value!r}", [f"{what} must be one of {allowed}"]) from e


# ============================================================================
# FIELD VALIDATION HELPERS
# ============================================================================

def _expect_object(data: Any, what: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError(f"{what} must be an object", [f"got {type(data).__name__}"])
    return data


def _str_field(data: Dict, key: str, problems: List[str], required: bool = True,
               default: str = "") -> str:
    value = data.get(key)
    if value is None:
        if required:
            problems.append(f"missing required field '{key}'")
        return default
    if not isinstance(value, str):
        problems.append(f"field '{key}' must be a string")
        return default
    if required and not value.strip():
        problems.append(f"field '{key}' cannot be empty")
    return value


def _str_list_field(data: Dict, key: str, problems: List[str]) -> List[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        problems.append(f"field '{key}' must be a list of strings")
        return []
    return list(value)


def _check_problems(problems: List[str], what: str) -> None:
    if problems:
        raise ValidationError(f"invalid {what}", problems)


# ============================================================================
# HYPOTHESIS RESULTS
# ============================================================================

class RootCauseType(Enum):
    TOOLING = "tooling"
    ALGORITHMIC = "algorithmic"
    CONFIGURATION = "configuration"
    ENVIRONMENTAL = "environmental"


class ConfidenceGrade(Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


@dataclass
class RootCause:
    """One identified root cause of a proven hypothesis"""
    type: RootCauseType
    description: str
    location: str = ""

    def to_dict(self) -> Dict:
        d = {"type": self.type.value, "description": self.description}
        if self.location:
            d["location"] = self.location
        return d


@dataclass
class ConfidenceLevel:
    """Agent's confidence in a proven verdict"""
    level: ConfidenceGrade
    justification: str

    def to_dict(self) -> Dict:
        return {"level": self.level.value, "justification": self.justification}


@dataclass
class ProvenResult:
    """The hypothesis was confirmed as (part of) the root cause"""
    TAG: ClassVar[str] = "Proven"

    hypothesis_id: str
    findings: str
    evidence: List[str] = field(default_factory=list)
    root_causes: List[RootCause] = field(default_factory=list)
    solution_proposals: List[str] = field(default_factory=list)
    next_steps: List[str] = field(default_factory=list)
    confidence_level: Optional[ConfidenceLevel] = None

    def to_dict(self) -> Dict:
        d = {
            "_tag": self.TAG,
            "hypothesisId": self.hypothesis_id,
            "findings": self.findings,
            "evidence": list(self.evidence),
            "rootCauses": [rc.to_dict() for rc in self.root_causes],
            "solutionProposals": list(self.solution_proposals),
            "nextSteps": list(self.next_steps),
        }
        if self.confidence_level is not None:
            d["confidenceLevel"] = self.confidence_level.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: Dict) -> "ProvenResult":
        problems: List[str] = []
        hypothesis_id = _str_field(data, "hypothesisId", problems)
        findings = _str_field(data, "findings", problems)
        evidence = _str_list_field(data, "evidence", problems)
        solution_proposals = _str_list_field(data, "solutionProposals", problems)
        next_steps = _str_list_field(data, "nextSteps", problems)

        root_causes = []
        raw_causes = data.get("rootCauses") or []
        if not isinstance(raw_causes, list):
            problems.append("field 'rootCauses' must be a list")
            raw_causes = []
        for i, raw in enumerate(raw_causes):
            if not isinstance(raw, dict):
                problems.append(f"rootCauses[{i}] must be an object")
                continue
            try:
                rc_type = parse_enum(RootCauseType, raw.get("type"), f"rootCauses[{i}].type")
            except ValidationError as e:
                problems.extend(e.problems)
                continue
            description = _str_field(raw, "description", problems)
            location = _str_field(raw, "location", problems, required=False)
            root_causes.append(RootCause(rc_type, description, location))

        confidence = None
        raw_confidence = data.get("confidenceLevel")
        if raw_confidence is not None:
            if not isinstance(raw_confidence, dict):
                problems.append("field 'confidenceLevel' must be an object")
            else:
                try:
                    grade = parse_enum(ConfidenceGrade, raw_confidence.get("level"),
                                       "confidenceLevel.level")
                    confidence = ConfidenceLevel(
                        grade, _str_field(raw_confidence, "justification", problems)
                    )
                except ValidationError as e:
                    problems.extend(e.problems)

        _check_problems(problems, "Proven result")
        return cls(
            hypothesis_id=hypothesis_id,
            findings=findings,
            evidence=evidence,
            root_causes=root_causes,
            solution_proposals=solution_proposals,
            next_steps=next_steps,
            confidence_level=confidence,
        )


@dataclass
class DisprovenResult:
    """Evidence shows the hypothesis is not the root cause"""
    TAG: ClassVar[str] = "Disproven"

    hypothesis_id: str
    reason: str
    evidence: List[str] = field(default_factory=list)
    new_hypothesis_ideas: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "_tag": self.TAG,
            "hypothesisId": self.hypothesis_id,
            "reason": self.reason,
            "evidence": list(self.evidence),
            "newHypothesisIdeas": list(self.new_hypothesis_ideas),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "DisprovenResult":
        problems: List[str] = []
        result = cls(
            hypothesis_id=_str_field(data, "hypothesisId", problems),
            reason=_str_field(data, "reason", problems),
            evidence=_str_list_field(data, "evidence", problems),
            new_hypothesis_ideas=_str_list_field(data, "newHypothesisIdeas", problems),
        )
        _check_problems(problems, "Disproven result")
        return result


@dataclass
class InconclusiveResult:
    """Neither proven nor disproven; also synthesized for worker errors"""
    TAG: ClassVar[str] = "Inconclusive"

    hypothesis_id: str
    attempted_experiments: List[str] = field(default_factory=list)
    intractable_reason: str = ""

    def to_dict(self) -> Dict:
        return {
            "_tag": self.TAG,
            "hypothesisId": self.hypothesis_id,
            "attemptedExperiments": list(self.attempted_experiments),
            "intractableReason": self.intractable_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "InconclusiveResult":
        problems: List[str] = []
        result = cls(
            hypothesis_id=_str_field(data, "hypothesisId", problems),
            attempted_experiments=_str_list_field(data, "attemptedExperiments", problems),
            intractable_reason=_str_field(data, "intractableReason", problems),
        )
        _check_problems(problems, "Inconclusive result")
        return result


HypothesisResult = Union[ProvenResult, DisprovenResult, InconclusiveResult]

RESULT_TYPES = {
    ProvenResult.TAG: ProvenResult,
    DisprovenResult.TAG: DisprovenResult,
    InconclusiveResult.TAG: InconclusiveResult,
}


def result_from_dict(data: Any) -> HypothesisResult:
    """
    Validate and decode a tagged hypothesis result.

    Args:
        data: Raw JSON-like value (as sent by an agent or read from disk)

    Returns:
        ProvenResult, DisprovenResult or InconclusiveResult

    Raises:
        ValidationError: If the tag is unknown or any field is malformed
    """
    data = _expect_object(data, "result")
    tag = data.get("_tag")
    if tag not in RESULT_TYPES:
        raise ValidationError(
            "unknown result tag",
            [f"'_tag' must be one of {sorted(RESULT_TYPES)}, got {tag!r}"],
        )
    return RESULT_TYPES[tag].from_dict(data)


def is_proven(result: Optional[HypothesisResult]) -> bool:
    return isinstance(result, ProvenResult)


# ============================================================================
# STATUS UPDATES
# ============================================================================

class InvestigationPhase(Enum):
    """Where an agent is within its own investigation loop"""
    DESIGNING = "DESIGNING"
    TESTING = "TESTING"
    DIAGNOSING = "DIAGNOSING"
    COUNTER_TESTING = "COUNTER_TESTING"


@dataclass
class HypothesisStatusUpdate:
    """Intermediate progress reported by an agent"""
    TAG: ClassVar[str] = "HypothesisStatusUpdate"

    hypothesis_id: str
    phase: InvestigationPhase
    experiment_id: str
    status: str
    evidence: str = ""

    def to_dict(self) -> Dict:
        d = {
            "_tag": self.TAG,
            "hypothesisId": self.hypothesis_id,
            "phase": self.phase.value,
            "experimentId": self.experiment_id,
            "status": self.status,
        }
        if self.evidence:
            d["evidence"] = self.evidence
        return d

    @classmethod
    def from_dict(cls, data: Any) -> "HypothesisStatusUpdate":
        data = _expect_object(data, "status update")
        problems: List[str] = []
        hypothesis_id = _str_field(data, "hypothesisId", problems)
        phase = InvestigationPhase.DESIGNING
        try:
            phase = parse_enum(InvestigationPhase, data.get("phase"), "phase")
        except ValidationError as e:
            problems.extend(e.problems)
        experiment_id = _str_field(data, "experimentId", problems)
        status = _str_field(data, "status", problems)
        evidence = _str_field(data, "evidence", problems, required=False)
        _check_problems(problems, "status update")
        return cls(hypothesis_id, phase, experiment_id, status, evidence)


StoreValue = Union[ProvenResult, DisprovenResult, InconclusiveResult, HypothesisStatusUpdate]


def store_value_from_dict(data: Any) -> StoreValue:
    """Decode a key/value namespace entry (a result or a status update)"""
    data = _expect_object(data, "value")
    if data.get("_tag") == HypothesisStatusUpdate.TAG:
        return HypothesisStatusUpdate.from_dict(data)
    return result_from_dict(data)


# ============================================================================
# REPRODUCTION
# ============================================================================

class ReproductionType(Enum):
    IMMEDIATE = "immediate"
    DELAYED = "delayed"
    ENVIRONMENTAL = "environmental"


@dataclass
class ReproductionSuccess:
    """A runnable reproduction of the reported problem"""
    TAG: ClassVar[str] = "Success"

    repro_script: str
    observed_behavior: str
    expected_behavior: str
    script_language: str = "sh"
    reproduction_steps: List[str] = field(default_factory=list)
    is_flaky: bool = False
    confidence: float = 1.0
    reproduction_type: ReproductionType = ReproductionType.IMMEDIATE
    diagnostics: Dict[str, Any] = field(default_factory=dict)
    notes: str = ""

    def to_dict(self) -> Dict:
        return {
            "_tag": self.TAG,
            "reproScript": self.repro_script,
            "scriptLanguage": self.script_language,
            "observedBehavior": self.observed_behavior,
            "expectedBehavior": self.expected_behavior,
            "reproductionSteps": list(self.reproduction_steps),
            "isFlaky": self.is_flaky,
            "confidence": self.confidence,
            "reproductionType": self.reproduction_type.value,
            "diagnostics": dict(self.diagnostics),
            "notes": self.notes,
        }


@dataclass
class ReproductionNeedMoreInfo:
    """The agent could not reproduce without operator input"""
    TAG: ClassVar[str] = "NeedMoreInfo"

    questions: List[str]
    context: str = ""
    attempted_approaches: List[str] = field(default_factory=list)
    blockers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "_tag": self.TAG,
            "questions": list(self.questions),
            "context": self.context,
            "attemptedApproaches": list(self.attempted_approaches),
            "blockers": list(self.blockers),
        }


ReproductionResult = Union[ReproductionSuccess, ReproductionNeedMoreInfo]


def reproduction_from_dict(data: Any) -> ReproductionResult:
    """
    Validate and decode a reproduction outcome.

    Raises:
        ValidationError: On unknown tag or malformed fields
    """
    data = _expect_object(data, "reproduction result")
    tag = data.get("_tag")
    problems: List[str] = []

    if tag == ReproductionSuccess.TAG:
        repro_type = ReproductionType.IMMEDIATE
        if data.get("reproductionType") is not None:
            try:
                repro_type = parse_enum(ReproductionType, data["reproductionType"],
                                        "reproductionType")
            except ValidationError as e:
                problems.extend(e.problems)

        confidence = data.get("confidence", 1.0)
        if not isinstance(confidence, (int, float)) or isinstance(confidence, bool) \
                or not 0.0 <= confidence <= 1.0:
            problems.append("field 'confidence' must be a number between 0 and 1")
            confidence = 0.0

        diagnostics = data.get("diagnostics") or {}
        if not isinstance(diagnostics, dict):
            problems.append("field 'diagnostics' must be an object")
            diagnostics = {}

        result = ReproductionSuccess(
            repro_script=_str_field(data, "reproScript", problems),
            observed_behavior=_str_field(data, "observedBehavior", problems),
            expected_behavior=_str_field(data, "expectedBehavior", problems),
            script_language=_str_field(data, "scriptLanguage", problems,
                                       required=False, default="sh") or "sh",
            reproduction_steps=_str_list_field(data, "reproductionSteps", problems),
            is_flaky=bool(data.get("isFlaky", False)),
            confidence=float(confidence),
            reproduction_type=repro_type,
            diagnostics=diagnostics,
            notes=_str_field(data, "notes", problems, required=False),
        )
        _check_problems(problems, "reproduction result")
        return result

    if tag == ReproductionNeedMoreInfo.TAG:
        questions = _str_list_field(data, "questions", problems)
        if not questions and not problems:
            problems.append("field 'questions' must contain at least one question")
        result = ReproductionNeedMoreInfo(
            questions=questions,
            context=_str_field(data, "context", problems, required=False),
            attempted_approaches=_str_list_field(data, "attemptedApproaches", problems),
            blockers=_str_list_field(data, "blockers", problems),
        )
        _check_problems(problems, "reproduction result")
        return result

    raise ValidationError(
        "unknown reproduction tag",
        [f"'_tag' must be 'Success' or 'NeedMoreInfo', got {tag!r}"],
    )


# ============================================================================
# HYPOTHESIS GENERATION OUTPUT
# ============================================================================

@dataclass
class HypothesisInput:
    """One hypothesis as proposed by the generation agent"""
    title: str
    description: str
    hypothesis_id: str = ""
    files: List[str] = field(default_factory=list)
    reproduction_steps: List[str] = field(default_factory=list)
    observed_behavior: str = ""

    def to_dict(self) -> Dict:
        return {
            "hypothesisId": self.hypothesis_id,
            "title": self.title,
            "description": self.description,
            "files": list(self.files),
            "reproductionSteps": list(self.reproduction_steps),
            "observedBehavior": self.observed_behavior,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "HypothesisInput":
        data = _expect_object(data, "hypothesis")
        problems: List[str] = []
        result = cls(
            title=_str_field(data, "title", problems),
            description=_str_field(data, "description", problems),
            hypothesis_id=_str_field(data, "hypothesisId", problems, required=False),
            files=_str_list_field(data, "files", problems),
            reproduction_steps=_str_list_field(data, "reproductionSteps", problems),
            observed_behavior=_str_field(data, "observedBehavior", problems, required=False),
        )
        _check_problems(problems, "hypothesis")
        return result


def generation_from_dict(data: Any) -> List[HypothesisInput]:
    """
    Decode the generation agent's ``Success{hypotheses}`` / ``Error{error}`` output.

    Returns:
        The proposed hypotheses

    Raises:
        ValidationError: If the output is malformed or tagged Error
    """
    data = _expect_object(data, "generation result")
    tag = data.get("_tag")
    if tag == "Error":
        raise ValidationError("hypothesis generation reported an error",
                              [str(data.get("error", "unknown error"))])
    if tag != "Success":
        raise ValidationError("unknown generation tag",
                              [f"'_tag' must be 'Success' or 'Error', got {tag!r}"])

    raw = data.get("hypotheses")
    if not isinstance(raw, list) or not raw:
        raise ValidationError("invalid generation result",
                              ["field 'hypotheses' must be a non-empty list"])

    hypotheses = []
    problems: List[str] = []
    for i, item in enumerate(raw):
        try:
            hypotheses.append(HypothesisInput.from_dict(item))
        except ValidationError as e:
            problems.extend(f"hypotheses[{i}]: {p}" for p in e.problems)
    _check_problems(problems, "generation result")
    return hypotheses


# ============================================================================
# RUN STATE
# ============================================================================

@dataclass
class HypothesisRecord:
    """Per-hypothesis entry of the run state"""
    id: str
    slug: str
    description: str = ""
    status: HypothesisStatus = HypothesisStatus.PENDING
    result: Optional[HypothesisResult] = None
    current_status_update: Optional[HypothesisStatusUpdate] = None
    worktree_path: str = ""
    metadata_path: str = ""
    branch_name: str = ""
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "slug": self.slug,
            "description": self.description,
            "status": self.status.value,
            "result": self.result.to_dict() if self.result else None,
            "currentStatusUpdate": (
                self.current_status_update.to_dict() if self.current_status_update else None
            ),
            "worktreePath": self.worktree_path,
            "metadataPath": self.metadata_path,
            "branchName": self.branch_name,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "durationMs": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "HypothesisRecord":
        result = data.get("result")
        update = data.get("currentStatusUpdate")
        return cls(
            id=data["id"],
            slug=data.get("slug", ""),
            description=data.get("description", ""),
            status=parse_enum(HypothesisStatus, data.get("status", "pending"), "status"),
            result=result_from_dict(result) if result else None,
            current_status_update=HypothesisStatusUpdate.from_dict(update) if update else None,
            worktree_path=data.get("worktreePath", ""),
            metadata_path=data.get("metadataPath", ""),
            branch_name=data.get("branchName", ""),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
            duration_ms=data.get("durationMs"),
        )


@dataclass
class Progress:
    """Externally visible progress counters"""
    current: int = 0
    total: int = 0
    phase: Phase = Phase.SETUP
    message: str = "Starting dilagent"

    def to_dict(self) -> Dict:
        return {
            "current": self.current,
            "total": self.total,
            "phase": self.phase.value,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Progress":
        return cls(
            current=int(data.get("current", 0)),
            total=int(data.get("total", 0)),
            phase=parse_enum(Phase, data.get("phase", "setup"), "progress.phase"),
            message=data.get("message", "Starting dilagent"),
        )


@dataclass
class Metrics:
    """Run counters, kept consistent with hypothesis statuses"""
    start_time: str = field(default_factory=now_iso)
    end_time: Optional[str] = None
    hypotheses_generated: int = 0
    hypotheses_completed: int = 0
    hypotheses_successful: int = 0
    hypotheses_failed: int = 0
    hypotheses_skipped: int = 0

    def to_dict(self) -> Dict:
        return {
            "startTime": self.start_time,
            "endTime": self.end_time,
            "hypothesesGenerated": self.hypotheses_generated,
            "hypothesesCompleted": self.hypotheses_completed,
            "hypothesesSuccessful": self.hypotheses_successful,
            "hypothesesFailed": self.hypotheses_failed,
            "hypothesesSkipped": self.hypotheses_skipped,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Metrics":
        return cls(
            start_time=data.get("startTime") or now_iso(),
            end_time=data.get("endTime"),
            hypotheses_generated=int(data.get("hypothesesGenerated", 0)),
            hypotheses_completed=int(data.get("hypothesesCompleted", 0)),
            hypotheses_successful=int(data.get("hypothesesSuccessful", 0)),
            hypotheses_failed=int(data.get("hypothesesFailed", 0)),
            hypotheses_skipped=int(data.get("hypothesesSkipped", 0)),
        )


@dataclass
class RunState:
    """Authoritative record of one run (one per working directory)"""
    working_dir_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    problem_prompt: str = ""
    context_directory: str = ""
    context_relative_path: str = ""
    working_directory: str = ""
    current_phase: Phase = Phase.SETUP
    completed_phases: List[Phase] = field(default_factory=list)
    hypotheses: Dict[str, HypothesisRecord] = field(default_factory=dict)
    progress: Progress = field(default_factory=Progress)
    metrics: Metrics = field(default_factory=Metrics)
    store: Dict[str, StoreValue] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "workingDirId": self.working_dir_id,
            "problemPrompt": self.problem_prompt,
            "contextDirectory": self.context_directory,
            "contextRelativePath": self.context_relative_path,
            "workingDirectory": self.working_directory,
            "currentPhase": self.current_phase.value,
            "completedPhases": [p.value for p in self.completed_phases],
            "hypotheses": {hid: h.to_dict() for hid, h in self.hypotheses.items()},
            "progress": self.progress.to_dict(),
            "metrics": self.metrics.to_dict(),
            "store": {key: value.to_dict() for key, value in self.store.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "RunState":
        return cls(
            working_dir_id=data["workingDirId"],
            problem_prompt=data.get("problemPrompt", ""),
            context_directory=data.get("contextDirectory", ""),
            context_relative_path=data.get("contextRelativePath", ""),
            working_directory=data.get("workingDirectory", ""),
            current_phase=parse_enum(Phase, data.get("currentPhase", "setup"), "currentPhase"),
            completed_phases=[
                parse_enum(Phase, p, "completedPhases") for p in data.get("completedPhases", [])
            ],
            hypotheses={
                hid: HypothesisRecord.from_dict(h)
                for hid, h in (data.get("hypotheses") or {}).items()
            },
            progress=Progress.from_dict(data.get("progress") or {}),
            metrics=Metrics.from_dict(data.get("metrics") or {}),
            store={
                key: store_value_from_dict(value)
                for key, value in (data.get("store") or {}).items()
            },
        )
