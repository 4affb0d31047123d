#!/usr/bin/env python3
"""
Run State Store

Single authoritative, crash-recoverable record of a run. One instance per
working directory, constructed explicitly and handed to every component that
needs it.

Every mutation goes through ``update_state``: the updater receives a private
copy of the current state, and the result is persisted atomically before the
call returns. An asyncio lock serializes the whole read-modify-write-persist
cycle, so concurrent hypothesis workers cannot lose each other's updates.

Metric bookkeeping:
    completed   = hypotheses with status completed
    successful  = completed with a Proven result
    failed      = status failed + completed without a Proven result
    skipped     = status skipped
    generated   = hypotheses ever registered
"""

import asyncio
import copy
import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import (
    DuplicateHypothesisError,
    HypothesisNotFoundError,
    InvalidTransitionError,
    StateDecodeError,
    StatePersistenceError,
    ValidationError,
)
from .models import (
    HypothesisRecord,
    HypothesisResult,
    HypothesisStatus,
    HypothesisStatusUpdate,
    Metrics,
    Phase,
    RunState,
    StoreValue,
    TERMINAL_STATUSES,
    can_transition,
    is_proven,
    now_iso,
    phase_index,
)
from .utils import load_json_file, save_json_file
from .working_dir import WorkingDir

logger = logging.getLogger(__name__)

StateUpdater = Callable[[RunState], RunState]

UPDATABLE_FIELDS = {
    "status",
    "result",
    "current_status_update",
    "description",
    "worktree_path",
    "metadata_path",
    "branch_name",
    "started_at",
    "completed_at",
    "duration_ms",
}


# ============================================================================
# PURE STATE HELPERS
# ============================================================================

def recompute_metrics(state: RunState) -> Metrics:
    """
    Derive the status counters from the hypothesis records.

    Timestamps and ``hypotheses_generated`` (which never decreases) are kept.

    Args:
        state: Run state to summarize

    Returns:
        New Metrics instance consistent with the hypothesis statuses
    """
    metrics = copy.copy(state.metrics)
    records = list(state.hypotheses.values())

    completed = [h for h in records if h.status == HypothesisStatus.COMPLETED]
    metrics.hypotheses_completed = len(completed)
    metrics.hypotheses_successful = len([h for h in completed if is_proven(h.result)])
    metrics.hypotheses_failed = (
        len([h for h in records if h.status == HypothesisStatus.FAILED])
        + len([h for h in completed if not is_proven(h.result)])
    )
    metrics.hypotheses_skipped = len([h for h in records if h.status == HypothesisStatus.SKIPPED])
    metrics.hypotheses_generated = max(metrics.hypotheses_generated, len(records))
    return metrics


def _count_transition(metrics: Metrics, old: HypothesisStatus, new: HypothesisStatus,
                      result: Optional[HypothesisResult]) -> None:
    """Increment counters for one status change (exactly once per change)"""
    if old == new:
        return
    if new == HypothesisStatus.COMPLETED:
        metrics.hypotheses_completed += 1
        if is_proven(result):
            metrics.hypotheses_successful += 1
        else:
            metrics.hypotheses_failed += 1
    elif new == HypothesisStatus.FAILED:
        metrics.hypotheses_failed += 1
    elif new == HypothesisStatus.SKIPPED:
        metrics.hypotheses_skipped += 1


def apply_hypothesis_update(state: RunState, hypothesis_id: str, **changes) -> HypothesisRecord:
    """
    Merge partial fields into one hypothesis record, enforcing the lifecycle.

    Mutates ``state`` in place (callers pass the private copy handed to an
    updater).

    Args:
        state: State copy to modify
        hypothesis_id: Record to update
        **changes: Subset of HypothesisRecord fields

    Returns:
        The updated record

    Raises:
        HypothesisNotFoundError: If the id is unknown
        InvalidTransitionError: If the status change, result or timestamps
            would violate the lifecycle
    """
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update hypothesis fields: {sorted(unknown)}")

    record = state.hypotheses.get(hypothesis_id)
    if record is None:
        raise HypothesisNotFoundError(f"Unknown hypothesis: {hypothesis_id}")

    old_status = record.status
    new_status = changes.get("status", old_status)
    if not can_transition(old_status, new_status):
        raise InvalidTransitionError(
            f"{hypothesis_id}: cannot move from {old_status.value} to {new_status.value}"
        )

    for stamp in ("started_at", "completed_at"):
        new_value = changes.get(stamp)
        current = getattr(record, stamp)
        if new_value is not None and current is not None and new_value != current:
            raise InvalidTransitionError(f"{hypothesis_id}: {stamp} is already set")

    new_result = changes.get("result", record.result)
    if new_status == HypothesisStatus.COMPLETED and new_result is None:
        raise InvalidTransitionError(f"{hypothesis_id}: completed requires a result")
    if new_status != HypothesisStatus.COMPLETED and new_result is not None:
        raise InvalidTransitionError(
            f"{hypothesis_id}: a result is only allowed on completed hypotheses"
        )
    if old_status == HypothesisStatus.COMPLETED and "result" in changes \
            and changes["result"] != record.result:
        raise InvalidTransitionError(f"{hypothesis_id}: result is already set")

    for name, value in changes.items():
        setattr(record, name, value)

    _count_transition(state.metrics, old_status, new_status, new_result)
    return record


def _advance_status(state: RunState, hypothesis_id: str, target: HypothesisStatus,
                    **changes) -> HypothesisRecord:
    """Move a record to target, passing through running when it is still pending"""
    record = state.hypotheses.get(hypothesis_id)
    if record is None:
        raise HypothesisNotFoundError(f"Unknown hypothesis: {hypothesis_id}")

    if record.status == HypothesisStatus.PENDING and target in (
        HypothesisStatus.COMPLETED, HypothesisStatus.FAILED
    ):
        apply_hypothesis_update(state, hypothesis_id, status=HypothesisStatus.RUNNING,
                                started_at=record.started_at or now_iso())
    return apply_hypothesis_update(state, hypothesis_id, status=target, **changes)


def _refresh_progress(state: RunState) -> None:
    state.progress.total = len(state.hypotheses)
    state.progress.current = len([
        h for h in state.hypotheses.values() if h.status in TERMINAL_STATUSES
    ])


def _duration_ms(started_at: Optional[str], completed_at: str) -> Optional[int]:
    if not started_at:
        return None
    try:
        delta = datetime.fromisoformat(completed_at) - datetime.fromisoformat(started_at)
    except ValueError:
        return None
    return max(0, int(delta.total_seconds() * 1000))


# ============================================================================
# MIGRATION
# ============================================================================

def migrate_state_dict(raw: Any) -> Tuple[Dict[str, Any], List[str]]:
    """
    Backfill fields missing from an older or partial state file.

    Never rejects missing optional data; structural garbage (non-object
    state, non-object hypotheses) is left for decoding to reject.

    Args:
        raw: Parsed JSON content of state.json

    Returns:
        Tuple of (migrated dict, list of human-readable migration notes)

    Raises:
        StateDecodeError: If the content is not a JSON object at all
    """
    if not isinstance(raw, dict):
        raise StateDecodeError(f"State must be a JSON object, got {type(raw).__name__}")

    data = dict(raw)
    notes: List[str] = []

    if not data.get("workingDirId"):
        data["workingDirId"] = str(uuid.uuid4())
        notes.append("generated missing workingDirId")

    for key in ("problemPrompt", "contextDirectory", "contextRelativePath", "workingDirectory"):
        if data.get(key) is None:
            data[key] = ""
            notes.append(f"defaulted {key}")

    data.setdefault("currentPhase", Phase.SETUP.value)
    data.setdefault("completedPhases", [])

    hypotheses = data.get("hypotheses")
    if hypotheses is None:
        hypotheses = {}
    elif isinstance(hypotheses, list):
        # Early state files stored hypotheses as a list
        hypotheses = {h.get("id"): h for h in hypotheses if isinstance(h, dict) and h.get("id")}
        notes.append("converted hypotheses list to mapping")

    migrated_hypotheses = {}
    if isinstance(hypotheses, dict):
        for hid, record in hypotheses.items():
            if not isinstance(record, dict):
                migrated_hypotheses[hid] = record
                continue
            record = dict(record)
            record.setdefault("id", hid)
            result = record.get("result")
            if result is not None and (not isinstance(result, dict) or "_tag" not in result):
                record["result"] = None
                notes.append(f"{hid}: dropped untagged result")
            if record.get("status") == HypothesisStatus.COMPLETED.value and not record.get("result"):
                record["status"] = HypothesisStatus.FAILED.value
                notes.append(f"{hid}: completed without result, marked failed")
            elif record.get("status") != HypothesisStatus.COMPLETED.value and record.get("result"):
                record["result"] = None
                notes.append(f"{hid}: dropped result on non-completed hypothesis")
            migrated_hypotheses[hid] = record
        data["hypotheses"] = migrated_hypotheses
    else:
        data["hypotheses"] = hypotheses

    if not isinstance(data.get("progress"), dict):
        data["progress"] = {"phase": data["currentPhase"]}
        notes.append("defaulted progress")
    if not isinstance(data.get("metrics"), dict):
        data["metrics"] = {}
        data["_recomputeMetrics"] = True
        notes.append("defaulted metrics")
    if not isinstance(data.get("store"), dict):
        data["store"] = {}

    return data, notes


def decode_state(raw: Any) -> RunState:
    """
    Migrate and decode persisted state.

    Raises:
        StateDecodeError: If the state is unusable even after migration
    """
    data, notes = migrate_state_dict(raw)
    for note in notes:
        logger.info(f"State migration: {note}")

    try:
        state = RunState.from_dict(data)
    except (ValidationError, KeyError, TypeError, ValueError, AttributeError) as e:
        raise StateDecodeError(f"Persisted state is corrupt: {e}") from e

    if data.get("_recomputeMetrics") or notes:
        state.metrics = recompute_metrics(state)
    return state


def read_state(state_file: Path) -> RunState:
    """
    Decode a persisted state file without taking ownership of it (nothing is
    written back, migrations stay in memory).

    Raises:
        StateDecodeError: If the file cannot be read or decoded
    """
    try:
        raw = load_json_file(state_file)
    except (OSError, json.JSONDecodeError) as e:
        raise StateDecodeError(f"Cannot read state file {state_file}: {e}") from e
    return decode_state(raw)


# ============================================================================
# STORE
# ============================================================================

class RunStateStore:
    """
    Authoritative run state for one working directory.

    Usage:
        store = RunStateStore(WorkingDir.at(path))
        store.load_or_create()
        await store.register_hypothesis("H001", "h001-cache-miss", "Cache is stale")
        await store.update_hypothesis("H001", status=HypothesisStatus.RUNNING)
    """

    def __init__(self, working_dir: WorkingDir):
        """
        Initialize store (nothing is read until load_or_create)

        Args:
            working_dir: Working directory layout
        """
        self.working_dir = working_dir
        self._state: Optional[RunState] = None
        self._lock = asyncio.Lock()

    @property
    def state_file(self) -> Path:
        return self.working_dir.state_file

    @property
    def loaded(self) -> bool:
        return self._state is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load_or_create(self) -> RunState:
        """
        Load persisted state, or create a fresh one, then persist immediately.

        Returns:
            Copy of the current state

        Raises:
            StateDecodeError: If the state file exists but is corrupt
            StatePersistenceError: If the initial write fails
        """
        if self.state_file.exists():
            self._state = read_state(self.state_file)
            logger.info(
                f"Loaded run state {self._state.working_dir_id} "
                f"(phase={self._state.current_phase.value}, "
                f"hypotheses={len(self._state.hypotheses)})"
            )
        else:
            self._state = RunState(working_directory=str(self.working_dir.root))
            logger.info(f"Created new run state {self._state.working_dir_id}")

        self._persist(self._state)
        return self.get_state()

    def get_state(self) -> RunState:
        """Return a deep copy of the current state"""
        return copy.deepcopy(self._require_state())

    def get_hypothesis(self, hypothesis_id: str) -> HypothesisRecord:
        """
        Return a copy of one hypothesis record.

        Raises:
            HypothesisNotFoundError: If the id is unknown
        """
        record = self._require_state().hypotheses.get(hypothesis_id)
        if record is None:
            raise HypothesisNotFoundError(f"Unknown hypothesis: {hypothesis_id}")
        return copy.deepcopy(record)

    def list_hypotheses(self, status: Optional[HypothesisStatus] = None) -> List[HypothesisRecord]:
        """Copies of all records in generation order, optionally filtered by status"""
        records = self._require_state().hypotheses.values()
        return [
            copy.deepcopy(h) for h in records
            if status is None or h.status == status
        ]

    # ------------------------------------------------------------------
    # Mutation contract
    # ------------------------------------------------------------------

    async def update_state(self, updater: StateUpdater) -> RunState:
        """
        Apply updater to the current state and persist the result.

        The updater receives a private deep copy; it may modify and return it
        or return a new RunState. If it raises, nothing changes.

        Args:
            updater: Function from old state to new state

        Returns:
            Copy of the new state

        Raises:
            StatePersistenceError: If the new state could not be written. The
                new state is still kept in memory and will be written by the
                next successful persist.
        """
        async with self._lock:
            snapshot = copy.deepcopy(self._require_state())
            new_state = updater(snapshot)
            if new_state is None:
                new_state = snapshot
            self._state = new_state
            self._persist(new_state)
            return copy.deepcopy(new_state)

    def _persist(self, state: RunState) -> None:
        try:
            save_json_file(self.state_file, state.to_dict())
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to persist state to {self.state_file}: {e}")
            raise StatePersistenceError(f"Failed to persist state to {self.state_file}: {e}") from e

    def _require_state(self) -> RunState:
        if self._state is None:
            raise RuntimeError("RunStateStore used before load_or_create()")
        return self._state

    # ------------------------------------------------------------------
    # Run-level operations
    # ------------------------------------------------------------------

    async def set_problem(self, problem_prompt: str, context_directory: str,
                          context_relative_path: str = "",
                          working_directory: str = "") -> RunState:
        """
        Record the problem statement and context location.

        Raises:
            InvalidTransitionError: If a different problem prompt was already set
        """
        def updater(state: RunState) -> RunState:
            if state.problem_prompt and state.problem_prompt != problem_prompt:
                raise InvalidTransitionError(
                    "Problem prompt is already set for this working directory; "
                    "use a new working directory for a different problem"
                )
            state.problem_prompt = problem_prompt
            state.context_directory = context_directory
            state.context_relative_path = context_relative_path
            state.working_directory = working_directory or state.working_directory
            return state

        return await self.update_state(updater)

    async def set_phase(self, phase: Phase) -> RunState:
        """
        Move the run to phase.

        The entered phase is appended to completedPhases (once). Moving
        backward is only possible out of the failed phase.

        Raises:
            InvalidTransitionError: On a backward move
        """
        def updater(state: RunState) -> RunState:
            old = state.current_phase
            if phase != Phase.FAILED and old != Phase.FAILED \
                    and phase_index(phase) < phase_index(old):
                raise InvalidTransitionError(
                    f"Cannot move run from {old.value} back to {phase.value}"
                )
            if phase not in state.completed_phases:
                state.completed_phases.append(phase)
            state.current_phase = phase
            state.progress.phase = phase
            return state

        logger.info(f"Run phase -> {phase.value}")
        return await self.update_state(updater)

    async def advance_phase(self, phase: Phase) -> RunState:
        """set_phase, but a no-op when the run is already at or past phase"""
        current = self._require_state().current_phase
        if current != Phase.FAILED and phase_index(current) >= phase_index(phase):
            return self.get_state()
        return await self.set_phase(phase)

    async def update_progress(self, **fields) -> RunState:
        """Merge current/total/phase/message into the progress block"""
        unknown = set(fields) - {"current", "total", "phase", "message"}
        if unknown:
            raise ValueError(f"Unknown progress fields: {sorted(unknown)}")

        def updater(state: RunState) -> RunState:
            for name, value in fields.items():
                setattr(state.progress, name, value)
            return state

        return await self.update_state(updater)

    async def complete_run(self) -> RunState:
        """Mark the run completed and stamp the end time"""
        def updater(state: RunState) -> RunState:
            state.current_phase = Phase.COMPLETED
            state.progress.phase = Phase.COMPLETED
            state.progress.message = "Run completed"
            state.metrics.end_time = now_iso()
            return state

        logger.info("Run completed")
        return await self.update_state(updater)

    async def fail_run(self, message: str) -> RunState:
        """Mark the run failed (reachable from any phase)"""
        def updater(state: RunState) -> RunState:
            state.current_phase = Phase.FAILED
            state.progress.phase = Phase.FAILED
            state.progress.message = message
            return state

        logger.error(f"Run failed: {message}")
        return await self.update_state(updater)

    # ------------------------------------------------------------------
    # Hypothesis operations
    # ------------------------------------------------------------------

    async def register_hypothesis(self, hypothesis_id: str, slug: str, description: str = "",
                                  worktree_path: Optional[str] = None,
                                  branch_name: Optional[str] = None,
                                  metadata_path: str = "") -> HypothesisRecord:
        """
        Insert a new pending hypothesis.

        Args:
            hypothesis_id: Unique id (H001, ...)
            slug: Workspace slug
            description: Hypothesis text
            worktree_path: Workspace path (default: <workingDirectory>/<slug>)
            branch_name: Branch (default: dilagent/<workingDirId>/<slug>)
            metadata_path: Optional path of the per-hypothesis instructions

        Returns:
            Copy of the new record

        Raises:
            DuplicateHypothesisError: If the id is already registered
        """
        def updater(state: RunState) -> RunState:
            if hypothesis_id in state.hypotheses:
                raise DuplicateHypothesisError(f"Hypothesis {hypothesis_id} already registered")
            root = Path(state.working_directory or self.working_dir.root)
            state.hypotheses[hypothesis_id] = HypothesisRecord(
                id=hypothesis_id,
                slug=slug,
                description=description,
                worktree_path=worktree_path or str(root / slug),
                branch_name=branch_name or f"dilagent/{state.working_dir_id}/{slug}",
                metadata_path=metadata_path,
            )
            state.metrics.hypotheses_generated += 1
            state.progress.total = len(state.hypotheses)
            return state

        state = await self.update_state(updater)
        logger.info(f"Registered hypothesis {hypothesis_id} ({slug})")
        return state.hypotheses[hypothesis_id]

    async def update_hypothesis(self, hypothesis_id: str, **changes) -> HypothesisRecord:
        """
        Merge partial fields into a hypothesis (see apply_hypothesis_update).

        Returns:
            Copy of the updated record
        """
        def updater(state: RunState) -> RunState:
            apply_hypothesis_update(state, hypothesis_id, **changes)
            return state

        state = await self.update_state(updater)
        return state.hypotheses[hypothesis_id]

    async def mark_running(self, hypothesis_id: str) -> HypothesisRecord:
        """Claim a pending hypothesis for a worker and stamp startedAt"""
        def updater(state: RunState) -> RunState:
            record = state.hypotheses.get(hypothesis_id)
            if record is None:
                raise HypothesisNotFoundError(f"Unknown hypothesis: {hypothesis_id}")
            if record.status == HypothesisStatus.RUNNING:
                return state
            apply_hypothesis_update(state, hypothesis_id, status=HypothesisStatus.RUNNING,
                                    started_at=record.started_at or now_iso())
            return state

        state = await self.update_state(updater)
        return state.hypotheses[hypothesis_id]

    async def complete_hypothesis(self, hypothesis_id: str,
                                  result: HypothesisResult) -> HypothesisRecord:
        """
        Mark a hypothesis completed with result, stamping completedAt and duration.

        A pending hypothesis passes through running in the same update.

        Raises:
            InvalidTransitionError: If the hypothesis is already terminal
        """
        def updater(state: RunState) -> RunState:
            completed_at = now_iso()
            record = _advance_status(state, hypothesis_id, HypothesisStatus.COMPLETED,
                                     result=result, completed_at=completed_at)
            record.duration_ms = _duration_ms(record.started_at, completed_at)
            _refresh_progress(state)
            return state

        state = await self.update_state(updater)
        return state.hypotheses[hypothesis_id]

    async def fail_hypothesis(self, hypothesis_id: str) -> HypothesisRecord:
        """Mark a claimed hypothesis failed (execution could not even report)"""
        def updater(state: RunState) -> RunState:
            _advance_status(state, hypothesis_id, HypothesisStatus.FAILED,
                            completed_at=now_iso())
            _refresh_progress(state)
            return state

        state = await self.update_state(updater)
        return state.hypotheses[hypothesis_id]

    async def skip_hypothesis(self, hypothesis_id: str) -> HypothesisRecord:
        """Mark a never-claimed hypothesis skipped"""
        def updater(state: RunState) -> RunState:
            apply_hypothesis_update(state, hypothesis_id, status=HypothesisStatus.SKIPPED)
            _refresh_progress(state)
            return state

        state = await self.update_state(updater)
        return state.hypotheses[hypothesis_id]

    async def set_status_update(self, hypothesis_id: str,
                                update: HypothesisStatusUpdate) -> Tuple[HypothesisRecord, bool]:
        """
        Store an agent's latest progress report, claiming the hypothesis if pending.

        Returns:
            The updated record, and whether this call moved it from pending to running
        """
        claimed = False

        def updater(state: RunState) -> RunState:
            nonlocal claimed
            record = state.hypotheses.get(hypothesis_id)
            if record is None:
                raise HypothesisNotFoundError(f"Unknown hypothesis: {hypothesis_id}")
            if record.status == HypothesisStatus.PENDING:
                apply_hypothesis_update(state, hypothesis_id, status=HypothesisStatus.RUNNING,
                                        started_at=record.started_at or now_iso())
                claimed = True
            apply_hypothesis_update(state, hypothesis_id, current_status_update=update)
            return state

        state = await self.update_state(updater)
        return state.hypotheses[hypothesis_id], claimed

    async def clear_hypotheses(self) -> RunState:
        """
        Reset every hypothesis to pending, clearing results, status updates and
        timestamps. The one sanctioned backward move of the lifecycle.
        """
        def updater(state: RunState) -> RunState:
            for record in state.hypotheses.values():
                record.status = HypothesisStatus.PENDING
                record.result = None
                record.current_status_update = None
                record.started_at = None
                record.completed_at = None
                record.duration_ms = None
            state.metrics = recompute_metrics(state)
            state.metrics.end_time = None
            state.progress.current = 0
            return state

        logger.info("Clearing all hypothesis results")
        return await self.update_state(updater)

    # ------------------------------------------------------------------
    # Key/value namespace
    # ------------------------------------------------------------------

    def kv_get(self, key: str) -> Optional[StoreValue]:
        value = self._require_state().store.get(key)
        return copy.deepcopy(value)

    async def kv_set(self, key: str, value: StoreValue) -> None:
        def updater(state: RunState) -> RunState:
            state.store[key] = value
            return state

        await self.update_state(updater)

    async def kv_delete(self, key: str) -> bool:
        """Remove key, returning whether this call removed it"""
        existed = False

        def updater(state: RunState) -> RunState:
            nonlocal existed
            existed = key in state.store
            state.store.pop(key, None)
            return state

        await self.update_state(updater)
        return existed

    def kv_list(self) -> List[Tuple[str, StoreValue]]:
        return [(key, copy.deepcopy(value)) for key, value in self._require_state().store.items()]

    def kv_keys(self) -> List[str]:
        return list(self._require_state().store.keys())

    async def kv_clear(self) -> None:
        def updater(state: RunState) -> RunState:
            state.store.clear()
            return state

        await self.update_state(updater)

    def __repr__(self) -> str:
        if self._state is None:
            return f"RunStateStore({self.working_dir.root}, not loaded)"
        return (
            f"RunStateStore(id={self._state.working_dir_id}, "
            f"phase={self._state.current_phase.value}, "
            f"hypotheses={len(self._state.hypotheses)})"
        )
