#!/usr/bin/env python3
"""
Timeline Log

Append-only audit log of everything that happens during a run. Events are
closed, tagged types (phase, hypothesis, system, user, git); only hypothesis
events carry a hypothesis id. Every recorded event is persisted before
``record_event`` returns, and the file is always replaced atomically.

File format (.dilagent/timeline.json):
    {
      "createdAt": "...",
      "events": [{"_tag": "PhaseEvent", "timestamp": ..., "event": ..., ...}]
    }

Usage:
    timeline = Timeline(working_dir.timeline_file)
    timeline.load()
    await timeline.record_phase("phase.started", Phase.SETUP, "Setting up")
    stats = timeline.get_statistics()
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Dict, List, Optional

from .errors import StateDecodeError, StatePersistenceError, ValidationError
from .models import Phase, now_iso, parse_enum
from .utils import load_json_file, save_json_file

logger = logging.getLogger(__name__)


# ============================================================================
# EVENT TYPES
# ============================================================================

class EventTag(Enum):
    """Event categories"""
    PHASE = "PhaseEvent"
    HYPOTHESIS = "HypothesisEvent"
    SYSTEM = "SystemEvent"
    USER = "UserEvent"
    GIT = "GitEvent"


EVENT_NAMES = {
    EventTag.PHASE: {"phase.started", "phase.completed", "phase.failed"},
    EventTag.HYPOTHESIS: {
        "hypothesis.generated",
        "hypothesis.started",
        "hypothesis.completed",
        "hypothesis.failed",
        "hypothesis.skipped",
    },
    EventTag.SYSTEM: {"system.initialized", "system.error", "system.warning"},
    EventTag.USER: {"user.feedback", "user.decision"},
    EventTag.GIT: {"git.worktree.created", "git.commit.created", "git.branch.created"},
}


@dataclass(frozen=True)
class TimelineEvent:
    """Base for all timeline events (never instantiated directly)"""
    TAG: ClassVar[EventTag]

    event: str
    phase: Phase
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""

    def validate(self) -> None:
        """
        Check the event belongs to its category and is fully formed.

        Raises:
            ValidationError: On any problem
        """
        problems = []
        if self.event not in EVENT_NAMES[self.TAG]:
            problems.append(
                f"event '{self.event}' is not a {self.TAG.value} "
                f"(expected one of {sorted(EVENT_NAMES[self.TAG])})"
            )
        if not isinstance(self.phase, Phase):
            problems.append("phase must be a Phase")
        if not isinstance(self.message, str):
            problems.append("message must be a string")
        if not isinstance(self.details, dict):
            problems.append("details must be an object")
        if problems:
            raise ValidationError("invalid timeline event", problems)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_tag": self.TAG.value,
            "timestamp": self.timestamp,
            "event": self.event,
            "phase": self.phase.value,
            "message": self.message,
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class PhaseEvent(TimelineEvent):
    TAG: ClassVar[EventTag] = EventTag.PHASE


@dataclass(frozen=True)
class HypothesisEvent(TimelineEvent):
    TAG: ClassVar[EventTag] = EventTag.HYPOTHESIS

    hypothesis_id: str = ""

    def validate(self) -> None:
        super().validate()
        if not self.hypothesis_id:
            raise ValidationError("invalid timeline event", ["hypothesis events need a hypothesisId"])

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["hypothesisId"] = self.hypothesis_id
        return d


@dataclass(frozen=True)
class SystemEvent(TimelineEvent):
    TAG: ClassVar[EventTag] = EventTag.SYSTEM


@dataclass(frozen=True)
class UserEvent(TimelineEvent):
    TAG: ClassVar[EventTag] = EventTag.USER


@dataclass(frozen=True)
class GitEvent(TimelineEvent):
    TAG: ClassVar[EventTag] = EventTag.GIT


EVENT_TYPES = {
    cls.TAG.value: cls
    for cls in (PhaseEvent, HypothesisEvent, SystemEvent, UserEvent, GitEvent)
}


def event_from_dict(data: Any) -> TimelineEvent:
    """
    Decode a persisted event.

    Raises:
        ValidationError: If the tag is unknown or required fields are missing
    """
    if not isinstance(data, dict):
        raise ValidationError("invalid timeline event", ["event must be an object"])

    event_cls = EVENT_TYPES.get(data.get("_tag"))
    if event_cls is None:
        raise ValidationError("invalid timeline event", [f"unknown tag {data.get('_tag')!r}"])

    kwargs = {
        "event": data.get("event", ""),
        "phase": parse_enum(Phase, data.get("phase"), "phase"),
        "message": data.get("message", ""),
        "details": data.get("details") or {},
        "timestamp": data.get("timestamp", ""),
    }
    if event_cls is HypothesisEvent:
        kwargs["hypothesis_id"] = data.get("hypothesisId", "")

    event = event_cls(**kwargs)
    event.validate()
    return event


# ============================================================================
# STATISTICS
# ============================================================================

def compute_statistics(events: List[TimelineEvent]) -> Dict[str, Any]:
    """
    Aggregate counts over a sequence of events.

    Pure function: replaying the persisted events through it gives the same
    answer as Timeline.get_statistics().

    Args:
        events: Events in log order

    Returns:
        Dictionary with totalEvents, eventsByPhase, eventsByHypothesis,
        eventsByTag, firstEvent and lastEvent
    """
    by_phase: Dict[str, int] = {}
    by_hypothesis: Dict[str, int] = {}
    by_tag: Dict[str, int] = {}

    for event in events:
        by_phase[event.phase.value] = by_phase.get(event.phase.value, 0) + 1
        by_tag[event.TAG.value] = by_tag.get(event.TAG.value, 0) + 1
        if isinstance(event, HypothesisEvent):
            by_hypothesis[event.hypothesis_id] = by_hypothesis.get(event.hypothesis_id, 0) + 1

    return {
        "totalEvents": len(events),
        "eventsByPhase": by_phase,
        "eventsByHypothesis": by_hypothesis,
        "eventsByTag": by_tag,
        "firstEvent": events[0].timestamp if events else None,
        "lastEvent": events[-1].timestamp if events else None,
    }


# ============================================================================
# TIMELINE
# ============================================================================

class Timeline:
    """
    Durable, append-only event log for one working directory.

    Concurrent ``record_event`` calls are serialized by an asyncio lock; each
    event appears in the log exactly once, in the order the calls complete.
    """

    def __init__(self, path: Path):
        """
        Initialize timeline

        Args:
            path: Location of timeline.json
        """
        self.path = Path(path)
        self.created_at = now_iso()
        self._events: List[TimelineEvent] = []
        self._lock = asyncio.Lock()

    def load(self) -> None:
        """
        Load persisted events, or start empty if the file does not exist.

        Raises:
            StateDecodeError: If the file exists but cannot be decoded
        """
        if not self.path.exists():
            logger.debug(f"No timeline at {self.path}, starting empty")
            return

        try:
            data = load_json_file(self.path)
        except (OSError, json.JSONDecodeError) as e:
            raise StateDecodeError(f"Cannot read timeline {self.path}: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("events", []), list):
            raise StateDecodeError(f"Timeline {self.path} is not a timeline object")

        try:
            events = [event_from_dict(raw) for raw in data.get("events", [])]
        except ValidationError as e:
            raise StateDecodeError(f"Corrupt event in timeline {self.path}: {e}") from e

        self.created_at = data.get("createdAt") or self.created_at
        self._events = events
        logger.debug(f"Loaded {len(events)} timeline events from {self.path}")

    def persist(self) -> None:
        """
        Write the full log atomically.

        Raises:
            StatePersistenceError: If the file cannot be written
        """
        payload = {
            "createdAt": self.created_at,
            "events": [event.to_dict() for event in self._events],
        }
        try:
            save_json_file(self.path, payload)
        except (OSError, TypeError, ValueError) as e:
            raise StatePersistenceError(f"Failed to persist timeline to {self.path}: {e}") from e

    async def record_event(self, event: TimelineEvent) -> TimelineEvent:
        """
        Validate, timestamp, append and persist one event.

        Args:
            event: Event to record (timestamp filled in when empty)

        Returns:
            The stored event

        Raises:
            ValidationError: If the event is malformed (nothing is appended)
            StatePersistenceError: If the log could not be written
        """
        if not event.timestamp:
            event = replace(event, timestamp=now_iso())
        event.validate()

        async with self._lock:
            self._events.append(event)
            self.persist()

        logger.debug(f"Timeline: {event.event} [{event.phase.value}] {event.message}")
        return event

    async def record_phase(self, event: str, phase: Phase, message: str,
                           details: Optional[Dict[str, Any]] = None) -> TimelineEvent:
        return await self.record_event(PhaseEvent(event, phase, message, details or {}))

    async def record_hypothesis(self, event: str, phase: Phase, hypothesis_id: str,
                                message: str,
                                details: Optional[Dict[str, Any]] = None) -> TimelineEvent:
        return await self.record_event(
            HypothesisEvent(event, phase, message, details or {}, hypothesis_id=hypothesis_id)
        )

    async def record_system(self, event: str, phase: Phase, message: str,
                            details: Optional[Dict[str, Any]] = None) -> TimelineEvent:
        return await self.record_event(SystemEvent(event, phase, message, details or {}))

    async def record_user(self, event: str, phase: Phase, message: str,
                          details: Optional[Dict[str, Any]] = None) -> TimelineEvent:
        return await self.record_event(UserEvent(event, phase, message, details or {}))

    async def record_git(self, event: str, phase: Phase, message: str,
                         details: Optional[Dict[str, Any]] = None) -> TimelineEvent:
        return await self.record_event(GitEvent(event, phase, message, details or {}))

    def get_events(self, phase: Optional[Phase] = None, hypothesis_id: Optional[str] = None,
                   tag: Optional[EventTag] = None) -> List[TimelineEvent]:
        """
        Return a filtered copy of the log.

        Args:
            phase: Only events recorded during this phase
            hypothesis_id: Only hypothesis events for this id
            tag: Only events of this category

        Returns:
            Matching events in log order
        """
        events = list(self._events)
        if phase is not None:
            events = [e for e in events if e.phase == phase]
        if hypothesis_id is not None:
            events = [
                e for e in events
                if isinstance(e, HypothesisEvent) and e.hypothesis_id == hypothesis_id
            ]
        if tag is not None:
            events = [e for e in events if e.TAG == tag]
        return events

    def get_statistics(self) -> Dict[str, Any]:
        """Aggregate counts over the whole log (see compute_statistics)"""
        return compute_statistics(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def __repr__(self) -> str:
        return f"Timeline(path={self.path}, events={len(self._events)})"
