#!/usr/bin/env python3
"""
Interactive inspection of a working directory

Read-only: every command reloads state.json and timeline.json from disk, so
the REPL can watch a run driven by another process without taking part in it.

Commands:
    list              Hypotheses with status and result
    show <id>         One hypothesis in detail
    metrics           Run metrics
    timeline [n]      Last n timeline events (default 20)
    phase             Current and completed phases
    help              This list
    exit | quit       Leave
"""

import json
import logging
from typing import Callable, List, Optional

from .errors import DilagentError
from .models import RunState
from .state_store import read_state
from .timeline import HypothesisEvent, Timeline
from .utils import truncate
from .working_dir import WorkingDir

logger = logging.getLogger(__name__)

HELP_TEXT = """\
Commands:
  list              Hypotheses with status and result
  show <id>         One hypothesis in detail
  metrics           Run metrics
  timeline [n]      Last n timeline events (default 20)
  phase             Current and completed phases
  help              This list
  exit | quit       Leave"""


class InspectionRepl:
    """Read-only command loop over a working directory"""

    def __init__(self, working_dir: WorkingDir,
                 input_fn: Callable[[str], str] = input,
                 output_fn: Callable[[str], None] = print):
        self.working_dir = working_dir
        self.input_fn = input_fn
        self.output_fn = output_fn

    def _load_state(self) -> RunState:
        if not self.working_dir.state_file.exists():
            raise DilagentError(f"No run state in {self.working_dir.root}; run `dilagent setup` first")
        return read_state(self.working_dir.state_file)

    def _load_timeline(self) -> Timeline:
        timeline = Timeline(self.working_dir.timeline_file)
        timeline.load()
        return timeline

    def run(self) -> None:
        """Read commands until exit, quit or end of input"""
        self.output_fn(f"dilagent inspector for {self.working_dir.root} (type 'help')")
        while True:
            try:
                line = self.input_fn("dilagent> ")
            except EOFError:
                break
            if not self.handle(line):
                break

    def handle(self, line: str) -> bool:
        """
        Execute one command line.

        Returns:
            False when the loop should stop
        """
        parts = line.strip().split()
        if not parts:
            return True
        command, args = parts[0].lower(), parts[1:]

        if command in ("exit", "quit"):
            return False
        if command == "help":
            self.output_fn(HELP_TEXT)
            return True

        handlers = {
            "list": self._cmd_list,
            "show": self._cmd_show,
            "metrics": self._cmd_metrics,
            "timeline": self._cmd_timeline,
            "phase": self._cmd_phase,
        }
        handler = handlers.get(command)
        if handler is None:
            self.output_fn(f"Unknown command: {command} (type 'help')")
            return True

        try:
            handler(args)
        except DilagentError as e:
            self.output_fn(f"Error: {e}")
        return True

    def _cmd_list(self, args: List[str]) -> None:
        state = self._load_state()
        if not state.hypotheses:
            self.output_fn("No hypotheses yet")
            return
        for record in state.hypotheses.values():
            outcome = record.result.TAG if record.result else "-"
            title = record.description.splitlines()[0] if record.description else ""
            self.output_fn(f"{record.id:<6} {record.status.value:<10} {outcome:<13} "
                           f"{truncate(title, 50)}")

    def _cmd_show(self, args: List[str]) -> None:
        if not args:
            self.output_fn("Usage: show <id>")
            return
        state = self._load_state()
        record = state.hypotheses.get(args[0].upper())
        if record is None:
            self.output_fn(f"Unknown hypothesis: {args[0]}")
            return
        self.output_fn(json.dumps(record.to_dict(), indent=2))

    def _cmd_metrics(self, args: List[str]) -> None:
        state = self._load_state()
        for name, value in state.metrics.to_dict().items():
            self.output_fn(f"{name}: {value}")

    def _cmd_timeline(self, args: List[str]) -> None:
        limit = 20
        if args:
            try:
                limit = max(1, int(args[0]))
            except ValueError:
                self.output_fn("Usage: timeline [n]")
                return
        events = self._load_timeline().get_events()
        for event in events[-limit:]:
            target = f" {event.hypothesis_id}" if isinstance(event, HypothesisEvent) else ""
            self.output_fn(f"{event.timestamp} [{event.phase.value}] {event.event}{target}: "
                           f"{event.message}")

    def _cmd_phase(self, args: List[str]) -> None:
        state = self._load_state()
        completed = ", ".join(p.value for p in state.completed_phases) or "none"
        self.output_fn(f"Current phase: {state.current_phase.value}")
        self.output_fn(f"Completed: {completed}")
        self.output_fn(f"Progress: {state.progress.current}/{state.progress.total} "
                       f"{state.progress.message}")


def run_repl(working_dir: WorkingDir, input_fn: Optional[Callable[[str], str]] = None) -> None:
    InspectionRepl(working_dir, input_fn or input).run()
