#!/usr/bin/env python3
"""
dilagent - root-cause debugging with competing hypotheses

Every phase is its own command and can be re-run to resume an interrupted
run; `all` chains them.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..shared.git_utils import GitOperationError
from .agent import ClaudeAgentRunner
from .config import ConfigValidationError, DilagentConfig, load_config
from .errors import DilagentError
from .orchestrator import PhaseOrchestrator
from .repl import run_repl
from .state_store import RunStateStore, read_state
from .timeline import Timeline
from .tool_bridge import HOST_ENV, PORT_ENV, call_tool
from .utils import setup_logging, truncate
from .working_dir import WorkingDir

logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130

EXAMPLES = """
Examples:
    dilagent setup --working-dir ./debug-login --context-dir ./service \\
        --prompt "Login fails with 401 after the token refresh"
    dilagent repro --working-dir ./debug-login
    dilagent generate-hypotheses --working-dir ./debug-login
    dilagent run-hypotheses --working-dir ./debug-login --concurrency 2
    dilagent summary --working-dir ./debug-login
    dilagent all --working-dir ./debug-login --context-dir ./service --prompt "..."
"""


# ============================================================================
# HELPERS
# ============================================================================

def ask_on_console(questions: List[str]) -> str:
    """Ask the operator reproduction questions; an empty line ends the answer"""
    print("\nThe reproduction agent needs more information:", file=sys.stderr)
    for i, question in enumerate(questions, 1):
        print(f"  {i}. {question}", file=sys.stderr)
    print("Answer (finish with an empty line):", file=sys.stderr)

    lines = []
    while True:
        try:
            line = input()
        except EOFError:
            break
        if not line.strip():
            break
        lines.append(line)
    return "\n".join(lines)


def _configure_logging(config: DilagentConfig, verbose: bool,
                       working_dir: Optional[WorkingDir] = None) -> None:
    level = logging.DEBUG if verbose else getattr(logging, config.logging.level.upper())
    log_file = None
    if working_dir is not None and working_dir.exists():
        log_file = working_dir.logs_dir / config.logging.file
    setup_logging(log_file=log_file, level=level, use_colors=config.logging.use_colors)


def _config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if getattr(args, "concurrency", None) is not None:
        overrides["execution"] = {"concurrency": args.concurrency}
    return overrides


def _open_orchestrator(working_dir: WorkingDir, config: DilagentConfig,
                       interactive: bool = True) -> PhaseOrchestrator:
    """Load state and timeline for working_dir and wire up the orchestrator"""
    store = RunStateStore(working_dir)
    store.load_or_create()
    timeline = Timeline(working_dir.timeline_file)
    timeline.load()
    return PhaseOrchestrator(
        working_dir, store, timeline,
        agent=ClaudeAgentRunner(config.agent),
        config=config,
        answer_provider=ask_on_console if interactive else None,
    )


def _require_existing(working_dir: WorkingDir) -> None:
    if not working_dir.exists():
        raise DilagentError(f"{working_dir.root} is not a dilagent working directory; "
                            f"run `dilagent setup` first")


# ============================================================================
# COMMANDS
# ============================================================================

def cmd_setup(args, working_dir: WorkingDir, config: DilagentConfig) -> int:
    working_dir.initialize()
    _configure_logging(config, args.verbose, working_dir)
    orchestrator = _open_orchestrator(working_dir, config)
    asyncio.run(orchestrator.setup(args.prompt, Path(args.context_dir)))
    if not working_dir.config_file.exists():
        working_dir.config_file.write_text(config.to_yaml())
        logger.info(f"Wrote effective configuration to {working_dir.config_file}")
    print(f"Working directory ready: {working_dir.root}")
    print("Next: dilagent repro --working-dir", working_dir.root)
    return 0


def cmd_repro(args, working_dir: WorkingDir, config: DilagentConfig) -> int:
    _require_existing(working_dir)
    orchestrator = _open_orchestrator(working_dir, config, interactive=not args.no_input)
    result = asyncio.run(orchestrator.repro(force=args.force))
    print(f"Reproduced: {result.observed_behavior}")
    print(f"Details: {working_dir.reproduction_file}")
    return 0


def cmd_generate(args, working_dir: WorkingDir, config: DilagentConfig) -> int:
    _require_existing(working_dir)
    orchestrator = _open_orchestrator(working_dir, config)
    hypotheses = asyncio.run(orchestrator.generate_hypotheses())
    for hypothesis in hypotheses:
        print(f"  {hypothesis.hypothesis_id}  {hypothesis.title}")
    return 0


def cmd_run(args, working_dir: WorkingDir, config: DilagentConfig) -> int:
    _require_existing(working_dir)
    orchestrator = _open_orchestrator(working_dir, config)
    results = asyncio.run(orchestrator.run_hypotheses())
    for hypothesis_id, record in results.items():
        outcome = record.result.TAG if record.result else record.status.value
        print(f"  {hypothesis_id}  {outcome}")
    return 0


def cmd_summary(args, working_dir: WorkingDir, config: DilagentConfig) -> int:
    _require_existing(working_dir)
    orchestrator = _open_orchestrator(working_dir, config)
    print(asyncio.run(orchestrator.summary(args.format)))
    return 0


def cmd_all(args, working_dir: WorkingDir, config: DilagentConfig) -> int:
    working_dir.initialize()
    _configure_logging(config, args.verbose, working_dir)
    orchestrator = _open_orchestrator(working_dir, config)
    print(asyncio.run(orchestrator.run_all(args.prompt, Path(args.context_dir))))
    return 0


def cmd_state_clear(args, working_dir: WorkingDir, config: DilagentConfig) -> int:
    _require_existing(working_dir)
    store = RunStateStore(working_dir)
    store.load_or_create()
    timeline = Timeline(working_dir.timeline_file)
    timeline.load()

    async def clear() -> int:
        state = await store.clear_hypotheses()
        await timeline.record_user("user.decision", state.current_phase,
                                   "Reset all hypotheses to pending",
                                   {"hypotheses": list(state.hypotheses)})
        return len(state.hypotheses)

    count = asyncio.run(clear())
    print(f"Reset {count} hypotheses to pending")
    return 0


def cmd_status(args, working_dir: WorkingDir, config: DilagentConfig) -> int:
    _require_existing(working_dir)
    state = read_state(working_dir.state_file)
    metrics = state.metrics

    print(f"Run:      {state.working_dir_id}")
    print(f"Problem:  {truncate(state.problem_prompt, 70) or '(not set)'}")
    print(f"Phase:    {state.current_phase.value}")
    print(f"Progress: {state.progress.current}/{state.progress.total} {state.progress.message}")
    print(f"Metrics:  generated={metrics.hypotheses_generated} "
          f"completed={metrics.hypotheses_completed} "
          f"successful={metrics.hypotheses_successful} "
          f"failed={metrics.hypotheses_failed} skipped={metrics.hypotheses_skipped}")
    for record in state.hypotheses.values():
        outcome = record.result.TAG if record.result else ""
        print(f"  {record.id}  {record.status.value:<10} {outcome:<13} {record.slug}")
    return 0


def cmd_repl(args, working_dir: WorkingDir, config: DilagentConfig) -> int:
    _require_existing(working_dir)
    run_repl(working_dir)
    return 0


def cmd_tool(args, working_dir: Optional[WorkingDir], config: DilagentConfig) -> int:
    """Forward one tool call to the bridge and print the JSON response"""
    try:
        arguments = json.loads(args.args) if args.args else {}
    except json.JSONDecodeError as e:
        print(json.dumps({"ok": False, "error": f"--args is not valid JSON: {e}"}))
        return 1

    if args.port is None:
        print(json.dumps({"ok": False, "error": f"no bridge port (--port or ${PORT_ENV})"}))
        return 1

    try:
        response = asyncio.run(call_tool(args.host, args.port, args.name, arguments))
    except (OSError, asyncio.TimeoutError) as e:
        print(json.dumps({"ok": False, "error": f"cannot reach tool bridge: {e}"}))
        return 1

    print(json.dumps(response, indent=2))
    return 0 if response.get("ok") else 1


COMMANDS = {
    "setup": cmd_setup,
    "repro": cmd_repro,
    "generate-hypotheses": cmd_generate,
    "run-hypotheses": cmd_run,
    "summary": cmd_summary,
    "all": cmd_all,
    "state-clear": cmd_state_clear,
    "status": cmd_status,
    "repl": cmd_repl,
    "tool": cmd_tool,
}


# ============================================================================
# MAIN CLI
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dilagent",
        description="Root-cause debugging with competing hypotheses tested in parallel",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EXAMPLES,
    )
    parser.add_argument("--config", help="Path to a YAML config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", metavar="<command>")
    subparsers.required = True

    def add_command(name: str, help_text: str) -> argparse.ArgumentParser:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--working-dir", "-w", default=".",
                         help="Working directory of the run (default: current directory)")
        return sub

    for name in ("setup", "all"):
        sub = add_command(name, "Prepare a run" if name == "setup" else "Run every phase")
        sub.add_argument("--context-dir", "-c", required=True,
                         help="Directory holding the code to debug")
        sub.add_argument("--prompt", "-p", required=True, help="Problem description")

    repro = add_command("repro", "Reproduce the problem")
    repro.add_argument("--force", action="store_true",
                       help="Reproduce again even if a reproduction exists")
    repro.add_argument("--no-input", action="store_true",
                       help="Fail instead of asking questions on the console")

    add_command("generate-hypotheses", "Generate hypotheses and their worktrees")

    run = add_command("run-hypotheses", "Test all pending hypotheses in parallel")
    run.add_argument("--concurrency", type=int, help="Maximum parallel agents (default: 4)")

    summary = add_command("summary", "Write and print the summary report")
    summary.add_argument("--format", choices=["markdown", "json", "text"], default="markdown",
                         help="Output format")

    add_command("state-clear", "Reset every hypothesis to pending")
    add_command("status", "Show run phase, metrics and hypotheses")
    add_command("repl", "Inspect the run interactively (read-only)")

    tool = subparsers.add_parser("tool", help="Call a result-reporting tool (used by agents)")
    tool.add_argument("name", help="Tool name, e.g. hypothesis_set_result")
    tool.add_argument("--args", default="{}", help="Tool arguments as a JSON object")
    tool.add_argument("--host", default=None, help=f"Bridge host (default: ${HOST_ENV})")
    tool.add_argument("--port", type=int, default=None, help=f"Bridge port (default: ${PORT_ENV})")

    return parser


def _apply_tool_env(args: argparse.Namespace, environ: Dict[str, str]) -> None:
    if args.host is None:
        args.host = environ.get(HOST_ENV, "127.0.0.1")
    if args.port is None and environ.get(PORT_ENV, "").isdigit():
        args.port = int(environ[PORT_ENV])


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "tool":
        _apply_tool_env(args, dict(os.environ))
        logging.basicConfig(level=logging.WARNING)
        sys.exit(cmd_tool(args, None, DilagentConfig()))

    working_dir = WorkingDir.at(args.working_dir)

    try:
        config = load_config(args.config, working_dir, **_config_overrides(args))
    except (ConfigValidationError, FileNotFoundError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    _configure_logging(config, args.verbose, working_dir)

    try:
        sys.exit(COMMANDS[args.command](args, working_dir, config))
    except KeyboardInterrupt:
        logger.info("interrupted")
        sys.exit(EXIT_INTERRUPTED)
    except (DilagentError, GitOperationError) as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        logger.error(f"Command failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
