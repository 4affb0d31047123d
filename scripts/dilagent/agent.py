#!/usr/bin/env python3
"""
Agent Adapter

Runs the external LLM agent CLI as a subprocess and returns its final text.
The rest of dilagent only sees ``AgentRunner.prompt``; tests substitute a
fake runner.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..shared.subprocess_utils import run_command_async
from .config import AgentConfig
from .errors import AgentExecutionError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class AgentOptions:
    """Per-invocation agent settings"""
    use_best_model: bool = False
    system_prompt: str = ""
    working_dir: Optional[Path] = None
    skip_permissions: Optional[bool] = None  # None = take from AgentConfig
    env: Dict[str, str] = field(default_factory=dict)
    debug_log_path: Optional[Path] = None
    timeout: Optional[float] = None


class AgentRunner:
    """Interface for anything that can answer a prompt"""

    async def prompt(self, prompt: str, options: Optional[AgentOptions] = None) -> str:
        """
        Send prompt to the agent and wait for its final answer.

        Raises:
            AgentExecutionError: If the agent fails or times out
        """
        raise NotImplementedError


class ClaudeAgentRunner(AgentRunner):
    """Runs ``claude --print`` with JSON output"""

    def __init__(self, config: Optional[AgentConfig] = None):
        self.config = config or AgentConfig()

    def build_command(self, options: AgentOptions) -> List[str]:
        """Build the CLI argument list (the prompt itself goes to stdin)"""
        model = self.config.best_model if options.use_best_model else self.config.model
        cmd = [self.config.command, "--print", "--output-format", "json", "--model", model]

        if options.system_prompt:
            cmd += ["--append-system-prompt", options.system_prompt]

        skip = self.config.skip_permissions if options.skip_permissions is None \
            else options.skip_permissions
        if skip:
            cmd.append("--dangerously-skip-permissions")

        cmd += list(self.config.extra_args)
        return cmd

    async def prompt(self, prompt: str, options: Optional[AgentOptions] = None) -> str:
        options = options or AgentOptions()
        cmd = self.build_command(options)

        env = None
        if options.env:
            env = dict(os.environ)
            env.update(options.env)

        logger.debug(f"Agent prompt ({cmd[cmd.index('--model') + 1]}): "
                     f"{prompt[:100].replace(chr(10), ' ')}...")

        result = await run_command_async(
            cmd,
            cwd=options.working_dir,
            timeout=options.timeout,
            env=env,
            input_text=prompt,
        )

        if options.debug_log_path:
            self._write_debug_log(options.debug_log_path, prompt, result.stdout, result.stderr)

        if result.timed_out:
            raise AgentExecutionError(
                f"Agent timed out after {options.timeout}s", exit_code=result.exit_code
            )
        if result.failed:
            raise AgentExecutionError(
                f"Agent exited with code {result.exit_code}: "
                f"{(result.stderr or result.error_message or '').strip()[:500]}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )

        logger.debug(f"Agent finished in {result.duration:.1f}s")
        return parse_result_envelope(result.stdout)

    @staticmethod
    def _write_debug_log(path: Path, prompt: str, stdout: str, stderr: str) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write("=== PROMPT ===\n" + prompt + "\n")
            f.write("=== STDOUT ===\n" + stdout + "\n")
            if stderr:
                f.write("=== STDERR ===\n" + stderr + "\n")


def parse_result_envelope(output: str) -> str:
    """
    Extract the final answer from ``--output-format json`` output.

    Args:
        output: Raw stdout of the agent CLI

    Returns:
        The ``result`` text

    Raises:
        AgentExecutionError: If the output is not a result envelope or is_error is set
    """
    try:
        envelope = json.loads(output.strip())
    except json.JSONDecodeError as e:
        raise AgentExecutionError(
            f"Failed to parse agent JSON response: {output[:200]}"
        ) from e

    if not isinstance(envelope, dict) or not isinstance(envelope.get("result"), str):
        raise AgentExecutionError("Agent returned an unexpected response format")

    if envelope.get("is_error"):
        raise AgentExecutionError(f"Agent error: {envelope['result']}")

    return envelope["result"]


_FENCED_JSON = re.compile(r"```(?:json)?\s*\n(.*?)```", re.DOTALL)


def extract_json(text: str) -> Any:
    """
    Pull a JSON value out of free-form agent output.

    Tries, in order: the whole text, the last fenced code block, and the
    outermost ``{...}`` span.

    Raises:
        ValidationError: If no JSON object can be found
    """
    candidates = [text.strip()]
    blocks = _FENCED_JSON.findall(text)
    if blocks:
        candidates.append(blocks[-1].strip())
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue

    raise ValidationError("agent output contains no JSON", [text[:200]])
