#!/usr/bin/env python3
"""
Tests for the agent CLI adapter
"""

import os
import shutil

import pytest

from scripts.dilagent.agent import (
    AgentOptions,
    ClaudeAgentRunner,
    extract_json,
    parse_result_envelope,
)
from scripts.dilagent.config import AgentConfig
from scripts.dilagent.errors import AgentExecutionError, ValidationError


def fake_cli(directory, body: str):
    """Executable shell script standing in for the agent CLI"""
    path = directory / "fake-agent"
    path.write_text("#!/bin/sh\n" + body)
    os.chmod(path, 0o755)
    return str(path)


class TestParseEnvelope:
    """--output-format json result envelopes"""

    def test_result(self):
        assert parse_result_envelope('{"type": "result", "result": "done"}\n') == "done"

    def test_is_error(self):
        with pytest.raises(AgentExecutionError) as exc_info:
            parse_result_envelope('{"result": "rate limited", "is_error": true}')
        assert "rate limited" in str(exc_info.value)

    def test_not_json(self):
        with pytest.raises(AgentExecutionError):
            parse_result_envelope("Traceback (most recent call last):")

    def test_missing_result(self):
        with pytest.raises(AgentExecutionError):
            parse_result_envelope('{"type": "system"}')


class TestExtractJson:
    """Finding the JSON answer in free-form agent text"""

    def test_plain(self):
        assert extract_json('{"_tag": "Success"}') == {"_tag": "Success"}

    def test_fenced_block(self):
        text = 'Done.\n```json\n{"_tag": "NeedMoreInfo", "questions": ["a"]}\n```\nBye'
        assert extract_json(text)["_tag"] == "NeedMoreInfo"

    def test_embedded_object(self):
        assert extract_json('The answer is {"a": 1} as requested') == {"a": 1}

    def test_no_json(self):
        with pytest.raises(ValidationError):
            extract_json("I could not reproduce it")


class TestBuildCommand:
    """CLI argument construction"""

    def test_models(self):
        runner = ClaudeAgentRunner(AgentConfig(model="sonnet", best_model="opus"))

        assert "sonnet" in runner.build_command(AgentOptions())
        assert "opus" in runner.build_command(AgentOptions(use_best_model=True))

    def test_system_prompt_and_permissions(self):
        runner = ClaudeAgentRunner(AgentConfig(skip_permissions=True, extra_args=["--verbose"]))

        cmd = runner.build_command(AgentOptions(system_prompt="be terse"))
        assert cmd[cmd.index("--append-system-prompt") + 1] == "be terse"
        assert "--dangerously-skip-permissions" in cmd
        assert cmd[-1] == "--verbose"

        cmd = runner.build_command(AgentOptions(skip_permissions=False))
        assert "--dangerously-skip-permissions" not in cmd
        assert "--append-system-prompt" not in cmd


@pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")
class TestClaudeAgentRunner:
    """Subprocess round trip against a fake CLI"""

    @pytest.mark.asyncio
    async def test_prompt_via_stdin(self, temp_dir):
        command = fake_cli(temp_dir, 'read line\nprintf \'{"result": "echo: %s"}\' "$line"\n')
        runner = ClaudeAgentRunner(AgentConfig(command=command))
        log = temp_dir / "logs" / "agent.log"

        answer = await runner.prompt("hello\n", AgentOptions(debug_log_path=log))

        assert answer == "echo: hello"
        assert "=== PROMPT ===" in log.read_text()

    @pytest.mark.asyncio
    async def test_env_is_passed(self, temp_dir):
        command = fake_cli(temp_dir, 'cat >/dev/null\n'
                                     'printf \'{"result": "%s"}\' "$DILAGENT_BRIDGE_PORT"\n')
        runner = ClaudeAgentRunner(AgentConfig(command=command))

        answer = await runner.prompt("x", AgentOptions(env={"DILAGENT_BRIDGE_PORT": "5151"}))

        assert answer == "5151"

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, temp_dir):
        command = fake_cli(temp_dir, 'cat >/dev/null\necho "boom" >&2\nexit 3\n')
        runner = ClaudeAgentRunner(AgentConfig(command=command))

        with pytest.raises(AgentExecutionError) as exc_info:
            await runner.prompt("x")

        assert exc_info.value.exit_code == 3
        assert "boom" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout(self, temp_dir):
        command = fake_cli(temp_dir, 'cat >/dev/null\nexec sleep 5\n')
        runner = ClaudeAgentRunner(AgentConfig(command=command))

        with pytest.raises(AgentExecutionError) as exc_info:
            await runner.prompt("x", AgentOptions(timeout=0.2))

        assert "timed out" in str(exc_info.value)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
