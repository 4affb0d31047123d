#!/usr/bin/env python3
"""
Tests for the dilagent command line
"""

import asyncio
import json
import logging
import shutil
import threading

import pytest

from scripts.dilagent import cli
from scripts.dilagent.cli import EXIT_INTERRUPTED, build_parser, main
from scripts.dilagent.models import Phase
from scripts.dilagent.tool_bridge import PORT_ENV, ToolBridge
from scripts.dilagent.tools import ResultTools


def run_main(argv):
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


@pytest.fixture(autouse=True)
def reset_logging():
    """main() installs root handlers bound to the captured streams; drop them afterwards"""
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


@pytest.fixture
def bridge_in_thread(store, timeline):
    """Tool bridge served from its own event loop, as during run-hypotheses"""
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    bridge = ToolBridge(ResultTools(store, timeline))
    asyncio.run_coroutine_threadsafe(bridge.start(), loop).result(timeout=5)
    yield bridge
    asyncio.run_coroutine_threadsafe(bridge.stop(), loop).result(timeout=5)
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=5)
    loop.close()


class TestParser:
    """Argument parsing"""

    def test_every_command_takes_working_dir(self):
        parser = build_parser()
        for command in ("repro", "generate-hypotheses", "run-hypotheses", "summary",
                        "state-clear", "status", "repl"):
            args = parser.parse_args([command, "-w", "/tmp/run"])
            assert args.working_dir == "/tmp/run"

    def test_setup_requires_prompt(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["setup", "--context-dir", "."])

    def test_summary_format(self):
        args = build_parser().parse_args(["summary", "--format", "json"])
        assert args.format == "json"


class TestCommands:
    """Commands against a working directory"""

    def test_status(self, working_dir, store, capsys):
        assert run_main(["status", "-w", str(working_dir.root)]) == 0

        out = capsys.readouterr().out
        assert f"Run:      {store.get_state().working_dir_id}" in out
        assert "Phase:    setup" in out

    def test_status_leaves_state_file_alone(self, working_dir, capsys):
        legacy = json.dumps({"problemPrompt": "Crash on start", "currentPhase": "reproduction"})
        working_dir.state_file.write_text(legacy)

        assert run_main(["status", "-w", str(working_dir.root)]) == 0

        assert "Phase:    reproduction" in capsys.readouterr().out
        assert working_dir.state_file.read_text() == legacy

    def test_missing_working_dir(self, temp_dir, capsys):
        assert run_main(["status", "-w", str(temp_dir / "nowhere")]) == 1
        assert "run `dilagent setup` first" in capsys.readouterr().err

    def test_generation_gate_exit_code(self, working_dir, store, capsys):
        asyncio.run(store.set_problem("Login fails", str(working_dir.root)))

        assert run_main(["generate-hypotheses", "-w", str(working_dir.root)]) == 1
        assert "No reproduction found" in capsys.readouterr().err

    def test_state_clear(self, working_dir, store, capsys):
        asyncio.run(store.register_hypothesis("H001", "h001-a"))

        assert run_main(["state-clear", "-w", str(working_dir.root)]) == 0

        assert "Reset 1 hypotheses" in capsys.readouterr().out
        timeline = json.loads(working_dir.timeline_file.read_text())
        assert timeline["events"][-1]["event"] == "user.decision"

    def test_invalid_config(self, working_dir, temp_dir, capsys):
        bad = temp_dir / "bad.yaml"
        bad.write_text("execution:\n  concurrency: 0\n")

        assert run_main(["--config", str(bad), "status", "-w", str(working_dir.root)]) == 1
        assert "Configuration error" in capsys.readouterr().err

    def test_interrupt_exit_code(self, working_dir, store, monkeypatch):
        def interrupted(*args, **kwargs):
            raise KeyboardInterrupt

        monkeypatch.setitem(cli.COMMANDS, "status", interrupted)
        assert run_main(["status", "-w", str(working_dir.root)]) == EXIT_INTERRUPTED

    @pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
    def test_setup(self, temp_dir, capsys):
        context = temp_dir / "service"
        context.mkdir()
        (context / "app.py").write_text("print('hi')\n")
        run_dir = temp_dir / "run"

        code = run_main(["setup", "-w", str(run_dir), "-c", str(context), "-p", "App prints hi"])

        assert code == 0
        state = json.loads((run_dir / ".dilagent" / "state.json").read_text())
        assert state["problemPrompt"] == "App prints hi"
        assert state["currentPhase"] == Phase.REPRODUCTION.value
        assert (run_dir / ".dilagent" / "config.yaml").exists()
        assert (run_dir / ".dilagent" / "context-repo" / "app.py").exists()


class TestToolCommand:
    """`dilagent tool` forwarding to a running bridge"""

    def test_calls_bridge_from_env(self, bridge_in_thread, store, monkeypatch, capsys):
        asyncio.run(store.register_hypothesis("H001", "h001-a"))
        monkeypatch.setenv(PORT_ENV, str(bridge_in_thread.port))

        code = run_main(["tool", "hypothesis_get_status_all"])

        assert code == 0
        response = json.loads(capsys.readouterr().out)
        assert response["result"]["H001"]["status"] == "pending"

    def test_tool_error_exits_nonzero(self, bridge_in_thread, capsys):
        code = run_main(["tool", "state_get", "--port", str(bridge_in_thread.port),
                         "--args", '{"key": ""}'])

        assert code == 1
        assert json.loads(capsys.readouterr().out)["ok"] is False

    def test_invalid_args_json(self, capsys):
        assert run_main(["tool", "state_keys", "--port", "1", "--args", "{nope"]) == 1
        assert "not valid JSON" in capsys.readouterr().out

    def test_no_port(self, monkeypatch, capsys):
        monkeypatch.delenv(PORT_ENV, raising=False)
        assert run_main(["tool", "state_keys"]) == 1
        assert "no bridge port" in capsys.readouterr().out


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
