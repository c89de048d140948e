"""Tests for claude_client module.

These spawn real processes: the "agent" is a small Python script run under
the current interpreter.
"""

import json
import sys
import threading
import time
from pathlib import Path

import pytest

from claude_client import (
    ClaudeClient,
    ClaudeExecutionError,
    NonZeroExitError,
    ShutdownInProgressError,
    SpawnError,
)
from stream_parser import ToolEvent

from helpers import (
    build_stream,
    make_script_client,
    result_line,
    tool_result_line,
    tool_use_line,
    write_agent_script,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signal semantics")

ECHO_ARGS = """
    import json, sys
    print(json.dumps(sys.argv[1:]))
"""

SLEEPER = """
    import signal, sys, time
    {setup}
    print("ready", flush=True)
    time.sleep(30)
"""


def _run_in_thread(fn, *args, **kwargs) -> tuple[threading.Thread, dict]:
    box: dict = {}

    def target() -> None:
        try:
            box["result"] = fn(*args, **kwargs)
        except BaseException as e:  # noqa: BLE001 - surfaced to the test
            box["error"] = e

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread, box


def _wait_until(predicate, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.02)


class TestBuildArgs:
    def test_captured_layout(self) -> None:
        client = ClaudeClient(command="agent", args=["--model", "opus"])
        assert client.build_args("do it", "be brief") == [
            "agent", "--model", "opus", "--print",
            "--append-system-prompt", "be brief", "do it",
        ]

    def test_streamed_layout(self) -> None:
        args = ClaudeClient(command="agent").build_args("go", stream_json=True)
        assert args == ["agent", "--print", "--output-format", "stream-json", "--verbose", "go"]

    def test_interactive_has_no_print_flag(self) -> None:
        assert ClaudeClient(command="agent").build_args("go", print_mode=False) == ["agent", "go"]


class TestExecuteCaptured:
    def test_stdout_returned(self, tmp_path: Path) -> None:
        script = write_agent_script(tmp_path, "import sys\nsys.stdout.write('X')\n")
        outcome = make_script_client(script).execute_captured("prompt")
        assert outcome.stdout == "X"
        assert outcome.exit_code == 0
        assert outcome.exit_lost is False

    def test_nonzero_exit_carries_code_and_stderr(self, tmp_path: Path) -> None:
        script = write_agent_script(
            tmp_path, "import sys\nsys.stderr.write('boom')\nsys.exit(7)\n"
        )
        with pytest.raises(NonZeroExitError) as exc_info:
            make_script_client(script).execute_captured("prompt")
        assert exc_info.value.exit_code == 7
        assert exc_info.value.stderr == "boom"
        assert "boom" in str(exc_info.value)
        assert "7" in str(exc_info.value)

    def test_arguments_passed_through(self, tmp_path: Path) -> None:
        script = write_agent_script(tmp_path, ECHO_ARGS)
        outcome = make_script_client(script).execute_captured("hello", system_prompt="sys")
        assert json.loads(outcome.stdout) == ["--print", "--append-system-prompt", "sys", "hello"]

    def test_runs_in_cwd(self, tmp_path: Path) -> None:
        script = write_agent_script(tmp_path, "import os\nprint(os.getcwd())\n")
        work = tmp_path / "work"
        work.mkdir()
        outcome = make_script_client(script).execute_captured("p", cwd=work)
        assert Path(outcome.stdout.strip()).resolve() == work.resolve()

    def test_callbacks_receive_output(self, tmp_path: Path) -> None:
        script = write_agent_script(
            tmp_path, "import sys\nprint('out1')\nprint('out2')\nsys.stderr.write('err\\n')\n"
        )
        out: list[str] = []
        err: list[str] = []
        make_script_client(script).execute_captured("p", on_stdout=out.append, on_stderr=err.append)
        assert out == ["out1\n", "out2\n"]
        assert err == ["err\n"]

    def test_stdin_is_closed(self, tmp_path: Path) -> None:
        script = write_agent_script(tmp_path, "import sys\nprint(repr(sys.stdin.read()))\n")
        outcome = make_script_client(script).execute_captured("p")
        assert outcome.stdout.strip() == "''"

    def test_spawn_error(self, tmp_path: Path) -> None:
        client = ClaudeClient(command=str(tmp_path / "no-such-agent"))
        with pytest.raises(SpawnError):
            client.execute_captured("p")
        assert not client.has_running_child()

    @pytest.mark.parametrize("prompt, system_prompt", [
        ("do\x00it", None),
        ("p", "be\x00quiet"),
    ])
    def test_null_byte_argument_is_spawn_error(
        self, tmp_path: Path, prompt: str, system_prompt
    ) -> None:
        script = write_agent_script(tmp_path, "print('never runs')\n")
        client = make_script_client(script)
        with pytest.raises(SpawnError, match="null byte"):
            client.execute_captured(prompt, system_prompt)
        assert not client.has_running_child()

    def test_exit_ceiling_resolves_as_lost(self, tmp_path: Path) -> None:
        script = write_agent_script(tmp_path, SLEEPER.format(setup=""))
        client = make_script_client(script, exit_wait_ceiling=0.5)
        start = time.monotonic()
        outcome = client.execute_captured("p")
        assert outcome.exit_lost is True
        assert outcome.exit_code is None
        assert "ready" in outcome.stdout
        assert time.monotonic() - start < 10
        assert not client.has_running_child()

    def test_second_call_while_running_rejected(self, tmp_path: Path) -> None:
        script = write_agent_script(tmp_path, SLEEPER.format(setup=""))
        client = make_script_client(script)
        thread, box = _run_in_thread(client.execute_captured, "p")
        _wait_until(client.has_running_child)

        with pytest.raises(ClaudeExecutionError) as exc_info:
            client.execute_captured("again")
        assert not isinstance(exc_info.value, ShutdownInProgressError)

        client.shutdown(grace_period=1.0)
        thread.join(10)
        assert isinstance(box.get("error"), ShutdownInProgressError)


class TestExecuteStreamed:
    def _stream_script(self, tmp_path: Path, stdout: str) -> Path:
        return write_agent_script(
            tmp_path, f"import sys\nsys.stdout.write({stdout!r})\nsys.stdout.flush()\n"
        )

    def test_final_result_and_tool_events(self, tmp_path: Path) -> None:
        stdout = build_stream(
            tool_use_line("Edit", {"file_path": "/src/a.py", "old_string": "a", "new_string": "b"}),
            tool_result_line("ok"),
            "{bad line",
            result_line("All finished"),
        )
        script = self._stream_script(tmp_path, stdout)
        events: list[ToolEvent] = []
        errors: list = []
        raw: list[str] = []

        outcome = make_script_client(script).execute_streamed(
            "p", on_tool_event=events.append, on_parse_error=errors.append,
            on_raw_output=raw.append,
        )
        assert outcome.stdout == "All finished"
        assert outcome.tools_used == ["Edit"]
        assert outcome.files_modified == ["/src/a.py"]
        assert [e.kind for e in events] == ["tool_use", "tool_result"]
        assert len(errors) == 1
        assert "".join(raw) == stdout

    def test_stream_flags_passed(self, tmp_path: Path) -> None:
        script = write_agent_script(tmp_path, ECHO_ARGS)
        outcome = make_script_client(script).execute_streamed("p")
        # The echoed argv is not stream-json, so the raw output comes back
        assert json.loads(outcome.stdout) == [
            "--print", "--output-format", "stream-json", "--verbose", "p",
        ]

    def test_no_result_event_falls_back_to_raw(self, tmp_path: Path) -> None:
        stdout = build_stream(tool_use_line("Bash", {"command": "ls"}))
        outcome = make_script_client(self._stream_script(tmp_path, stdout)).execute_streamed("p")
        assert outcome.stdout == stdout

    def test_non_string_result_falls_back_to_raw(self, tmp_path: Path) -> None:
        stdout = build_stream(json.dumps({"type": "result", "result": {"text": "x"}}))
        outcome = make_script_client(self._stream_script(tmp_path, stdout)).execute_streamed("p")
        assert isinstance(outcome.stdout, str)
        assert outcome.stdout == stdout

    def test_nonzero_exit(self, tmp_path: Path) -> None:
        script = write_agent_script(tmp_path, "import sys\nsys.stderr.write('bad')\nsys.exit(2)\n")
        with pytest.raises(NonZeroExitError) as exc_info:
            make_script_client(script).execute_streamed("p")
        assert exc_info.value.exit_code == 2


class TestExecuteInteractive:
    def test_exit_zero(self, tmp_path: Path) -> None:
        script = write_agent_script(tmp_path, "pass\n")
        outcome = make_script_client(script).execute_interactive("p")
        assert outcome.exit_code == 0
        assert outcome.stdout == ""

    def test_exit_nonzero(self, tmp_path: Path) -> None:
        script = write_agent_script(tmp_path, "import sys\nsys.exit(3)\n")
        with pytest.raises(NonZeroExitError):
            make_script_client(script).execute_interactive("p")


class TestProbes:
    def test_available(self) -> None:
        client = ClaudeClient(command=sys.executable)
        assert client.is_available() is True
        assert client.get_version().startswith("Python")

    def test_missing_binary(self, tmp_path: Path) -> None:
        client = ClaudeClient(command=str(tmp_path / "missing"))
        assert client.is_available() is False
        assert client.get_version() is None


class TestShutdown:
    def test_shutdown_without_process_is_immediate_and_idempotent(self) -> None:
        client = ClaudeClient(command="unused")
        start = time.monotonic()
        client.shutdown()
        client.shutdown()
        assert time.monotonic() - start < 0.5
        assert client.is_shutdown()
        assert not client.has_running_child()

    def test_execute_after_shutdown_rejected(self, tmp_path: Path) -> None:
        script = write_agent_script(tmp_path, "print('never')\n")
        client = make_script_client(script)
        client.shutdown()
        with pytest.raises(ShutdownInProgressError):
            client.execute_captured("p")

    def test_kill_without_process(self) -> None:
        assert ClaudeClient(command="unused").kill() is False

    @posix_only
    def test_graceful_shutdown_cancels_execution(self, tmp_path: Path) -> None:
        script = write_agent_script(tmp_path, SLEEPER.format(setup=""))
        client = make_script_client(script)
        ready = threading.Event()
        thread, box = _run_in_thread(
            client.execute_captured, "p", on_stdout=lambda line: ready.set()
        )
        assert ready.wait(10)

        client.shutdown(grace_period=5.0)
        thread.join(10)
        assert isinstance(box.get("error"), ShutdownInProgressError)
        assert not client.has_running_child()

    @posix_only
    def test_shutdown_escalates_to_force_kill(self, tmp_path: Path) -> None:
        """A child ignoring SIGTERM is killed shortly after the grace period."""
        script = write_agent_script(
            tmp_path, SLEEPER.format(setup="signal.signal(signal.SIGTERM, signal.SIG_IGN)")
        )
        client = make_script_client(script)
        ready = threading.Event()
        thread, box = _run_in_thread(
            client.execute_captured, "p", on_stdout=lambda line: ready.set()
        )
        assert ready.wait(10)

        start = time.monotonic()
        client.shutdown(grace_period=0.1)
        elapsed = time.monotonic() - start
        thread.join(10)

        assert elapsed < 2.0
        assert not client.has_running_child()
        assert isinstance(box.get("error"), ShutdownInProgressError)

    @posix_only
    def test_kill_signals_running_process(self, tmp_path: Path) -> None:
        script = write_agent_script(tmp_path, SLEEPER.format(setup=""))
        client = make_script_client(script)
        ready = threading.Event()
        thread, box = _run_in_thread(
            client.execute_captured, "p", on_stdout=lambda line: ready.set()
        )
        assert ready.wait(10)

        assert client.kill() is True
        thread.join(10)
        # Killed outside a shutdown: surfaces as a failed run
        assert isinstance(box.get("error"), NonZeroExitError)
        assert not client.is_shutdown()
