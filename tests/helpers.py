"""Shared test helpers for the iteration loop test suite.

Fixtures are in conftest.py. This module contains non-fixture helpers
(fake agent scripts, a fake client, stream-json builders, observers)
used across multiple test files.
"""

import json
import sys
import textwrap
from pathlib import Path
from typing import Callable, Optional

from claude_client import ClaudeClient, ExecutionOutcome, ShutdownInProgressError
from loop_driver import LoopObserver


# --- Status file helpers ---

def write_status(path: Path, **fields) -> None:
    """Write a .status.json document with the given fields."""
    Path(path).write_text(json.dumps(fields), encoding="utf-8")


# --- Stream-json builders ---

def tool_use_line(name: str, tool_input: Optional[dict] = None, tool_id: str = "toolu_1") -> str:
    return json.dumps({
        "type": "assistant",
        "message": {
            "role": "assistant",
            "content": [{"type": "tool_use", "id": tool_id, "name": name, "input": tool_input or {}}],
        },
    })


def tool_result_line(content, is_error: bool = False, tool_id: str = "toolu_1") -> str:
    return json.dumps({
        "type": "user",
        "message": {
            "role": "user",
            "content": [{
                "type": "tool_result", "tool_use_id": tool_id,
                "content": content, "is_error": is_error,
            }],
        },
    })


def text_line(text: str) -> str:
    return json.dumps({
        "type": "assistant",
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
    })


def result_line(result: str, is_error: bool = False) -> str:
    return json.dumps({
        "type": "result",
        "session_id": "sess-1",
        "total_cost_usd": 0.01,
        "num_turns": 2,
        "result": result,
        "is_error": is_error,
    })


def build_stream(*lines: str) -> str:
    """Join stream-json lines into agent stdout (newline terminated)."""
    return "\n".join(lines) + "\n"


# --- Fake agent processes ---

def write_agent_script(directory: Path, body: str, name: str = "agent.py") -> Path:
    """Write a Python script that stands in for the agent CLI."""
    script = Path(directory) / name
    script.write_text(textwrap.dedent(body), encoding="utf-8")
    return script


def make_script_client(script: Path, **kwargs) -> ClaudeClient:
    """Client whose 'agent' is the given script run under this interpreter."""
    return ClaudeClient(command=sys.executable, args=[str(script)], **kwargs)


# --- Fake client for loop tests ---

class FakeClaudeClient:
    """In-process stand-in for ClaudeClient.

    Each call writes the next entry of ``statuses`` to the status file, as
    the agent would. ``failures`` maps a 1-based call number to an exception.
    """

    def __init__(
        self,
        status_path: Path,
        statuses: tuple = (),
        failures: Optional[dict] = None,
        stdout: str = "done\n",
    ) -> None:
        self.status_path = Path(status_path)
        self.statuses = list(statuses)
        self.failures = dict(failures or {})
        self.stdout = stdout
        self.calls: list[dict] = []
        self.shutdown_calls: list[float] = []
        self.kill_calls: list[int] = []
        self.during_call: Optional[Callable[[int], None]] = None
        self._shutting_down = False

    def _run(self, mode: str, prompt: str, system_prompt, cwd) -> ExecutionOutcome:
        if self._shutting_down:
            raise ShutdownInProgressError("Client is shutting down")
        self.calls.append({
            "mode": mode, "prompt": prompt, "system_prompt": system_prompt, "cwd": cwd,
        })
        number = len(self.calls)
        if number in self.failures:
            raise self.failures[number]
        if self.statuses:
            status = self.statuses[min(number, len(self.statuses)) - 1]
            if status is not None:
                write_status(self.status_path, **status)
        if self.during_call is not None:
            self.during_call(number)
        if self._shutting_down:
            raise ShutdownInProgressError("Execution cancelled during shutdown")
        return ExecutionOutcome(stdout=self.stdout)

    def execute_captured(
        self, prompt, system_prompt=None, cwd=None, on_stdout=None, on_stderr=None
    ) -> ExecutionOutcome:
        outcome = self._run("captured", prompt, system_prompt, cwd)
        if on_stdout is not None:
            on_stdout(outcome.stdout)
        return outcome

    def execute_streamed(
        self, prompt, system_prompt=None, cwd=None,
        on_tool_event=None, on_raw_output=None, on_parse_error=None,
    ) -> ExecutionOutcome:
        outcome = self._run("streamed", prompt, system_prompt, cwd)
        if on_raw_output is not None:
            on_raw_output(outcome.stdout)
        return outcome

    def kill(self, sig: int = 15) -> bool:
        self.kill_calls.append(sig)
        return False

    def shutdown(self, grace_period: float = 5.0) -> None:
        self.shutdown_calls.append(grace_period)
        self._shutting_down = True

    def is_shutdown(self) -> bool:
        return self._shutting_down

    def has_running_child(self) -> bool:
        return False


class RecordingObserver(LoopObserver):
    """Loop observer that records (hook, args) tuples."""

    def __init__(self) -> None:
        self.events: list[tuple] = []

    def names(self) -> list[str]:
        return [e[0] for e in self.events]

    def on_run_start(self, workspace_name, max_iterations) -> None:
        self.events.append(("on_run_start", workspace_name, max_iterations))

    def on_iteration_start(self, iteration) -> None:
        self.events.append(("on_iteration_start", iteration))

    def on_iteration_complete(self, iteration, remaining, milestone) -> None:
        self.events.append(("on_iteration_complete", iteration, remaining, milestone))

    def on_completion(self, iterations) -> None:
        self.events.append(("on_completion", iterations))

    def on_stagnation(self, iterations, no_work_count) -> None:
        self.events.append(("on_stagnation", iterations, no_work_count))

    def on_max_iterations(self, iterations) -> None:
        self.events.append(("on_max_iterations", iterations))

    def on_error(self, iteration, error) -> None:
        self.events.append(("on_error", iteration, error))


# --- Watchdog stand-in ---

class NullObserver:
    """No-op replacement for watchdog's Observer; tests call notify_change()."""

    def __init__(self) -> None:
        self.scheduled: list[tuple] = []
        self.started = False
        self.stopped = False

    def schedule(self, handler, path, recursive=False) -> None:
        self.scheduled.append((handler, path, recursive))

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def join(self, timeout=None) -> None:
        pass
