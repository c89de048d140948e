"""Process client for the agent CLI.

Owns spawning, streaming and terminating the agent process. At most one
process is live at a time; the handle never leaves this module. A waiter
thread is the only caller of Popen.wait(): everything else waits on the
handle's exit event, which keeps main-thread waits interruptible by signals.
"""

from __future__ import annotations

import contextlib
import logging
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence, TextIO

from stream_parser import StreamJsonParser, StreamParseError, ToolEvent

logger = logging.getLogger(__name__)

# A call with no exit event after this long is force-killed and treated as
# finished.
EXIT_WAIT_CEILING_SECONDS = 300.0
FORCE_KILL_WAIT_SECONDS = 1.0
READER_JOIN_SECONDS = 2.0
VERSION_PROBE_TIMEOUT_SECONDS = 30

FORCE_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)

OutputCallback = Callable[[str], None]


class ClaudeExecutionError(Exception):
    """Base error for agent process execution."""

    def __init__(
        self, message: str, exit_code: Optional[int] = None, stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class SpawnError(ClaudeExecutionError):
    """The agent binary could not be launched."""


class NonZeroExitError(ClaudeExecutionError):
    """The agent ran but exited with a failure status."""

    def __init__(self, exit_code: int, stderr: str = "") -> None:
        message = f"Agent exited with code {exit_code}"
        if stderr.strip():
            message += f"\nStderr: {stderr.strip()}"
        super().__init__(message, exit_code=exit_code, stderr=stderr)


class ShutdownInProgressError(ClaudeExecutionError):
    """The client is shutting down; no new work is accepted."""


@dataclass
class ExecutionOutcome:
    """Result of one agent invocation."""

    stdout: str
    stderr: str = ""
    exit_code: Optional[int] = 0
    # Exit never observed before the ceiling. The child was killed and the
    # call still resolved as success.
    exit_lost: bool = False
    tools_used: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)


class ProcessHandle:
    """One spawned agent process and its exit event."""

    def __init__(self, proc: subprocess.Popen, args: Sequence[str]) -> None:
        self.proc = proc
        self.pid = proc.pid
        self.args = list(args)
        self.started_at = time.monotonic()
        self.exited = threading.Event()
        self._waiter = threading.Thread(
            target=self._wait, name=f"agent-wait-{self.pid}", daemon=True
        )
        self._waiter.start()

    def _wait(self) -> None:
        try:
            self.proc.wait()
        finally:
            self.exited.set()

    @property
    def alive(self) -> bool:
        return not self.exited.is_set()

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.returncode

    def send_signal(self, sig: int) -> bool:
        if self.exited.is_set():
            return False
        try:
            self.proc.send_signal(sig)
            return True
        except OSError:
            return False

    def force_kill(self) -> bool:
        """Kill the process (and on Windows its children)."""
        if self.exited.is_set():
            return False
        if sys.platform == "win32":
            try:
                result = subprocess.run(
                    ["taskkill", "/F", "/T", "/PID", str(self.pid)],
                    capture_output=True, text=True, timeout=10,
                )
                if result.returncode != 0:
                    logger.warning(
                        "taskkill PID %d failed (rc=%d): %s",
                        self.pid, result.returncode, result.stderr[:200],
                    )
            except (OSError, subprocess.SubprocessError) as e:
                logger.warning("taskkill PID %d exception: %s", self.pid, e)
            # Fallback: Python-native kill in case taskkill failed
            try:
                self.proc.kill()
            except OSError:
                pass
            return True
        return self.send_signal(FORCE_SIGNAL)


def _drain_pipe(pipe: TextIO, sink: list[str], callback: Optional[OutputCallback]) -> None:
    """Drain a pipe line by line into sink (for a background thread)."""
    try:
        for line in iter(pipe.readline, ""):
            sink.append(line)
            if callback is not None:
                try:
                    callback(line)
                except Exception as e:
                    logger.warning("Output callback failed: %s", e)
    except (OSError, ValueError):
        pass  # Pipe closed by a kill
    finally:
        with contextlib.suppress(OSError):
            pipe.close()


class ClaudeClient:
    """Agent CLI wrapper with process lifecycle management."""

    def __init__(
        self,
        command: str = "claude",
        args: Optional[Sequence[str]] = None,
        exit_wait_ceiling: float = EXIT_WAIT_CEILING_SECONDS,
    ) -> None:
        self.command = command
        self.args = list(args or [])
        self.exit_wait_ceiling = exit_wait_ceiling
        self._lock = threading.Lock()
        self._handle: Optional[ProcessHandle] = None
        self._shutting_down = False

    # --- Argument construction ---

    def build_args(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        print_mode: bool = True,
        stream_json: bool = False,
    ) -> list[str]:
        args = [self.command, *self.args]
        if print_mode:
            args.append("--print")
        if stream_json:
            args.extend(["--output-format", "stream-json", "--verbose"])
        if system_prompt:
            args.extend(["--append-system-prompt", system_prompt])
        args.append(prompt)
        return args

    # --- Lifecycle helpers ---

    def _spawn(
        self, args: list[str], cwd: Optional[str | Path], piped: bool
    ) -> ProcessHandle:
        kwargs: dict = {"cwd": str(cwd) if cwd else None, "shell": False}
        if piped:
            kwargs.update(
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )

        with self._lock:
            if self._shutting_down:
                raise ShutdownInProgressError("Client is shutting down")
            if self._handle is not None and self._handle.alive:
                raise ClaudeExecutionError(
                    f"Agent process {self._handle.pid} is still running"
                )
            logger.debug("Executing: %s with %d args", self.command, len(args) - 1)
            try:
                proc = subprocess.Popen(args, **kwargs)
            except (OSError, ValueError) as e:
                # ValueError: arguments Popen cannot pass, e.g. an embedded null byte
                raise SpawnError(f"Failed to spawn agent process: {e}") from e
            handle = ProcessHandle(proc, args)
            self._handle = handle

        logger.debug("Agent PID: %d", handle.pid)
        return handle

    def _release(self, handle: ProcessHandle) -> None:
        with self._lock:
            if self._handle is handle:
                self._handle = None

    def _await_exit(
        self, handle: ProcessHandle, readers: Sequence[threading.Thread] = ()
    ) -> bool:
        """Wait for exit and drain readers. Returns True if the exit was lost."""
        lost = False
        try:
            if not handle.exited.wait(self.exit_wait_ceiling):
                lost = True
                logger.warning(
                    "No exit observed from agent PID %d after %.0fs; "
                    "treating the run as finished",
                    handle.pid, self.exit_wait_ceiling,
                )
                handle.force_kill()
                handle.exited.wait(FORCE_KILL_WAIT_SECONDS)
            for reader in readers:
                reader.join(READER_JOIN_SECONDS)
        except BaseException:
            # Interrupted while waiting: never leave the child behind
            handle.force_kill()
            self._release(handle)
            raise
        self._release(handle)
        return lost

    def _start_readers(
        self,
        handle: ProcessHandle,
        on_stdout: Optional[OutputCallback],
        on_stderr: Optional[OutputCallback],
    ) -> tuple[list[str], list[str], list[threading.Thread]]:
        stdout_lines: list[str] = []
        stderr_lines: list[str] = []
        readers = [
            threading.Thread(
                target=_drain_pipe, args=(handle.proc.stdout, stdout_lines, on_stdout),
                name=f"agent-stdout-{handle.pid}", daemon=True,
            ),
            threading.Thread(
                target=_drain_pipe, args=(handle.proc.stderr, stderr_lines, on_stderr),
                name=f"agent-stderr-{handle.pid}", daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()
        return stdout_lines, stderr_lines, readers

    def _check_exit(self, handle: ProcessHandle, lost: bool, stderr: str) -> Optional[int]:
        if self._shutting_down:
            raise ShutdownInProgressError("Execution cancelled during shutdown")
        if lost:
            return None
        code = handle.returncode
        if code != 0:
            raise NonZeroExitError(code if code is not None else -1, stderr)
        return code

    # --- Execution modes ---

    def execute_interactive(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        cwd: Optional[str | Path] = None,
    ) -> ExecutionOutcome:
        """Run with inherited terminal I/O and block until the agent exits."""
        args = self.build_args(prompt, system_prompt, print_mode=False)
        handle = self._spawn(args, cwd, piped=False)
        lost = self._await_exit(handle)
        code = self._check_exit(handle, lost, "")
        return ExecutionOutcome(stdout="", exit_code=code, exit_lost=lost)

    def execute_captured(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        cwd: Optional[str | Path] = None,
        on_stdout: Optional[OutputCallback] = None,
        on_stderr: Optional[OutputCallback] = None,
    ) -> ExecutionOutcome:
        """One-shot run with stdin closed and both output streams captured."""
        args = self.build_args(prompt, system_prompt)
        handle = self._spawn(args, cwd, piped=True)
        stdout_lines, stderr_lines, readers = self._start_readers(handle, on_stdout, on_stderr)
        lost = self._await_exit(handle, readers)

        stdout = "".join(stdout_lines)
        stderr = "".join(stderr_lines)
        code = self._check_exit(handle, lost, stderr)
        return ExecutionOutcome(stdout=stdout, stderr=stderr, exit_code=code, exit_lost=lost)

    def execute_streamed(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        cwd: Optional[str | Path] = None,
        on_tool_event: Optional[Callable[[ToolEvent], None]] = None,
        on_raw_output: Optional[OutputCallback] = None,
        on_parse_error: Optional[Callable[[StreamParseError], None]] = None,
    ) -> ExecutionOutcome:
        """One-shot run in stream-json mode with live tool events.

        Resolves with the agent's final result text, or the raw stdout when
        no result event arrived.
        """
        parser = StreamJsonParser(on_tool_event=on_tool_event, on_error=on_parse_error)

        def on_stdout(line: str) -> None:
            if on_raw_output is not None:
                try:
                    on_raw_output(line)
                except Exception as e:
                    logger.warning("Raw output callback failed: %s", e)
            parser.feed(line)

        args = self.build_args(prompt, system_prompt, stream_json=True)
        logger.debug("Executing with tool visibility: %s", " ".join(args[:-1]))
        handle = self._spawn(args, cwd, piped=True)
        stdout_lines, stderr_lines, readers = self._start_readers(
            handle, on_stdout, on_raw_output
        )
        lost = self._await_exit(handle, readers)
        if not readers[0].is_alive():
            parser.flush()

        stderr = "".join(stderr_lines)
        code = self._check_exit(handle, lost, stderr)
        return ExecutionOutcome(
            stdout=parser.final_result or "".join(stdout_lines),
            stderr=stderr,
            exit_code=code,
            exit_lost=lost,
            tools_used=sorted(parser.tools_used),
            files_modified=list(parser.files_modified),
        )

    # --- Probes ---

    def is_available(self) -> bool:
        """Check that the agent binary runs; never raises."""
        try:
            result = subprocess.run(
                [self.command, "--version"],
                capture_output=True, text=True, timeout=VERSION_PROBE_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("Agent availability probe failed: %s", e)
            return False
        return result.returncode == 0

    def get_version(self) -> Optional[str]:
        try:
            result = subprocess.run(
                [self.command, "--version"],
                capture_output=True, text=True, timeout=VERSION_PROBE_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.SubprocessError):
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    # --- Termination ---

    def kill(self, sig: int = signal.SIGTERM) -> bool:
        """Signal the current agent process, if any."""
        with self._lock:
            handle = self._handle
        if handle is None or not handle.alive:
            return False
        logger.debug("Killing agent process (PID: %d) with signal %d", handle.pid, sig)
        if sig == FORCE_SIGNAL:
            return handle.force_kill()
        return handle.send_signal(sig)

    def shutdown(self, grace_period: float = 5.0) -> None:
        """Terminate gracefully: SIGTERM, then SIGKILL after grace_period seconds.

        Idempotent. Every later execute_* call fails with
        ShutdownInProgressError.
        """
        with self._lock:
            self._shutting_down = True
            handle = self._handle

        if handle is None or not handle.alive:
            logger.debug("No agent process to shut down")
            return

        logger.debug("Sending SIGTERM to agent process (PID: %d)", handle.pid)
        handle.send_signal(signal.SIGTERM)
        if handle.exited.wait(grace_period):
            logger.debug("Agent process (PID: %d) exited", handle.pid)
            return

        logger.warning(
            "Grace period expired, sending SIGKILL to agent process (PID: %d)", handle.pid
        )
        handle.force_kill()
        handle.exited.wait(FORCE_KILL_WAIT_SECONDS)

    def is_shutdown(self) -> bool:
        return self._shutting_down

    def has_running_child(self) -> bool:
        with self._lock:
            return self._handle is not None and self._handle.alive
