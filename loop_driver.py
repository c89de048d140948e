"""Iteration loop driver for an AI agent CLI.

Primary entry point. Runs the agent once per iteration against a workspace,
checks the workspace's .status.json (or legacy TODO.md markers) after each
run, and stops on completion, stagnation, max iterations or the first
failed iteration. Failed iterations are never retried.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

from claude_client import (
    FORCE_KILL_WAIT_SECONDS,
    FORCE_SIGNAL,
    ClaudeClient,
    ClaudeExecutionError,
    ExecutionOutcome,
    ShutdownInProgressError,
)
from completion import CompletionDetector
from config import EngineConfig, apply_workspace_overrides, default_config_path, load_config
from file_logger import FileLogger, timestamped_log_path
from log_redactor import RedactingFilter, Redactor
from modes import ExecutionMode, build_iteration_prompt, get_strategy
from notifications import NotificationObserver, NotificationService
from status_watcher import StatusFileWatcher
from stream_parser import StreamParseError, ToolEvent
from workspace import Workspace

logger = logging.getLogger(__name__)

# Exit codes
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130

MILESTONE_INTERVAL = 10
SKIP_PERMISSIONS_FLAG = "--dangerously-skip-permissions"

OUTPUT_LOG_LEVELS = {
    "quiet": logging.WARNING,
    "progress": logging.INFO,
    "verbose": logging.DEBUG,
}


class LoopStatus(str, Enum):
    COMPLETED = "completed"
    STAGNANT_COMPLETED = "stagnant_completed"
    MAX_ITERATIONS = "max_iterations"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


EXIT_CODES = {
    LoopStatus.COMPLETED: EXIT_SUCCESS,
    LoopStatus.STAGNANT_COMPLETED: EXIT_SUCCESS,
    LoopStatus.MAX_ITERATIONS: EXIT_SUCCESS,
    LoopStatus.FAILED: EXIT_FAILURE,
    LoopStatus.INTERRUPTED: EXIT_INTERRUPTED,
}


@dataclass
class IterationState:
    """Counters for one run. Never persisted."""

    iteration: int = 0
    no_work_count: int = 0
    is_complete: bool = False
    shutdown_requested: bool = False


@dataclass
class LoopResult:
    status: LoopStatus
    iterations: int
    error: Optional[BaseException] = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]


class LoopObserver:
    """Base class for loop event subscribers. All hooks are no-ops."""

    def on_run_start(self, workspace_name: str, max_iterations: int) -> None:
        pass

    def on_iteration_start(self, iteration: int) -> None:
        pass

    def on_iteration_complete(
        self, iteration: int, remaining: Optional[int], milestone: bool
    ) -> None:
        pass

    def on_completion(self, iterations: int) -> None:
        pass

    def on_stagnation(self, iterations: int, no_work_count: int) -> None:
        pass

    def on_max_iterations(self, iterations: int) -> None:
        pass

    def on_error(self, iteration: int, error: BaseException) -> None:
        pass


class JsonFormatter(logging.Formatter):
    """Structured JSON log formatter for machine-readable output."""

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps({
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        })


def build_claude_args(config: EngineConfig) -> list[str]:
    """Base agent arguments from config, plus the permissions flag if enabled."""
    args = list(config.claude.args)
    if config.claude.dangerously_skip_permissions and SKIP_PERMISSIONS_FLAG not in args:
        args.append(SKIP_PERMISSIONS_FLAG)
    return args


class LoopDriver:
    """Runs the agent iteration by iteration until the workspace task is done."""

    def __init__(
        self,
        workspace: Workspace,
        config: EngineConfig,
        client: Optional[ClaudeClient] = None,
        detector: Optional[CompletionDetector] = None,
        observers: Sequence[object] = (),
        file_logger: Optional[FileLogger] = None,
        status_watcher: Optional[StatusFileWatcher] = None,
        project_root: Optional[str | Path] = None,
        tool_visibility: bool = False,
    ) -> None:
        self.workspace = workspace
        self.config = config
        self.client = client or ClaudeClient(
            command=config.claude.command,
            args=build_claude_args(config),
            exit_wait_ceiling=config.limits.exit_wait_ceiling_seconds,
        )
        self.detector = detector or CompletionDetector(
            workspace.path, config.patterns.completion_markers
        )
        self.observers = list(observers)
        self.file_logger = file_logger
        self.status_watcher = status_watcher
        self.project_root = Path(project_root or Path.cwd()).resolve()
        self.tool_visibility = tool_visibility
        self.strategy = get_strategy(workspace.mode)

        self.state = IterationState()
        self._stop_event = threading.Event()
        self._shutdown_lock = threading.RLock()
        self._shutdown_thread: Optional[threading.Thread] = None
        self._previous_handlers: dict[int, object] = {}

    # --- Shutdown ---

    def request_shutdown(self) -> None:
        """Stop the run. A second request force-kills the agent immediately."""
        with self._shutdown_lock:
            if self.state.shutdown_requested:
                logger.warning("Second shutdown request, killing agent process")
                self.client.kill(FORCE_SIGNAL)
                return
            self.state.shutdown_requested = True
            self._stop_event.set()
            grace = self.config.limits.shutdown_grace_seconds
            logger.warning("Shutdown requested, stopping agent (grace period %.1fs)", grace)
            self._shutdown_thread = threading.Thread(
                target=self.client.shutdown, args=(grace,),
                name="agent-shutdown", daemon=True,
            )
            self._shutdown_thread.start()

    def install_signal_handlers(self) -> None:
        """Route SIGINT/SIGTERM to request_shutdown (main thread only)."""

        def handler(signum: int, frame) -> None:
            logger.warning("Received %s", signal.Signals(signum).name)
            self.request_shutdown()

        for sig in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[sig] = signal.signal(sig, handler)

    def restore_signal_handlers(self) -> None:
        for sig, previous in self._previous_handlers.items():
            signal.signal(sig, previous)
        self._previous_handlers.clear()

    def _join_shutdown(self) -> None:
        thread = self._shutdown_thread
        if thread is not None:
            thread.join(self.config.limits.shutdown_grace_seconds + FORCE_KILL_WAIT_SECONDS + 1)

    # --- Observers ---

    def _emit(self, hook: str, *args) -> None:
        for observer in self.observers:
            method = getattr(observer, hook, None)
            if method is None:
                continue
            try:
                method(*args)
            except Exception as e:
                logger.warning("Observer %s.%s failed: %s", type(observer).__name__, hook, e)

    # --- Output routing ---

    def _on_output(self, chunk: str) -> None:
        if self.file_logger is not None:
            self.file_logger.append_output(chunk)
        logger.debug("%s", chunk.rstrip("\n"))

    def _on_raw_output(self, chunk: str) -> None:
        if self.file_logger is not None:
            self.file_logger.append_output(chunk)

    def _on_tool_event(self, event: ToolEvent) -> None:
        formatted = event.format()
        logger.debug("%s", formatted)
        if self.file_logger is not None:
            self.file_logger.append_output(formatted + "\n")

    @staticmethod
    def _on_parse_error(error: StreamParseError) -> None:
        logger.debug("Stream parse error: %s", error)

    def _execute(self, prompt: str, system_prompt: str) -> ExecutionOutcome:
        if self.tool_visibility:
            return self.client.execute_streamed(
                prompt, system_prompt, cwd=self.project_root,
                on_tool_event=self._on_tool_event,
                on_raw_output=self._on_raw_output,
                on_parse_error=self._on_parse_error,
            )
        return self.client.execute_captured(
            prompt, system_prompt, cwd=self.project_root,
            on_stdout=self._on_output,
            on_stderr=self._on_output,
        )

    # --- Main loop ---

    def run(self) -> LoopResult:
        """Execute the loop. Returns the terminal state and iteration count."""
        self.state = IterationState(shutdown_requested=self.state.shutdown_requested)
        limits = self.config.limits
        metadata = self.workspace.metadata

        logger.info("=" * 60)
        logger.info("Iteration Loop Driver")
        logger.info("Workspace: %s (%s mode)", metadata.name, self.workspace.mode.value)
        logger.info("Max iterations: %d", limits.max_iterations)
        logger.info("Delay: %ds", limits.delay_seconds)
        if self.workspace.mode == ExecutionMode.ITERATIVE:
            logger.info("Stagnation threshold: %d", limits.stagnation_threshold)
        logger.info("=" * 60)

        instructions = self.workspace.get_instructions()
        system_prompt = self.strategy.iteration_system_prompt(
            self.workspace.path, self.project_root
        )
        if self.file_logger is not None:
            self.file_logger.log_run_start(
                metadata.name, self.workspace.mode.value, limits.max_iterations
            )
            self.file_logger.log_instructions(instructions)
            self.file_logger.log_system_prompt(system_prompt)

        self._emit("on_run_start", metadata.name, limits.max_iterations)
        if self.status_watcher is not None:
            self.status_watcher.start()

        try:
            result = self._loop(instructions, system_prompt)
        finally:
            if self.status_watcher is not None:
                self.status_watcher.stop()
            if self.file_logger is not None:
                self.file_logger.flush()
            self._join_shutdown()

        self._log_summary(result)
        return result

    def _loop(self, instructions: str, system_prompt: str) -> LoopResult:
        state = self.state
        max_iterations = self.config.limits.max_iterations
        mode = self.workspace.mode

        while True:
            if state.shutdown_requested:
                logger.warning("Run interrupted after %d iterations", state.iteration)
                return LoopResult(LoopStatus.INTERRUPTED, state.iteration)
            if state.iteration >= max_iterations:
                logger.warning("Reached maximum iterations (%d)", max_iterations)
                self._emit("on_max_iterations", state.iteration)
                return LoopResult(LoopStatus.MAX_ITERATIONS, state.iteration)

            state.iteration += 1
            iteration = state.iteration
            logger.info("")
            logger.info("Running iteration %d / %d...", iteration, max_iterations)
            self._emit("on_iteration_start", iteration)
            if self.file_logger is not None:
                self.file_logger.log_iteration_start(iteration)

            prompt = build_iteration_prompt(
                self.strategy, instructions, iteration, self.workspace.path
            )
            try:
                self._execute(prompt, system_prompt)
            except ShutdownInProgressError:
                logger.warning("Iteration %d cancelled by shutdown", iteration)
                if self.file_logger is not None:
                    self.file_logger.log_iteration_complete(iteration, "interrupted")
                return LoopResult(LoopStatus.INTERRUPTED, iteration)
            except ClaudeExecutionError as e:
                return self._fail(iteration, e)

            self.workspace.increment_iterations()
            is_complete = self.detector.is_complete(mode)
            remaining = self.detector.get_remaining_count(mode)

            stagnant = False
            if mode == ExecutionMode.ITERATIVE and not is_complete:
                stagnant = self._check_stagnation(iteration)
                is_complete = stagnant
            state.is_complete = is_complete

            if self.file_logger is not None:
                self.file_logger.log_iteration_complete(iteration, "success", remaining)

            if is_complete:
                return self._complete(iteration, stagnant)

            self._report_progress(iteration, remaining)
            self._emit(
                "on_iteration_complete", iteration, remaining,
                iteration % MILESTONE_INTERVAL == 0,
            )
            if iteration < max_iterations:
                self._delay()

    def _check_stagnation(self, iteration: int) -> bool:
        """Count consecutive no-work iterations. Returns True at the threshold."""
        threshold = self.config.limits.stagnation_threshold
        status = self.workspace.get_status()
        if status.worked is not False:
            self.state.no_work_count = 0
            return False

        self.state.no_work_count += 1
        logger.info("No work detected (%d/%d)", self.state.no_work_count, threshold)
        if threshold > 0 and self.state.no_work_count >= threshold:
            logger.warning(
                "Stagnation detected: %d consecutive iterations with no work",
                self.state.no_work_count,
            )
            logger.info("Marking task as complete due to stagnation threshold")
            self._emit("on_stagnation", iteration, self.state.no_work_count)
            return True
        return False

    def _delay(self) -> None:
        delay = self.config.limits.delay_seconds
        if delay <= 0:
            return
        logger.debug("Waiting %ds before next iteration...", delay)
        self._stop_event.wait(delay)

    def _complete(self, iteration: int, stagnant: bool) -> LoopResult:
        logger.info("Task completed successfully after %d iterations", iteration)
        status = self.workspace.get_status()
        if status.summary:
            logger.info("   %s", status.summary)
        if status.progress is not None:
            logger.info("   Progress: %d/%d", status.progress.completed, status.progress.total)

        self.workspace.mark_completed()
        self._emit("on_completion", iteration)
        return LoopResult(
            LoopStatus.STAGNANT_COMPLETED if stagnant else LoopStatus.COMPLETED, iteration
        )

    def _fail(self, iteration: int, error: ClaudeExecutionError) -> LoopResult:
        logger.error("Iteration %d failed: %s", iteration, error)
        if self.file_logger is not None:
            self.file_logger.log_error(iteration, error)
        self.workspace.mark_error()
        self._emit("on_error", iteration, error)
        return LoopResult(LoopStatus.FAILED, iteration, error=error)

    def _report_progress(self, iteration: int, remaining: Optional[int]) -> None:
        status = self.workspace.get_status()
        if status.progress is not None and status.progress.total > 0:
            logger.info(
                "Iteration %d complete (%d items remaining)",
                iteration, status.progress.total - status.progress.completed,
            )
        elif status.worked is not None and status.summary:
            logger.info("Iteration %d complete", iteration)
            logger.info("   %s", status.summary)
        elif remaining is not None:
            logger.info("Iteration %d complete (%d items remaining)", iteration, remaining)
        else:
            logger.info("Iteration %d complete", iteration)

    def _log_summary(self, result: LoopResult) -> None:
        """Log final loop summary."""
        logger.info("")
        logger.info("=" * 60)
        logger.info("LOOP %s", result.status.value.upper())
        logger.info("Total iterations: %d", result.iterations)
        if result.error is not None:
            logger.info("Error: %s", result.error)
        logger.info("=" * 60)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Run an AI agent CLI in a loop until a workspace task is complete"
    )
    parser.add_argument("--workspace", default=".", help="Workspace directory path")
    parser.add_argument("--init", action="store_true", help="Create the workspace and exit")
    parser.add_argument(
        "--mode", choices=[m.value for m in ExecutionMode], default=ExecutionMode.LOOP.value,
        help="Execution mode for --init (fixed once the workspace exists)",
    )
    parser.add_argument("--name", default=None, help="Workspace name for --init")
    parser.add_argument("--max-iterations", type=int, default=None, help="Max loop iterations")
    parser.add_argument("--delay", type=int, default=None, help="Seconds between iterations")
    parser.add_argument("--no-delay", action="store_true", help="Do not pause between iterations")
    parser.add_argument(
        "--stagnation-threshold", type=int, default=None,
        help="No-work iterations before forcing completion (iterative mode, 0=never)",
    )
    output = parser.add_mutually_exclusive_group()
    output.add_argument("--verbose", dest="output", action="store_const", const="verbose",
                        help="Show agent output and tool activity")
    output.add_argument("--quiet", dest="output", action="store_const", const="quiet",
                        help="Only show warnings and errors")
    output.add_argument("--output", dest="output", choices=list(OUTPUT_LOG_LEVELS),
                        help="Output level")
    parser.add_argument("--dangerously-skip-permissions", action="store_true",
                        help="Pass --dangerously-skip-permissions to the agent")
    parser.add_argument("--json-log", action="store_true", help="Output structured JSON logs")
    parser.add_argument("--config", default=None, help="Path to config.json")
    parser.add_argument("--skip-preflight", action="store_true", help="Skip agent CLI preflight check")
    args = parser.parse_args(argv)

    for name in ("max_iterations", "delay", "stagnation_threshold"):
        value = getattr(args, name)
        minimum = 1 if name == "max_iterations" else 0
        if value is not None and value < minimum:
            parser.error(f"--{name.replace('_', '-')} must be >= {minimum}")

    # Load config
    workspace_path = Path(args.workspace).resolve()
    config_path = args.config or default_config_path(workspace_path)
    config_result = load_config(config_path)
    config = config_result.data if config_result.success else EngineConfig()
    level = args.output or config.output.level

    # Setup logging with redaction
    log_level = OUTPUT_LOG_LEVELS[level]
    if args.json_log:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
        logging.root.addHandler(handler)
        logging.root.setLevel(log_level)
    else:
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    for noisy in ("watchdog", "urllib3"):
        logging.getLogger(noisy).setLevel(max(log_level, logging.INFO))

    redactor = Redactor(config.security.log_redact_patterns)
    for handler in logging.root.handlers:
        handler.addFilter(RedactingFilter(redactor))

    if not config_result.success:
        logger.error("Config error: %s", config_result.error)
        sys.exit(EXIT_FAILURE)

    if args.init:
        created = Workspace.create(workspace_path, args.name, ExecutionMode(args.mode))
        if not created.success:
            logger.error("Init failed: %s", created.error)
            sys.exit(EXIT_FAILURE)
        logger.info("Write your task into %s, then run again", created.data.instructions_path)
        sys.exit(EXIT_SUCCESS)

    loaded = Workspace.load(workspace_path)
    if not loaded.success:
        logger.error("Workspace error: %s", loaded.error)
        sys.exit(EXIT_FAILURE)
    workspace = loaded.data
    if not workspace.has_instructions():
        logger.error("No instructions found at %s", workspace.instructions_path)
        sys.exit(EXIT_FAILURE)

    # Apply overrides: CLI > workspace metadata > config file
    config = apply_workspace_overrides(config, workspace.metadata)
    if args.max_iterations is not None:
        config.limits.max_iterations = args.max_iterations
    if args.delay is not None:
        config.limits.delay_seconds = args.delay
    if args.no_delay:
        config.limits.delay_seconds = 0
    if args.stagnation_threshold is not None:
        config.limits.stagnation_threshold = args.stagnation_threshold
    if args.dangerously_skip_permissions:
        config.claude.dangerously_skip_permissions = True

    client = ClaudeClient(
        command=config.claude.command,
        args=build_claude_args(config),
        exit_wait_ceiling=config.limits.exit_wait_ceiling_seconds,
    )
    if not args.skip_preflight:
        version = client.get_version()
        if version is None:
            logger.error(
                "Agent CLI not found. Make sure '%s' is installed and in PATH.",
                config.claude.command,
            )
            sys.exit(EXIT_FAILURE)
        logger.info("Agent CLI preflight OK: %s", version[:100])

    file_logger = FileLogger(timestamped_log_path(workspace.path), redactor=redactor)
    logger.debug("Logging to: %s", file_logger.log_path)

    service = NotificationService(
        url=config.notification.url,
        events=config.notification.events,
        timeout_seconds=config.notification.timeout_seconds,
    )
    observers: list[object] = []
    watcher: Optional[StatusFileWatcher] = None
    if service.is_configured():
        notifier = NotificationObserver(
            service, workspace.metadata.name, config.limits.max_iterations
        )
        observers.append(notifier)
        if config.status_watch.enabled and service.should_notify("status_update"):
            watcher = StatusFileWatcher(
                workspace.status_path,
                debounce_ms=config.status_watch.debounce_ms,
                notify_only_meaningful=config.status_watch.notify_only_meaningful,
                on_status_changed=notifier.status_listener(),
            )

    driver = LoopDriver(
        workspace=workspace,
        config=config,
        client=client,
        observers=observers,
        file_logger=file_logger,
        status_watcher=watcher,
        tool_visibility=level == "verbose",
    )
    driver.install_signal_handlers()
    try:
        result = driver.run()
    finally:
        driver.restore_signal_handlers()
        service.close()
    sys.exit(result.exit_code)


if __name__ == "__main__":
    main()
