"""Per-run iteration log file.

Logging must never abort an iteration: the first write failure disables the
logger for the rest of the run.
"""

from __future__ import annotations

import logging
import threading
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from log_redactor import Redactor

logger = logging.getLogger(__name__)

RULE = "=" * 80
FLUSH_THRESHOLD_CHARS = 10 * 1024


def _iso(moment: Optional[datetime] = None) -> str:
    return (moment or datetime.now(timezone.utc)).isoformat()


def timestamped_log_path(directory: str | Path) -> Path:
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
    return Path(directory) / f"iterate-{stamp}.log"


class FileLogger:
    """Writes run metadata, agent output and iteration footers to one file."""

    def __init__(
        self,
        log_path: str | Path,
        enabled: bool = True,
        redactor: Optional[Redactor] = None,
    ) -> None:
        self.log_path = Path(log_path)
        self._enabled = enabled
        self._redactor = redactor
        self._initialized = False
        self._buffer: list[str] = []
        self._buffered_chars = 0
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _disable(self, error: Exception) -> None:
        if self._enabled:
            logger.warning("Disabling log file %s after write failure: %s", self.log_path, error)
        self._enabled = False

    def _write(self, text: str, mode: str = "a") -> None:
        if not self._enabled:
            return
        if self._redactor:
            text = self._redactor.redact(text)
        try:
            with open(self.log_path, mode, encoding="utf-8") as f:
                f.write(text)
        except OSError as e:
            self._disable(e)

    def _init(self) -> None:
        if self._initialized or not self._enabled:
            return
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self._disable(e)
            return
        self._write(f"{RULE}\nITERATION LOOP - EXECUTION LOG\nStarted: {_iso()}\n{RULE}\n\n", mode="w")
        self._initialized = True

    def _section(self, title: str, body: str) -> None:
        with self._lock:
            if not self._enabled:
                return
            self._init()
            self._write(f"{RULE}\n{title}\n{RULE}\n{body}\n\n")

    def log_run_start(self, workspace: str, mode: str, max_iterations: int) -> None:
        self._section(
            "RUN METADATA",
            f"Workspace: {workspace}\nMode: {mode}\n"
            f"Max Iterations: {max_iterations}\nStart Time: {_iso()}",
        )

    def log_instructions(self, content: str) -> None:
        self._section("INSTRUCTIONS", content)

    def log_system_prompt(self, prompt: str) -> None:
        self._section("SYSTEM PROMPT", prompt)

    def log_iteration_start(self, iteration: int) -> None:
        with self._lock:
            if not self._enabled:
                return
            self._init()
            self._write(f"{RULE}\nITERATION {iteration}\nStarted: {_iso()}\n{RULE}\n\nAGENT OUTPUT:\n")

    def append_output(self, chunk: str) -> None:
        """Buffer a raw output chunk; large buffers are flushed immediately."""
        with self._lock:
            if not self._enabled:
                return
            self._buffer.append(chunk)
            self._buffered_chars += len(chunk)
            if self._buffered_chars > FLUSH_THRESHOLD_CHARS:
                self._flush_locked()

    def log_iteration_complete(
        self, iteration: int, status: str, remaining: Optional[int] = None
    ) -> None:
        with self._lock:
            if not self._enabled:
                return
            self._init()
            self._flush_locked()
            footer = f"\n\nSTATUS: {status}\nCompleted: {_iso()}\n"
            if remaining is not None:
                footer += f"Remaining: {remaining}\n"
            self._write(footer)

    def log_error(self, iteration: int, error: BaseException) -> None:
        with self._lock:
            if not self._enabled:
                return
            self._init()
            self._flush_locked()
            content = (
                f"\n\nERROR (Iteration {iteration}):\n"
                f"Time: {_iso()}\nMessage: {error}\n"
            )
            if error.__traceback__ is not None:
                content += "Traceback:\n" + "".join(traceback.format_tb(error.__traceback__))
            self._write(content)

    def flush(self) -> None:
        with self._lock:
            self._flush_locked()

    def _flush_locked(self) -> None:
        if not self._buffer or not self._enabled:
            return
        self._init()
        text = "".join(self._buffer)
        self._buffer.clear()
        self._buffered_chars = 0
        self._write(text)
