"""Completion detection for workspaces.

The agent's own prose is never trusted: assistants echo "complete" markers
from their instructions. The source of truth is .status.json, with TODO.md
consulted only as a fallback.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from modes import ExecutionMode
from status_file import STATUS_FILE_NAME, load_status
from workspace import INSTRUCTIONS_FILE_NAME, TODO_FILE_NAME

logger = logging.getLogger(__name__)

REMAINING_PATTERNS = (
    re.compile(r"[*_]*Remaining[*_]*:[*_]*\s*(\d+)", re.IGNORECASE),
    re.compile(r"[*_]*Items Remaining[*_]*:[*_]*\s*(\d+)", re.IGNORECASE),
    re.compile(r"[*_]*Tasks Remaining[*_]*:[*_]*\s*(\d+)", re.IGNORECASE),
)

CHECKLIST_ITEM = re.compile(r"^\s*[-*]\s+\[([ xX])\]", re.MULTILINE)


@dataclass
class CompletionStatus:
    is_complete: bool
    has_todo: bool
    has_instructions: bool
    remaining_count: Optional[int]


class CompletionDetector:
    """Answers "is the task done, and how much remains?" for one workspace."""

    def __init__(
        self,
        workspace_path: str | Path,
        completion_markers: Sequence[str] = (),
    ) -> None:
        self.workspace_path = Path(workspace_path)
        self.completion_markers = list(completion_markers)

    @property
    def status_path(self) -> Path:
        return self.workspace_path / STATUS_FILE_NAME

    @property
    def todo_path(self) -> Path:
        return self.workspace_path / TODO_FILE_NAME

    def _read_todo(self) -> Optional[str]:
        try:
            return self.todo_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to read %s: %s", self.todo_path, e)
            return None

    def _checklist(self) -> Optional[tuple[int, int]]:
        """Return (checked, unchecked) item counts from TODO.md."""
        content = self._read_todo()
        if content is None:
            return None
        marks = CHECKLIST_ITEM.findall(content)
        checked = sum(1 for m in marks if m in ("x", "X"))
        return checked, len(marks) - checked

    def is_complete(self, mode: ExecutionMode) -> bool:
        status = load_status(self.status_path)
        if status is not None and status.complete:
            return True

        if mode == ExecutionMode.ITERATIVE:
            checklist = self._checklist()
            if checklist is None:
                return False
            checked, unchecked = checklist
            return checked > 0 and unchecked == 0

        # Loop mode: progress counts alone never imply completion, and the
        # legacy markers only apply when there is no usable status record.
        if status is not None:
            return False
        content = self._read_todo()
        if content is None:
            return False
        return any(marker in content for marker in self.completion_markers)

    def get_remaining_count(self, mode: ExecutionMode) -> Optional[int]:
        if mode == ExecutionMode.ITERATIVE:
            checklist = self._checklist()
            if checklist is None:
                return None
            return checklist[1]

        status = load_status(self.status_path)
        if status is not None and status.progress is not None:
            return status.remaining

        content = self._read_todo()
        if content is None:
            return None
        for pattern in REMAINING_PATTERNS:
            match = pattern.search(content)
            if match:
                return int(match.group(1))
        return None

    def get_status(self, mode: ExecutionMode) -> CompletionStatus:
        return CompletionStatus(
            is_complete=self.is_complete(mode),
            has_todo=self.todo_path.exists(),
            has_instructions=(self.workspace_path / INSTRUCTIONS_FILE_NAME).exists(),
            remaining_count=self.get_remaining_count(mode),
        )
