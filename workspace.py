"""Persistent workspace metadata for the iteration loop.

A workspace is a directory holding INSTRUCTIONS.md, TODO.md, the agent's
.status.json and a .metadata.json managed here.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field

from config import Result
from modes import ExecutionMode
from status_file import STATUS_FILE_NAME, StatusRecord, read_status

logger = logging.getLogger(__name__)

METADATA_FILE_NAME = ".metadata.json"
INSTRUCTIONS_FILE_NAME = "INSTRUCTIONS.md"
TODO_FILE_NAME = "TODO.md"

CURRENT_METADATA_VERSION = 1


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class WorkspaceMetadata(BaseModel):
    """Root model persisted to .metadata.json."""

    version: int = Field(default=CURRENT_METADATA_VERSION)
    name: str = Field(min_length=1)
    created: str = Field(default_factory=_now)
    last_run: Optional[str] = None
    status: Literal["in_progress", "completed", "error"] = "in_progress"
    mode: ExecutionMode = ExecutionMode.LOOP
    total_iterations: int = Field(default=0, ge=0)
    execution_iterations: int = Field(default=0, ge=0)
    # Per-workspace overrides; None falls through to the config file.
    completion_markers: Optional[list[str]] = None
    max_iterations: Optional[int] = Field(default=None, ge=1)
    delay_seconds: Optional[int] = Field(default=None, ge=0)
    stagnation_threshold: Optional[int] = Field(default=None, ge=0)
    notify_url: Optional[str] = None
    notify_events: Optional[list[str]] = None


class Workspace:
    """Manages a workspace directory and its .metadata.json."""

    def __init__(self, path: str | Path, metadata: WorkspaceMetadata) -> None:
        self.path = Path(path)
        self.metadata = metadata

    @property
    def metadata_path(self) -> Path:
        return self.path / METADATA_FILE_NAME

    @property
    def status_path(self) -> Path:
        return self.path / STATUS_FILE_NAME

    @property
    def todo_path(self) -> Path:
        return self.path / TODO_FILE_NAME

    @property
    def instructions_path(self) -> Path:
        return self.path / INSTRUCTIONS_FILE_NAME

    @property
    def mode(self) -> ExecutionMode:
        return self.metadata.mode

    @classmethod
    def create(
        cls,
        path: str | Path,
        name: Optional[str] = None,
        mode: ExecutionMode = ExecutionMode.LOOP,
    ) -> Result[Workspace]:
        """Create a new workspace directory with placeholder files."""
        path = Path(path)
        if (path / METADATA_FILE_NAME).exists():
            return Result.fail(f"Workspace already exists: {path}", "WORKSPACE_EXISTS")

        metadata = WorkspaceMetadata(name=name or path.name, mode=mode)
        workspace = cls(path, metadata)
        try:
            path.mkdir(parents=True, exist_ok=True)
            todo = path / TODO_FILE_NAME
            if not todo.exists():
                todo.write_text(
                    f"# TODO - {metadata.name}\n\n"
                    "*Instructions not yet created. Write INSTRUCTIONS.md first.*\n",
                    encoding="utf-8",
                )
        except OSError as e:
            return Result.fail(f"Cannot create workspace {path}: {e}", "CREATE_ERROR")

        saved = workspace.save()
        if not saved.success:
            return Result.fail(saved.error or "Save failed", saved.error_code or "SAVE_ERROR")
        logger.info("Created %s-mode workspace at %s", mode.value, path)
        return Result.ok(workspace)

    @staticmethod
    def _migrate_metadata(raw: dict) -> dict:
        """Migrate older metadata formats to current version."""
        if "version" not in raw:
            raw["version"] = CURRENT_METADATA_VERSION
            logger.info("Migrated workspace metadata: added version=%d", CURRENT_METADATA_VERSION)
        return raw

    @classmethod
    def load(cls, path: str | Path) -> Result[Workspace]:
        """Load an existing workspace from disk."""
        path = Path(path)
        metadata_path = path / METADATA_FILE_NAME
        if not metadata_path.exists():
            return Result.fail(f"Workspace not found: {path}", "WORKSPACE_NOT_FOUND")

        try:
            raw = json.loads(metadata_path.read_text(encoding="utf-8"))
            raw = cls._migrate_metadata(raw)
            metadata = WorkspaceMetadata.model_validate(raw)
            return Result.ok(cls(path, metadata))
        except json.JSONDecodeError as e:
            return Result.fail(f"Corrupt metadata file: {e}", "JSON_ERROR")
        except Exception as e:
            return Result.fail(f"Invalid metadata: {e}", "INVALID_METADATA")

    def save(self) -> Result[None]:
        """Persist current metadata to disk."""
        try:
            self.path.mkdir(parents=True, exist_ok=True)
            self.metadata_path.write_text(
                self.metadata.model_dump_json(indent=2), encoding="utf-8"
            )
            return Result.ok(None)
        except Exception as e:
            return Result.fail(f"Metadata save failed: {e}", "SAVE_ERROR")

    def has_instructions(self) -> bool:
        return self.instructions_path.exists()

    def get_instructions(self) -> str:
        return self.instructions_path.read_text(encoding="utf-8")

    def get_status(self) -> StatusRecord:
        return read_status(self.status_path)

    def increment_iterations(self) -> WorkspaceMetadata:
        """Count one finished execution iteration and persist it."""
        self.metadata.total_iterations += 1
        self.metadata.execution_iterations += 1
        self.metadata.last_run = _now()
        self._save_or_warn()
        return self.metadata

    def mark_completed(self) -> None:
        self.metadata.status = "completed"
        self._save_or_warn()

    def mark_error(self) -> None:
        self.metadata.status = "error"
        self._save_or_warn()

    def _save_or_warn(self) -> None:
        result = self.save()
        if not result.success:
            logger.warning("Could not update workspace metadata: %s", result.error)
