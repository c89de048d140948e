"""Machine-readable workspace status record (.status.json).

The agent process writes this file; the engine only ever reads it. Reads
are tolerant: a missing, half-written or schema-invalid file yields the
default record instead of an error.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, ValidationError

logger = logging.getLogger(__name__)

STATUS_FILE_NAME = ".status.json"


class StatusProgress(BaseModel):
    """Loop-mode item counts."""

    completed: StrictInt = Field(ge=0)
    total: StrictInt = Field(ge=0)


class StatusRecord(BaseModel):
    """Shared status written by the agent.

    Loop mode fills ``progress``; iterative mode fills ``worked``.
    """

    model_config = ConfigDict(populate_by_name=True)

    # Strict: 1 or "yes" is an invalid record, not a completed one.
    complete: StrictBool
    progress: Optional[StatusProgress] = None
    worked: Optional[StrictBool] = None
    summary: Optional[str] = None
    last_updated: Optional[datetime] = Field(default=None, alias="lastUpdated")
    phase: Optional[str] = None
    blockers: Optional[list[str]] = None
    notes: Optional[str] = None

    @property
    def remaining(self) -> Optional[int]:
        if self.progress is None:
            return None
        return max(self.progress.total - self.progress.completed, 0)


def default_status() -> StatusRecord:
    return StatusRecord(complete=False)


@dataclass(frozen=True)
class StatusDelta:
    """Difference between two StatusRecord snapshots."""

    progress_changed: bool
    completed_delta: int
    total_delta: int
    completion_status_changed: bool
    summary_changed: bool


def load_status(path: str | Path) -> Optional[StatusRecord]:
    """Parse the status file, returning None when absent or invalid."""
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.debug("Unreadable status file %s: %s", path, e)
        return None

    try:
        return StatusRecord.model_validate(raw)
    except ValidationError as e:
        logger.debug("Invalid status file %s: %s", path, e.errors())
        return None


def read_status(path: str | Path) -> StatusRecord:
    """Read the status file, falling back to the default record."""
    status = load_status(path)
    return status if status is not None else default_status()


def has_significant_change(
    previous: Optional[StatusRecord],
    current: StatusRecord,
    only_meaningful: bool = True,
) -> bool:
    """Decide whether a new snapshot is worth reporting.

    The first snapshot always counts. With ``only_meaningful`` set, a change
    confined to lastUpdated (or other bookkeeping fields) does not.
    """
    if previous is None:
        return True
    if not only_meaningful:
        return True

    prev_progress = previous.progress
    curr_progress = current.progress
    progress_changed = (
        (prev_progress.completed if prev_progress else None)
        != (curr_progress.completed if curr_progress else None)
        or (prev_progress.total if prev_progress else None)
        != (curr_progress.total if curr_progress else None)
    )
    return (
        progress_changed
        or previous.complete != current.complete
        or previous.summary != current.summary
    )


def compute_delta(
    previous: Optional[StatusRecord], current: StatusRecord
) -> StatusDelta:
    curr_completed = current.progress.completed if current.progress else 0
    curr_total = current.progress.total if current.progress else 0

    if previous is None:
        return StatusDelta(
            progress_changed=True,
            completed_delta=curr_completed,
            total_delta=curr_total,
            completion_status_changed=current.complete,
            summary_changed=True,
        )

    prev_completed = previous.progress.completed if previous.progress else 0
    prev_total = previous.progress.total if previous.progress else 0
    return StatusDelta(
        progress_changed=prev_completed != curr_completed or prev_total != curr_total,
        completed_delta=curr_completed - prev_completed,
        total_delta=curr_total - prev_total,
        completion_status_changed=previous.complete != current.complete,
        summary_changed=previous.summary != current.summary,
    )
