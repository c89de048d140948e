"""Configuration validation for the iteration loop engine."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Generic, Literal, Optional, TypeVar

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from workspace import WorkspaceMetadata

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFIG_DIR_NAME = ".iterate"
CONFIG_FILE_NAME = "config.json"


@dataclass
class Result(Generic[T]):
    """Type-safe result wrapper for operations that can fail."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: T) -> Result[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str = "UNKNOWN") -> Result[T]:
        return cls(success=False, error=error, error_code=code)


class ClaudeConfig(BaseModel):
    """Agent CLI invocation settings."""

    command: str = Field(default="claude")
    args: list[str] = Field(default_factory=list)
    dangerously_skip_permissions: bool = Field(
        default=False,
        description="Append --dangerously-skip-permissions to every invocation",
    )


class LimitsConfig(BaseModel):
    """Iteration, delay and process lifecycle limits."""

    max_iterations: int = Field(default=50, ge=1, le=1000)
    delay_seconds: int = Field(
        default=2, ge=0, le=3600,
        description="Pause between iterations (0 disables)",
    )
    stagnation_threshold: int = Field(
        default=2, ge=0, le=100,
        description="Consecutive no-work iterations before forcing completion (iterative mode, 0=never)",
    )
    shutdown_grace_seconds: float = Field(
        default=5.0, gt=0, le=120,
        description="Time between SIGTERM and SIGKILL when shutting the agent down",
    )
    exit_wait_ceiling_seconds: float = Field(
        default=300.0, gt=0,
        description="Treat a run with no observed exit after this long as finished",
    )


class PatternsConfig(BaseModel):
    """Legacy TODO.md completion markers."""

    completion_markers: list[str] = Field(
        default_factory=lambda: [
            "Remaining: 0",
            "**Remaining**: 0",
            "TASK COMPLETE",
            "✅ TASK COMPLETE",
        ]
    )


class StatusWatchConfig(BaseModel):
    """Real-time .status.json watching for progress notifications."""

    enabled: bool = Field(default=True)
    debounce_ms: int = Field(default=2000, ge=0, le=60_000)
    notify_only_meaningful: bool = Field(
        default=True,
        description="Ignore writes that only touch lastUpdated",
    )


class NotificationConfig(BaseModel):
    """ntfy-compatible HTTP notification settings."""

    url: Optional[str] = Field(default=None)
    events: list[str] = Field(
        default_factory=list,
        description="Events to notify on (empty = iteration, completion, error, status_update)",
    )
    timeout_seconds: float = Field(default=10.0, gt=0, le=120)


class OutputConfig(BaseModel):
    """Console output verbosity."""

    level: Literal["quiet", "progress", "verbose"] = Field(default="progress")


class SecurityConfig(BaseModel):
    """Security and redaction settings."""

    log_redact_patterns: list[str] = Field(
        default_factory=lambda: [
            r"sk-ant-[\w-]+",
            r"sk-proj-[\w-]+",
            r"ghp_[A-Za-z0-9]{20,}",
        ]
    )


class EngineConfig(BaseModel):
    """Root configuration model for .iterate/config.json."""

    claude: ClaudeConfig = Field(default_factory=ClaudeConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    patterns: PatternsConfig = Field(default_factory=PatternsConfig)
    status_watch: StatusWatchConfig = Field(default_factory=StatusWatchConfig)
    notification: NotificationConfig = Field(default_factory=NotificationConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)


def default_config_path(workspace_path: str | Path) -> Path:
    return Path(workspace_path) / CONFIG_DIR_NAME / CONFIG_FILE_NAME


def load_config(config_path: str | Path) -> Result[EngineConfig]:
    """Load and validate engine config from JSON file."""
    path = Path(config_path)
    if not path.exists():
        logger.info("Config not found at %s, using defaults", path)
        return Result.ok(EngineConfig())

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        config = EngineConfig.model_validate(raw)
        return Result.ok(config)
    except json.JSONDecodeError as e:
        return Result.fail(f"Invalid JSON in {path}: {e}", "JSON_ERROR")
    except Exception as e:
        return Result.fail(f"Config validation failed: {e}", "VALIDATION_ERROR")


def apply_workspace_overrides(
    config: EngineConfig, metadata: WorkspaceMetadata
) -> EngineConfig:
    """Return a copy of config with the workspace's own settings layered on top.

    Only fields the workspace sets explicitly override the config file.
    """
    merged = config.model_copy(deep=True)
    if metadata.max_iterations is not None:
        merged.limits.max_iterations = metadata.max_iterations
    if metadata.delay_seconds is not None:
        merged.limits.delay_seconds = metadata.delay_seconds
    if metadata.stagnation_threshold is not None:
        merged.limits.stagnation_threshold = metadata.stagnation_threshold
    if metadata.completion_markers:
        merged.patterns.completion_markers = list(metadata.completion_markers)
    if metadata.notify_url:
        merged.notification.url = metadata.notify_url
    if metadata.notify_events is not None:
        merged.notification.events = list(metadata.notify_events)
    return merged
