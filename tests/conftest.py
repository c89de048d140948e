"""Shared pytest fixtures for the iteration loop test suite.

Non-fixture helpers (fake clients, agent scripts, stream-json builders) are in helpers.py.
"""

import json
import sys
from pathlib import Path

import pytest

# Add the tests directory to sys.path so test files can import helpers.py
sys.path.insert(0, str(Path(__file__).parent))

from config import EngineConfig  # noqa: E402
from modes import ExecutionMode  # noqa: E402
from workspace import Workspace  # noqa: E402


def _make_workspace(path: Path, mode: ExecutionMode) -> Workspace:
    result = Workspace.create(path, name="test-task", mode=mode)
    assert result.success, result.error
    workspace = result.data
    workspace.instructions_path.write_text(
        "# Task\nProcess every item in TODO.md.", encoding="utf-8"
    )
    return workspace


@pytest.fixture
def loop_workspace(tmp_path: Path) -> Workspace:
    """A loop-mode workspace with INSTRUCTIONS.md written."""
    return _make_workspace(tmp_path / "loop-ws", ExecutionMode.LOOP)


@pytest.fixture
def iterative_workspace(tmp_path: Path) -> Workspace:
    """An iterative-mode workspace with INSTRUCTIONS.md written."""
    return _make_workspace(tmp_path / "iter-ws", ExecutionMode.ITERATIVE)


@pytest.fixture
def config() -> EngineConfig:
    """Engine config with delays disabled so loop tests run instantly."""
    return EngineConfig(
        limits={
            "max_iterations": 5,
            "delay_seconds": 0,
            "stagnation_threshold": 2,
            "shutdown_grace_seconds": 0.5,
        },
    )


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """A populated .iterate/config.json next to a workspace directory."""
    config_dir = tmp_path / ".iterate"
    config_dir.mkdir()
    path = config_dir / "config.json"
    path.write_text(json.dumps({
        "limits": {"max_iterations": 7, "delay_seconds": 1},
        "patterns": {"completion_markers": ["ALL DONE"]},
        "notification": {"url": "https://ntfy.example/topic"},
    }), encoding="utf-8")
    return path
