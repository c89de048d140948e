"""Mode-specific prompt strategies for loop and iterative execution."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from status_file import STATUS_FILE_NAME


class ExecutionMode(str, Enum):
    LOOP = "loop"
    ITERATIVE = "iterative"


class ModeStrategy:
    """Builds the prompts sent to the agent for one execution mode."""

    mode: ExecutionMode

    def iteration_system_prompt(self, workspace_path: str | Path, project_root: str | Path) -> str:
        raise NotImplementedError

    def iteration_prompt(self, instructions: str, iteration: int) -> str:
        raise NotImplementedError

    def status_instructions(self, workspace_path: str | Path) -> str:
        raise NotImplementedError

    def _workspace_block(self, workspace_path: str | Path, project_root: str | Path) -> str:
        return (
            f"You are running from the project root: {project_root}\n"
            f"The task workspace lives at: {workspace_path}\n"
            f"- Task list: {Path(workspace_path) / 'TODO.md'}\n"
            f"- Status file: {Path(workspace_path) / STATUS_FILE_NAME}\n"
            "Access workspace files by their absolute paths."
        )


class LoopModeStrategy(ModeStrategy):
    """One item per iteration, tracked as completed/total counts."""

    mode = ExecutionMode.LOOP

    def iteration_system_prompt(self, workspace_path: str | Path, project_root: str | Path) -> str:
        return (
            "You are one iteration of an automated loop working through a task list.\n"
            "Each iteration you complete exactly ONE pending item, update TODO.md, "
            "and stop. Another iteration will pick up the next item.\n\n"
            + self._workspace_block(workspace_path, project_root)
        )

    def iteration_prompt(self, instructions: str, iteration: int) -> str:
        return (
            f"ITERATION {iteration}\n\n"
            "Read TODO.md, pick the next pending item and complete it. "
            "Mark it done in TODO.md and keep the 'Remaining: N' line accurate.\n\n"
            f"## Instructions\n\n{instructions.strip()}\n"
        )

    def status_instructions(self, workspace_path: str | Path) -> str:
        status_path = Path(workspace_path) / STATUS_FILE_NAME
        return (
            "## Status Tracking\n\n"
            f"Before finishing, rewrite {status_path} as JSON:\n"
            '{"complete": false, "progress": {"completed": 3, "total": 10}, '
            '"summary": "Finished item 3", "lastUpdated": "<ISO-8601 timestamp>"}\n'
            'Set "complete": true only when every item is done.'
        )


class IterativeModeStrategy(ModeStrategy):
    """As much work as possible per iteration, tracked with a worked flag."""

    mode = ExecutionMode.ITERATIVE

    def iteration_system_prompt(self, workspace_path: str | Path, project_root: str | Path) -> str:
        return (
            "You are working autonomously on a task across repeated sessions.\n"
            "Complete as much of the remaining work as you can in this session, "
            "checking items off in TODO.md as you go.\n\n"
            + self._workspace_block(workspace_path, project_root)
        )

    def iteration_prompt(self, instructions: str, iteration: int) -> str:
        return (
            f"SESSION {iteration}\n\n"
            "Review TODO.md and the current state of the project, then continue "
            "the work. Do not stop after a single item if more can be done.\n\n"
            f"## Instructions\n\n{instructions.strip()}\n"
        )

    def status_instructions(self, workspace_path: str | Path) -> str:
        status_path = Path(workspace_path) / STATUS_FILE_NAME
        return (
            "## Status Tracking\n\n"
            f"Before finishing, rewrite {status_path} as JSON:\n"
            '{"complete": false, "worked": true, "summary": "What you did", '
            '"lastUpdated": "<ISO-8601 timestamp>"}\n'
            'Set "worked": false if there was nothing left for you to do. '
            'Set "complete": true only when the whole task is finished.'
        )


_STRATEGIES: dict[ExecutionMode, ModeStrategy] = {
    ExecutionMode.LOOP: LoopModeStrategy(),
    ExecutionMode.ITERATIVE: IterativeModeStrategy(),
}


def get_strategy(mode: ExecutionMode | str) -> ModeStrategy:
    try:
        return _STRATEGIES[ExecutionMode(mode)]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown execution mode: {mode}") from None


def register_strategy(strategy: ModeStrategy) -> None:
    _STRATEGIES[strategy.mode] = strategy


def build_iteration_prompt(
    strategy: ModeStrategy, instructions: str, iteration: int, workspace_path: str | Path
) -> str:
    """Iteration prompt with the mode's status instructions appended."""
    return (
        strategy.iteration_prompt(instructions, iteration)
        + "\n"
        + strategy.status_instructions(workspace_path)
    )
