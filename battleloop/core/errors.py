"""
Errors
======
Exception types raised across the battle loop.

Failures local to one concern (commit, task-status sync, checkpoint creation)
are logged and absorbed where they happen. The types below are the ones that
reach a caller.
"""
from typing import Any, List


class BattleLoopError(Exception):
    """Base class for all battle loop errors."""


class BattleInProgressError(BattleLoopError):
    def __init__(self, task_id: str) -> None:
        super().__init__(
            f'Battle already in progress for task "{task_id}". '
            "Call cancel() first to start a new battle."
        )
        self.task_id = task_id


class TaskNotFoundError(BattleLoopError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f'Task "{task_id}" not found in PRD')
        self.task_id = task_id


class NoActiveBattleError(BattleLoopError):
    pass


class StoreFileNotFoundError(BattleLoopError):
    """A required state file does not exist."""

    def __init__(self, path: str) -> None:
        super().__init__(f"File not found: {path}")
        self.path = path


class StoreValidationError(BattleLoopError):
    """A state file exists but is not valid JSON/YAML or fails schema validation."""

    def __init__(self, path: str, errors: Any, message: str = "") -> None:
        super().__init__(message or f"Validation failed: {path}")
        self.path = path
        self.errors = errors


class GitCommandError(BattleLoopError):
    def __init__(self, args: List[str], stderr: str) -> None:
        super().__init__(f"git {' '.join(args)} failed: {stderr.strip()}")
        self.args_list = args
        self.stderr = stderr


class CheckpointCreateError(BattleLoopError):
    pass


class CheckpointRestoreError(BattleLoopError):
    """Restore refused (missing hash) or failed part-way (reset/apply error)."""


class AlreadyWatchingError(BattleLoopError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f'Already watching task "{task_id}". Call stop() first.')
        self.task_id = task_id
