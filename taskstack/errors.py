"""
Errors
======

Exception types raised by the planning and execution layers.

Validation problems surface before any side effect; VCS and stack tool
failures are fatal to the affected task; cleanup failures are only logged.
"""

from typing import List, Optional


class TaskstackError(Exception):
    """Base class for all taskstack errors."""
    pass


class ConfigError(TaskstackError):
    """Raised when a configuration or plan file cannot be loaded."""
    pass


class PlanValidationError(TaskstackError):
    """Raised when a plan fails graph validation."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        summary = "; ".join(self.errors[:3])
        if len(self.errors) > 3:
            summary += f" (+{len(self.errors) - 3} more)"
        super().__init__(f"Plan validation failed: {summary}")


class InvalidTransitionError(TaskstackError):
    """Raised when a task is asked to make a transition the state machine forbids."""

    def __init__(self, task_id: str, from_state: str, to_state: str):
        self.task_id = task_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid transition for task {task_id}: {from_state} -> {to_state}"
        )


class TaskExecutionError(TaskstackError):
    """Raised when a task attempt fails."""

    def __init__(self, task_id: str, message: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} failed: {message}")


class TaskTimeoutError(TaskExecutionError):
    """Raised when a task attempt exceeds its timeout."""

    def __init__(self, task_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(task_id, f"timed out after {timeout:g}s")


class GitCommandError(TaskstackError):
    """Raised when a git command fails."""
    pass


class NothingToCommitError(GitCommandError):
    """Raised when a worktree has no changes to commit."""

    def __init__(self, task_id: str, worktree_path: Optional[str] = None):
        self.task_id = task_id
        self.worktree_path = worktree_path
        super().__init__(f"No changes to commit for task {task_id}")


class WorktreeError(GitCommandError):
    """Raised when a worktree cannot be created for a task."""
    pass


class StackToolError(TaskstackError):
    """Raised when the stack tool (git-spice) fails or is not available."""
    pass
