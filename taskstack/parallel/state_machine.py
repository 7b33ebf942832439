"""
Task State Machine
==================

Allowed lifecycle transitions for tasks during a run.

    pending -> ready | blocked | skipped
    ready   -> queued | skipped
    queued  -> running | skipped | failed
    running -> completed | failed
    failed  -> queued            (retry)
    blocked -> skipped

queued -> failed covers isolation setup failures (no worktree could be
created), which fail a task without it ever running.
"""

from datetime import datetime
from typing import Dict, FrozenSet, Iterable, Optional, Any
import logging

from taskstack.errors import InvalidTransitionError
from taskstack.models import ExecutionTask, StateTransition, TaskState

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: Dict[TaskState, FrozenSet[TaskState]] = {
    TaskState.PENDING: frozenset({TaskState.READY, TaskState.BLOCKED, TaskState.SKIPPED}),
    TaskState.READY: frozenset({TaskState.QUEUED, TaskState.SKIPPED}),
    TaskState.QUEUED: frozenset({TaskState.RUNNING, TaskState.SKIPPED, TaskState.FAILED}),
    TaskState.RUNNING: frozenset({TaskState.COMPLETED, TaskState.FAILED}),
    TaskState.FAILED: frozenset({TaskState.QUEUED}),
    TaskState.BLOCKED: frozenset({TaskState.SKIPPED}),
    TaskState.COMPLETED: frozenset(),
    TaskState.SKIPPED: frozenset(),
}

TERMINAL_STATES = frozenset({
    TaskState.COMPLETED,
    TaskState.FAILED,
    TaskState.SKIPPED,
    TaskState.BLOCKED,
})

NOT_STARTED_STATES = frozenset({
    TaskState.PENDING,
    TaskState.READY,
    TaskState.QUEUED,
    TaskState.BLOCKED,
})


def is_valid_transition(from_state: TaskState, to_state: TaskState) -> bool:
    return to_state in VALID_TRANSITIONS.get(from_state, frozenset())


def is_terminal_state(state: TaskState) -> bool:
    """
    Whether a task in this state will not run again in this run.

    A failed task is terminal once its retry budget is spent; the
    orchestrator moves it back to queued before that happens.
    """
    return state in TERMINAL_STATES


class TaskStateMachine:
    """Applies validated transitions to execution tasks and records them."""

    def transition(
        self,
        task: ExecutionTask,
        to_state: TaskState,
        reason: Optional[str] = None
    ) -> StateTransition:
        """
        Move a task to a new state.

        Args:
            task: Task to transition
            to_state: Target state
            reason: Human-readable reason, stored in the history

        Returns:
            The recorded StateTransition

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        from_state = task.state
        if not is_valid_transition(from_state, to_state):
            raise InvalidTransitionError(task.id, from_state.value, to_state.value)

        transition = StateTransition(
            from_state=from_state,
            to_state=to_state,
            timestamp=datetime.now(),
            reason=reason,
        )
        task.state = to_state
        task.state_history.append(transition)

        if to_state == TaskState.RUNNING:
            if task.start_time is None:
                task.start_time = transition.timestamp
            task.end_time = None
        elif to_state in (TaskState.COMPLETED, TaskState.FAILED, TaskState.SKIPPED, TaskState.BLOCKED):
            task.end_time = transition.timestamp

        logger.debug(f"Task {task.id}: {from_state.value} -> {to_state.value} ({reason or 'no reason'})")
        return transition

    def can_transition(self, task: ExecutionTask, to_state: TaskState) -> bool:
        return is_valid_transition(task.state, to_state)

    def determine_next_state(self, task: ExecutionTask, tasks: Dict[str, ExecutionTask]) -> Optional[TaskState]:
        """
        Decide where a pending task should move given its requirements.

        Returns:
            BLOCKED if any requirement failed, was skipped or is blocked,
            READY if all requirements completed, otherwise None (keep waiting)
        """
        if task.state != TaskState.PENDING:
            return None

        dep_states = [tasks[dep_id].state for dep_id in task.requires if dep_id in tasks]
        if any(s in (TaskState.SKIPPED, TaskState.BLOCKED) for s in dep_states):
            return TaskState.BLOCKED
        if any(s == TaskState.FAILED for s in dep_states):
            # A failed requirement may still be retried; only the orchestrator knows
            return None
        if all(s == TaskState.COMPLETED for s in dep_states):
            return TaskState.READY
        return None


def calculate_task_stats(tasks: Iterable[ExecutionTask]) -> Dict[str, int]:
    """
    Count tasks per state.

    Returns:
        Dict with one key per TaskState value plus "total"
    """
    stats = {state.value: 0 for state in TaskState}
    total = 0
    for task in tasks:
        stats[task.state.value] += 1
        total += 1
    stats['total'] = total
    return stats


def calculate_progress(tasks: Iterable[ExecutionTask]) -> Dict[str, Any]:
    """
    Summarize how far a run has progressed.

    Returns:
        Dict with completed/failed/finished/total counts and a percentage
        of tasks that reached a terminal state
    """
    stats = calculate_task_stats(tasks)
    total = stats['total']
    finished = sum(stats[state.value] for state in TERMINAL_STATES)
    return {
        'completed': stats[TaskState.COMPLETED.value],
        'failed': stats[TaskState.FAILED.value],
        'skipped': stats[TaskState.SKIPPED.value],
        'blocked': stats[TaskState.BLOCKED.value],
        'running': stats[TaskState.RUNNING.value],
        'finished': finished,
        'total': total,
        'percentage': (finished / total * 100.0) if total else 100.0,
    }
