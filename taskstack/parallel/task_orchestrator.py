"""
Task Orchestrator
=================

Drives tasks through their lifecycle: dispatch to the execution adapter,
per-attempt timeouts, retries with failure context, dependency propagation
and cancellation.

Key Features:
- Owns every ExecutionTask of a plan for the duration of a run
- Bounds concurrent executions with a semaphore
- Retries failed attempts up to max_retries, feeding the failure back into the prompt
- Blocks dependents of failed tasks; halts the run unless continue_on_error
- Emits lifecycle events in causal order through the run's EventChannel
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Any
import asyncio
import logging
import time

from taskstack.errors import GitCommandError, NothingToCommitError, StackToolError, TaskTimeoutError
from taskstack.events import EventChannel
from taskstack.models import (
    EventType,
    ExecutionPlan,
    ExecutionTask,
    PlanStatus,
    TaskResult,
    TaskState,
    WorktreeContext,
)
from taskstack.parallel.adapters import StreamingUpdate, TaskExecutionAdapter, TaskExecutionRequest
from taskstack.parallel.state_machine import (
    TaskStateMachine,
    calculate_progress,
    calculate_task_stats,
)

logger = logging.getLogger(__name__)

MAX_OUTPUT_LINES = 500


@dataclass
class AttemptHooks:
    """
    Callbacks binding task attempts to version control.

    Attributes:
        prepare: Create the working copy for the next attempt
        finalize: Record the result of a successful attempt (commit, stack)
        discard: Drop the working copy of a failed attempt
    """
    prepare: Callable[[ExecutionTask], Awaitable[WorktreeContext]]
    finalize: Callable[[ExecutionTask, WorktreeContext], Awaitable[None]]
    discard: Callable[[ExecutionTask, WorktreeContext], Awaitable[None]]


def build_retry_prompt(original_prompt: str, failure: str, attempt: int, max_attempts: int) -> str:
    """
    Prompt for a retry: the original instructions plus what went wrong last time.

    Args:
        original_prompt: The task's original prompt
        failure: Failure detail from the previous attempt
        attempt: Number of the upcoming attempt (1-based)
        max_attempts: Total attempts allowed

    Returns:
        Enriched prompt
    """
    return (
        f"{original_prompt}\n\n"
        f"## Previous Attempt Failed (attempt {attempt} of {max_attempts})\n\n"
        f"{failure}\n\n"
        f"Fix the problem described above while completing the task."
    )


class TaskOrchestrator:
    """
    Runs individual tasks of a plan and maintains their states.

    Strategies decide which tasks to dispatch and in what order; the
    orchestrator executes them and enforces the state machine.
    """

    def __init__(
        self,
        adapter: TaskExecutionAdapter,
        events: EventChannel,
        task_timeout: Optional[float] = None,
        max_concurrency: int = 3,
        continue_on_error: bool = False,
        dry_run: bool = False
    ):
        """
        Initialize the orchestrator.

        Args:
            adapter: Performs task attempts
            events: Channel for lifecycle events
            task_timeout: Per-attempt timeout in seconds (None for no limit)
            max_concurrency: Maximum concurrent task executions
            continue_on_error: Keep running independent tasks after a terminal failure
            dry_run: Passed through to the adapter in every request
        """
        self.adapter = adapter
        self.events = events
        self.task_timeout = task_timeout
        self.max_concurrency = max_concurrency
        self.continue_on_error = continue_on_error
        self.dry_run = dry_run

        self.state_machine = TaskStateMachine()
        self.semaphore = asyncio.Semaphore(max_concurrency)
        self.cancel_event = asyncio.Event()

        self.plan: Optional[ExecutionPlan] = None
        self.tasks: Dict[str, ExecutionTask] = {}
        self._dependents: Dict[str, List[str]] = {}
        self._running: Dict[str, float] = {}  # task_id -> start time
        self._output: Dict[str, List[str]] = {}
        self._halted = False
        self.execution_start_time: Optional[float] = None

        logger.info(f"TaskOrchestrator initialized (max_concurrency={max_concurrency}, timeout={task_timeout})")

    # =========================================================================
    # Plan lifecycle
    # =========================================================================

    def load_plan(self, plan: ExecutionPlan) -> None:
        """
        Take ownership of a plan's tasks and make dependency-free tasks ready.

        Args:
            plan: Validated execution plan
        """
        self.plan = plan
        self.tasks = plan.tasks
        self._halted = False
        self._dependents = {tid: [] for tid in self.tasks}
        for task in self.tasks.values():
            for dep_id in task.requires:
                if dep_id in self._dependents:
                    self._dependents[dep_id].append(task.id)

        for task_id in sorted(self.tasks):
            task = self.tasks[task_id]
            if task.state == TaskState.PENDING and not task.requires:
                self._transition(task, TaskState.READY, "No dependencies")

        logger.info(f"Loaded plan {plan.id} with {len(self.tasks)} tasks")

    def start(self) -> None:
        """Mark the plan as running."""
        if self.plan is None:
            raise RuntimeError("No plan loaded")
        self.execution_start_time = time.time()
        self.plan.status = PlanStatus.RUNNING
        self.events.emit(
            EventType.PLAN_START,
            total_tasks=len(self.tasks),
            layers=[list(layer) for layer in self.plan.execution_layers],
        )

    def finish(self) -> PlanStatus:
        """
        Settle every remaining task and compute the final plan status.

        Returns:
            COMPLETED when every task completed, CANCELLED after cancel(),
            FAILED otherwise
        """
        if self.plan is None:
            raise RuntimeError("No plan loaded")

        self.skip_remaining("Not executed")

        if self.cancel_event.is_set():
            status = PlanStatus.CANCELLED
        elif all(t.state == TaskState.COMPLETED for t in self.tasks.values()):
            status = PlanStatus.COMPLETED
        else:
            status = PlanStatus.FAILED

        self.plan.status = status
        duration = time.time() - self.execution_start_time if self.execution_start_time else 0.0
        self.events.emit(
            EventType.PLAN_COMPLETE,
            status=status.value,
            duration=duration,
            statistics=calculate_task_stats(self.tasks.values()),
        )
        logger.info(f"Plan {self.plan.id} finished with status {status.value} in {duration:.1f}s")
        return status

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def halted(self) -> bool:
        """True once the run stopped dispatching (failure without continue_on_error, or cancel)."""
        return self._halted or self.cancel_event.is_set()

    # =========================================================================
    # Transitions
    # =========================================================================

    def _transition(self, task: ExecutionTask, to_state: TaskState, reason: Optional[str] = None) -> None:
        from_state = task.state
        self.state_machine.transition(task, to_state, reason)
        self.events.emit(
            EventType.TASK_STATE_CHANGE,
            task_id=task.id,
            **{'from': from_state.value, 'to': to_state.value, 'reason': reason},
        )

    def get_task(self, task_id: str) -> ExecutionTask:
        return self.tasks[task_id]

    def ready_tasks(self) -> List[str]:
        return sorted(tid for tid, t in self.tasks.items() if t.state == TaskState.READY)

    def mark_queued(self, task_id: str) -> bool:
        """
        Select a ready task for dispatch.

        Returns:
            True if the task moved to queued, False if it is not ready
        """
        task = self.tasks[task_id]
        if task.state != TaskState.READY or self.halted:
            return False
        self._transition(task, TaskState.QUEUED, "Selected for dispatch")
        return True

    def skip_task(self, task_id: str, reason: str) -> bool:
        """Skip a task that has not started. Returns False if it cannot be skipped."""
        task = self.tasks[task_id]
        if not self.state_machine.can_transition(task, TaskState.SKIPPED):
            return False
        self._transition(task, TaskState.SKIPPED, reason)
        self.events.emit(EventType.TASK_SKIP, task_id=task.id, reason=reason)
        return True

    def skip_remaining(self, reason: str) -> List[str]:
        """
        Skip every task that has not started and is not waiting for a worker.

        Queued tasks skip themselves when they reach a worker. Blocked tasks
        stay blocked.

        Returns:
            IDs of the tasks skipped
        """
        skipped = []
        for task_id in sorted(self.tasks):
            task = self.tasks[task_id]
            if task.state in (TaskState.PENDING, TaskState.READY):
                if self.skip_task(task_id, reason):
                    skipped.append(task_id)
        if skipped:
            logger.info(f"Skipped {len(skipped)} tasks: {reason}")
        return skipped

    def halt(self, reason: str) -> None:
        """Stop dispatching new tasks and skip everything not yet started."""
        if self._halted:
            return
        logger.warning(f"Halting run: {reason}")
        self._halted = True
        self.skip_remaining(reason)

    def _promote_dependents(self, task_id: str) -> None:
        for dependent_id in self._dependents.get(task_id, []):
            dependent = self.tasks[dependent_id]
            next_state = self.state_machine.determine_next_state(dependent, self.tasks)
            if next_state == TaskState.READY:
                self._transition(dependent, TaskState.READY, "All requirements completed")

    def _block_dependents(self, task_id: str, reason: str) -> List[str]:
        """Block every transitive dependent that has not started."""
        blocked = []
        queue = list(self._dependents.get(task_id, []))
        seen = set()
        while queue:
            dependent_id = queue.pop(0)
            if dependent_id in seen:
                continue
            seen.add(dependent_id)
            dependent = self.tasks[dependent_id]
            if dependent.state == TaskState.PENDING:
                self._transition(dependent, TaskState.BLOCKED, reason)
                self.events.emit(EventType.TASK_BLOCKED, task_id=dependent_id, reason=reason)
                blocked.append(dependent_id)
            queue.extend(self._dependents.get(dependent_id, []))
        return blocked

    def _emit_progress(self) -> None:
        self.events.emit(EventType.PROGRESS_UPDATE, **calculate_progress(self.tasks.values()))

    # =========================================================================
    # Execution
    # =========================================================================

    async def run_task(self, task_id: str, hooks: AttemptHooks) -> TaskResult:
        """
        Run a queued task to a terminal state.

        Args:
            task_id: Task to run (must be queued)
            hooks: VCS callbacks for each attempt

        Returns:
            TaskResult describing the final outcome
        """
        task = self.tasks[task_id]
        if task.state != TaskState.QUEUED:
            logger.warning(f"Task {task_id} is {task.state.value}, not queued; not running it")
            return self._result(task)

        try:
            async with self.semaphore:
                return await self._run_attempts(task, hooks)
        except asyncio.CancelledError:
            if task.state == TaskState.QUEUED:
                task.error = "Cancelled before starting"
                self._transition(task, TaskState.SKIPPED, task.error)
                self.events.emit(EventType.TASK_SKIP, task_id=task_id, reason=task.error)
            raise

    async def _run_attempts(self, task: ExecutionTask, hooks: AttemptHooks) -> TaskResult:
        task_id = task.id
        while True:
            if self.halted:
                reason = "Run cancelled" if self.cancelled else "Run halted after failure"
                self.skip_task(task_id, reason)
                return self._result(task)

            try:
                worktree = await hooks.prepare(task)
            except (GitCommandError, StackToolError) as e:
                task.error = f"Isolation setup failed: {e}"
                self._transition(task, TaskState.FAILED, task.error)
                self.events.emit(EventType.TASK_FAIL, task_id=task_id, error=task.error, attempts=task.attempts)
                self._handle_terminal_failure(task)
                return self._result(task)

            task.worktree_dir = worktree.worktree_path
            attempt = task.attempts + 1
            self._transition(task, TaskState.RUNNING, f"Attempt {attempt}")
            self.events.emit(
                EventType.TASK_START,
                task_id=task_id,
                attempt=attempt,
                worktree=worktree.worktree_path,
                branch=worktree.branch_name,
            )

            try:
                error, fatal = await self._attempt(task, worktree, attempt, hooks)
            except asyncio.CancelledError:
                task.error = "Cancelled while running"
                self._transition(task, TaskState.FAILED, task.error)
                raise

            if error is None:
                task.error = None
                self._transition(task, TaskState.COMPLETED, "Task completed")
                self.events.emit(
                    EventType.TASK_COMPLETE,
                    task_id=task_id,
                    attempts=attempt,
                    branch=task.branch_name,
                    commit=task.commit_hash,
                    duration=task.duration,
                )
                self._promote_dependents(task_id)
                self._emit_progress()
                return self._result(task)

            task.error = error
            self._transition(task, TaskState.FAILED, error)
            await hooks.discard(task, worktree)

            if not fatal and not self.halted and task.retry_count < task.max_retries:
                task.retry_count += 1
                task.prompt = build_retry_prompt(
                    task.task.prompt, error, task.retry_count + 1, task.max_retries + 1
                )
                self._transition(task, TaskState.QUEUED, f"Retry {task.retry_count}/{task.max_retries}")
                self.events.emit(
                    EventType.TASK_RETRY,
                    task_id=task_id,
                    attempt=task.retry_count + 1,
                    max_attempts=task.max_retries + 1,
                    error=error,
                )
                continue

            self.events.emit(EventType.TASK_FAIL, task_id=task_id, error=error, attempts=attempt)
            self._handle_terminal_failure(task)
            return self._result(task)

    async def _attempt(
        self,
        task: ExecutionTask,
        worktree: WorktreeContext,
        attempt: int,
        hooks: AttemptHooks
    ):
        """
        Run one attempt and finalize it.

        Returns:
            (error message or None, whether the error is fatal to retries)
        """
        self._running[task.id] = time.time()
        try:
            result = await self._invoke_adapter(task, worktree, attempt)
            task.output = result.output
            task.exit_code = result.exit_code
            if not result.success:
                return result.error or f"Task ended with status {result.status}", False
            await hooks.finalize(task, worktree)
            return None, False
        except TaskTimeoutError as e:
            return str(e), False
        except NothingToCommitError as e:
            return f"{e}. The task must create or modify files.", False
        except (GitCommandError, StackToolError) as e:
            logger.error(f"Version control error for task {task.id}: {e}")
            return f"Version control error: {e}", True
        except Exception as e:
            logger.error(f"Task {task.id} attempt {attempt} raised: {e}", exc_info=True)
            return f"Execution error: {e}", False
        finally:
            self._running.pop(task.id, None)

    async def _invoke_adapter(self, task: ExecutionTask, worktree: WorktreeContext, attempt: int):
        request = TaskExecutionRequest(
            task_id=task.id,
            title=task.title,
            prompt=task.prompt,
            files=sorted(task.task.footprint()),
            workdir=worktree.worktree_path,
            attempt=attempt,
            dry_run=self.dry_run,
        )
        execution = self.adapter.execute_task(request, on_update=self._on_update)

        if not self.task_timeout:
            return await execution

        try:
            return await asyncio.wait_for(execution, timeout=self.task_timeout)
        except asyncio.TimeoutError:
            await self.adapter.stop_task(task.id)
            raise TaskTimeoutError(task.id, self.task_timeout)

    def _on_update(self, update: StreamingUpdate) -> None:
        lines = self._output.setdefault(update.task_id, [])
        if update.type in ("stdout", "stderr"):
            lines.append(update.data)
            if len(lines) > MAX_OUTPUT_LINES:
                del lines[:len(lines) - MAX_OUTPUT_LINES]
        logger.debug(f"[{update.task_id}] {update.type}: {update.data}")

    def _handle_terminal_failure(self, task: ExecutionTask) -> None:
        self._block_dependents(task.id, f"Required task {task.id} failed")
        if not self.continue_on_error:
            self.halt(f"Task {task.id} failed")
        self._emit_progress()

    def _result(self, task: ExecutionTask) -> TaskResult:
        if task.state == TaskState.COMPLETED:
            status = "success"
        elif task.state == TaskState.FAILED:
            status = "failure"
        elif task.state == TaskState.BLOCKED:
            status = "blocked"
        else:
            status = "skipped"
        return TaskResult(
            task_id=task.id,
            status=status,
            duration=task.duration or 0.0,
            output=task.output,
            error=task.error,
            branch_name=task.branch_name,
            commit_hash=task.commit_hash,
            attempts=task.attempts,
        )

    def results(self) -> List[TaskResult]:
        """Results for every task, in plan layer order."""
        ordered = []
        if self.plan is not None:
            ordered = [tid for layer in self.plan.execution_layers for tid in layer]
        ordered += sorted(tid for tid in self.tasks if tid not in ordered)
        return [self._result(self.tasks[tid]) for tid in ordered]

    # =========================================================================
    # Control and status
    # =========================================================================

    async def stop_task(self, task_id: str) -> bool:
        """Ask the adapter to stop a running task."""
        if task_id not in self._running:
            return False
        return await self.adapter.stop_task(task_id)

    async def cancel(self) -> None:
        """
        Cancel the run: stop dispatching, stop running tasks and skip the rest.
        """
        logger.info("Cancellation requested - setting cancel event")
        self.cancel_event.set()

        for task_id in list(self._running):
            duration = time.time() - self._running.get(task_id, time.time())
            logger.info(f"  - Stopping task {task_id} (running for {duration:.1f}s)")
            await self.adapter.stop_task(task_id)

        self.skip_remaining("Run cancelled")

    def get_running_tasks(self) -> List[str]:
        return sorted(self._running)

    def get_task_output(self, task_id: str) -> List[str]:
        return list(self._output.get(task_id, []))

    def get_statistics(self) -> Dict[str, Any]:
        return {
            'states': calculate_task_stats(self.tasks.values()),
            'progress': calculate_progress(self.tasks.values()),
            'retries': sum(t.retry_count for t in self.tasks.values()),
        }

    def get_status(self) -> Dict[str, Any]:
        """
        Get current execution status.

        Returns:
            Dict with running tasks and their durations, the number of active
            tasks and the total run duration so far
        """
        now = time.time()
        total_duration = now - self.execution_start_time if self.execution_start_time else 0.0
        return {
            'running_tasks': [
                {'task_id': tid, 'duration': now - started, 'started_at': started}
                for tid, started in sorted(self._running.items())
            ],
            'active_task_count': len(self._running),
            'total_duration': total_duration,
            'halted': self.halted,
        }

    def export_state(self) -> Dict[str, Any]:
        """Snapshot of the plan and every task's state history."""
        return {
            'plan': self.plan.to_dict() if self.plan else None,
            'statistics': self.get_statistics(),
        }
