"""
Data Models
===========

Core records shared by the validator, orchestrator, strategies and the
isolation engine.

Key Features:
- Task: immutable unit of work with declared file footprint and requirements
- ExecutionTask: a Task plus the mutable run state owned by the orchestrator
- ExecutionPlan: validated tasks partitioned into execution layers
- WorktreeContext: one isolated working copy per task attempt
- ExecutionEvent / TaskResult / ExecutionResult: run reporting
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import List, Dict, Any, Optional, Set, Tuple
import posixpath
import uuid


class TaskState(str, Enum):
    """Lifecycle states of a task within a run."""
    PENDING = "pending"
    READY = "ready"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


class PlanStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExecutionMode(str, Enum):
    """What a run should do with a plan."""
    PLAN = "plan"
    DRY_RUN = "dry-run"
    EXECUTE = "execute"
    VALIDATE = "validate"


class VcsMode(str, Enum):
    """How task execution is isolated in the repository."""
    SIMPLE = "simple"
    WORKTREE = "worktree"
    STACKED = "stacked"


class StrategyName(str, Enum):
    """Execution strategies a run can request."""
    PARALLEL = "parallel"
    STACKED = "stacked"
    SEQUENTIAL = "sequential"
    HYBRID = "hybrid"


class EventType(str, Enum):
    TASK_START = "task-start"
    TASK_COMPLETE = "task-complete"
    TASK_FAIL = "task-fail"
    TASK_SKIP = "task-skip"
    TASK_BLOCKED = "task-blocked"
    TASK_RETRY = "task-retry"
    TASK_STATE_CHANGE = "task-state-change"
    PLAN_START = "plan-start"
    PLAN_COMPLETE = "plan-complete"
    PROGRESS_UPDATE = "progress-update"
    BRANCH_CREATED = "branch-created"
    STACK_SUBMITTED = "stack-submitted"


def normalize_path(path: str) -> str:
    """
    Normalize a repository-relative path so footprints compare reliably.

    Args:
        path: Path as declared by a task (e.g. "./src/app.ts")

    Returns:
        POSIX-style normalized path without leading "./"
    """
    cleaned = path.strip().replace("\\", "/")
    if not cleaned:
        return cleaned
    normalized = posixpath.normpath(cleaned)
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


@dataclass(frozen=True)
class Task:
    """
    A unit of work in a plan.

    Attributes:
        id: Unique task identifier
        title: Short human-readable title
        description: Longer description of the change
        touches: Files the task modifies
        produces: Files the task creates
        requires: IDs of tasks that must complete first
        estimated_size: Relative size estimate (lines of change)
        prompt: Opaque instruction payload for the execution adapter
    """
    id: str
    title: str
    description: str = ""
    touches: Tuple[str, ...] = ()
    produces: Tuple[str, ...] = ()
    requires: Tuple[str, ...] = ()
    estimated_size: int = 1
    prompt: str = ""

    def footprint(self) -> Set[str]:
        """Normalized union of touched and produced files."""
        return {
            normalize_path(p) for p in (*self.touches, *self.produces)
            if normalize_path(p)
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'touches': list(self.touches),
            'produces': list(self.produces),
            'requires': list(self.requires),
            'estimated_size': self.estimated_size,
            'prompt': self.prompt,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Task':
        return cls(
            id=str(data['id']),
            title=data.get('title', ''),
            description=data.get('description', '') or '',
            touches=tuple(data.get('touches') or ()),
            produces=tuple(data.get('produces') or ()),
            requires=tuple(str(r) for r in (data.get('requires') or ())),
            estimated_size=int(data.get('estimated_size', 1)),
            prompt=data.get('prompt', '') or '',
        )


@dataclass
class StateTransition:
    """One recorded state change of a task."""
    from_state: TaskState
    to_state: TaskState
    timestamp: datetime
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'from': self.from_state.value,
            'to': self.to_state.value,
            'timestamp': self.timestamp.isoformat(),
            'reason': self.reason,
        }


@dataclass
class ExecutionTask:
    """
    A task together with its run state.

    Owned by the TaskOrchestrator for the lifetime of a run. The
    state_history list is append-only and is discarded with the plan.

    Attributes:
        task: The immutable task definition
        state: Current lifecycle state
        state_history: Every transition made during the run
        retry_count: Number of retries consumed so far
        max_retries: Retry budget for this task
        prompt: Current instruction payload (enriched on retry)
        branch_name: Branch holding the task's result
        commit_hash: Commit produced by the task
        worktree_dir: Working copy used by the latest attempt
        error: Last failure message
    """
    task: Task
    state: TaskState = TaskState.PENDING
    state_history: List[StateTransition] = field(default_factory=list)
    retry_count: int = 0
    max_retries: int = 0
    prompt: str = ""
    branch_name: Optional[str] = None
    commit_hash: Optional[str] = None
    worktree_dir: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error: Optional[str] = None
    exit_code: Optional[int] = None
    output: Optional[str] = None

    @classmethod
    def from_task(cls, task: Task, max_retries: int = 0) -> 'ExecutionTask':
        return cls(task=task, max_retries=max_retries, prompt=task.prompt)

    @property
    def id(self) -> str:
        return self.task.id

    @property
    def title(self) -> str:
        return self.task.title

    @property
    def requires(self) -> Tuple[str, ...]:
        return self.task.requires

    @property
    def estimated_size(self) -> int:
        return self.task.estimated_size

    @property
    def attempts(self) -> int:
        """Number of times the task has been started."""
        return sum(1 for t in self.state_history if t.to_state == TaskState.RUNNING)

    @property
    def duration(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.task.to_dict(),
            'state': self.state.value,
            'retry_count': self.retry_count,
            'max_retries': self.max_retries,
            'branch_name': self.branch_name,
            'commit_hash': self.commit_hash,
            'worktree_dir': self.worktree_dir,
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration': self.duration,
            'error': self.error,
            'state_history': [t.to_dict() for t in self.state_history],
        }


@dataclass
class ExecutionPlan:
    """
    A validated plan ready to run.

    Attributes:
        id: Unique plan identifier
        created_at: When the plan was built
        tasks: Task ID -> ExecutionTask
        execution_layers: Task IDs grouped into concurrency-safe layers
        status: Overall plan status
        vcs_mode: Isolation mode chosen for the run
        mode: What the run does with the plan
    """
    tasks: Dict[str, ExecutionTask]
    execution_layers: List[List[str]]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now)
    status: PlanStatus = PlanStatus.PENDING
    vcs_mode: VcsMode = VcsMode.WORKTREE
    mode: ExecutionMode = ExecutionMode.EXECUTE

    @property
    def total_tasks(self) -> int:
        return len(self.tasks)

    def layer_of(self, task_id: str) -> int:
        for index, layer in enumerate(self.execution_layers):
            if task_id in layer:
                return index
        raise KeyError(task_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'status': self.status.value,
            'vcs_mode': self.vcs_mode.value,
            'mode': self.mode.value,
            'total_tasks': self.total_tasks,
            'execution_layers': [list(layer) for layer in self.execution_layers],
            'tasks': {tid: t.to_dict() for tid, t in self.tasks.items()},
        }


@dataclass
class WorktreeContext:
    """
    Isolated working copy for a single task attempt.

    Attributes:
        task_id: Task using this working copy
        branch_name: Branch checked out in the working copy
        base_ref: Ref the branch was created from
        worktree_path: Absolute path of the working copy
        attempt: Attempt number (1-based)
        in_place: True when the working copy is the repository itself
    """
    task_id: str
    branch_name: str
    base_ref: str
    worktree_path: str
    created_at: datetime = field(default_factory=datetime.now)
    attempt: int = 1
    in_place: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        return data


@dataclass
class ExecutionEvent:
    """A lifecycle event emitted during a run."""
    type: EventType
    task_id: Optional[str] = None
    plan_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'task_id': self.task_id,
            'plan_id': self.plan_id,
            'data': dict(self.data),
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class TaskResult:
    """
    Result of running one task through a strategy.

    Attributes:
        task_id: Task ID
        status: "success", "failure", "blocked" or "skipped"
        duration: Wall time across all attempts in seconds
        attempts: Number of attempts made
    """
    task_id: str
    status: str
    duration: float = 0.0
    output: Optional[str] = None
    error: Optional[str] = None
    branch_name: Optional[str] = None
    commit_hash: Optional[str] = None
    attempts: int = 0

    @property
    def success(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionResult:
    """Aggregate result of executing a plan with a strategy."""
    tasks: List[TaskResult] = field(default_factory=list)
    total_duration: float = 0.0
    branches: List[str] = field(default_factory=list)
    commits: List[str] = field(default_factory=list)
    pr_urls: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> List[TaskResult]:
        return [r for r in self.tasks if r.status == "success"]

    @property
    def failed(self) -> List[TaskResult]:
        return [r for r in self.tasks if r.status == "failure"]

    @property
    def blocked(self) -> List[TaskResult]:
        return [r for r in self.tasks if r.status == "blocked"]

    @property
    def skipped(self) -> List[TaskResult]:
        return [r for r in self.tasks if r.status == "skipped"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tasks': [r.to_dict() for r in self.tasks],
            'total_duration': self.total_duration,
            'branches': list(self.branches),
            'commits': list(self.commits),
            'pr_urls': list(self.pr_urls),
            'errors': list(self.errors),
        }
