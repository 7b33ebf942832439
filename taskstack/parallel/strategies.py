"""
Execution Strategies
====================

How a validated plan is scheduled onto worktrees and branches.

Key Features:
- ParallelStrategy: layer by layer, every task of a layer concurrently,
  each on its own branch from the trunk
- SequentialStrategy: the parallel layout with one task at a time
- StackedStrategy: independent chains concurrently, each chain one linear
  stack with every branch on the previous branch of the chain
- create_strategy(): exhaustive dispatch over StrategyName
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional
import asyncio
import logging
import time

from taskstack.config import RunOptions
from taskstack.errors import StackToolError
from taskstack.events import EventChannel
from taskstack.models import (
    EventType,
    ExecutionPlan,
    ExecutionResult,
    ExecutionTask,
    StrategyName,
    TaskState,
    VcsMode,
    WorktreeContext,
)
from taskstack.parallel.graph_validator import SECONDS_PER_SIZE_UNIT
from taskstack.parallel.isolation_engine import IsolationEngine
from taskstack.parallel.task_orchestrator import AttemptHooks, TaskOrchestrator

logger = logging.getLogger(__name__)

# Worktree/branch setup cost per task, in seconds
BRANCH_OVERHEAD_SECONDS = 10


@dataclass
class StrategyDependencies:
    """Collaborators a strategy needs for one run."""
    orchestrator: TaskOrchestrator
    isolation: IsolationEngine
    events: EventChannel


def commit_message(task: ExecutionTask) -> str:
    return f"{task.title}\n\nTask: {task.id}"


def _task_seconds(task: ExecutionTask) -> float:
    return max(task.estimated_size, 0) * SECONDS_PER_SIZE_UNIT


class ExecutionStrategy(ABC):
    """Common contract of all execution strategies."""

    name: StrategyName
    handles: FrozenSet[StrategyName] = frozenset()

    def can_handle(self, plan: ExecutionPlan, options: RunOptions) -> bool:
        """Whether this strategy serves the requested strategy and isolation mode."""
        return options.strategy in self.handles

    @abstractmethod
    async def execute(self, plan: ExecutionPlan, options: RunOptions, deps: StrategyDependencies) -> ExecutionResult:
        """Execute every dispatchable task of the plan."""

    def estimate_execution_time(self, plan: ExecutionPlan) -> float:
        """
        Rough wall-clock estimate in seconds.

        Serial baseline: every task's size-based duration plus a branch
        setup overhead per task.
        """
        tasks = list(plan.tasks.values())
        return sum(_task_seconds(t) for t in tasks) + BRANCH_OVERHEAD_SECONDS * len(tasks)

    def _collect(self, plan: ExecutionPlan, deps: StrategyDependencies, started: float) -> ExecutionResult:
        result = ExecutionResult(tasks=deps.orchestrator.results(), total_duration=time.time() - started)
        for layer in plan.execution_layers:
            for task_id in layer:
                task = plan.tasks[task_id]
                if task.state == TaskState.COMPLETED:
                    if task.branch_name:
                        result.branches.append(task.branch_name)
                    if task.commit_hash:
                        result.commits.append(task.commit_hash)
        return result


class ParallelStrategy(ExecutionStrategy):
    """
    Layer-by-layer execution with every task on its own branch from the base ref.

    Tasks of a layer run concurrently (bounded by the orchestrator's worker
    limit). Worktrees of a layer are removed when the layer finishes.
    """

    name = StrategyName.PARALLEL
    handles = frozenset({StrategyName.PARALLEL})

    def can_handle(self, plan: ExecutionPlan, options: RunOptions) -> bool:
        return super().can_handle(plan, options) and options.vcs_mode != VcsMode.SIMPLE

    def estimate_execution_time(self, plan: ExecutionPlan) -> float:
        total = 0.0
        for layer in plan.execution_layers:
            if layer:
                total += max(_task_seconds(plan.tasks[tid]) for tid in layer) + BRANCH_OVERHEAD_SECONDS
        return total

    async def execute(self, plan: ExecutionPlan, options: RunOptions, deps: StrategyDependencies) -> ExecutionResult:
        started = time.time()
        orchestrator = deps.orchestrator
        base_ref = options.parent_ref or deps.isolation.config.trunk

        for index, layer in enumerate(plan.execution_layers):
            if orchestrator.halted:
                logger.info("Execution halted, not starting further layers")
                break

            dispatch = [tid for tid in layer if orchestrator.mark_queued(tid)]
            if not dispatch:
                logger.info(f"Layer {index}: nothing to dispatch")
                continue

            logger.info(f"Executing layer {index}: {len(dispatch)} tasks")
            contexts: List[WorktreeContext] = []
            try:
                await self._run_layer(dispatch, self._hooks(deps, base_ref, contexts), orchestrator)
            finally:
                await deps.isolation.cleanup_worktrees(contexts)

            completed = sum(1 for tid in dispatch if plan.tasks[tid].state == TaskState.COMPLETED)
            logger.info(f"Layer {index} complete: {completed}/{len(dispatch)} tasks successful")

        return self._collect(plan, deps, started)

    async def _run_layer(self, dispatch: List[str], hooks: AttemptHooks, orchestrator: TaskOrchestrator) -> None:
        results = await asyncio.gather(
            *(orchestrator.run_task(tid, hooks) for tid in dispatch),
            return_exceptions=True
        )
        for task_id, result in zip(dispatch, results):
            if isinstance(result, BaseException):
                logger.error(f"Task {task_id} execution raised: {result}", exc_info=result)

    def _hooks(self, deps: StrategyDependencies, base_ref: str, contexts: List[WorktreeContext]) -> AttemptHooks:
        isolation = deps.isolation

        async def prepare(task: ExecutionTask) -> WorktreeContext:
            context = await isolation.create_worktree(task, base_ref)
            contexts.append(context)
            return context

        async def finalize(task: ExecutionTask, context: WorktreeContext) -> None:
            task.commit_hash = await isolation.commit_task_changes(context, commit_message(task))
            task.branch_name = context.branch_name
            deps.events.emit(
                EventType.BRANCH_CREATED,
                task_id=task.id,
                branch=context.branch_name,
                parent=context.base_ref,
                commit=task.commit_hash,
            )

        async def discard(task: ExecutionTask, context: WorktreeContext) -> None:
            await isolation.discard_worktree(context, delete_branch=True)

        return AttemptHooks(prepare=prepare, finalize=finalize, discard=discard)


class SequentialStrategy(ParallelStrategy):
    """The parallel layout with concurrency forced to one task at a time."""

    name = StrategyName.SEQUENTIAL
    handles = frozenset({StrategyName.SEQUENTIAL})

    def can_handle(self, plan: ExecutionPlan, options: RunOptions) -> bool:
        return options.strategy in self.handles

    def estimate_execution_time(self, plan: ExecutionPlan) -> float:
        return ExecutionStrategy.estimate_execution_time(self, plan)

    async def _run_layer(self, dispatch: List[str], hooks: AttemptHooks, orchestrator: TaskOrchestrator) -> None:
        for task_id in dispatch:
            await orchestrator.run_task(task_id, hooks)


class StackedStrategy(ExecutionStrategy):
    """
    Stacked branches: each chain of dependent tasks becomes one linear stack.

    Independent chains (disconnected parts of the dependency graph) run
    concurrently. Inside a chain tasks run one at a time in layer order and
    each branch sits on the previous branch of the chain, so every completed
    requirement of a task is below its branch.
    """

    name = StrategyName.STACKED
    handles = frozenset({StrategyName.STACKED, StrategyName.HYBRID})

    def can_handle(self, plan: ExecutionPlan, options: RunOptions) -> bool:
        return super().can_handle(plan, options) and options.vcs_mode != VcsMode.SIMPLE

    def estimate_execution_time(self, plan: ExecutionPlan) -> float:
        chains = self.find_chains(plan)
        return max(
            (sum(_task_seconds(plan.tasks[tid]) + BRANCH_OVERHEAD_SECONDS for tid in chain) for chain in chains),
            default=0.0,
        )

    @staticmethod
    def find_chains(plan: ExecutionPlan) -> List[List[str]]:
        """
        Split the plan into independent chains.

        Returns:
            Weakly connected components, each ordered by layer then task ID;
            chains ordered by their first task
        """
        parent: Dict[str, str] = {tid: tid for tid in plan.tasks}

        def find(tid: str) -> str:
            while parent[tid] != tid:
                parent[tid] = parent[parent[tid]]
                tid = parent[tid]
            return tid

        for task in plan.tasks.values():
            for dep_id in task.requires:
                if dep_id in parent:
                    root_a, root_b = find(task.id), find(dep_id)
                    if root_a != root_b:
                        parent[max(root_a, root_b)] = min(root_a, root_b)

        order = [tid for layer in plan.execution_layers for tid in layer]
        order += sorted(tid for tid in plan.tasks if tid not in order)

        chains: Dict[str, List[str]] = {}
        for tid in order:
            chains.setdefault(find(tid), []).append(tid)
        return sorted(chains.values(), key=lambda chain: order.index(chain[0]))

    async def execute(self, plan: ExecutionPlan, options: RunOptions, deps: StrategyDependencies) -> ExecutionResult:
        started = time.time()
        isolation = deps.isolation
        trunk = options.parent_ref or isolation.config.trunk
        await isolation.initialize_stack_state(trunk)

        state = _StackProgress(trunk=trunk)
        chains = self.find_chains(plan)
        logger.info(f"Executing {len(chains)} independent chains")

        results = await asyncio.gather(
            *(self._run_chain(chain, deps, state) for chain in chains),
            return_exceptions=True
        )
        for chain, outcome in zip(chains, results):
            if isinstance(outcome, BaseException):
                logger.error(f"Chain starting at {chain[0]} raised: {outcome}", exc_info=outcome)

        result = self._collect(plan, deps, started)
        result.branches = [state.branch_of[tid] for tid in state.stack_order]

        if state.stack_order:
            try:
                if isolation.config.auto_restack:
                    await isolation.restack()
                if options.submit:
                    result.pr_urls = await isolation.submit_stack(draft=True)
                    deps.events.emit(EventType.STACK_SUBMITTED, urls=list(result.pr_urls))
            except StackToolError as e:
                logger.error(f"Stack operation failed: {e}")
                result.errors.append(str(e))

        return result

    async def _run_chain(self, chain: List[str], deps: StrategyDependencies, state: '_StackProgress') -> None:
        orchestrator = deps.orchestrator
        contexts: List[WorktreeContext] = []
        tip: Optional[str] = None
        try:
            for task_id in chain:
                if orchestrator.halted:
                    break
                if not orchestrator.mark_queued(task_id):
                    continue

                parent = self.parent_branch(state, tip)
                result = await orchestrator.run_task(task_id, self._hooks(deps, state, parent, contexts))

                if result.success:
                    tip = task_id
                elif task_id in state.created:
                    await deps.isolation.delete_branch(state.created[task_id])
        finally:
            await deps.isolation.cleanup_worktrees(contexts)

    def parent_branch(self, state: '_StackProgress', tip: Optional[str]) -> str:
        """
        Branch the next task of a chain stacks on.

        Args:
            state: Stack bookkeeping for the run
            tip: Last task of the chain that was stacked, None before the first

        Returns:
            The tip's branch, or the trunk for the first task of a chain
        """
        if tip is None:
            return state.trunk
        return state.branch_of[tip]

    def _hooks(
        self,
        deps: StrategyDependencies,
        state: '_StackProgress',
        parent: str,
        contexts: List[WorktreeContext]
    ) -> AttemptHooks:
        isolation = deps.isolation

        async def prepare(task: ExecutionTask) -> WorktreeContext:
            if task.id not in state.created:
                branch = await isolation.create_stack_branch(isolation.task_branch_name(task.id), parent)
                state.created[task.id] = branch
                deps.events.emit(EventType.BRANCH_CREATED, task_id=task.id, branch=branch, parent=parent)
            else:
                await isolation.reset_branch(state.created[task.id], parent)

            context = await isolation.create_worktree(
                task,
                base_ref=parent,
                branch_name=state.created[task.id],
                checkout_existing=True,
            )
            contexts.append(context)
            return context

        async def finalize(task: ExecutionTask, context: WorktreeContext) -> None:
            task.commit_hash = await isolation.commit_in_stack(context, commit_message(task))
            task.branch_name = context.branch_name
            isolation.add_task_to_stack(task, context)
            state.branch_of[task.id] = context.branch_name
            state.stack_order.append(task.id)

        async def discard(task: ExecutionTask, context: WorktreeContext) -> None:
            await isolation.discard_worktree(context, delete_branch=False)

        return AttemptHooks(prepare=prepare, finalize=finalize, discard=discard)


@dataclass
class _StackProgress:
    """Branches stacked so far in a run."""
    trunk: str
    created: Dict[str, str] = field(default_factory=dict)      # task_id -> branch created for it
    branch_of: Dict[str, str] = field(default_factory=dict)    # task_id -> branch holding its result
    stack_order: List[str] = field(default_factory=list)       # task IDs in the order they were stacked


def create_strategy(name: StrategyName) -> ExecutionStrategy:
    """
    Instantiate the strategy for a name.

    Raises:
        ValueError: For a name outside StrategyName
    """
    name = StrategyName(name)
    if name is StrategyName.PARALLEL:
        return ParallelStrategy()
    if name is StrategyName.SEQUENTIAL:
        return SequentialStrategy()
    if name is StrategyName.STACKED or name is StrategyName.HYBRID:
        return StackedStrategy()
    raise ValueError(f"Unknown execution strategy: {name}")
