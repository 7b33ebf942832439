"""
Execution Engine
================

Entry point for running a plan: validation, planning, dry runs and real
execution, with guaranteed worktree cleanup and a process exit code.

Key Features:
- Modes: validate, plan, dry-run, execute
- Builds one RunDependencies struct per run and passes it down explicitly
- Rejects invalid plans before any side effect
- Cleans up every worktree on every exit path, including cancellation
- Converts any uncaught error into exit code 1
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import asyncio
import logging

from taskstack.config import Config, RunOptions
from taskstack.errors import ConfigError, TaskstackError
from taskstack.events import EventChannel, Subscriber
from taskstack.execution_plan import ExecutionPlanBuilder
from taskstack.models import (
    ExecutionEvent,
    ExecutionMode,
    ExecutionPlan,
    ExecutionResult,
    PlanStatus,
    StrategyName,
    Task,
    TaskState,
    VcsMode,
)
from taskstack.parallel.adapters import (
    CommandTaskExecutionAdapter,
    MockTaskExecutionAdapter,
    TaskExecutionAdapter,
)
from taskstack.parallel.graph_validator import GraphValidator, PlanMetrics, ValidationResult
from taskstack.parallel.isolation_engine import IsolationEngine
from taskstack.parallel.stack_backend import GitSpiceBackend
from taskstack.parallel.strategies import (
    ExecutionStrategy,
    SequentialStrategy,
    StrategyDependencies,
    create_strategy,
)
from taskstack.parallel.task_orchestrator import TaskOrchestrator

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


@dataclass
class RunDependencies:
    """Collaborators of a single run, built once and passed down."""
    adapter: TaskExecutionAdapter
    events: EventChannel
    orchestrator: TaskOrchestrator
    isolation: IsolationEngine
    stack_backend: Optional[GitSpiceBackend] = None

    def for_strategy(self) -> StrategyDependencies:
        return StrategyDependencies(
            orchestrator=self.orchestrator,
            isolation=self.isolation,
            events=self.events,
        )


@dataclass
class ExecutionReport:
    """
    Outcome of ExecutionEngine.run().

    Attributes:
        mode: Mode the run executed in
        exit_code: 0 on success, 1 otherwise
        message: One-line summary
        status: Final plan status (None when no plan was built)
        validation: Graph validation result
        metrics: Plan metrics
        result: Strategy result (execute and dry-run modes)
        estimates: Estimated seconds per strategy (plan mode)
    """
    mode: ExecutionMode
    exit_code: int
    message: str
    status: Optional[PlanStatus] = None
    plan_id: Optional[str] = None
    validation: Optional[ValidationResult] = None
    metrics: Optional[PlanMetrics] = None
    result: Optional[ExecutionResult] = None
    layers: List[List[str]] = field(default_factory=list)
    estimates: Dict[str, float] = field(default_factory=dict)
    tasks: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    events: List[ExecutionEvent] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.exit_code == EXIT_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mode': self.mode.value,
            'exit_code': self.exit_code,
            'message': self.message,
            'status': self.status.value if self.status else None,
            'plan_id': self.plan_id,
            'validation': self.validation.to_dict() if self.validation else None,
            'metrics': self.metrics.to_dict() if self.metrics else None,
            'result': self.result.to_dict() if self.result else None,
            'layers': [list(layer) for layer in self.layers],
            'estimates': dict(self.estimates),
            'tasks': dict(self.tasks),
        }


class ExecutionEngine:
    """
    Runs plans end to end.

    Example:
        engine = ExecutionEngine(Config.load_default())
        report = await engine.run(tasks, RunOptions(mode=ExecutionMode.EXECUTE))
        sys.exit(report.exit_code)
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        adapter: Optional[TaskExecutionAdapter] = None,
        stack_backend: Optional[GitSpiceBackend] = None,
        subscribers: Optional[List[Subscriber]] = None
    ):
        """
        Initialize the engine.

        Args:
            config: Configuration (defaults to built-in defaults)
            adapter: Task execution adapter (defaults to the configured agent command)
            stack_backend: Stack tool wrapper (defaults to git-spice for stacked runs)
            subscribers: Event subscribers attached to every run's channel
        """
        self.config = config or Config()
        self.adapter = adapter
        self.stack_backend = stack_backend
        self.subscribers = list(subscribers or [])
        self.validator = GraphValidator()
        self.plan_builder = ExecutionPlanBuilder(self.validator)
        self._current: Optional[RunDependencies] = None

    def _create_adapter(self, mode: ExecutionMode) -> TaskExecutionAdapter:
        if mode == ExecutionMode.DRY_RUN:
            return MockTaskExecutionAdapter()
        if self.adapter is not None:
            return self.adapter
        if self.config.agent.command:
            return CommandTaskExecutionAdapter(self.config.agent.command, env=self.config.agent.env)
        raise ConfigError("No agent command configured (set agent.command or TASKSTACK_AGENT_COMMAND)")

    def build_dependencies(self, plan: ExecutionPlan, options: RunOptions) -> RunDependencies:
        """
        Construct the collaborators for one run.

        Args:
            plan: Plan being run
            options: Run options

        Returns:
            RunDependencies
        """
        dry_run = plan.mode == ExecutionMode.DRY_RUN
        events = EventChannel(plan_id=plan.id)
        for subscriber in self.subscribers:
            events.subscribe(subscriber)

        stack_backend = None
        if plan.vcs_mode == VcsMode.STACKED:
            stack_backend = self.stack_backend or GitSpiceBackend(self.config.vcs.stack_tool)

        isolation = IsolationEngine(
            repo_path=options.cwd,
            vcs_config=self.config.vcs,
            stack_backend=stack_backend,
            mode=plan.vcs_mode,
            dry_run=dry_run,
        )
        max_concurrency = 1 if plan.vcs_mode == VcsMode.SIMPLE else options.max_concurrency
        orchestrator = TaskOrchestrator(
            adapter=self._create_adapter(plan.mode),
            events=events,
            task_timeout=options.timeout,
            max_concurrency=max_concurrency,
            continue_on_error=options.continue_on_error,
            dry_run=dry_run,
        )
        return RunDependencies(
            adapter=orchestrator.adapter,
            events=events,
            orchestrator=orchestrator,
            isolation=isolation,
            stack_backend=stack_backend,
        )

    def select_strategy(self, plan: ExecutionPlan, options: RunOptions) -> ExecutionStrategy:
        strategy = create_strategy(options.strategy)
        if not strategy.can_handle(plan, options):
            logger.warning(
                f"Strategy {options.strategy.value} cannot run in {plan.vcs_mode.value} mode, "
                f"falling back to sequential"
            )
            strategy = SequentialStrategy()
        return strategy

    def estimate(self, plan: ExecutionPlan) -> Dict[str, float]:
        return {
            name.value: create_strategy(name).estimate_execution_time(plan)
            for name in (StrategyName.PARALLEL, StrategyName.STACKED, StrategyName.SEQUENTIAL)
        }

    async def run(self, tasks: List[Task], options: RunOptions) -> ExecutionReport:
        """
        Run a plan in the requested mode.

        Never raises for plan, VCS or adapter problems; they are reported
        through the returned exit code and message.

        Args:
            tasks: Plan tasks
            options: Run options

        Returns:
            ExecutionReport
        """
        mode = options.effective_mode
        deps: Optional[RunDependencies] = None
        plan: Optional[ExecutionPlan] = None
        report = ExecutionReport(mode=mode, exit_code=EXIT_FAILURE, message="")

        try:
            validation = self.plan_builder.validate(tasks)
            report.validation = validation
            report.layers = [list(layer) for layer in validation.layers]
            report.metrics = self.validator.calculate_metrics(tasks, validation)

            for warning in validation.warnings:
                logger.warning(warning)

            if not validation.valid:
                for error in validation.errors:
                    logger.error(error)
                report.message = f"Plan validation failed with {len(validation.errors)} errors"
                return report

            if mode == ExecutionMode.VALIDATE:
                report.exit_code = EXIT_SUCCESS
                report.message = f"Plan is valid: {len(tasks)} tasks in {len(validation.layers)} layers"
                return report

            plan = self.plan_builder.build_plan(tasks, options, validation)
            report.plan_id = plan.id

            if mode == ExecutionMode.PLAN:
                report.estimates = self.estimate(plan)
                report.status = plan.status
                report.exit_code = EXIT_SUCCESS
                report.message = f"Planned {plan.total_tasks} tasks in {len(plan.execution_layers)} layers"
                return report

            deps = self.build_dependencies(plan, options)
            self._current = deps
            strategy = self.select_strategy(plan, options)
            logger.info(f"Executing plan {plan.id} with {strategy.name.value} strategy ({mode.value})")

            await deps.isolation.initialize()
            deps.orchestrator.load_plan(plan)
            deps.orchestrator.start()

            result = await strategy.execute(plan, options, deps.for_strategy())
            status = deps.orchestrator.finish()
            result.tasks = deps.orchestrator.results()

            report.result = result
            report.status = status
            report.exit_code = self._exit_code(plan, status, result, options)
            report.message = self._summary(plan, status, result)
            return report

        except TaskstackError as e:
            logger.error(f"Run failed: {e}")
            report.message = str(e)
            report.exit_code = EXIT_FAILURE
            return report
        except asyncio.CancelledError:
            logger.warning("Run cancelled from outside the engine")
            if deps is not None and deps.orchestrator.plan is not None:
                deps.orchestrator.cancel_event.set()
                report.status = deps.orchestrator.finish()
            report.message = "Run cancelled"
            report.exit_code = EXIT_FAILURE
            return report
        except Exception as e:
            logger.error(f"Run failed with unexpected error: {e}", exc_info=True)
            report.message = f"Unexpected error: {e}"
            report.exit_code = EXIT_FAILURE
            return report
        finally:
            if deps is not None:
                await deps.isolation.cleanup_worktrees()
                report.events = deps.events.events
            if plan is not None:
                if plan.status == PlanStatus.RUNNING:
                    plan.status = PlanStatus.FAILED
                report.status = report.status or plan.status
                report.tasks = {
                    tid: {
                        'state': t.state.value,
                        'attempts': t.attempts,
                        'retry_count': t.retry_count,
                        'branch': t.branch_name,
                        'commit': t.commit_hash,
                        'error': t.error,
                    }
                    for tid, t in plan.tasks.items()
                }
            self._current = None

    def _exit_code(
        self,
        plan: ExecutionPlan,
        status: PlanStatus,
        result: ExecutionResult,
        options: RunOptions
    ) -> int:
        if result.errors:
            return EXIT_FAILURE
        if status == PlanStatus.COMPLETED:
            return EXIT_SUCCESS
        if (
            status == PlanStatus.FAILED
            and options.continue_on_error
            and options.allow_partial_success
            and any(t.state == TaskState.COMPLETED for t in plan.tasks.values())
        ):
            return EXIT_SUCCESS
        return EXIT_FAILURE

    def _summary(self, plan: ExecutionPlan, status: PlanStatus, result: ExecutionResult) -> str:
        return (
            f"Plan {status.value}: {len(result.succeeded)} completed, {len(result.failed)} failed, "
            f"{len(result.blocked)} blocked, {len(result.skipped)} skipped of {plan.total_tasks} tasks"
        )

    async def cancel(self) -> None:
        """Cancel the run in progress, if any."""
        if self._current is None:
            logger.info("No run in progress to cancel")
            return
        await self._current.orchestrator.cancel()

    @property
    def running(self) -> bool:
        return self._current is not None

    def get_status(self) -> Optional[Dict[str, Any]]:
        """Live status of the current run, with recent output of each running task, or None when idle."""
        if self._current is None:
            return None
        return {
            **self._current.orchestrator.get_status(),
            'statistics': self._current.orchestrator.get_statistics(),
            'output': {
                tid: self._current.orchestrator.get_task_output(tid)
                for tid in self._current.orchestrator.get_running_tasks()
            },
        }
