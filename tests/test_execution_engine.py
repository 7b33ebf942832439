"""
Tests for ExecutionEngine

Covers every run mode and the exit code policy. End-to-end runs use a
temporary git repository and the scripted mock adapter.
"""

import asyncio
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from taskstack.config import Config, RunOptions
from taskstack.models import EventType, ExecutionMode, PlanStatus, StrategyName, Task, VcsMode
from taskstack.parallel.adapters import MockTaskExecutionAdapter, StreamingUpdate
from taskstack.parallel.execution_engine import EXIT_FAILURE, EXIT_SUCCESS, ExecutionEngine
from taskstack.parallel.stack_backend import GitSpiceBackend


def make_task(task_id, requires=(), touches=None, size=1):
    return Task(
        id=task_id,
        title=f"Task {task_id}",
        touches=tuple(touches if touches is not None else [f"src/{task_id}.py"]),
        requires=tuple(requires),
        estimated_size=size,
        prompt=f"Implement {task_id}",
    )


def options(**kwargs):
    kwargs.setdefault('cwd', tempfile.gettempdir())
    return RunOptions(**kwargs)


class TestModes:

    async def test_validate_mode(self):
        print("\n=== Test: Validate Mode ===")
        engine = ExecutionEngine()
        report = await engine.run([make_task("T1"), make_task("T2", requires=["T1"])], options(mode=ExecutionMode.VALIDATE))

        assert report.exit_code == EXIT_SUCCESS
        assert report.layers == [["T1"], ["T2"]]
        assert report.result is None
        assert report.plan_id is None
        print(f"[PASS] {report.message}")

    async def test_invalid_plan_exits_one(self):
        engine = ExecutionEngine()
        tasks = [make_task("T1", requires=["T2"]), make_task("T2", requires=["T1"])]

        for mode in ExecutionMode:
            report = await engine.run(tasks, options(mode=mode))
            assert report.exit_code == EXIT_FAILURE
            assert "validation failed" in report.message
            assert report.validation.cycles
        print("[PASS] Cyclic plan rejected in every mode")

    async def test_conflicting_plan_rejected_before_execution(self):
        adapter = MockTaskExecutionAdapter()
        engine = ExecutionEngine(adapter=adapter)
        tasks = [make_task("T1", touches=["shared.ts"]), make_task("T2", touches=["shared.ts"])]

        report = await engine.run(tasks, options(mode=ExecutionMode.EXECUTE))

        assert report.exit_code == EXIT_FAILURE
        assert adapter.requests == []
        assert report.validation.conflicts[0].paths == ["shared.ts"]

    async def test_plan_mode_estimates(self):
        engine = ExecutionEngine()
        tasks = [make_task("A", size=10), make_task("B", size=2), make_task("C", requires=["A", "B"], size=5)]

        report = await engine.run(tasks, options(mode=ExecutionMode.PLAN))

        assert report.exit_code == EXIT_SUCCESS
        assert report.plan_id is not None
        assert set(report.estimates) == {"parallel", "stacked", "sequential"}
        assert report.estimates["parallel"] < report.estimates["sequential"]
        assert report.metrics.layer_count == 2
        assert report.status == PlanStatus.PENDING
        assert all(info['state'] == 'pending' for info in report.tasks.values())

    async def test_dry_run(self):
        print("\n=== Test: Dry Run ===")
        engine = ExecutionEngine()
        tasks = [make_task("T1"), make_task("T2", requires=["T1"]), make_task("T3")]

        report = await engine.run(tasks, options(dry_run=True))

        assert report.mode == ExecutionMode.DRY_RUN
        assert report.exit_code == EXIT_SUCCESS
        assert report.status == PlanStatus.COMPLETED
        assert all(info['state'] == 'completed' for info in report.tasks.values())
        assert report.events[-1].type == EventType.PLAN_COMPLETE
        print(f"[PASS] {report.message}")

    async def test_dry_run_stacked(self):
        engine = ExecutionEngine()
        tasks = [make_task("T1"), make_task("T2", requires=["T1"])]

        report = await engine.run(tasks, options(mode=ExecutionMode.DRY_RUN, strategy=StrategyName.STACKED))

        assert report.exit_code == EXIT_SUCCESS
        assert report.result.branches == ["taskstack/T1", "taskstack/T2"]

    async def test_missing_agent_command(self):
        engine = ExecutionEngine(Config())
        report = await engine.run([make_task("T1")], options(mode=ExecutionMode.EXECUTE))

        assert report.exit_code == EXIT_FAILURE
        assert "No agent command configured" in report.message

    async def test_subscribers_receive_events(self):
        received = []
        engine = ExecutionEngine(subscribers=[received.append])

        await engine.run([make_task("T1")], options(dry_run=True))

        assert received[0].type == EventType.TASK_STATE_CHANGE
        assert EventType.PLAN_START in [e.type for e in received]
        assert received[-1].type == EventType.PLAN_COMPLETE

    async def test_simple_mode_falls_back_to_sequential(self):
        engine = ExecutionEngine()
        report = await engine.run(
            [make_task("T1"), make_task("T2")],
            options(dry_run=True, vcs_mode=VcsMode.SIMPLE, strategy=StrategyName.PARALLEL),
        )

        assert report.exit_code == EXIT_SUCCESS
        assert all(info['state'] == 'completed' for info in report.tasks.values())

    async def test_cancel_without_run(self):
        engine = ExecutionEngine()
        await engine.cancel()
        assert not engine.running
        assert engine.get_status() is None


def _git(repo, *args):
    return subprocess.run(
        ['git', *args], cwd=repo, check=True, capture_output=True, text=True
    ).stdout.strip()


@pytest.fixture
def git_repo():
    """Temporary git repository with one commit on main."""
    if shutil.which('git') is None:
        pytest.skip("git is not installed")

    temp_dir = tempfile.mkdtemp(prefix='taskstack_engine_')
    repo = Path(temp_dir)
    _git(repo, 'init')
    _git(repo, 'symbolic-ref', 'HEAD', 'refs/heads/main')
    _git(repo, 'config', 'user.name', 'Test User')
    _git(repo, 'config', 'user.email', 'test@example.com')
    (repo / 'README.md').write_text('# Test Project\n')
    (repo / '.gitignore').write_text('.taskstack/\n')
    _git(repo, 'add', '.')
    _git(repo, 'commit', '-m', 'Initial commit')

    yield repo

    shutil.rmtree(temp_dir, ignore_errors=True)


def unavailable_backend():
    return GitSpiceBackend(binary="taskstack-no-such-stack-tool")


class RecordingAdapter(MockTaskExecutionAdapter):
    """Mock adapter that records the source files present in each worktree."""

    def __init__(self, **kwargs):
        super().__init__(write_files=True, **kwargs)
        self.seen_files = {}

    async def execute_task(self, request, on_update=None):
        src = Path(request.workdir) / 'src'
        self.seen_files[request.task_id] = sorted(p.name for p in src.glob('*.py')) if src.exists() else []
        return await super().execute_task(request, on_update)


class ChattyAdapter(MockTaskExecutionAdapter):
    """Mock adapter that prints one line per task before following its script."""

    async def execute_task(self, request, on_update=None):
        if on_update:
            on_update(StreamingUpdate(task_id=request.task_id, type="stdout", data=f"working on {request.task_id}"))
        return await super().execute_task(request, on_update)


class TestEndToEnd:

    async def test_stacked_history_is_linear(self, git_repo):
        """T1 -> T2 chain: T2's branch sits on T1's branch."""
        print("\n=== Test: Stacked Execution ===")
        adapter = MockTaskExecutionAdapter(write_files=True)
        engine = ExecutionEngine(adapter=adapter, stack_backend=unavailable_backend())
        tasks = [make_task("T1"), make_task("T2", requires=["T1"])]

        report = await engine.run(tasks, options(strategy=StrategyName.STACKED, cwd=str(git_repo)))

        assert report.exit_code == EXIT_SUCCESS, report.message
        assert report.result.branches == ["taskstack/T1", "taskstack/T2"]
        assert _git(git_repo, 'rev-parse', 'taskstack/T2~1') == _git(git_repo, 'rev-parse', 'taskstack/T1')
        assert _git(git_repo, 'rev-parse', 'taskstack/T1~1') == _git(git_repo, 'rev-parse', 'main')
        assert _git(git_repo, 'worktree', 'list').count('\n') == 0
        print("[PASS] main -> T1 -> T2")

    async def test_stacked_task_sees_every_requirement(self, git_repo):
        """C requires independent A and B: its worktree holds both of their files."""
        print("\n=== Test: Stacked Diamond ===")
        adapter = RecordingAdapter()
        engine = ExecutionEngine(adapter=adapter, stack_backend=unavailable_backend())
        tasks = [make_task("A"), make_task("B"), make_task("C", requires=["A", "B"])]

        report = await engine.run(tasks, options(strategy=StrategyName.STACKED, cwd=str(git_repo)))

        assert report.exit_code == EXIT_SUCCESS, report.message
        assert adapter.seen_files["C"] == ["A.py", "B.py"]
        assert _git(git_repo, 'rev-parse', 'taskstack/C~1') == _git(git_repo, 'rev-parse', 'taskstack/B')
        assert _git(git_repo, 'rev-parse', 'taskstack/B~1') == _git(git_repo, 'rev-parse', 'taskstack/A')
        print("[PASS] main -> A -> B -> C")

    async def test_parallel_branches_from_trunk(self, git_repo):
        adapter = MockTaskExecutionAdapter(write_files=True)
        engine = ExecutionEngine(adapter=adapter)
        tasks = [make_task("A"), make_task("B"), make_task("C", requires=["A", "B"])]

        report = await engine.run(tasks, options(strategy=StrategyName.PARALLEL, cwd=str(git_repo)))

        assert report.exit_code == EXIT_SUCCESS, report.message
        main = _git(git_repo, 'rev-parse', 'main')
        for name in ("A", "B", "C"):
            assert _git(git_repo, 'rev-parse', f'taskstack/{name}~1') == main
        assert _git(git_repo, 'worktree', 'list').count('\n') == 0

    async def test_partial_failure_exit_codes(self, git_repo):
        """T1 fails, independent T2 completes; exit code follows the partial success policy."""
        print("\n=== Test: Partial Failure Policy ===")
        tasks = [make_task("T1"), make_task("T2")]

        strict = ExecutionEngine(adapter=MockTaskExecutionAdapter(outcomes={"T1": ["failure"]}, write_files=True))
        report = await strict.run(
            tasks, options(continue_on_error=True, max_retries=0, cwd=str(git_repo))
        )
        assert report.tasks["T1"]['state'] == 'failed'
        assert report.tasks["T2"]['state'] == 'completed'
        assert report.status == PlanStatus.FAILED
        assert report.exit_code == EXIT_FAILURE

        _git(git_repo, 'branch', '-D', 'taskstack/T2')
        lenient = ExecutionEngine(adapter=MockTaskExecutionAdapter(outcomes={"T1": ["failure"]}, write_files=True))
        report = await lenient.run(
            tasks,
            options(continue_on_error=True, allow_partial_success=True, max_retries=0, cwd=str(git_repo)),
        )
        assert report.tasks["T2"]['state'] == 'completed'
        assert report.exit_code == EXIT_SUCCESS
        print("[PASS] Exit 1 by default, 0 with allow_partial_success")

    async def test_dependent_of_failed_task_reported_blocked(self, git_repo):
        tasks = [make_task("T1"), make_task("T2"), make_task("T3", requires=["T1"])]
        engine = ExecutionEngine(adapter=MockTaskExecutionAdapter(outcomes={"T1": ["failure"]}, write_files=True))

        report = await engine.run(tasks, options(continue_on_error=True, max_retries=0, cwd=str(git_repo)))

        assert {tid: t['state'] for tid, t in report.tasks.items()} == {
            "T1": "failed", "T2": "completed", "T3": "blocked"
        }
        assert [r.task_id for r in report.result.blocked] == ["T3"]
        assert "1 blocked" in report.message
        assert report.exit_code == EXIT_FAILURE

    async def test_failed_attempt_branch_removed(self, git_repo):
        adapter = MockTaskExecutionAdapter(outcomes={"T1": ["failure", "success"]}, write_files=True)
        engine = ExecutionEngine(adapter=adapter)

        report = await engine.run([make_task("T1")], options(max_retries=1, cwd=str(git_repo)))

        assert report.exit_code == EXIT_SUCCESS
        assert report.tasks["T1"]['attempts'] == 2
        branches = _git(git_repo, 'branch', '--list', 'taskstack/*')
        assert branches.count('taskstack/T1') == 1

    async def test_simple_mode_requires_clean_tree(self, git_repo):
        (git_repo / 'dirty.txt').write_text('uncommitted\n')
        engine = ExecutionEngine(adapter=MockTaskExecutionAdapter(write_files=True))

        report = await engine.run([make_task("T1")], options(vcs_mode=VcsMode.SIMPLE, cwd=str(git_repo)))

        assert report.exit_code == EXIT_FAILURE
        assert "uncommitted changes" in report.message


class TestOuterCancellation:

    async def _wait_for_output(self, engine, task_id):
        for _ in range(200):
            status = engine.get_status()
            if status and status['output'].get(task_id):
                return status
            await asyncio.sleep(0.05)
        raise AssertionError(f"{task_id} never reported output")

    async def test_status_shows_running_task_output(self, git_repo):
        adapter = ChattyAdapter(outcomes={"T1": ["hang"]})
        engine = ExecutionEngine(adapter=adapter)
        run = asyncio.ensure_future(engine.run([make_task("T1")], options(cwd=str(git_repo))))

        status = await self._wait_for_output(engine, "T1")

        assert status['output'] == {"T1": ["working on T1"]}
        assert status['active_task_count'] == 1
        run.cancel()
        await run

    async def test_cancelled_run_still_returns_report(self, git_repo):
        """Cancelling the task that awaits run() yields a report instead of an exception."""
        print("\n=== Test: Outer Cancellation ===")
        adapter = ChattyAdapter(outcomes={"T1": ["hang"]})
        engine = ExecutionEngine(adapter=adapter)
        tasks = [make_task("T1"), make_task("T2"), make_task("T3", requires=["T1"])]
        run = asyncio.ensure_future(engine.run(tasks, options(max_concurrency=1, cwd=str(git_repo))))

        await self._wait_for_output(engine, "T1")
        run.cancel()
        report = await asyncio.wait_for(run, timeout=10)

        assert report.exit_code == EXIT_FAILURE
        assert report.message == "Run cancelled"
        assert report.status == PlanStatus.CANCELLED
        states = {tid: t['state'] for tid, t in report.tasks.items()}
        assert states["T1"] == "failed"
        assert "queued" not in states.values()
        assert "running" not in states.values()
        assert not engine.running
        assert _git(git_repo, 'worktree', 'list').count('\n') == 0
        print(f"[PASS] {states}")
