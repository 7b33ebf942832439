"""
Unit tests for IsolationEngine

Most tests mock git commands; the TestRealRepository tests run against a
temporary repository and are skipped when git is not installed.
"""

import shutil
import subprocess
import sys
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from taskstack.config import VcsConfig
from taskstack.errors import GitCommandError, NothingToCommitError, StackToolError, WorktreeError
from taskstack.models import ExecutionTask, Task, VcsMode, WorktreeContext
from taskstack.parallel.isolation_engine import IsolationEngine, sanitize_ref_component


def make_exec_task(task_id="T1"):
    return ExecutionTask.from_task(Task(id=task_id, title=task_id, prompt="p"))


def git_side_effect(outputs=None, failing=()):
    """
    Build a fake _run_git.

    outputs maps the first git argument(s) to stdout; commands whose joined
    args start with an entry of failing raise GitCommandError. Branch
    existence checks fail (branch missing) unless listed in outputs.
    """
    outputs = outputs or {}

    async def fake(args, cwd=None, timeout=None):
        joined = ' '.join(args)
        for prefix in failing:
            if joined.startswith(prefix):
                raise GitCommandError(f"failed: {joined}")
        for prefix, value in outputs.items():
            if joined.startswith(prefix):
                return value
        if joined.startswith('rev-parse --verify'):
            raise GitCommandError("no such branch")
        return ""

    return fake


@pytest.fixture
def temp_dir():
    path = tempfile.mkdtemp(prefix='taskstack_test_')
    yield path
    shutil.rmtree(path, ignore_errors=True)


class TestSanitize:

    def test_sanitize_ref_component(self):
        print("\n=== Test: Ref Sanitization ===")
        cases = [
            ("T1", "T1"),
            ("my task", "my-task"),
            ("a/b:c*d?", "abcd"),
            ("--x--", "x"),
            ("a..b", "a.b"),
            ("name.lock", "name"),
            ("???", "task"),
        ]
        for raw, expected in cases:
            assert sanitize_ref_component(raw) == expected, raw
            print(f"[PASS] {raw!r} -> {expected!r}")

    def test_task_branch_name(self, temp_dir):
        engine = IsolationEngine(temp_dir, VcsConfig(branch_prefix="stack"))
        assert engine.task_branch_name("feat 1") == "stack/feat-1"


class TestDryRun:

    async def test_dry_run_never_calls_git(self, temp_dir):
        engine = IsolationEngine(temp_dir, dry_run=True)
        with patch.object(engine, '_run_git', new_callable=AsyncMock) as mock_git:
            await engine.initialize()
            context = await engine.create_worktree(make_exec_task(), "main")
            commit = await engine.commit_task_changes(context)
            branch = await engine.create_stack_branch("taskstack/T1", "main")
            removed = await engine.cleanup_worktrees()

            mock_git.assert_not_called()

        assert context.branch_name == "taskstack/T1"
        assert len(commit) == 40
        assert branch == "taskstack/T1"
        assert removed == 1
        assert engine.active_contexts == []
        print("[PASS] Dry run produced synthetic values only")

    async def test_attempt_paths_are_unique(self, temp_dir):
        engine = IsolationEngine(temp_dir, dry_run=True)
        task = make_exec_task()

        first = await engine.create_worktree(task, "main")
        second = await engine.create_worktree(task, "main")

        assert first.worktree_path != second.worktree_path
        assert second.attempt == 2
        assert second.worktree_path.endswith("T1-attempt-2")


class TestWorktreeCreation:

    async def test_create_worktree_runs_git(self, temp_dir):
        print("\n=== Test: Create Worktree ===")
        engine = IsolationEngine(temp_dir)
        with patch.object(engine, '_run_git', side_effect=git_side_effect()) as mock_git:
            context = await engine.create_worktree(make_exec_task(), "main")

        add_calls = [c.args[0] for c in mock_git.call_args_list if c.args[0][:2] == ['worktree', 'add']]
        assert add_calls == [['worktree', 'add', '-b', 'taskstack/T1', str(engine.shadow_dir / 'T1'), 'main']]
        assert context.branch_name == "taskstack/T1"
        assert context.base_ref == "main"
        assert context in engine.active_contexts
        print(f"[PASS] Worktree at {context.worktree_path}")

    async def test_existing_branch_gets_suffix(self, temp_dir):
        engine = IsolationEngine(temp_dir)

        async def fake(args, cwd=None, timeout=None):
            joined = ' '.join(args)
            if joined == 'rev-parse --verify --quiet refs/heads/taskstack/T1':
                return "abc"
            if joined.startswith('rev-parse --verify'):
                raise GitCommandError("missing")
            return ""

        with patch.object(engine, '_run_git', side_effect=fake):
            context = await engine.create_worktree(make_exec_task(), "main")

        assert context.branch_name.startswith("taskstack/T1-")

    async def test_worktree_failure_raises_worktree_error(self, temp_dir):
        engine = IsolationEngine(temp_dir)
        with patch.object(engine, '_run_git', side_effect=git_side_effect(failing=['worktree add'])):
            with pytest.raises(WorktreeError):
                await engine.create_worktree(make_exec_task(), "main")
        assert engine.active_contexts == []

    async def test_create_worktrees_for_tasks(self, temp_dir):
        engine = IsolationEngine(temp_dir)
        tasks = [make_exec_task("A"), make_exec_task("B")]
        with patch.object(engine, '_run_git', side_effect=git_side_effect()):
            contexts = await engine.create_worktrees_for_tasks(tasks, "main")

        assert [c.task_id for c in contexts] == ["A", "B"]
        assert len({c.worktree_path for c in contexts}) == 2

    async def test_simple_mode_runs_in_place(self, temp_dir):
        engine = IsolationEngine(temp_dir, mode=VcsMode.SIMPLE)
        outputs = {'rev-parse HEAD': "deadbeef", 'rev-parse --abbrev-ref HEAD': "main"}

        async def fake(args, cwd=None, timeout=None):
            return outputs.get(' '.join(args), "")

        with patch.object(engine, '_run_git', side_effect=fake):
            context = await engine.create_worktree(make_exec_task(), "main")

        assert context.in_place
        assert context.worktree_path == str(engine.repo_path)
        assert context.base_ref == "deadbeef"

    async def test_simple_mode_requires_clean_tree(self, temp_dir):
        engine = IsolationEngine(temp_dir, mode=VcsMode.SIMPLE)
        with patch.object(engine, '_run_git', side_effect=git_side_effect(outputs={'status': " M file.py"})):
            with pytest.raises(GitCommandError):
                await engine.initialize()


class TestCommit:

    def _context(self, temp_dir):
        return WorktreeContext(task_id="T1", branch_name="taskstack/T1", base_ref="main", worktree_path=temp_dir)

    async def test_commit_with_changes(self, temp_dir):
        engine = IsolationEngine(temp_dir)
        fake = git_side_effect(outputs={'status --porcelain': "A  new.py", 'rev-parse HEAD': "cafebabe"})
        with patch.object(engine, '_run_git', side_effect=fake) as mock_git:
            commit = await engine.commit_task_changes(self._context(temp_dir), "msg")

        assert commit == "cafebabe"
        commands = [c.args[0][0] for c in mock_git.call_args_list]
        assert commands == ['add', 'status', 'commit', 'rev-parse']

    async def test_nothing_to_commit(self, temp_dir):
        print("\n=== Test: Nothing To Commit ===")
        engine = IsolationEngine(temp_dir)
        fake = git_side_effect(outputs={'status --porcelain': "", 'rev-list --count': "0"})
        with patch.object(engine, '_run_git', side_effect=fake):
            with pytest.raises(NothingToCommitError) as exc:
                await engine.commit_task_changes(self._context(temp_dir))

        assert exc.value.task_id == "T1"
        print(f"[PASS] {exc.value}")

    async def test_task_commits_accepted(self, temp_dir):
        engine = IsolationEngine(temp_dir)
        fake = git_side_effect(outputs={'status --porcelain': "", 'rev-list --count': "2", 'rev-parse HEAD': "f00d"})
        with patch.object(engine, '_run_git', side_effect=fake):
            commit = await engine.commit_task_changes(self._context(temp_dir))
        assert commit == "f00d"

    async def test_commit_in_stack_checks_branch(self, temp_dir):
        engine = IsolationEngine(temp_dir)
        fake = git_side_effect(outputs={'rev-parse --abbrev-ref HEAD': "other"})
        with patch.object(engine, '_run_git', side_effect=fake):
            with pytest.raises(GitCommandError):
                await engine.commit_in_stack(self._context(temp_dir))


class TestCleanup:

    async def test_cleanup_never_raises(self, temp_dir):
        print("\n=== Test: Cleanup Never Raises ===")
        engine = IsolationEngine(temp_dir)
        with patch.object(engine, '_run_git', side_effect=git_side_effect()):
            context = await engine.create_worktree(make_exec_task(), "main")
        Path(context.worktree_path).mkdir(parents=True)

        with patch.object(engine, '_run_git', side_effect=git_side_effect(failing=['worktree'])):
            removed = await engine.cleanup_worktrees()
            again = await engine.cleanup_worktrees([context])

        assert removed == 1
        assert again == 0
        assert not Path(context.worktree_path).exists()
        print("[PASS] Fell back to deleting the directory")

    async def test_discard_deletes_branch(self, temp_dir):
        engine = IsolationEngine(temp_dir)
        with patch.object(engine, '_run_git', side_effect=git_side_effect()) as mock_git:
            context = await engine.create_worktree(make_exec_task(), "main")
            await engine.discard_worktree(context)

        assert ['branch', '-D', 'taskstack/T1'] in [c.args[0] for c in mock_git.call_args_list]
        assert engine.active_contexts == []

    async def test_delete_branch_failure_returns_false(self, temp_dir):
        engine = IsolationEngine(temp_dir)
        with patch.object(engine, '_run_git', side_effect=git_side_effect(failing=['branch -D'])):
            assert await engine.delete_branch("gone") is False

    async def test_in_place_discard_resets(self, temp_dir):
        engine = IsolationEngine(temp_dir, mode=VcsMode.SIMPLE)
        context = WorktreeContext(
            task_id="T1", branch_name="main", base_ref="abc123", worktree_path=temp_dir, in_place=True
        )
        with patch.object(engine, '_run_git', side_effect=git_side_effect()) as mock_git:
            await engine.discard_worktree(context)

        calls = [c.args[0] for c in mock_git.call_args_list]
        assert calls == [['reset', '--hard', 'abc123'], ['clean', '-fd']]


class TestStack:

    async def test_submit_requires_tracking(self, temp_dir):
        engine = IsolationEngine(temp_dir)
        await engine.initialize_stack_state("main")
        with pytest.raises(StackToolError):
            await engine.submit_stack()

    async def test_submit_per_root_deduplicates(self, temp_dir):
        backend = AsyncMock()
        backend.is_available.return_value = True
        backend.submit_stack.side_effect = [
            ["https://github.com/o/r/pull/1", "https://github.com/o/r/pull/2"],
            ["https://github.com/o/r/pull/2", "https://github.com/o/r/pull/3"],
        ]
        engine = IsolationEngine(temp_dir, stack_backend=backend)
        await engine.initialize_stack_state("main")
        assert engine.stack_tracking

        for task_id, parent in (("A", "main"), ("B", "taskstack/A"), ("C", "main")):
            task = make_exec_task(task_id)
            context = WorktreeContext(
                task_id=task_id, branch_name=f"taskstack/{task_id}", base_ref=parent, worktree_path=temp_dir
            )
            engine.add_task_to_stack(task, context)

        urls = await engine.submit_stack()

        assert urls == [
            "https://github.com/o/r/pull/1",
            "https://github.com/o/r/pull/2",
            "https://github.com/o/r/pull/3",
        ]
        branches = [c.kwargs['branch'] for c in backend.submit_stack.call_args_list]
        assert branches == ["taskstack/A", "taskstack/C"]
        info = await engine.get_stack_info()
        assert info.pr_urls == urls
        assert [b.name for b in info.branches] == ["taskstack/A", "taskstack/B", "taskstack/C"]

    async def test_unavailable_backend_disables_tracking(self, temp_dir):
        backend = AsyncMock()
        backend.is_available.return_value = False
        engine = IsolationEngine(temp_dir, stack_backend=backend)

        await engine.initialize_stack_state("main")

        assert not engine.stack_tracking
        assert await engine.restack() is False
        backend.initialize.assert_not_called()


# Real repository tests

def _git(repo, *args):
    return subprocess.run(
        ['git', *args], cwd=repo, check=True, capture_output=True, text=True
    ).stdout.strip()


@pytest.fixture
def git_repo():
    """Temporary git repository with one commit on main."""
    if shutil.which('git') is None:
        pytest.skip("git is not installed")

    temp_dir = tempfile.mkdtemp(prefix='taskstack_repo_')
    repo = Path(temp_dir)
    _git(repo, 'init')
    _git(repo, 'symbolic-ref', 'HEAD', 'refs/heads/main')
    _git(repo, 'config', 'user.name', 'Test User')
    _git(repo, 'config', 'user.email', 'test@example.com')
    (repo / 'README.md').write_text('# Test Project\n')
    _git(repo, 'add', '.')
    _git(repo, 'commit', '-m', 'Initial commit')

    yield repo

    shutil.rmtree(temp_dir, ignore_errors=True)


class TestRealRepository:

    async def test_worktree_commit_and_cleanup(self, git_repo):
        print("\n=== Test: Real Worktree Lifecycle ===")
        engine = IsolationEngine(str(git_repo))
        await engine.initialize()

        context = await engine.create_worktree(make_exec_task(), "main")
        (Path(context.worktree_path) / "feature.py").write_text("print('hi')\n")
        commit = await engine.commit_task_changes(context, "Add feature")

        assert _git(git_repo, 'rev-parse', 'taskstack/T1') == commit
        assert _git(git_repo, 'rev-parse', 'taskstack/T1~1') == _git(git_repo, 'rev-parse', 'main')

        await engine.cleanup_worktrees()
        worktrees = await engine.list_worktrees()
        assert len(worktrees) == 1
        assert worktrees[0]['branch'] == 'main'
        print(f"[PASS] Committed {commit[:8]} and removed the worktree")

    async def test_empty_worktree_has_nothing_to_commit(self, git_repo):
        engine = IsolationEngine(str(git_repo))
        await engine.initialize()
        context = await engine.create_worktree(make_exec_task(), "main")

        with pytest.raises(NothingToCommitError):
            await engine.commit_task_changes(context)

        await engine.discard_worktree(context)
        assert 'taskstack/T1' not in _git(git_repo, 'branch', '--list')

    async def test_stacked_branches_are_linear(self, git_repo):
        engine = IsolationEngine(str(git_repo))
        await engine.initialize()

        first = await engine.create_stack_branch("taskstack/T1", "main")
        ctx1 = await engine.create_worktree(make_exec_task("T1"), "main", branch_name=first, checkout_existing=True)
        (Path(ctx1.worktree_path) / "one.py").write_text("1\n")
        c1 = await engine.commit_in_stack(ctx1, "T1")

        second = await engine.create_stack_branch("taskstack/T2", first)
        ctx2 = await engine.create_worktree(make_exec_task("T2"), first, branch_name=second, checkout_existing=True)
        (Path(ctx2.worktree_path) / "two.py").write_text("2\n")
        c2 = await engine.commit_in_stack(ctx2, "T2")

        await engine.cleanup_worktrees()

        assert _git(git_repo, 'rev-list', '--count', 'main..taskstack/T2') == "2"
        assert _git(git_repo, 'rev-parse', 'taskstack/T2') == c2
        assert _git(git_repo, 'rev-parse', 'taskstack/T2~1') == c1

    async def test_not_a_repository(self, temp_dir):
        if shutil.which('git') is None:
            pytest.skip("git is not installed")
        engine = IsolationEngine(temp_dir)
        with pytest.raises(GitCommandError):
            await engine.initialize()
