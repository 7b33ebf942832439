"""
Isolation Engine
================

Manages git worktrees and branches so tasks can run concurrently without
touching each other's files.

Key Features:
- Creates one worktree per task attempt (unique path for the whole run)
- Creates stacked task branches on top of their parent branch
- Commits task results and detects empty results
- Composes task branches into a stack (git-spice) and submits it
- Cleans up worktrees on every exit path without raising
- Serializes every ref/worktree mutation through a single lock
"""

from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable, Set
from datetime import datetime
import asyncio
import hashlib
import logging
import re
import shutil

from taskstack.config import VcsConfig
from taskstack.errors import GitCommandError, NothingToCommitError, StackToolError, WorktreeError
from taskstack.models import ExecutionTask, VcsMode, WorktreeContext
from taskstack.parallel.stack_backend import GitSpiceBackend, StackBranch, StackInfo, StackState

logger = logging.getLogger(__name__)


def sanitize_ref_component(name: str) -> str:
    """
    Turn a task ID into a safe branch/directory name component.

    Args:
        name: Raw task ID

    Returns:
        Name containing only letters, digits, dots, underscores and hyphens
    """
    component = name.strip().replace(' ', '-')
    component = re.sub(r'[^A-Za-z0-9._\-]', '', component)
    component = re.sub(r'-+', '-', component)
    component = re.sub(r'\.{2,}', '.', component)
    component = component.strip('-.')
    if component.endswith('.lock'):
        component = component[:-5]
    return component or 'task'


class IsolationEngine:
    """
    Git worktree and branch management for a single run.

    In SIMPLE mode tasks run in the repository itself and no worktrees are
    created. In dry-run mode no git command is executed at all.
    """

    def __init__(
        self,
        repo_path: str,
        vcs_config: Optional[VcsConfig] = None,
        stack_backend: Optional[GitSpiceBackend] = None,
        mode: Optional[VcsMode] = None,
        dry_run: bool = False
    ):
        """
        Initialize the isolation engine.

        Args:
            repo_path: Path to the git repository
            vcs_config: Repository and branch settings
            stack_backend: Stack tool used for stacked runs (optional)
            mode: Isolation mode (defaults to vcs_config.mode)
            dry_run: Skip every git command and return synthetic values
        """
        self.repo_path = Path(repo_path).resolve()
        self.config = vcs_config or VcsConfig()
        self.mode = mode or self.config.mode
        self.stack_backend = stack_backend
        self.dry_run = dry_run
        self.shadow_dir = self.repo_path / self.config.worktree_path

        self._ref_lock = asyncio.Lock()
        self._active: Dict[str, WorktreeContext] = {}  # worktree_path -> context
        self._used_paths: Set[str] = set()
        self._attempts: Dict[str, int] = {}
        self._stack: Optional[StackState] = None
        self._stack_tracking = False
        self._pr_urls: List[str] = []

        logger.info(f"IsolationEngine initialized for {self.repo_path} (mode={self.mode.value}, dry_run={dry_run})")

    @property
    def active_contexts(self) -> List[WorktreeContext]:
        return list(self._active.values())

    async def initialize(self) -> None:
        """
        Check the repository and prepare the worktree directory.

        Raises:
            GitCommandError: If repo_path is not a git repository
        """
        if self.dry_run:
            logger.info("[dry-run] Skipping repository initialization")
            return

        await self._run_git(['rev-parse', '--git-dir'], timeout=10)
        if self.mode == VcsMode.SIMPLE:
            # Failed attempts are reset in place, which must not destroy user work
            status = await self._run_git(['status', '--porcelain'], timeout=30)
            if status:
                raise GitCommandError(
                    f"Working tree {self.repo_path} has uncommitted changes; commit or stash them first"
                )
            return

        self.shadow_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Worktree directory initialized at {self.shadow_dir}")
        await self.recover_stale_worktrees()

    async def recover_stale_worktrees(self) -> int:
        """
        Remove worktrees left in the worktree directory by earlier runs.

        Returns:
            Number of stale worktrees removed
        """
        removed = 0
        try:
            worktrees = await self.list_worktrees()
        except GitCommandError as e:
            logger.warning(f"Could not list worktrees: {e}")
            return 0

        shadow = str(self.shadow_dir.resolve())
        for wt in worktrees:
            path = wt.get('path', '')
            if path.startswith(shadow + '/') and path not in self._active:
                try:
                    async with self._ref_lock:
                        await self._run_git(['worktree', 'remove', '--force', path], timeout=30)
                    removed += 1
                    logger.info(f"Removed stale worktree: {path}")
                except GitCommandError as e:
                    logger.warning(f"Could not remove stale worktree {path}: {e}")

        await self._prune()
        return removed

    async def list_worktrees(self) -> List[Dict[str, Any]]:
        """
        List worktrees registered in the repository.

        Returns:
            List of dicts with path, head, branch (None when detached)
        """
        output = await self._run_git(['worktree', 'list', '--porcelain'], timeout=10)
        worktrees: List[Dict[str, Any]] = []
        current: Dict[str, Any] = {}

        for line in output.splitlines() + ['']:
            if not line.strip():
                if current:
                    worktrees.append(current)
                    current = {}
                continue
            key, _, value = line.partition(' ')
            if key == 'worktree':
                current = {'path': value, 'head': None, 'branch': None, 'detached': False}
            elif key == 'HEAD':
                current['head'] = value
            elif key == 'branch':
                current['branch'] = value[len('refs/heads/'):] if value.startswith('refs/heads/') else value
            elif key == 'detached':
                current['detached'] = True

        return worktrees

    def task_branch_name(self, task_id: str) -> str:
        return f"{self.config.branch_prefix}/{sanitize_ref_component(task_id)}"

    async def create_worktrees_for_tasks(
        self,
        tasks: Iterable[ExecutionTask],
        parent_ref: str
    ) -> List[WorktreeContext]:
        """
        Create one worktree per task, each on a new branch from parent_ref.

        Creation stops at the first failure; worktrees created before it stay
        registered and are removed by cleanup_worktrees().

        Args:
            tasks: Tasks to isolate
            parent_ref: Ref every branch starts from

        Returns:
            Worktree contexts in task order

        Raises:
            WorktreeError: If any worktree cannot be created
        """
        contexts = []
        for task in tasks:
            contexts.append(await self.create_worktree(task, parent_ref))
        return contexts

    async def create_worktree(
        self,
        task: ExecutionTask,
        base_ref: str,
        branch_name: Optional[str] = None,
        checkout_existing: bool = False
    ) -> WorktreeContext:
        """
        Create an isolated working copy for the next attempt of a task.

        Args:
            task: Task the worktree is for
            base_ref: Ref the new branch starts from (recorded as the base
                when checking out an existing branch)
            branch_name: Branch to create or check out (defaults to
                "<prefix>/<task-id>", suffixed if it already exists)
            checkout_existing: Check out branch_name instead of creating it

        Returns:
            WorktreeContext for the attempt

        Raises:
            WorktreeError: If git refuses to create the worktree
        """
        attempt = self._attempts.get(task.id, 0) + 1
        self._attempts[task.id] = attempt

        if self.mode == VcsMode.SIMPLE:
            return await self._in_place_context(task, base_ref, attempt)

        if self.dry_run:
            path = self._next_path(task.id, attempt)
            context = WorktreeContext(
                task_id=task.id,
                branch_name=branch_name or self.task_branch_name(task.id),
                base_ref=base_ref,
                worktree_path=str(path),
                attempt=attempt,
            )
            self._register(context)
            logger.info(f"[dry-run] Worktree for task {task.id} at {path}")
            return context

        try:
            async with self._ref_lock:
                path = self._next_path(task.id, attempt)
                if checkout_existing:
                    if not branch_name:
                        raise WorktreeError(f"No branch given to check out for task {task.id}")
                    branch = branch_name
                    await self._run_git(['worktree', 'add', str(path), branch], timeout=60)
                else:
                    branch = await self._unique_branch_name(branch_name or self.task_branch_name(task.id))
                    await self._run_git(['worktree', 'add', '-b', branch, str(path), base_ref], timeout=60)
        except WorktreeError:
            raise
        except GitCommandError as e:
            raise WorktreeError(f"Could not create worktree for task {task.id}: {e}")

        context = WorktreeContext(
            task_id=task.id,
            branch_name=branch,
            base_ref=base_ref,
            worktree_path=str(path.resolve()),
            attempt=attempt,
        )
        self._register(context)
        logger.info(f"Created worktree for task {task.id} at {context.worktree_path} (branch {branch}, attempt {attempt})")
        return context

    async def _in_place_context(self, task: ExecutionTask, base_ref: str, attempt: int) -> WorktreeContext:
        """Context pointing at the repository itself, based on the current HEAD commit."""
        if self.dry_run:
            head, branch = base_ref, base_ref
        else:
            head = await self._run_git(['rev-parse', 'HEAD'], timeout=10)
            branch = await self._run_git(['rev-parse', '--abbrev-ref', 'HEAD'], timeout=10)
        return WorktreeContext(
            task_id=task.id,
            branch_name=branch,
            base_ref=head,
            worktree_path=str(self.repo_path),
            attempt=attempt,
            in_place=True,
        )

    def _register(self, context: WorktreeContext) -> None:
        self._used_paths.add(context.worktree_path)
        self._active[context.worktree_path] = context

    def _next_path(self, task_id: str, attempt: int) -> Path:
        """Worktree path that has not been used during this run."""
        base = sanitize_ref_component(task_id)
        name = base if attempt == 1 else f"{base}-attempt-{attempt}"
        path = self.shadow_dir / name
        counter = 1
        while str(path.resolve()) in self._used_paths or str(path) in self._used_paths or path.exists():
            counter += 1
            path = self.shadow_dir / f"{name}-{counter}"
        return path

    async def _branch_exists(self, name: str) -> bool:
        try:
            await self._run_git(['rev-parse', '--verify', '--quiet', f'refs/heads/{name}'], timeout=10)
            return True
        except GitCommandError:
            return False

    async def _unique_branch_name(self, name: str) -> str:
        """Return name, or name with a timestamp suffix when it already exists."""
        if not await self._branch_exists(name):
            return name
        stamp = datetime.now().strftime('%Y%m%d%H%M%S')
        candidate = f"{name}-{stamp}"
        counter = 1
        while await self._branch_exists(candidate):
            counter += 1
            candidate = f"{name}-{stamp}-{counter}"
        logger.warning(f"Branch {name} already exists, using {candidate}")
        return candidate

    async def create_stack_branch(self, name: str, parent_ref: str) -> str:
        """
        Create a task branch on top of its parent.

        Args:
            name: Desired branch name
            parent_ref: Parent branch (or trunk)

        Returns:
            The branch name actually created (suffixed if name was taken)

        Raises:
            GitCommandError: If the branch cannot be created
            StackToolError: If the stack tool refuses to track it
        """
        if self.dry_run:
            logger.info(f"[dry-run] Branch {name} on {parent_ref}")
            return name

        async with self._ref_lock:
            branch = await self._unique_branch_name(name)
            await self._run_git(['branch', branch, parent_ref], timeout=30)
            if self._stack_tracking and self.stack_backend:
                await self.stack_backend.track_branch(branch, parent_ref, self.repo_path)

        logger.info(f"Created stack branch {branch} on {parent_ref}")
        return branch

    async def reset_branch(self, name: str, ref: str) -> None:
        """Point an existing branch back at ref (used before retrying a stacked task)."""
        if self.dry_run:
            return
        async with self._ref_lock:
            await self._run_git(['branch', '--force', name, ref], timeout=30)
        logger.info(f"Reset branch {name} to {ref}")

    async def commit_task_changes(self, worktree: WorktreeContext, message: Optional[str] = None) -> str:
        """
        Commit everything the task changed in its worktree.

        Commits the task made itself are accepted as its result.

        Args:
            worktree: Worktree of the attempt
            message: Commit message

        Returns:
            Commit hash of the task result

        Raises:
            NothingToCommitError: If the worktree has no changes and no new commits
            GitCommandError: If git fails
        """
        if self.dry_run:
            digest = hashlib.sha1(f"{worktree.task_id}:{worktree.attempt}".encode()).hexdigest()
            logger.info(f"[dry-run] Commit {digest[:8]} for task {worktree.task_id}")
            return digest

        cwd = Path(worktree.worktree_path)
        message = message or f"[{worktree.task_id}] Task changes"

        await self._run_git(['add', '--all'], cwd=cwd, timeout=30)
        status = await self._run_git(['status', '--porcelain'], cwd=cwd, timeout=30)

        if status:
            await self._run_git(['commit', '--no-verify', '-m', message], cwd=cwd, timeout=60)
        else:
            new_commits = await self._run_git(
                ['rev-list', '--count', f'{worktree.base_ref}..HEAD'], cwd=cwd, timeout=10
            )
            if int(new_commits or 0) == 0:
                raise NothingToCommitError(worktree.task_id, worktree.worktree_path)
            logger.info(f"Task {worktree.task_id} committed its own changes ({new_commits} commits)")

        commit_hash = await self._run_git(['rev-parse', 'HEAD'], cwd=cwd, timeout=10)
        logger.info(f"Committed task {worktree.task_id}: {commit_hash[:8]}")
        return commit_hash

    async def commit_in_stack(self, worktree: WorktreeContext, message: Optional[str] = None) -> str:
        """
        Commit a task result onto its stack branch.

        Raises:
            GitCommandError: If the worktree is no longer on its stack branch
            NothingToCommitError: If the task produced nothing
        """
        if not self.dry_run:
            current = await self._run_git(
                ['rev-parse', '--abbrev-ref', 'HEAD'], cwd=Path(worktree.worktree_path), timeout=10
            )
            if current != worktree.branch_name:
                raise GitCommandError(
                    f"Worktree for task {worktree.task_id} is on {current}, expected {worktree.branch_name}"
                )
        return await self.commit_task_changes(worktree, message)

    async def discard_worktree(self, worktree: WorktreeContext, delete_branch: bool = True) -> None:
        """
        Drop the working copy of a failed attempt. Never raises.

        In-place contexts are reset to the commit the attempt started from.
        """
        if worktree.in_place:
            if self.dry_run:
                return
            try:
                async with self._ref_lock:
                    await self._run_git(['reset', '--hard', worktree.base_ref], timeout=30)
                    await self._run_git(['clean', '-fd'], timeout=30)
                logger.info(f"Reset working tree to {worktree.base_ref[:8]} after failed task {worktree.task_id}")
            except GitCommandError as e:
                logger.error(f"Could not reset working tree after task {worktree.task_id}: {e}")
            return

        await self.cleanup_worktrees([worktree])
        if delete_branch:
            await self.delete_branch(worktree.branch_name)

    async def delete_branch(self, name: str) -> bool:
        """Delete a local branch. Never raises; returns False on failure."""
        if self.dry_run:
            return True
        try:
            async with self._ref_lock:
                await self._run_git(['branch', '-D', name], timeout=30)
            logger.info(f"Deleted branch {name}")
            return True
        except GitCommandError as e:
            logger.warning(f"Could not delete branch {name}: {e}")
            return False

    async def cleanup_worktrees(self, contexts: Optional[Iterable[WorktreeContext]] = None) -> int:
        """
        Remove worktrees. Never raises; failures are logged.

        Safe to call repeatedly and with contexts that were already removed.

        Args:
            contexts: Worktrees to remove (defaults to every active worktree)

        Returns:
            Number of worktrees removed
        """
        targets = list(contexts) if contexts is not None else self.active_contexts
        removed = 0

        for context in targets:
            if context.in_place:
                continue
            if context.worktree_path not in self._active:
                logger.debug(f"Worktree already cleaned up: {context.worktree_path}")
                continue
            if self.dry_run:
                self._active.pop(context.worktree_path, None)
                removed += 1
                continue

            path = Path(context.worktree_path)
            try:
                async with self._ref_lock:
                    if path.exists():
                        await self._run_git(['worktree', 'remove', '--force', str(path)], timeout=30)
                removed += 1
                logger.info(f"Removed worktree for task {context.task_id}: {path}")
            except GitCommandError as e:
                logger.warning(f"git worktree remove failed for {path}, deleting directory: {e}")
                shutil.rmtree(path, ignore_errors=True)
                removed += 1
            except Exception as e:
                logger.error(f"Unexpected error cleaning up worktree {path}: {e}", exc_info=True)
            finally:
                self._active.pop(context.worktree_path, None)

        if removed and not self.dry_run:
            await self._prune()
        return removed

    async def _prune(self) -> None:
        try:
            async with self._ref_lock:
                await self._run_git(['worktree', 'prune'], timeout=30)
        except GitCommandError as e:
            logger.warning(f"git worktree prune failed: {e}")

    # =========================================================================
    # Stack state
    # =========================================================================

    async def initialize_stack_state(self, trunk: Optional[str] = None) -> StackState:
        """
        Start composing a stack on the trunk.

        Enables stack tool tracking when a backend is configured and available.
        """
        trunk = trunk or self.config.trunk
        self._stack = StackState(trunk=trunk)
        self._pr_urls = []

        if self.stack_backend and not self.dry_run:
            if await self.stack_backend.is_available(self.repo_path):
                try:
                    await self.stack_backend.initialize(self.repo_path, trunk)
                    self._stack_tracking = True
                except StackToolError as e:
                    logger.warning(f"Stack tool initialization failed, branches will not be tracked: {e}")
                    self._stack_tracking = False
        logger.info(f"Stack state initialized on {trunk} (tracking={self._stack_tracking})")
        return self._stack

    @property
    def stack_tracking(self) -> bool:
        return self._stack_tracking

    def add_task_to_stack(self, task: ExecutionTask, worktree: WorktreeContext) -> StackBranch:
        """Record a completed task's branch in the stack."""
        if self._stack is None:
            self._stack = StackState(trunk=self.config.trunk)
        branch = StackBranch(
            name=worktree.branch_name,
            parent=worktree.base_ref,
            task_id=task.id,
            commit_hash=task.commit_hash,
        )
        self._stack.add(branch)
        logger.info(f"Added {branch.name} to stack (parent {branch.parent})")
        return branch

    async def restack(self) -> bool:
        """
        Rebase stack branches onto their parents.

        Returns:
            True if the stack tool restacked, False if tracking is off
        """
        if not self._stack_tracking or not self.stack_backend:
            logger.info("Stack tool tracking is off, skipping restack")
            return False
        await self.stack_backend.restack(self.repo_path)
        return True

    async def get_stack_info(self, include_log: bool = False) -> StackInfo:
        stack = self._stack or StackState(trunk=self.config.trunk)
        tool_output = None
        if include_log and self._stack_tracking and self.stack_backend:
            try:
                tool_output = await self.stack_backend.log(self.repo_path)
            except StackToolError as e:
                logger.warning(f"Could not read stack log: {e}")
        return StackInfo(
            trunk=stack.trunk,
            branches=list(stack.branches),
            pr_urls=list(self._pr_urls),
            tool_output=tool_output,
        )

    async def submit_stack(self, draft: bool = True) -> List[str]:
        """
        Submit every stack rooted on the trunk for review.

        Returns:
            Review URLs, de-duplicated

        Raises:
            StackToolError: If no stack tool is tracking the branches or submission fails
        """
        if self.dry_run:
            logger.info("[dry-run] Skipping stack submission")
            return []
        if not self._stack_tracking or not self.stack_backend:
            raise StackToolError("No stack tool available to submit the stack")

        stack = self._stack or StackState(trunk=self.config.trunk)
        for root in stack.roots():
            urls = await self.stack_backend.submit_stack(self.repo_path, branch=root.name, draft=draft)
            for url in urls:
                if url not in self._pr_urls:
                    self._pr_urls.append(url)
        return list(self._pr_urls)

    async def _run_git(
        self,
        args: List[str],
        cwd: Optional[Path] = None,
        timeout: Optional[int] = None
    ) -> str:
        """
        Run a git command asynchronously.

        Args:
            args: Git command arguments (e.g., ['status', '--short'])
            cwd: Working directory for command (defaults to repo_path)
            timeout: Command timeout in seconds (defaults to vcs_config.git_timeout)

        Returns:
            Command stdout output

        Raises:
            GitCommandError: If command fails or times out
        """
        if cwd is None:
            cwd = self.repo_path
        timeout = timeout or self.config.git_timeout

        cmd = ['git'] + args
        logger.debug(f"Running git command: {' '.join(cmd)} in {cwd}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError:
            raise GitCommandError("Git command not found. Is git installed?")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise GitCommandError(f"Git command timed out after {timeout}s: {' '.join(cmd)}")

        if process.returncode != 0:
            stderr_str = stderr.decode('utf-8', errors='replace').strip()
            raise GitCommandError(
                f"Git command failed (exit {process.returncode}): {' '.join(cmd)}\n{stderr_str}"
            )

        return stdout.decode('utf-8', errors='replace').strip()
