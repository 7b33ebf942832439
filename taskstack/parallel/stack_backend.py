"""
Stack Backend
=============

Thin wrapper around the git-spice CLI ("gs") used to compose task branches
into a reviewable stack.

Key Features:
- Tracks task branches with their parent so the tool can restack them
- Restacks and submits the stack for review
- Extracts review URLs from submit output (marker lines and hosted URL shapes)
- Keeps an in-memory record of the stack composed during a run
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Dict, Any
import asyncio
import logging
import re

from taskstack.errors import StackToolError

logger = logging.getLogger(__name__)

# "Pull Request: <url>" / "PR: <url>" lines
PR_MARKER_PATTERN = re.compile(r'\b(?:pull request|pr)\s*:\s*(https?://\S+)', re.IGNORECASE)

# GitHub /pull/N, GitLab /merge_requests/N, Bitbucket /pull-requests/N
HOSTED_URL_PATTERN = re.compile(
    r'https?://[^\s<>"\'\])]+?/(?:pull|merge_requests|pull-requests)/\d+'
)

_TRAILING_PUNCTUATION = '.,;:)]>\'"'


def extract_result_urls(output: str) -> List[str]:
    """
    Extract review URLs from stack tool output.

    Args:
        output: Raw stdout of a submit command

    Returns:
        Unique URLs in first-seen order
    """
    urls: List[str] = []
    for line in output.splitlines():
        found = [m.group(1) for m in PR_MARKER_PATTERN.finditer(line)]
        found.extend(m.group(0) for m in HOSTED_URL_PATTERN.finditer(line))
        for url in found:
            url = url.rstrip(_TRAILING_PUNCTUATION)
            if url and url not in urls:
                urls.append(url)
    return urls


@dataclass
class StackBranch:
    """
    A task branch in the stack.

    Attributes:
        name: Branch name
        parent: Branch (or trunk) it is stacked on
        task_id: Task whose result the branch holds
        commit_hash: Commit produced by the task
    """
    name: str
    parent: str
    task_id: Optional[str] = None
    commit_hash: Optional[str] = None
    added_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'parent': self.parent,
            'task_id': self.task_id,
            'commit_hash': self.commit_hash,
            'added_at': self.added_at.isoformat(),
        }


@dataclass
class StackState:
    """Stack composed during one run."""
    trunk: str
    branches: List[StackBranch] = field(default_factory=list)

    def add(self, branch: StackBranch) -> None:
        self.branches = [b for b in self.branches if b.name != branch.name]
        self.branches.append(branch)

    def get(self, name: str) -> Optional[StackBranch]:
        for branch in self.branches:
            if branch.name == name:
                return branch
        return None

    def roots(self) -> List[StackBranch]:
        """Branches stacked directly on the trunk."""
        return [b for b in self.branches if b.parent == self.trunk]

    def children(self, name: str) -> List[StackBranch]:
        return [b for b in self.branches if b.parent == name]


@dataclass
class StackInfo:
    """Snapshot of the stack for reporting."""
    trunk: str
    branches: List[StackBranch]
    pr_urls: List[str] = field(default_factory=list)
    tool_output: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'trunk': self.trunk,
            'branches': [b.to_dict() for b in self.branches],
            'pr_urls': list(self.pr_urls),
            'tool_output': self.tool_output,
        }


class GitSpiceBackend:
    """
    Runs git-spice commands.

    All commands run non-interactively; failures raise StackToolError.
    """

    SUBMIT_TIMEOUT = 60

    def __init__(self, binary: str = "gs", timeout: int = 30):
        self.binary = binary
        self.timeout = timeout
        self._available: Optional[bool] = None

    async def _run(self, args: List[str], cwd: Path, timeout: Optional[int] = None) -> str:
        """
        Run a git-spice command asynchronously.

        Args:
            args: Command arguments (e.g. ['repo', 'restack'])
            cwd: Repository or worktree directory
            timeout: Command timeout in seconds

        Returns:
            Command stdout output

        Raises:
            StackToolError: If the command fails, times out or is missing
        """
        timeout = timeout or self.timeout
        cmd = [self.binary, '--no-prompt'] + args
        logger.debug(f"Running stack command: {' '.join(cmd)} in {cwd}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError:
            raise StackToolError(f"Stack tool '{self.binary}' not found. Is git-spice installed?")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise StackToolError(f"Stack command timed out after {timeout}s: {' '.join(cmd)}")

        if process.returncode != 0:
            stderr_str = stderr.decode('utf-8', errors='replace').strip()
            raise StackToolError(
                f"Stack command failed (exit {process.returncode}): {' '.join(cmd)}\n{stderr_str}"
            )

        # git-spice reports submit results on stderr
        out = stdout.decode('utf-8', errors='replace').strip()
        err = stderr.decode('utf-8', errors='replace').strip()
        return "\n".join(part for part in (out, err) if part)

    async def is_available(self, cwd: Path) -> bool:
        if self._available is None:
            try:
                await self._run(['--version'], cwd, timeout=10)
                self._available = True
            except StackToolError as e:
                logger.warning(f"git-spice not available: {e}")
                self._available = False
        return self._available

    async def initialize(self, cwd: Path, trunk: str) -> None:
        """Initialize git-spice in the repository with the given trunk."""
        await self._run(['repo', 'init', '--trunk', trunk], cwd)
        logger.info(f"Initialized git-spice with trunk {trunk}")

    async def track_branch(self, name: str, base: str, cwd: Path) -> None:
        """Register an existing branch with its parent."""
        await self._run(['branch', 'track', name, '--base', base], cwd)
        logger.info(f"Tracking branch {name} on {base}")

    async def create_branch(self, name: str, message: str, cwd: Path) -> None:
        """Create a branch on top of the checked-out one, committing staged changes with message."""
        await self._run(['branch', 'create', name, '-m', message], cwd)
        logger.info(f"Created branch {name}")

    async def restack(self, cwd: Path) -> str:
        """Rebase every tracked branch onto its parent."""
        output = await self._run(['repo', 'restack'], cwd, timeout=self.SUBMIT_TIMEOUT)
        logger.info("Restacked branches")
        return output

    async def log(self, cwd: Path) -> str:
        """Short stack log as printed by the tool."""
        return await self._run(['log', 'short'], cwd)

    async def submit_stack(
        self,
        cwd: Path,
        branch: Optional[str] = None,
        draft: bool = True,
        extra_args: Optional[List[str]] = None
    ) -> List[str]:
        """
        Submit a stack for review.

        Args:
            cwd: Repository directory
            branch: Any branch of the stack to submit (defaults to the current one)
            draft: Open review requests as drafts
            extra_args: Additional arguments for the submit command

        Returns:
            Review URLs reported by the tool

        Raises:
            StackToolError: If submission fails
        """
        args = ['stack', 'submit', '--fill']
        if draft:
            args.append('--draft')
        if branch:
            args.extend(['--branch', branch])
        args.extend(extra_args or [])

        output = await self._run(args, cwd, timeout=self.SUBMIT_TIMEOUT)
        urls = extract_result_urls(output)
        logger.info(f"Submitted stack{f' from {branch}' if branch else ''}: {len(urls)} review URLs")
        return urls
