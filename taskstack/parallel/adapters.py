"""
Task Execution Adapters
=======================

Contract between the orchestrator and whatever actually performs a task
(a coding agent CLI, a script, a test double).

Key Features:
- TaskExecutionAdapter: execute_task / stop_task interface
- CommandTaskExecutionAdapter: runs a configured command in the task worktree,
  streaming stdout/stderr lines as updates
- MockTaskExecutionAdapter: scripted outcomes for dry runs and tests
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set
import asyncio
import logging
import os

logger = logging.getLogger(__name__)

# Agents that stream JSON can emit very long single lines
STREAM_LIMIT = 16 * 1024 * 1024


@dataclass
class TaskExecutionRequest:
    """
    Everything an adapter needs to perform one task attempt.

    Attributes:
        task_id: Task ID
        title: Task title
        prompt: Instruction payload (enriched with failure detail on retries)
        files: Files the task declared (touches + produces)
        workdir: Working copy to operate in
        attempt: Attempt number (1-based)
        dry_run: True when no real work should happen
    """
    task_id: str
    title: str
    prompt: str
    files: List[str]
    workdir: str
    attempt: int = 1
    dry_run: bool = False


@dataclass
class StreamingUpdate:
    """Incremental output from a running task."""
    task_id: str
    type: str  # "stdout", "stderr" or "status"
    data: str
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class AdapterResult:
    """
    Outcome of one task attempt.

    Attributes:
        task_id: Task ID
        status: "completed", "failed" or "stopped"
        output: Captured output
        error: Failure detail (fed back into the prompt on retry)
        exit_code: Process exit code when the adapter runs a process
    """
    task_id: str
    status: str
    output: Optional[str] = None
    error: Optional[str] = None
    exit_code: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status == "completed"


UpdateCallback = Callable[[StreamingUpdate], None]


class TaskExecutionAdapter(ABC):
    """Performs task attempts on behalf of the orchestrator."""

    @abstractmethod
    async def execute_task(
        self,
        request: TaskExecutionRequest,
        on_update: Optional[UpdateCallback] = None
    ) -> AdapterResult:
        """
        Perform one attempt of a task in request.workdir.

        Implementations report failure through the returned status; raising
        is also treated as a failed attempt by the orchestrator.
        """

    async def stop_task(self, task_id: str) -> bool:
        """Stop a running attempt. Returns True if something was stopped."""
        return False


class CommandTaskExecutionAdapter(TaskExecutionAdapter):
    """
    Runs an external command (typically a coding agent CLI) per attempt.

    The command is an argv list; "{prompt}", "{task_id}" and "{workdir}"
    are substituted in each element.
    """

    def __init__(self, command: List[str], env: Optional[Dict[str, str]] = None, max_output_lines: int = 2000):
        if not command:
            raise ValueError("Agent command must not be empty")
        self.command = list(command)
        self.env = dict(env or {})
        self.max_output_lines = max_output_lines
        self._processes: Dict[str, asyncio.subprocess.Process] = {}
        self._stopped: Set[str] = set()

    def build_argv(self, request: TaskExecutionRequest) -> List[str]:
        argv = []
        for part in self.command:
            part = part.replace("{prompt}", request.prompt)
            part = part.replace("{task_id}", request.task_id)
            part = part.replace("{workdir}", request.workdir)
            argv.append(part)
        return argv

    async def execute_task(
        self,
        request: TaskExecutionRequest,
        on_update: Optional[UpdateCallback] = None
    ) -> AdapterResult:
        argv = self.build_argv(request)
        logger.info(f"Starting agent for task {request.task_id} in {request.workdir}")
        self._stopped.discard(request.task_id)

        env = {**os.environ, **self.env, 'TASKSTACK_TASK_ID': request.task_id}
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=request.workdir,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=STREAM_LIMIT
            )
        except FileNotFoundError:
            return AdapterResult(
                task_id=request.task_id,
                status="failed",
                error=f"Agent command not found: {argv[0]}",
            )

        self._processes[request.task_id] = process
        output_lines: List[str] = []
        error_lines: List[str] = []

        async def pump(stream, kind: str, sink: List[str]) -> None:
            async for raw in stream:
                line = raw.decode('utf-8', errors='replace').rstrip('\n')
                if len(sink) < self.max_output_lines:
                    sink.append(line)
                if on_update:
                    on_update(StreamingUpdate(task_id=request.task_id, type=kind, data=line))

        readers = [
            asyncio.ensure_future(pump(process.stdout, "stdout", output_lines)),
            asyncio.ensure_future(pump(process.stderr, "stderr", error_lines)),
        ]
        try:
            await asyncio.gather(*readers)
            returncode = await process.wait()
        finally:
            # The agent never outlives the attempt
            for reader in readers:
                reader.cancel()
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
            self._processes.pop(request.task_id, None)

        output = "\n".join(output_lines)
        if returncode == 0:
            return AdapterResult(task_id=request.task_id, status="completed", output=output, exit_code=0)

        status = "stopped" if request.task_id in self._stopped else "failed"
        stderr_tail = "\n".join(error_lines[-20:]) or f"exit code {returncode}"
        return AdapterResult(
            task_id=request.task_id,
            status=status,
            output=output,
            error=f"Agent exited with code {returncode}: {stderr_tail}",
            exit_code=returncode,
        )

    async def stop_task(self, task_id: str) -> bool:
        process = self._processes.get(task_id)
        if process is None or process.returncode is not None:
            return False
        logger.info(f"Stopping agent for task {task_id}")
        self._stopped.add(task_id)
        process.terminate()
        return True


class MockTaskExecutionAdapter(TaskExecutionAdapter):
    """
    Scripted adapter for dry runs and tests.

    Outcomes are given per task as a list, one entry per attempt (the last
    entry repeats): "success", "failure", "raise" or "hang".
    """

    def __init__(
        self,
        outcomes: Optional[Dict[str, List[str]]] = None,
        delay: float = 0.0,
        write_files: bool = False
    ):
        self.outcomes = outcomes or {}
        self.delay = delay
        self.write_files = write_files
        self.requests: List[TaskExecutionRequest] = []
        self.stopped: List[str] = []
        self.active = 0
        self.max_active = 0

    def _outcome_for(self, request: TaskExecutionRequest) -> str:
        script = self.outcomes.get(request.task_id)
        if not script:
            return "success"
        index = sum(1 for r in self.requests if r.task_id == request.task_id) - 1
        return script[min(index, len(script) - 1)]

    async def execute_task(
        self,
        request: TaskExecutionRequest,
        on_update: Optional[UpdateCallback] = None
    ) -> AdapterResult:
        self.requests.append(request)
        outcome = self._outcome_for(request)

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if on_update:
                on_update(StreamingUpdate(task_id=request.task_id, type="status", data="running"))

            if outcome == "hang":
                await asyncio.sleep(3600)
            if self.delay:
                await asyncio.sleep(self.delay)

            if outcome == "raise":
                raise RuntimeError(f"Adapter crashed on task {request.task_id}")
            if outcome == "failure":
                return AdapterResult(
                    task_id=request.task_id,
                    status="failed",
                    error=f"Simulated failure for task {request.task_id} (attempt {request.attempt})",
                    exit_code=1,
                )

            if self.write_files and not request.dry_run:
                self._write_files(request)

            return AdapterResult(
                task_id=request.task_id,
                status="completed",
                output=f"Completed {request.task_id}",
                exit_code=0,
            )
        finally:
            self.active -= 1

    def _write_files(self, request: TaskExecutionRequest) -> None:
        for relative in request.files or [f"{request.task_id}.txt"]:
            path = Path(request.workdir) / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'a', encoding='utf-8') as f:
                f.write(f"{request.task_id} attempt {request.attempt}\n")

    async def stop_task(self, task_id: str) -> bool:
        self.stopped.append(task_id)
        return True
