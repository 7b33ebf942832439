"""
Parallel Execution Module
==========================

Infrastructure for running a plan's tasks concurrently using git worktrees,
dependency-based layering and stacked branches.

Main Components:
- GraphValidator: Validates the task graph and computes execution layers
- TaskOrchestrator: Drives tasks through their lifecycle with retries
- IsolationEngine: Manages worktrees, task branches and the branch stack
- ExecutionEngine: Runs a plan end to end and produces an exit code

Usage:
    from taskstack.parallel import ExecutionEngine

    engine = ExecutionEngine(config)
    report = await engine.run(tasks, options)
"""

from taskstack.parallel.graph_validator import GraphValidator
from taskstack.parallel.isolation_engine import IsolationEngine
from taskstack.parallel.task_orchestrator import TaskOrchestrator
from taskstack.parallel.execution_engine import ExecutionEngine

__all__ = [
    'GraphValidator',
    'IsolationEngine',
    'TaskOrchestrator',
    'ExecutionEngine',
]
