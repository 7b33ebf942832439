"""
Execution Plan Builder
======================

Builds execution plans from validated tasks: execution layers, per-task run
state, and a check for files a task mentions but does not declare.
"""

import re
import logging
from typing import List, Dict, Any, Optional, Set

from taskstack.config import RunOptions
from taskstack.errors import PlanValidationError
from taskstack.models import (
    ExecutionPlan,
    ExecutionTask,
    StrategyName,
    Task,
    VcsMode,
    normalize_path,
)
from taskstack.parallel.graph_validator import GraphValidator, ValidationResult

logger = logging.getLogger(__name__)


class ExecutionPlanBuilder:
    """
    Builds execution plans for runs.

    Uses GraphValidator to compute layers and reject invalid graphs, and
    scans task text for file references missing from the declared footprint.
    """

    # Patterns for detecting file references in task descriptions and prompts
    # IMPORTANT: These must be specific to avoid false positives from common words
    # like "Node.js", "React.js", "SQLite", etc.
    FILE_PATTERNS = [
        r'`([a-zA-Z0-9_/\-\.]+\.[a-zA-Z]+)`',  # `path/to/file.ext` (backtick-quoted)
        r'"([a-zA-Z0-9_/\-\.]+/[a-zA-Z0-9_/\-\.]+\.[a-zA-Z]+)"',  # "path/to/file.ext" (must have path separator)
        r"'([a-zA-Z0-9_/\-\.]+/[a-zA-Z0-9_/\-\.]+\.[a-zA-Z]+)'",  # 'path/to/file.ext' (must have path separator)
        r'\b((?:src|lib|server|client|routes|components|services|middleware|migrations|utils|hooks|api|core|tests|schema)/[a-zA-Z0-9_/\-\.]+\.[a-zA-Z]+)',  # Explicit path prefixes
    ]

    # Words to exclude from file detection (common false positives)
    FILE_EXCLUSIONS = {
        'node.js', 'react.js', 'vue.js', 'next.js', 'express.js',
    }

    def __init__(self, validator: Optional[GraphValidator] = None):
        self.validator = validator or GraphValidator()

    def validate(self, tasks: List[Task]) -> ValidationResult:
        """
        Validate tasks and add undeclared-file warnings.

        Args:
            tasks: Plan tasks

        Returns:
            ValidationResult from the graph validator, plus warnings
        """
        validation = self.validator.validate(tasks)
        for task in tasks:
            undeclared = self.find_undeclared_files(task)
            if undeclared:
                validation.warnings.append(
                    f"Task {task.id} mentions files it does not declare: {', '.join(sorted(undeclared))}"
                )
        return validation

    def build_plan(
        self,
        tasks: List[Task],
        options: RunOptions,
        validation: Optional[ValidationResult] = None
    ) -> ExecutionPlan:
        """
        Build an execution plan.

        Args:
            tasks: Plan tasks
            options: Run options (retry budget, isolation mode, mode)
            validation: Result of validate() for the same tasks (computed if omitted)

        Returns:
            ExecutionPlan with every task pending

        Raises:
            PlanValidationError: If the task graph is invalid
        """
        if validation is None:
            validation = self.validate(tasks)
        if not validation.valid:
            raise PlanValidationError(validation.errors)

        execution_tasks: Dict[str, ExecutionTask] = {
            task.id: ExecutionTask.from_task(task, max_retries=options.max_retries)
            for task in tasks
        }
        vcs_mode = options.vcs_mode
        if vcs_mode == VcsMode.WORKTREE and options.strategy in (StrategyName.STACKED, StrategyName.HYBRID):
            vcs_mode = VcsMode.STACKED

        plan = ExecutionPlan(
            tasks=execution_tasks,
            execution_layers=[list(layer) for layer in validation.layers],
            vcs_mode=vcs_mode,
            mode=options.effective_mode,
        )
        logger.info(f"Built plan {plan.id}: {plan.total_tasks} tasks in {len(plan.execution_layers)} layers")
        return plan

    def find_undeclared_files(self, task: Task) -> Set[str]:
        """
        Files referenced in a task's text but absent from touches/produces.

        Args:
            task: Task to inspect

        Returns:
            Set of normalized paths
        """
        text = f"{task.description} {task.prompt}"
        declared = task.footprint()
        return {f for f in self._extract_file_references(text) if f not in declared}

    def _extract_file_references(self, text: str) -> Set[str]:
        """
        Extract file path references from text.

        Uses conservative pattern matching to avoid false positives from
        common technology names (Node.js, React.js, etc.).

        Args:
            text: Text to analyze

        Returns:
            Set of referenced file paths
        """
        files: Set[str] = set()

        for pattern in self.FILE_PATTERNS:
            for match in re.findall(pattern, text):
                file_path = normalize_path(match)

                if file_path.lower().startswith(('http', 'www')):
                    continue
                if file_path.lower() in self.FILE_EXCLUSIONS:
                    continue
                if '/' in file_path or pattern.startswith(r'`'):
                    files.add(file_path)

        return files

    def validate_plan(self, plan: ExecutionPlan) -> Dict[str, Any]:
        """
        Check a built plan's layering.

        Args:
            plan: ExecutionPlan to check

        Returns:
            Dict with "valid" and a list of "issues"
        """
        issues = []
        seen: Dict[str, int] = {}

        for index, layer in enumerate(plan.execution_layers):
            if not layer:
                issues.append({"type": "empty_layer", "layer": index, "message": "Layer has no tasks"})
            for task_id in layer:
                if task_id in seen:
                    issues.append({
                        "type": "duplicate_task",
                        "task_id": task_id,
                        "message": f"Task {task_id} appears in layers {seen[task_id]} and {index}",
                    })
                seen[task_id] = index

        for task_id, task in plan.tasks.items():
            if task_id not in seen:
                issues.append({"type": "unscheduled_task", "task_id": task_id, "message": f"Task {task_id} is in no layer"})
                continue
            for dep_id in task.requires:
                if seen.get(dep_id, len(plan.execution_layers)) >= seen[task_id]:
                    issues.append({
                        "type": "layer_order",
                        "task_id": task_id,
                        "message": f"Task {task_id} is not in a later layer than its requirement {dep_id}",
                    })

        return {"valid": len(issues) == 0, "issues": issues}
