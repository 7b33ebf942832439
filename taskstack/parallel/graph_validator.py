"""
Graph Validator
===============

Validates a plan's dependency graph and partitions it into execution layers
using topological sorting (Kahn's algorithm).

Key Features:
- Detects circular dependencies (depth-first search with an on-stack set)
- Detects missing dependency references and malformed tasks
- Detects file conflicts between tasks that are not ordered by dependencies
- Computes deterministic execution layers (ties ordered by task ID)
- Computes plan metrics: critical path, speedup, parallelization efficiency
- Generates visualization (Mermaid, ASCII) for the validated graph
"""

from dataclasses import dataclass, field, asdict
from typing import List, Tuple, Dict, Any, Optional, Set
import logging
import re

from taskstack.models import Task

logger = logging.getLogger(__name__)

# Rough conversion of estimated size (lines of change) into seconds
SECONDS_PER_SIZE_UNIT = 2


@dataclass
class FileConflict:
    """
    Two unordered tasks that declare the same file.

    Attributes:
        task_ids: The conflicting pair, sorted
        paths: Shared normalized paths
    """
    task_ids: Tuple[str, str]
    paths: List[str]

    def describe(self) -> str:
        return f"File conflict between {self.task_ids[0]} and {self.task_ids[1]}: {', '.join(self.paths)}"

    def to_dict(self) -> Dict[str, Any]:
        return {'task_ids': list(self.task_ids), 'paths': list(self.paths)}


@dataclass
class ValidationResult:
    """
    Result of graph validation.

    Attributes:
        valid: True when there are no errors
        errors: Problems that make the plan non-executable
        warnings: Problems worth reporting that don't block execution
        cycles: Detected dependency cycles, each closed (first == last)
        conflicts: File conflicts between unordered tasks
        missing_dependencies: (task_id, unknown_requirement) pairs
        layers: Execution layers, computed best-effort even when invalid
    """
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    cycles: List[Tuple[str, ...]] = field(default_factory=list)
    conflicts: List[FileConflict] = field(default_factory=list)
    missing_dependencies: List[Tuple[str, str]] = field(default_factory=list)
    layers: List[List[str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'valid': self.valid,
            'errors': list(self.errors),
            'warnings': list(self.warnings),
            'cycles': [list(c) for c in self.cycles],
            'conflicts': [c.to_dict() for c in self.conflicts],
            'missing_dependencies': [list(m) for m in self.missing_dependencies],
            'layers': [list(layer) for layer in self.layers],
        }


@dataclass
class PlanMetrics:
    """
    Summary metrics for a plan.

    Durations are estimates derived from task sizes
    (size * SECONDS_PER_SIZE_UNIT).

    Attributes:
        task_count: Number of tasks
        total_estimated_size: Sum of task sizes
        total_duration: Estimated serial duration in seconds
        average_duration: Estimated average task duration in seconds
        critical_path_duration: Estimated duration of the longest dependency chain
        layer_count: Number of execution layers
        max_parallelization: Size of the widest layer
        estimated_speedup: Serial duration / critical path duration
        parallelization_efficiency: 1 - layers / tasks
    """
    task_count: int
    total_estimated_size: int
    total_duration: float
    average_duration: float
    critical_path_duration: float
    layer_count: int
    max_parallelization: int
    estimated_speedup: float
    parallelization_efficiency: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parallelization_efficiency(task_count: int, layer_count: int) -> float:
    """
    Fraction of layering saved compared to running every task serially.

    0.0 for a fully serial plan (one task per layer), approaching 1.0 as
    more tasks share each layer. Strictly increasing in task_count / layer_count.
    """
    if task_count <= 0 or layer_count <= 0:
        return 0.0
    return 1.0 - (layer_count / task_count)


class GraphValidator:
    """
    Validates task graphs and computes execution layers.

    Pure: performs no I/O. The last validated graph is kept for
    visualization and critical path queries.
    """

    def __init__(self):
        self.last_result: Optional[ValidationResult] = None
        self.last_tasks: Dict[str, Task] = {}
        self.last_adjacency: Dict[str, List[str]] = {}

    def validate(self, tasks: List[Task]) -> ValidationResult:
        """
        Validate tasks and compute execution layers.

        Args:
            tasks: Plan tasks

        Returns:
            ValidationResult with errors, warnings and layers
        """
        errors: List[str] = []
        warnings: List[str] = []

        if not tasks:
            logger.info("No tasks provided, returning empty result")
            result = ValidationResult(valid=True, warnings=["Plan has no tasks"])
            self._remember(result, {}, {})
            return result

        task_map: Dict[str, Task] = {}
        for position, task in enumerate(tasks):
            if not task.id or not task.id.strip():
                errors.append(f"Task at position {position} has an empty ID")
                continue
            if task.id in task_map:
                errors.append(f"Duplicate task ID: {task.id}")
                continue
            task_map[task.id] = task

            if not task.title or not task.title.strip():
                errors.append(f"Task {task.id} has no title")
            if task.estimated_size < 0:
                errors.append(f"Task {task.id} has a negative size estimate ({task.estimated_size})")
            if not task.prompt.strip():
                warnings.append(f"Task {task.id} has no prompt")

        # Dependency edges: adjacency[dep_id] = tasks that require dep_id
        missing: List[Tuple[str, str]] = []
        adjacency: Dict[str, List[str]] = {tid: [] for tid in task_map}
        requires: Dict[str, List[str]] = {}
        for task_id in sorted(task_map):
            known = []
            for dep_id in dict.fromkeys(task_map[task_id].requires):
                if dep_id not in task_map:
                    missing.append((task_id, dep_id))
                    errors.append(f"Task {task_id} requires unknown task {dep_id}")
                    logger.warning(f"Task {task_id} has invalid dependency: {dep_id}")
                    continue
                known.append(dep_id)
                adjacency[dep_id].append(task_id)
            requires[task_id] = sorted(known)

        cycles = self._detect_cycles(requires)
        for cycle in cycles:
            errors.append(f"Circular dependency: {' -> '.join(cycle)}")

        ancestors = self._compute_ancestors(requires)
        conflicts = self._detect_conflicts(task_map, ancestors)
        for conflict in conflicts:
            errors.append(conflict.describe())

        # Tasks on or downstream of a cycle are left out of the layers
        layers = self._compute_layers(requires, adjacency)

        if len(task_map) > 1:
            for task_id in sorted(task_map):
                if not requires[task_id] and not adjacency[task_id]:
                    warnings.append(f"Task {task_id} has no dependencies and no dependents")

        result = ValidationResult(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            cycles=cycles,
            conflicts=conflicts,
            missing_dependencies=missing,
            layers=layers,
        )

        if result.valid:
            logger.info(f"Validated {len(task_map)} tasks into {len(layers)} layers")
            logger.info(f"Layer sizes: {[len(layer) for layer in layers]}")
        else:
            logger.warning(f"Plan validation failed with {len(errors)} errors")

        self._remember(result, task_map, adjacency)
        return result

    def _remember(self, result: ValidationResult, task_map: Dict[str, Task], adjacency: Dict[str, List[str]]) -> None:
        self.last_result = result
        self.last_tasks = task_map
        self.last_adjacency = adjacency

    def _detect_cycles(self, requires: Dict[str, List[str]]) -> List[Tuple[str, ...]]:
        """
        Detect circular dependency cycles using DFS.

        Args:
            requires: Task ID -> sorted list of known requirements

        Returns:
            List of closed cycles, e.g. ("T1", "T2", "T1")
        """
        cycles: List[Tuple[str, ...]] = []
        visited: Set[str] = set()
        rec_stack: Set[str] = set()

        def dfs(task_id: str, path: List[str]) -> None:
            visited.add(task_id)
            rec_stack.add(task_id)
            path.append(task_id)

            for dep_id in requires.get(task_id, []):
                if dep_id not in visited:
                    dfs(dep_id, path)
                elif dep_id in rec_stack:
                    cycle_start = path.index(dep_id)
                    cycle = tuple(path[cycle_start:] + [dep_id])
                    if cycle not in cycles:
                        cycles.append(cycle)

            path.pop()
            rec_stack.remove(task_id)

        for task_id in sorted(requires):
            if task_id not in visited:
                dfs(task_id, [])

        if cycles:
            logger.warning(f"Circular dependencies detected: {cycles}")
        return cycles

    def _compute_ancestors(self, requires: Dict[str, List[str]]) -> Dict[str, Set[str]]:
        """Transitive requirements of every task (safe on cyclic graphs)."""
        ancestors: Dict[str, Set[str]] = {}
        for task_id in requires:
            seen: Set[str] = set()
            stack = list(requires[task_id])
            while stack:
                dep_id = stack.pop()
                if dep_id in seen:
                    continue
                seen.add(dep_id)
                stack.extend(requires.get(dep_id, []))
            ancestors[task_id] = seen
        return ancestors

    def _detect_conflicts(self, task_map: Dict[str, Task], ancestors: Dict[str, Set[str]]) -> List[FileConflict]:
        """
        Find pairs of tasks that share files without being ordered.

        Tasks connected by a dependency path in either direction never run
        concurrently and therefore never conflict.
        """
        footprints = {tid: task.footprint() for tid, task in task_map.items()}
        ids = sorted(task_map)
        conflicts = []

        for i, first in enumerate(ids):
            for second in ids[i + 1:]:
                if first in ancestors[second] or second in ancestors[first]:
                    continue
                shared = footprints[first] & footprints[second]
                if shared:
                    conflicts.append(FileConflict(task_ids=(first, second), paths=sorted(shared)))

        if conflicts:
            logger.warning(f"Detected {len(conflicts)} file conflicts")
        return conflicts

    def _compute_layers(self, requires: Dict[str, List[str]], adjacency: Dict[str, List[str]]) -> List[List[str]]:
        """Kahn's algorithm; each layer holds tasks whose requirements are all in earlier layers."""
        in_degree = {tid: len(deps) for tid, deps in requires.items()}
        layers = []
        queue = sorted(tid for tid, degree in in_degree.items() if degree == 0)

        while queue:
            layers.append(queue)
            next_queue = []
            for task_id in queue:
                for dependent_id in adjacency[task_id]:
                    in_degree[dependent_id] -= 1
                    if in_degree[dependent_id] == 0:
                        next_queue.append(dependent_id)
            queue = sorted(next_queue)

        return layers

    def calculate_metrics(self, tasks: List[Task], validation: Optional[ValidationResult] = None) -> PlanMetrics:
        """
        Compute plan metrics.

        Args:
            tasks: Plan tasks
            validation: Existing validation result for the same tasks (computed if omitted)

        Returns:
            PlanMetrics
        """
        if validation is None:
            validation = self.validate(tasks)

        task_map: Dict[str, Task] = {}
        for task in tasks:
            task_map.setdefault(task.id, task)

        task_count = len(task_map)
        sizes = {tid: max(task.estimated_size, 0) for tid, task in task_map.items()}
        total_size = sum(sizes.values())

        best, _ = self._longest_paths(task_map, validation.layers)
        critical_size = max(best.values(), default=0)

        layer_count = len(validation.layers)
        max_parallel = max((len(layer) for layer in validation.layers), default=0)

        metrics = PlanMetrics(
            task_count=task_count,
            total_estimated_size=total_size,
            total_duration=float(total_size * SECONDS_PER_SIZE_UNIT),
            average_duration=(total_size * SECONDS_PER_SIZE_UNIT / task_count) if task_count else 0.0,
            critical_path_duration=float(critical_size * SECONDS_PER_SIZE_UNIT),
            layer_count=layer_count,
            max_parallelization=max_parallel,
            estimated_speedup=(total_size / critical_size) if critical_size > 0 else 1.0,
            parallelization_efficiency=parallelization_efficiency(task_count, layer_count),
        )
        logger.debug(f"Plan metrics: {metrics}")
        return metrics

    def _longest_paths(
        self,
        task_map: Dict[str, Task],
        layers: List[List[str]]
    ) -> Tuple[Dict[str, int], Dict[str, Optional[str]]]:
        """
        Longest cumulative-size path ending at each layered task.

        Returns:
            (best size ending at task, predecessor on that path)
        """
        best: Dict[str, int] = {}
        prev: Dict[str, Optional[str]] = {}
        for layer in layers:
            for task_id in layer:
                task = task_map[task_id]
                best_dep = None
                best_size = 0
                for dep_id in sorted(set(task.requires)):
                    if dep_id in best and best[dep_id] > best_size:
                        best_size = best[dep_id]
                        best_dep = dep_id
                best[task_id] = best_size + max(task.estimated_size, 0)
                prev[task_id] = best_dep
        return best, prev

    def get_critical_path(self) -> List[str]:
        """
        Identify the longest dependency chain by cumulative size.

        Returns:
            Task IDs on the critical path, first to last
        """
        if not self.last_result or not self.last_tasks or not self.last_result.layers:
            return []

        best, prev = self._longest_paths(self.last_tasks, self.last_result.layers)
        if not best:
            return []

        # max() keeps the first maximum, so iterate in layer order for determinism
        ordered = [tid for layer in self.last_result.layers for tid in layer]
        end = max(ordered, key=lambda tid: best[tid])

        path = []
        current: Optional[str] = end
        while current is not None:
            path.append(current)
            current = prev[current]
        path.reverse()

        logger.info(f"Critical path length: {len(path)} tasks")
        return path

    def to_mermaid(self) -> str:
        """
        Generate a Mermaid flowchart of the last validated graph.

        Returns:
            Mermaid diagram string
        """
        if not self.last_result or not self.last_tasks:
            return "graph TD\n  Empty[No dependency graph available]"

        lines = ["graph TD"]
        layer_of = {tid: i for i, layer in enumerate(self.last_result.layers) for tid in layer}

        for task_id in sorted(self.last_tasks):
            title = self.last_tasks[task_id].title or f"Task {task_id}"
            title = title.replace('"', "'").replace('[', '(').replace(']', ')')
            if len(title) > 40:
                title = title[:37] + "..."
            node = _mermaid_id(task_id)
            if task_id in layer_of:
                lines.append(f'  {node}["{task_id}: {title}<br/>Layer {layer_of[task_id]}"]')
            else:
                lines.append(f'  {node}["{task_id}: {title}"]')

        for task_id in sorted(self.last_adjacency):
            for dependent_id in self.last_adjacency[task_id]:
                lines.append(f'  {_mermaid_id(task_id)} --> {_mermaid_id(dependent_id)}')

        for conflict in self.last_result.conflicts:
            first, second = conflict.task_ids
            lines.append(f'  {_mermaid_id(first)} -.-|conflict| {_mermaid_id(second)}')

        if self.last_result.cycles:
            lines.append('')
            lines.append('  %% Circular dependencies detected')
            for cycle in self.last_result.cycles:
                lines.append(f'  %% Cycle: {" -> ".join(cycle)}')

        return '\n'.join(lines)

    def to_ascii(self) -> str:
        """
        Generate an ASCII text representation of the last validated graph.

        Returns:
            ASCII diagram string
        """
        if not self.last_result or not self.last_tasks:
            return "No dependency graph available"

        lines = []
        lines.append("=" * 70)
        lines.append("EXECUTION LAYERS")
        lines.append("=" * 70)

        for layer_num, layer in enumerate(self.last_result.layers):
            lines.append(f"\nLAYER {layer_num} (can run in parallel):")
            lines.append("-" * 70)
            for task_id in layer:
                task = self.last_tasks[task_id]
                lines.append(f"  [{task_id}] {task.title}")
                lines.append(f"      Size: {task.estimated_size}")
                if task.requires:
                    lines.append(f"      Requires: {', '.join(task.requires)}")
                else:
                    lines.append("      Requires: None")

        if self.last_result.cycles:
            lines.append("\n" + "!" * 70)
            lines.append("CIRCULAR DEPENDENCIES DETECTED:")
            lines.append("!" * 70)
            for cycle in self.last_result.cycles:
                lines.append(f"  {' -> '.join(cycle)}")

        if self.last_result.conflicts:
            lines.append("\n" + "!" * 70)
            lines.append("FILE CONFLICTS:")
            lines.append("!" * 70)
            for conflict in self.last_result.conflicts:
                lines.append(f"  {conflict.describe()}")

        if self.last_result.missing_dependencies:
            lines.append("\n" + "!" * 70)
            lines.append("MISSING DEPENDENCIES:")
            lines.append("!" * 70)
            for task_id, dep_id in self.last_result.missing_dependencies:
                lines.append(f"  [{task_id}] requires unknown task {dep_id}")

        lines.append("\n" + "=" * 70)
        lines.append(f"Total: {len(self.last_tasks)} tasks in {len(self.last_result.layers)} layers")
        lines.append("=" * 70)

        return '\n'.join(lines)


def _mermaid_id(task_id: str) -> str:
    return "T_" + re.sub(r'\W', '_', task_id)
