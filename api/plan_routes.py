"""
Plan API Routes
===============

REST API endpoints for checking plans before running them.
Provides validation, metrics, dependency graph rendering, per-strategy
estimates and a listing of a repository's worktrees.
"""

from typing import List, Dict, Optional
import logging

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from taskstack.config import RunOptions
from taskstack.errors import GitCommandError
from taskstack.models import ExecutionMode
from taskstack.parallel.execution_engine import ExecutionEngine
from taskstack.parallel.graph_validator import GraphValidator
from taskstack.parallel.isolation_engine import IsolationEngine
from taskstack.plan_loader import TaskSpec

logger = logging.getLogger(__name__)

router = APIRouter(tags=["plans"])


# =============================================================================
# Request/Response Models
# =============================================================================

class PlanRequest(BaseModel):
    """Request model carrying a plan's tasks."""
    tasks: List[TaskSpec] = Field(..., description="Plan tasks")

    def to_tasks(self):
        return [spec.to_task() for spec in self.tasks]


class ConflictDetail(BaseModel):
    """Model for a file conflict between two tasks."""
    task_ids: List[str]
    paths: List[str]


class ValidationResponse(BaseModel):
    """Response model for plan validation."""
    valid: bool
    errors: List[str]
    warnings: List[str]
    cycles: List[List[str]]
    conflicts: List[ConflictDetail]
    layers: List[List[str]]


class MetricsResponse(BaseModel):
    """Response model for plan metrics."""
    task_count: int
    total_estimated_size: int
    total_duration: float
    average_duration: float
    critical_path_duration: float
    layer_count: int
    max_parallelization: int
    estimated_speedup: float
    parallelization_efficiency: float
    critical_path: List[str]


class GraphResponse(BaseModel):
    """Response model for a rendered dependency graph."""
    format: str
    diagram: str


class EstimateResponse(BaseModel):
    """Response model for per-strategy time estimates."""
    layers: List[List[str]]
    estimates: Dict[str, float]
    message: str


class WorktreeInfoResponse(BaseModel):
    """Response model for worktree information."""
    path: str
    branch: Optional[str] = None
    head: Optional[str] = None
    detached: bool = False


# =============================================================================
# API Endpoints
# =============================================================================

@router.post("/api/plans/validate", response_model=ValidationResponse)
async def validate_plan(request: PlanRequest):
    """
    Validate a plan's dependency graph.

    Reports cycles, missing dependencies and file conflicts between tasks
    that could run at the same time, plus the execution layers.
    """
    result = GraphValidator().validate(request.to_tasks())
    return ValidationResponse(
        valid=result.valid,
        errors=result.errors,
        warnings=result.warnings,
        cycles=[list(c) for c in result.cycles],
        conflicts=[ConflictDetail(task_ids=list(c.task_ids), paths=c.paths) for c in result.conflicts],
        layers=result.layers,
    )


@router.post("/api/plans/metrics", response_model=MetricsResponse)
async def plan_metrics(request: PlanRequest):
    """
    Compute plan metrics and the critical path.
    """
    validator = GraphValidator()
    tasks = request.to_tasks()
    metrics = validator.calculate_metrics(tasks)
    return MetricsResponse(**metrics.to_dict(), critical_path=validator.get_critical_path())


@router.post("/api/plans/graph", response_model=GraphResponse)
async def plan_graph(
    request: PlanRequest,
    format: str = Query("mermaid", description="Diagram format: 'mermaid' or 'ascii'")
):
    """
    Render the plan's dependency graph.
    """
    if format not in ("mermaid", "ascii"):
        raise HTTPException(status_code=400, detail=f"Unsupported format: {format}")

    validator = GraphValidator()
    validator.validate(request.to_tasks())
    diagram = validator.to_mermaid() if format == "mermaid" else validator.to_ascii()
    return GraphResponse(format=format, diagram=diagram)


@router.post("/api/plans/estimate", response_model=EstimateResponse)
async def estimate_plan(request: PlanRequest):
    """
    Estimate execution time per strategy without running anything.
    """
    engine = ExecutionEngine()
    report = await engine.run(request.to_tasks(), RunOptions(mode=ExecutionMode.PLAN))
    if not report.success:
        raise HTTPException(
            status_code=422,
            detail={
                "message": report.message,
                "errors": report.validation.errors if report.validation else [],
            },
        )
    return EstimateResponse(layers=report.layers, estimates=report.estimates, message=report.message)


@router.get("/api/repos/worktrees", response_model=List[WorktreeInfoResponse])
async def list_worktrees(path: str = Query(..., description="Path to a git repository")):
    """
    List all worktrees of a repository.
    """
    try:
        engine = IsolationEngine(repo_path=path)
        worktrees = await engine.list_worktrees()
        return [WorktreeInfoResponse(**wt) for wt in worktrees]
    except GitCommandError as e:
        logger.error(f"Failed to list worktrees: {e}")
        raise HTTPException(status_code=400, detail=str(e))
