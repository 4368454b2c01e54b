"""
Runs API: read-only view of runs, subtasks and process metrics
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query

from ..schemas.query import (
    ProcessMetricRecord, RunInfo, RunList, StageInfo, SubtaskInfo, TaskHistoryEntry, TaskStatus,
)
from ..services import query

logger = logging.getLogger("tasktrack.api")

router = APIRouter(tags=["Runs"])


@router.get("/runs", response_model=RunList, summary="Runs with their latest metrics")
def list_runs(
    hostname: Optional[str] = Query(None, description="Only runs attributed to this host"),
    status: Optional[List[str]] = Query(None, description="Filter by run status (repeatable)"),
    limit: int = Query(100, ge=1, le=1000),
):
    """
    Each run's current state joined with its most recent process metrics.

    `metrics_state` is `unknown` when no snapshot exists or the newest one is
    stale; consumers must not read that as zero usage.
    """
    runs = query.get_runs_with_metrics(hostname=hostname, status=status, limit=limit)
    return RunList(runs=runs, total=len(runs))


@router.get("/runs/active", response_model=List[TaskStatus], summary="Tasks currently running")
def active_runs(hostname: Optional[str] = Query(None)):
    return query.get_active_tasks(hostname=hostname)


@router.get("/runs/{run_id}", response_model=RunInfo)
def get_run(run_id: str):
    run = query.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@router.get("/runs/{run_id}/subtasks", response_model=List[SubtaskInfo])
def get_run_subtasks(run_id: str):
    if query.get_run(run_id) is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return query.get_subtask_progress(run_id)


@router.get("/runs/{run_id}/metrics", response_model=List[ProcessMetricRecord])
def get_run_metrics(run_id: str, limit: int = Query(100, ge=1, le=10000)):
    """Process metrics time series for a run, newest first."""
    if query.get_run(run_id) is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return query.get_process_metrics(run_id, limit=limit)


@router.get("/tasks/status", response_model=List[TaskStatus], summary="Latest run per task")
def task_status(
    stage: Optional[str] = Query(None),
    task: Optional[str] = Query(None),
    status: Optional[List[str]] = Query(None),
):
    return query.get_task_status(stage=stage, task=task, status=status)


@router.get("/tasks/history", response_model=List[TaskHistoryEntry])
def task_history(
    stage: Optional[str] = Query(None),
    task: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
):
    return query.get_task_history(stage=stage, task=task, limit=limit)


@router.get("/stages", response_model=List[StageInfo])
def stages():
    return query.get_stages()
