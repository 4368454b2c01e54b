"""
Read-side queries over the tracking tables and views.
"""
import logging
import socket
from typing import List, Optional

from sqlalchemy import func, select, text

from tasktrack import db
from tasktrack.config import get_settings
from tasktrack.models import ProcessMetric, ReporterStatus, Stage, SubtaskProgress, Task, TaskRun
from tasktrack.schemas.query import (
    ProcessMetricRecord, ReporterInfo, RunInfo, RunWithMetrics, StageInfo, SubtaskInfo,
    TaskHistoryEntry, TaskStatus,
)
from tasktrack.status import ACTIVE_STATUSES

logger = logging.getLogger("tasktrack.query")


def _view_query(view: str, filters: dict, order_by: str, limit: Optional[int]):
    clauses = []
    params = {}
    for column, value in filters.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            names = []
            for i, item in enumerate(value):
                params[f"{column}_{i}"] = item
                names.append(f":{column}_{i}")
            clauses.append(f"{column} IN ({', '.join(names)})")
        else:
            params[column] = value
            clauses.append(f"{column} = :{column}")
    sql = f"SELECT * FROM {view}"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += f" ORDER BY {order_by}"
    if limit:
        sql += " LIMIT :limit"
        params["limit"] = int(limit)
    return text(sql), params


def metrics_state(age_seconds: Optional[float], stale_after: Optional[float] = None) -> str:
    """'fresh' for a recent snapshot; 'unknown' when absent or stale."""
    stale_after = get_settings().metrics_stale_seconds if stale_after is None else stale_after
    if age_seconds is None or age_seconds > stale_after:
        return "unknown"
    return "fresh"


def get_runs_with_metrics(
    hostname: Optional[str] = None,
    status=None,
    run_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[RunWithMetrics]:
    """Each run's current state with its most recent metrics snapshot and its age."""
    if isinstance(status, str):
        status = [status]
    stmt, params = _view_query(
        "task_runs_with_latest_metrics",
        {"hostname": hostname, "status": status, "run_id": run_id},
        "start_time DESC",
        limit,
    )
    stale_after = get_settings().metrics_stale_seconds
    with db.session_scope() as session:
        rows = session.execute(stmt, params).mappings().all()
    results = []
    for row in rows:
        item = RunWithMetrics.model_validate(dict(row))
        item.metrics_state = metrics_state(item.metrics_age_seconds, stale_after)
        results.append(item)
    return results


def get_task_status(
    stage: Optional[str] = None,
    task: Optional[str] = None,
    status=None,
    limit: Optional[int] = None,
) -> List[TaskStatus]:
    """Latest run per registered task, including tasks that never ran."""
    if isinstance(status, str):
        status = [status]
    stmt, params = _view_query(
        "current_task_status",
        {"stage_name": stage, "task_name": task, "status": status},
        "stage_order, stage_name, task_order, task_name",
        limit,
    )
    with db.session_scope() as session:
        rows = session.execute(stmt, params).mappings().all()
    return [TaskStatus.model_validate(dict(row)) for row in rows]


def get_active_tasks(hostname: Optional[str] = None) -> List[TaskStatus]:
    stmt, params = _view_query("active_tasks", {"hostname": hostname}, "start_time", None)
    with db.session_scope() as session:
        rows = session.execute(stmt, params).mappings().all()
    return [TaskStatus.model_validate(dict(row)) for row in rows]


def get_run(run_id: str) -> Optional[RunInfo]:
    with db.session_scope() as session:
        run = session.get(TaskRun, run_id)
        return RunInfo.model_validate(run) if run is not None else None


def get_subtask_progress(run_id: str) -> List[SubtaskInfo]:
    with db.session_scope() as session:
        rows = session.execute(
            select(SubtaskProgress)
            .where(SubtaskProgress.run_id == run_id)
            .order_by(SubtaskProgress.subtask_number)
        ).scalars().all()
        return [SubtaskInfo.model_validate(r) for r in rows]


def get_stages() -> List[StageInfo]:
    with db.session_scope() as session:
        rows = session.execute(
            select(Stage, func.count(Task.task_id).label("task_count"))
            .outerjoin(Task, Task.stage_id == Stage.stage_id)
            .group_by(Stage.stage_id)
            .order_by(Stage.stage_order, Stage.stage_name)
        ).all()
        result = []
        for stage, task_count in rows:
            info = StageInfo.model_validate(stage)
            info.task_count = task_count
            result.append(info)
        return result


def get_task_history(stage: Optional[str] = None, task: Optional[str] = None,
                     limit: int = 100) -> List[TaskHistoryEntry]:
    """Runs newest first, optionally restricted to a stage and/or task."""
    d = db.get_dialect()
    duration = (
        d.seconds_since(TaskRun.start_time) - func.coalesce(d.seconds_since(TaskRun.end_time), 0)
    )
    stmt = (
        select(TaskRun, Stage.stage_name, Task.task_name, duration.label("duration_seconds"))
        .join(Task, Task.task_id == TaskRun.task_id)
        .join(Stage, Stage.stage_id == Task.stage_id)
    )
    if stage is not None:
        stmt = stmt.where(Stage.stage_name == stage)
    if task is not None:
        stmt = stmt.where(Task.task_name == task)
    stmt = stmt.order_by(TaskRun.start_time.desc()).limit(limit)
    with db.session_scope() as session:
        rows = session.execute(stmt).all()
        history = []
        for run, stage_name, task_name, duration_seconds in rows:
            entry = TaskHistoryEntry.model_validate({
                **RunInfo.model_validate(run).model_dump(),
                "stage_name": stage_name,
                "task_name": task_name,
                "duration_seconds": duration_seconds,
            })
            history.append(entry)
        return history


def get_process_metrics(run_id: str, limit: int = 100) -> List[ProcessMetricRecord]:
    """Metrics time series for a run, newest first."""
    with db.session_scope() as session:
        rows = session.execute(
            select(ProcessMetric)
            .where(ProcessMetric.run_id == run_id)
            .order_by(ProcessMetric.timestamp.desc(), ProcessMetric.metric_id.desc())
            .limit(limit)
        ).scalars().all()
        return [ProcessMetricRecord.model_validate(r) for r in rows]


def get_reporter_status(hostname: Optional[str] = None) -> Optional[ReporterInfo]:
    """Reporter row for a host (default: this one) with its heartbeat age on the database clock."""
    hostname = hostname or socket.gethostname()
    d = db.get_dialect()
    settings = get_settings()
    with db.session_scope() as session:
        row = session.execute(
            select(ReporterStatus, d.seconds_since(ReporterStatus.last_heartbeat).label("age"))
            .where(ReporterStatus.hostname == hostname)
        ).one_or_none()
        if row is None:
            return None
        status, age = row
        return ReporterInfo(
            hostname=status.hostname,
            process_id=status.process_id,
            started_at=status.started_at,
            last_heartbeat=status.last_heartbeat,
            version=status.version,
            shutdown_requested=bool(status.shutdown_requested),
            heartbeat_age_seconds=age,
            is_alive=age is not None and age < settings.reporter_stale_seconds,
        )


def get_active_run_count(hostname: Optional[str] = None) -> int:
    stmt = select(func.count(TaskRun.run_id)).where(TaskRun.status.in_(ACTIVE_STATUSES))
    if hostname is not None:
        stmt = stmt.where(TaskRun.hostname == hostname)
    with db.session_scope() as session:
        return session.execute(stmt).scalar_one()
