"""
Retention of per-run process metrics.

A run's metrics snapshots are deleted once the run has been terminal for
longer than the retention window; the run and its subtasks are kept.
"""
import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import delete, false, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tasktrack import db
from tasktrack.config import get_settings
from tasktrack.models import MetricsRetention, ProcessMetric, TaskRun
from tasktrack.schemas.query import CleanupResult
from tasktrack.services.prometheus_metrics import prometheus_metrics
from tasktrack.status import TERMINAL_RUN_STATUSES

logger = logging.getLogger("tasktrack.retention")


def schedule_retention(session: Session, run_id: str, retention_days: Optional[int] = None) -> None:
    """Record when a terminal run's metrics become eligible for deletion (insert-or-ignore)."""
    days = retention_days if retention_days is not None else get_settings().retention_days
    d = db.get_dialect()
    session.execute(d.insert_ignore(
        MetricsRetention.__table__,
        {
            "run_id": run_id,
            "task_completed_at": d.now(),
            "metrics_delete_after": d.days_from_now(days),
            "metrics_deleted": False,
        },
        ["run_id"],
    ))


def _eligible_runs(session: Session, days: int):
    d = db.get_dialect()
    metric_count = (
        select(func.count(ProcessMetric.metric_id))
        .where(ProcessMetric.run_id == TaskRun.run_id)
        .scalar_subquery()
    )
    stmt = (
        select(TaskRun.run_id, TaskRun.end_time, metric_count.label("metrics_count"))
        .outerjoin(MetricsRetention, MetricsRetention.run_id == TaskRun.run_id)
        .where(
            TaskRun.status.in_(TERMINAL_RUN_STATUSES),
            TaskRun.end_time.is_not(None),
            d.older_than_days(TaskRun.end_time, days),
            or_(MetricsRetention.run_id.is_(None), MetricsRetention.metrics_deleted == false()),
        )
        .order_by(TaskRun.end_time)
    )
    return session.execute(stmt).all()


def _purge_run(run_id: str, end_time, days: int) -> int:
    d = db.get_dialect()
    with db.session_scope() as session:
        result = session.execute(
            delete(ProcessMetric)
            .where(ProcessMetric.run_id == run_id)
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount or 0
        session.execute(d.upsert(
            MetricsRetention.__table__,
            {
                "run_id": run_id,
                "task_completed_at": end_time,
                "metrics_delete_after": end_time + timedelta(days=days) if end_time else None,
                "metrics_deleted": True,
                "deleted_at": d.now(),
                "metrics_count": deleted,
            },
            ["run_id"],
            update_columns=["metrics_deleted", "deleted_at", "metrics_count"],
        ))
    return deleted


def cleanup(retention_days: Optional[int] = None, dry_run: bool = False) -> List[CleanupResult]:
    """Delete metrics of runs that ended more than retention_days ago.

    Each run is handled in its own transaction so a failure on one run does
    not roll back the others. With dry_run the eligible runs and their metric
    counts are returned and nothing is deleted.
    """
    days = retention_days if retention_days is not None else get_settings().retention_days
    with db.session_scope() as session:
        candidates = _eligible_runs(session, days)

    results = []
    for row in candidates:
        if dry_run:
            results.append(CleanupResult(run_id=row.run_id, end_time=row.end_time,
                                         metrics_count=row.metrics_count or 0, deleted=False))
            continue
        try:
            deleted = _purge_run(row.run_id, row.end_time, days)
        except SQLAlchemyError as e:
            logger.error("metrics cleanup failed for run", extra={
                "component": "retention", "run_id": row.run_id, "error": str(e)})
            prometheus_metrics.increment_store_errors("cleanup")
            continue
        prometheus_metrics.increment_metrics_rows_deleted(deleted)
        results.append(CleanupResult(run_id=row.run_id, end_time=row.end_time,
                                     metrics_count=deleted, deleted=True))

    logger.info("metrics cleanup finished", extra={
        "component": "retention",
        "event": "cleanup",
        "dry_run": dry_run,
        "runs": len(results),
        "rows": sum(r.metrics_count for r in results),
        "retention_days": days,
    })
    return results
