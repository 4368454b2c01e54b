"""
Tests for metrics retention cleanup
"""

from sqlalchemy import func, select, update

from conftest import add_metric, ago
from tasktrack import db
from tasktrack.models import MetricsRetention, ProcessMetric, TaskRun
from tasktrack.services import query, retention, tracking


def _finish(handle, days_ago):
    tracking.complete_run(handle)
    with db.session_scope() as session:
        session.execute(
            update(TaskRun).where(TaskRun.run_id == handle.run_id).values(end_time=ago(days=days_ago))
        )


def _metric_count(run_id):
    with db.session_scope() as session:
        return session.execute(
            select(func.count(ProcessMetric.metric_id)).where(ProcessMetric.run_id == run_id)
        ).scalar_one()


def test_old_runs_purged_recent_kept(registered):
    old = tracking.start_run("PREP", "load_data")
    recent = tracking.start_run("PREP", "load_data")
    for handle in (old, recent):
        for minutes in (3, 2, 1):
            add_metric(handle.run_id, ago(minutes=minutes), cpu_percent=5.0)
    _finish(old, 31)
    _finish(recent, 29)

    results = retention.cleanup(retention_days=30)

    assert [r.run_id for r in results] == [old.run_id]
    assert results[0].deleted is True
    assert results[0].metrics_count == 3
    assert _metric_count(old.run_id) == 0
    assert _metric_count(recent.run_id) == 3
    # the run itself survives
    assert query.get_run(old.run_id).status == "COMPLETED"

    with db.session_scope() as session:
        row = session.get(MetricsRetention, old.run_id)
        assert row.metrics_deleted is True
        assert row.metrics_count == 3
        assert row.deleted_at is not None


def test_cleanup_is_idempotent(registered):
    old = tracking.start_run("PREP", "load_data")
    add_metric(old.run_id, ago(minutes=1))
    _finish(old, 40)

    assert len(retention.cleanup(retention_days=30)) == 1
    assert retention.cleanup(retention_days=30) == []


def test_active_runs_never_purged(registered):
    active = tracking.start_run("PREP", "load_data")
    add_metric(active.run_id, ago(minutes=1))
    with db.session_scope() as session:
        session.execute(
            update(TaskRun).where(TaskRun.run_id == active.run_id).values(start_time=ago(days=90))
        )
    assert retention.cleanup(retention_days=30) == []
    assert _metric_count(active.run_id) == 1


def test_dry_run_deletes_nothing(registered):
    old = tracking.start_run("PREP", "load_data")
    add_metric(old.run_id, ago(minutes=2))
    add_metric(old.run_id, ago(minutes=1))
    _finish(old, 31)

    results = retention.cleanup(retention_days=30, dry_run=True)
    assert len(results) == 1
    assert results[0].deleted is False
    assert results[0].metrics_count == 2
    assert _metric_count(old.run_id) == 2


def test_run_without_retention_row_is_eligible(registered):
    """Runs made terminal outside the tracking API still get cleaned."""
    handle = tracking.start_run("PREP", "load_data")
    add_metric(handle.run_id, ago(minutes=1))
    with db.session_scope() as session:
        session.execute(
            update(TaskRun).where(TaskRun.run_id == handle.run_id)
            .values(status="FAILED", end_time=ago(days=45))
        )
    results = retention.cleanup(retention_days=30)
    assert [r.run_id for r in results] == [handle.run_id]
