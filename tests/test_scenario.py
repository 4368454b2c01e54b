"""
End-to-end pipeline scenario against a SQLite store
"""

import time
from concurrent.futures import ThreadPoolExecutor

from tasktrack.services import counters, query, retention, tracking
from tasktrack.services.collector import MetricsCollector
from tasktrack.services.reporter import ProcessReporter


def test_pipeline_run_is_tracked_and_cleaned(store):
    tracking.register_task("INGEST", "fetch", task_type="python", stage_order=1, task_order=1)
    tracking.register_task("INGEST", "parse", task_type="python", stage_order=1, task_order=2)

    run = tracking.start_run("INGEST", "fetch", total_subtasks=2, version="1.2.3", git_commit="abc123")
    reporter = ProcessReporter(store, hostname=run.hostname, collector=MetricsCollector())
    assert reporter.start().started

    tracking.start_subtask(run, "download", items_total=50)
    with ThreadPoolExecutor(max_workers=5) as pool:
        list(pool.map(lambda _: counters.increment(run), range(50)))
    reporter.collect_once()
    time.sleep(0.01)
    tracking.complete_subtask(run)

    tracking.start_subtask(run, "verify", items_total=1)
    reporter.collect_once()
    tracking.complete_subtask(run, message="verified")
    tracking.update_run(run, percent=90, message="wrapping up")
    tracking.complete_run(run)

    subtasks = query.get_subtask_progress(run.run_id)
    assert [(s.subtask_name, s.status, s.items_complete) for s in subtasks] == [
        ("download", "COMPLETED", 50),
        ("verify", "COMPLETED", 1),
    ]

    status = {r.task_name: r for r in query.get_task_status(stage="INGEST")}
    assert status["fetch"].status == "COMPLETED"
    assert status["fetch"].overall_percent_complete == 100
    assert status["parse"].status is None

    metrics = query.get_process_metrics(run.run_id)
    assert len(metrics) == 2
    assert all(m.is_alive and not m.collection_error for m in metrics)
    assert query.get_run(run.run_id).memory_mb > 0

    # terminal runs are no longer sampled
    assert reporter.collect_once() == []

    time.sleep(0.01)
    results = retention.cleanup(retention_days=0)
    assert [(r.run_id, r.metrics_count) for r in results] == [(run.run_id, 2)]
    assert query.get_process_metrics(run.run_id) == []
    assert query.get_run(run.run_id).status == "COMPLETED"

    reporter.deregister()
    assert query.get_reporter_status(run.hostname) is None
