"""
Tests for the atomic item counter
"""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from tasktrack.errors import InvalidArgumentError
from tasktrack.services import counters, query, tracking
from tasktrack.services.counters import subtask_percent


def test_subtask_percent():
    assert subtask_percent(5, 10) == 50.0
    assert subtask_percent(12, 10) == 100.0
    assert subtask_percent(3, 0) is None
    assert subtask_percent(None, 10) is None


def test_increment_moves_subtask_to_running(run):
    tracking.start_subtask(run, "download", items_total=10)
    assert counters.increment(run)
    sub = query.get_subtask_progress(run.run_id)[0]
    assert sub.status == "RUNNING"
    assert sub.items_complete == 1


def test_increment_with_delta_and_bare_run_id(run):
    tracking.start_subtask(run, "download", number=2)
    assert counters.increment(run.run_id, subtask_number=2, delta=5)
    assert query.get_subtask_progress(run.run_id)[0].items_complete == 5


def test_concurrent_increments_are_not_lost(run):
    """100 increments from 10 threads all land."""
    tracking.start_subtask(run, "parallel", items_total=100)

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(lambda _: counters.increment(run.run_id, subtask_number=1), range(100)))

    assert all(results)
    sub = query.get_subtask_progress(run.run_id)[0]
    assert sub.items_complete == 100
    assert sub.status == "RUNNING"


def test_increment_after_complete_still_counts(run):
    tracking.start_subtask(run, "download", items_total=2)
    tracking.complete_subtask(run)
    assert counters.increment(run)
    sub = query.get_subtask_progress(run.run_id)[0]
    assert sub.status == "COMPLETED"
    assert sub.items_complete == 3


def test_increment_missing_subtask_returns_false(run):
    assert counters.increment(run.run_id, subtask_number=9) is False


def test_invalid_arguments(run):
    with pytest.raises(InvalidArgumentError):
        counters.increment(run.run_id)
    with pytest.raises(InvalidArgumentError):
        counters.increment(run, subtask_number=1, delta=0)
    with pytest.raises(InvalidArgumentError):
        counters.increment("", subtask_number=1)


def test_lock_conflict_is_retried(run):
    tracking.start_subtask(run, "download")
    real_scope = counters.db.session_scope
    calls = {"n": 0}

    def flaky_scope():
        calls["n"] += 1
        if calls["n"] < 3:
            raise OperationalError("UPDATE", {}, Exception("database is locked"))
        return real_scope()

    with patch("tasktrack.services.counters.db.session_scope", side_effect=flaky_scope), \
            patch("tasktrack.services.counters.time.sleep") as sleep:
        assert counters.increment(run)

    assert calls["n"] == 3
    assert sleep.call_count == 2
    assert query.get_subtask_progress(run.run_id)[0].items_complete == 1


def test_non_lock_error_is_swallowed(run):
    tracking.start_subtask(run, "download")
    with patch("tasktrack.services.counters.db.session_scope",
               side_effect=OperationalError("UPDATE", {}, Exception("disk I/O error"))):
        assert counters.increment(run) is False
