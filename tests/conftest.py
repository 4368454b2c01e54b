# tests/conftest.py
import os
from datetime import datetime, timedelta, timezone

import pytest

from tasktrack import db
from tasktrack.config import Settings
from tasktrack.models import ProcessMetric
from tasktrack.services import tracking


def utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ago(**kwargs) -> datetime:
    return utcnow_naive() - timedelta(**kwargs)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'tasktrack.db'}",
        reporter_interval_seconds=0.05,
        reporter_stale_seconds=60.0,
        collection_timeout_seconds=5.0,
        cleanup_interval_seconds=3600.0,
        retention_days=30,
        metrics_stale_seconds=30.0,
        log_format="text",
    )


@pytest.fixture
def store(settings):
    """Fresh SQLite file database with tables and views"""
    db.configure(settings)
    db.init_db()
    yield settings
    db.dispose()


@pytest.fixture
def registered(store):
    """One registered task: PREP / load_data"""
    task_id = tracking.register_task("PREP", "load_data", task_type="python", stage_order=1, task_order=1)
    assert task_id is not None
    return task_id


@pytest.fixture
def run(registered):
    handle = tracking.start_run("PREP", "load_data", total_subtasks=3, message="starting")
    assert handle is not None
    return handle


def add_metric(run_id: str, timestamp: datetime, **fields) -> None:
    values = {
        "run_id": run_id,
        "timestamp": timestamp,
        "process_id": os.getpid(),
        "hostname": "test-host",
        "is_alive": True,
        "collection_error": False,
    }
    values.update(fields)
    with db.session_scope() as session:
        session.add(ProcessMetric(**values))
