"""
Tests for the HTTP API
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from conftest import add_metric, ago
from tasktrack.main import app
from tasktrack.schemas.query import ReporterStartResult
from tasktrack.services import tracking
from tasktrack.services.reporter import ProcessReporter


@pytest.fixture
def client(store):
    with TestClient(app) as test_client:
        yield test_client


def test_health_endpoint(client):
    response = client.get("/v1/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["backend"] == "sqlite"


def test_list_runs_with_metrics(client, run):
    add_metric(run.run_id, ago(seconds=1), cpu_percent=33.0)
    response = client.get("/v1/runs")
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    row = data["runs"][0]
    assert row["run_id"] == run.run_id
    assert row["cpu_percent"] == 33.0
    assert row["metrics_state"] == "fresh"


def test_list_runs_status_filter(client, run):
    tracking.complete_run(run)
    assert client.get("/v1/runs", params={"status": "RUNNING"}).json()["total"] == 0
    assert client.get("/v1/runs", params={"status": ["RUNNING", "COMPLETED"]}).json()["total"] == 1


def test_get_run_and_subtasks(client, run):
    tracking.start_subtask(run, "download", items_total=2)

    response = client.get(f"/v1/runs/{run.run_id}")
    assert response.status_code == 200
    assert response.json()["status"] == "RUNNING"

    subtasks = client.get(f"/v1/runs/{run.run_id}/subtasks").json()
    assert [s["subtask_name"] for s in subtasks] == ["download"]


def test_unknown_run_is_404(client, store):
    assert client.get("/v1/runs/does-not-exist").status_code == 404
    assert client.get("/v1/runs/does-not-exist/subtasks").status_code == 404
    assert client.get("/v1/runs/does-not-exist/metrics").status_code == 404


def test_run_metrics(client, run):
    add_metric(run.run_id, ago(seconds=5), cpu_percent=1.0)
    add_metric(run.run_id, ago(seconds=1), cpu_percent=2.0)
    metrics = client.get(f"/v1/runs/{run.run_id}/metrics", params={"limit": 1}).json()
    assert [m["cpu_percent"] for m in metrics] == [2.0]


def test_task_status_history_and_stages(client, run):
    status = client.get("/v1/tasks/status").json()
    assert status[0]["task_name"] == "load_data"
    assert status[0]["status"] == "STARTED"

    history = client.get("/v1/tasks/history", params={"stage": "PREP"}).json()
    assert [h["run_id"] for h in history] == [run.run_id]

    stages = client.get("/v1/stages").json()
    assert stages == [{"stage_id": stages[0]["stage_id"], "stage_name": "PREP", "stage_order": 1,
                       "description": None, "task_count": 1}]

    active = client.get("/v1/runs/active").json()
    assert [a["run_id"] for a in active] == [run.run_id]


def test_reporter_status(client, store):
    assert client.get("/v1/reporters/api-test-host").status_code == 404
    ProcessReporter(store, hostname="api-test-host").start()
    data = client.get("/v1/reporters/api-test-host").json()
    assert data["is_alive"] is True


def test_reporter_start_delegates_to_launcher(client):
    result = ReporterStartResult(hostname="h", process_id=1, started=True, message="launched")
    with patch("tasktrack.api.reporters.reporter.launch_reporter", return_value=result) as launch:
        response = client.post("/v1/reporters/start", json={"force": True})
    assert response.status_code == 200
    assert response.json()["started"] is True
    launch.assert_called_once_with(force=True)


def test_reporter_stop_without_reporter(client):
    response = client.post("/v1/reporters/nobody/stop", json={"timeout": 0})
    assert response.json() == {"hostname": "nobody", "stopped": True}


def test_prometheus_endpoint(client):
    response = client.get("/v1/metrics/prometheus")
    assert response.status_code == 200
    assert "tasktrack_build_info" in response.text
