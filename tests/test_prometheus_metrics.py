"""
Tests for Prometheus metrics functionality
"""

from prometheus_client import REGISTRY

from tasktrack.config import VERSION
from tasktrack.services.prometheus_metrics import prometheus_metrics, PrometheusMetrics


def _value(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestPrometheusMetrics:
    """Test the PrometheusMetrics class."""

    def test_prometheus_metrics_initialization(self):
        """Build info is published on construction."""
        PrometheusMetrics()
        assert REGISTRY.get_sample_value("tasktrack_build_info", {"version": VERSION}) == 1.0

    def test_increment_store_errors(self):
        before = _value("tasktrack_store_errors_total", operation="start_run")
        prometheus_metrics.increment_store_errors("start_run")
        assert _value("tasktrack_store_errors_total", operation="start_run") == before + 1

    def test_increment_terminal_noops(self):
        before = _value("tasktrack_terminal_noops_total", entity="run")
        prometheus_metrics.increment_terminal_noops("run")
        assert _value("tasktrack_terminal_noops_total", entity="run") == before + 1

    def test_record_collection_ok_and_error(self):
        ok_before = _value("tasktrack_collections_total", result="ok")
        err_before = _value("tasktrack_collections_total", result="error")
        died_before = _value("tasktrack_collection_errors_total", error_type="PROCESS_DIED")

        prometheus_metrics.record_collection(None, 0.01)
        prometheus_metrics.record_collection("PROCESS_DIED", 0.02)

        assert _value("tasktrack_collections_total", result="ok") == ok_before + 1
        assert _value("tasktrack_collections_total", result="error") == err_before + 1
        assert _value("tasktrack_collection_errors_total", error_type="PROCESS_DIED") == died_before + 1

    def test_observe_reporter_loop(self):
        prometheus_metrics.observe_reporter_loop(0.2, 7)
        assert _value("tasktrack_reporter_active_runs") == 7

    def test_set_heartbeat(self):
        prometheus_metrics.set_heartbeat(1700000000.0)
        assert _value("tasktrack_reporter_heartbeat_ts") == 1700000000.0

    def test_increment_metrics_rows_deleted_ignores_zero(self):
        before = _value("tasktrack_metrics_rows_deleted_total")
        prometheus_metrics.increment_metrics_rows_deleted(0)
        prometheus_metrics.increment_metrics_rows_deleted(12)
        assert _value("tasktrack_metrics_rows_deleted_total") == before + 12

    def test_get_metrics(self):
        """Test metrics retrieval."""
        metrics_data = prometheus_metrics.get_metrics()

        assert isinstance(metrics_data, bytes)
        assert b"tasktrack_collections_total" in metrics_data

    def test_get_content_type(self):
        assert prometheus_metrics.get_content_type().startswith("text/plain")
