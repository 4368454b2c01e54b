"""
Prometheus metrics for tasktrack
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST, start_http_server

from tasktrack.config import VERSION

# Build info
BUILD_INFO = Gauge(
    'tasktrack_build_info',
    'Build information',
    ['version']
)

# Tracking API
STORE_ERRORS_TOTAL = Counter(
    'tasktrack_store_errors_total',
    'Store failures swallowed by the tracking API',
    ['operation']
)

TERMINAL_NOOPS_TOTAL = Counter(
    'tasktrack_terminal_noops_total',
    'Updates ignored because the run or subtask was already terminal',
    ['entity']
)

COUNTER_RETRIES_TOTAL = Counter(
    'tasktrack_counter_retries_total',
    'Item counter increments retried after a lock conflict'
)

# Collector
COLLECTIONS_TOTAL = Counter(
    'tasktrack_collections_total',
    'Process metric collections',
    ['result']
)

COLLECTION_ERRORS_TOTAL = Counter(
    'tasktrack_collection_errors_total',
    'Process metric collections that produced a classified error',
    ['error_type']
)

COLLECTION_SECONDS = Histogram(
    'tasktrack_collection_seconds',
    'Wall time of a single process collection',
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

# Reporter
REPORTER_LOOP_SECONDS = Histogram(
    'tasktrack_reporter_loop_seconds',
    'Wall time of one reporter iteration',
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

REPORTER_ACTIVE_RUNS = Gauge(
    'tasktrack_reporter_active_runs',
    'Active runs seen by the reporter in its last iteration'
)

REPORTER_HEARTBEAT_TS = Gauge(
    'tasktrack_reporter_heartbeat_ts',
    'Unix time of the last successful reporter heartbeat'
)

REPORTER_ITERATION_ERRORS_TOTAL = Counter(
    'tasktrack_reporter_iteration_errors_total',
    'Reporter iterations skipped because of a store failure'
)

RUNS_FAILED_BY_REPORTER_TOTAL = Counter(
    'tasktrack_runs_failed_by_reporter_total',
    'Runs marked FAILED by the reporter after a fatal collection error',
    ['error_type']
)

# Retention
METRICS_ROWS_DELETED_TOTAL = Counter(
    'tasktrack_metrics_rows_deleted_total',
    'process_metrics rows removed by retention cleanup'
)


class PrometheusMetrics:
    """Service for managing Prometheus metrics."""

    def __init__(self):
        BUILD_INFO.labels(version=VERSION).set(1)

    def increment_store_errors(self, operation: str):
        STORE_ERRORS_TOTAL.labels(operation=operation).inc()

    def increment_terminal_noops(self, entity: str):
        TERMINAL_NOOPS_TOTAL.labels(entity=entity).inc()

    def increment_counter_retries(self, count: int = 1):
        COUNTER_RETRIES_TOTAL.inc(count)

    def record_collection(self, error_type, seconds: float):
        """Record one collector call; error_type is None on success."""
        if error_type:
            COLLECTIONS_TOTAL.labels(result="error").inc()
            COLLECTION_ERRORS_TOTAL.labels(error_type=error_type).inc()
        else:
            COLLECTIONS_TOTAL.labels(result="ok").inc()
        COLLECTION_SECONDS.observe(seconds)

    def observe_reporter_loop(self, seconds: float, active_runs: int):
        REPORTER_LOOP_SECONDS.observe(seconds)
        REPORTER_ACTIVE_RUNS.set(active_runs)

    def set_heartbeat(self, ts: float):
        REPORTER_HEARTBEAT_TS.set(ts)

    def increment_reporter_iteration_errors(self):
        REPORTER_ITERATION_ERRORS_TOTAL.inc()

    def increment_runs_failed_by_reporter(self, error_type: str):
        RUNS_FAILED_BY_REPORTER_TOTAL.labels(error_type=error_type).inc()

    def increment_metrics_rows_deleted(self, count: int):
        if count:
            METRICS_ROWS_DELETED_TOTAL.inc(count)

    def start_exporter(self, port: int):
        """Expose the default registry over HTTP (reporter daemon only)."""
        start_http_server(port)

    def get_metrics(self) -> bytes:
        """Get Prometheus metrics in text format."""
        return generate_latest()

    def get_content_type(self) -> str:
        """Get the content type for Prometheus metrics."""
        return CONTENT_TYPE_LATEST


# Global metrics instance
prometheus_metrics = PrometheusMetrics()
