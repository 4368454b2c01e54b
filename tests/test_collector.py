"""
Tests for the psutil-based process metrics collector
"""

import os
import subprocess
import sys
from unittest.mock import ANY, MagicMock, patch

import psutil
import pytest

from tasktrack.services import collector as collector_module
from tasktrack.services.collector import MetricsCollector

RUN_ID = "run-collector-test"


@pytest.fixture
def collector():
    return MetricsCollector(include_children=True, timeout=5.0)


class TestLiveProcess:
    """Sampling the test process itself."""

    def test_own_process_is_alive(self, collector):
        snap = collector.collect(RUN_ID, os.getpid())
        assert snap.collection_error is False
        assert snap.error_type is None
        assert snap.is_alive is True
        assert snap.process_start_time == pytest.approx(psutil.Process().create_time())
        assert snap.memory_mb > 0
        assert snap.num_threads >= 1
        assert snap.cpu_cores == psutil.cpu_count()
        assert snap.collection_duration_ms >= 0

    def test_cpu_percent_needs_two_samples(self, collector):
        first = collector.collect(RUN_ID, os.getpid())
        assert first.cpu_percent is None
        sum(i * i for i in range(200000))
        second = collector.collect(RUN_ID, os.getpid())
        assert isinstance(second.cpu_percent, float)
        assert second.cpu_percent >= 0.0

    def test_direct_children_are_counted(self, collector):
        child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        try:
            snap = collector.collect(RUN_ID, os.getpid())
            assert snap.child_count >= 1
            assert snap.child_total_memory_mb > 0
        finally:
            child.kill()
            child.wait()

    def test_children_listed_non_recursively(self, collector):
        with patch("tasktrack.services.collector.psutil.Process.children",
                   autospec=True, return_value=[]) as children:
            snap = collector.collect(RUN_ID, os.getpid())
        children.assert_called_once_with(ANY, recursive=False)
        assert snap.child_count == 0
        assert snap.child_total_cpu_percent == 0.0

    def test_children_skipped_when_disabled(self, collector):
        snap = collector.collect(RUN_ID, os.getpid(), include_children=False)
        assert snap.child_count is None

    def test_exited_process(self, collector):
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        proc.wait()
        snap = collector.collect(RUN_ID, proc.pid)
        assert snap.is_alive is False
        assert snap.error_type == "PROCESS_DIED"
        assert snap.is_fatal

    def test_timeout(self, collector):
        snap = collector.collect(RUN_ID, os.getpid(), timeout=-1)
        assert snap.collection_error is True
        assert snap.error_type == "COLLECTION_TIMEOUT"
        assert not snap.is_fatal


class TestErrorClassification:
    """Every failure becomes a classified snapshot, never an exception."""

    @pytest.mark.parametrize("error, expected", [
        (psutil.NoSuchProcess(4242), "PROCESS_DIED"),
        (psutil.ZombieProcess(4242), "ZOMBIE_PROCESS"),
        (psutil.AccessDenied(4242), "PERMISSION_DENIED"),
        (psutil.Error("weird psutil failure"), "PS_ERROR"),
        (RuntimeError("unexpected"), "UNKNOWN"),
    ])
    def test_exception_mapping(self, collector, error, expected):
        with patch("tasktrack.services.collector.psutil.Process", side_effect=error):
            snap = collector.collect(RUN_ID, 4242)
        assert snap.collection_error is True
        assert snap.error_type == expected
        assert snap.error_message

    def test_permission_denied_is_not_fatal(self, collector):
        with patch("tasktrack.services.collector.psutil.Process", side_effect=psutil.AccessDenied(4242)):
            snap = collector.collect(RUN_ID, 4242)
        assert snap.is_alive is True
        assert not snap.is_fatal

    def test_zombie_status(self, collector):
        proc = MagicMock()
        proc.status.return_value = psutil.STATUS_ZOMBIE
        proc.create_time.return_value = 1000.0
        with patch("tasktrack.services.collector.psutil.Process", return_value=proc):
            snap = collector.collect(RUN_ID, 4242)
        assert snap.is_alive is False
        assert snap.error_type == "ZOMBIE_PROCESS"
        assert snap.process_start_time == 1000.0

    def test_remote_host_is_not_inspected(self, collector):
        with patch("tasktrack.services.collector.psutil.Process") as process:
            snap = collector.collect(RUN_ID, 4242, hostname="some-other-host.example")
        process.assert_not_called()
        assert snap.error_type == "PS_ERROR"
        assert snap.hostname == "some-other-host.example"


class TestCache:

    def test_forget_drops_cached_process(self, collector):
        collector.collect(RUN_ID, os.getpid())
        assert any(pid == os.getpid() for pid, _ in collector._procs)
        collector.forget(os.getpid())
        assert not any(pid == os.getpid() for pid, _ in collector._procs)

    def test_prune_keeps_tracked_pids(self, collector):
        collector.collect(RUN_ID, os.getpid())
        collector.prune(keep_pids=[os.getpid()])
        assert any(pid == os.getpid() for pid, _ in collector._procs)

    def test_module_level_collect(self):
        snap = collector_module.collect(RUN_ID, os.getpid(), include_children=False)
        assert snap.is_alive is True
