"""
Process metrics collector.

collect() samples a single pid with psutil and always returns a
MetricsSnapshot: either populated counters or a classified error
(error_type/error_message). It never raises.

CPU percent is measured between successive collections of the same process,
so a collector instance keeps one psutil.Process per (pid, create_time). The
first sample of a process therefore has cpu_percent None. Child aggregates
cover direct children only; grandchildren are not included.
"""
import logging
import socket
import time
from typing import Callable, Dict, Iterable, Optional, Tuple

import psutil

from tasktrack.config import COLLECTION_TIMEOUT_SECONDS, VERSION
from tasktrack.schemas.metrics import MetricsSnapshot
from tasktrack.services.prometheus_metrics import prometheus_metrics
from tasktrack.status import ErrorType

logger = logging.getLogger("tasktrack.collector")

MB = 1024.0 * 1024.0
LOCAL_HOSTNAMES = ("localhost", "127.0.0.1")

ProcKey = Tuple[int, float]


class CollectionTimeout(Exception):
    """Raised internally when a collection runs past its deadline"""


def _check_deadline(deadline: float) -> None:
    if time.monotonic() > deadline:
        raise CollectionTimeout()


def _optional(fn: Callable, default=None):
    """Call a psutil accessor that may be unsupported or forbidden on this platform."""
    try:
        return fn()
    except (psutil.AccessDenied, AttributeError, NotImplementedError):
        return default


def _page_faults(pid: int) -> Tuple[Optional[int], Optional[int]]:
    """Minor/major page faults from /proc/<pid>/stat (Linux only)."""
    try:
        with open(f"/proc/{pid}/stat", "rb") as f:
            data = f.read()
    except OSError:
        return None, None
    # fields after "(comm) ": state ppid pgrp session tty_nr tpgid flags minflt cminflt majflt
    fields = data[data.rfind(b")") + 2:].split()
    try:
        return int(fields[7]), int(fields[9])
    except (IndexError, ValueError):
        return None, None


class MetricsCollector:
    """Stateful sampler; keep one instance for the lifetime of a reporter."""

    def __init__(self, include_children: bool = True, timeout: float = COLLECTION_TIMEOUT_SECONDS):
        self.include_children = include_children
        self.timeout = timeout
        self.local_hostname = socket.gethostname()
        self._procs: Dict[ProcKey, psutil.Process] = {}
        self._iowait: Dict[ProcKey, Tuple[float, float]] = {}

    def _is_local(self, hostname: Optional[str]) -> bool:
        return not hostname or hostname == self.local_hostname or hostname in LOCAL_HOSTNAMES

    def _cpu_percent(self, proc: psutil.Process, create_time: float) -> Optional[float]:
        key = (proc.pid, create_time)
        cached = self._procs.get(key)
        if cached is None:
            self._procs[key] = proc
            # primes psutil's per-object cpu_times baseline
            proc.cpu_percent(interval=None)
            return None
        return cached.cpu_percent(interval=None)

    def _io_wait_percent(self, key: ProcKey, cpu_times) -> Optional[float]:
        iowait = getattr(cpu_times, "iowait", None)
        if iowait is None:
            return None
        now = time.monotonic()
        previous = self._iowait.get(key)
        self._iowait[key] = (now, iowait)
        if previous is None or now <= previous[0]:
            return None
        return max(0.0, (iowait - previous[1]) / (now - previous[0]) * 100.0)

    def _collect_children(self, proc: psutil.Process, snap: MetricsSnapshot, deadline: float) -> None:
        children = proc.children(recursive=False)
        total_cpu = None
        total_mem = 0.0
        for child in children:
            _check_deadline(deadline)
            try:
                with child.oneshot():
                    cpu = self._cpu_percent(child, child.create_time())
                    total_mem += child.memory_info().rss / MB
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                # child exited or is not ours to inspect
                continue
            if cpu is not None:
                total_cpu = (total_cpu or 0.0) + cpu
        snap.child_count = len(children)
        snap.child_total_cpu_percent = total_cpu if children else 0.0
        snap.child_total_memory_mb = total_mem

    def _sample(self, snap: MetricsSnapshot, pid: int, include_children: bool, deadline: float) -> None:
        proc = psutil.Process(pid)
        with proc.oneshot():
            status = proc.status()
            create_time = proc.create_time()
            snap.process_start_time = create_time
            if status == psutil.STATUS_ZOMBIE:
                snap.is_alive = False
                snap.mark_error(ErrorType.ZOMBIE_PROCESS.value, f"process {pid} is a zombie")
                return
            snap.is_alive = True
            key = (pid, create_time)

            cpu_times = proc.cpu_times()
            snap.cpu_percent = self._cpu_percent(proc, create_time)
            snap.cpu_cores = psutil.cpu_count()
            snap.io_wait_percent = self._io_wait_percent(key, cpu_times)

            mem = proc.memory_info()
            snap.memory_mb = mem.rss / MB
            snap.memory_vms_mb = mem.vms / MB
            snap.memory_percent = _optional(proc.memory_percent)
            full = _optional(proc.memory_full_info)
            swap = getattr(full, "swap", None) if full is not None else None
            snap.swap_mb = swap / MB if swap is not None else None
            _check_deadline(deadline)

            io = _optional(proc.io_counters)
            if io is not None:
                snap.read_bytes = io.read_bytes
                snap.write_bytes = io.write_bytes
                snap.read_count = io.read_count
                snap.write_count = io.write_count

            snap.num_threads = proc.num_threads()
            snap.num_fds = _optional(proc.num_fds)
            ctx = _optional(proc.num_ctx_switches)
            if ctx is not None:
                snap.num_ctx_switches_voluntary = ctx.voluntary
                snap.num_ctx_switches_involuntary = ctx.involuntary
            snap.page_faults_minor, snap.page_faults_major = _page_faults(pid)
        _check_deadline(deadline)

        # open_files walks /proc/<pid>/fd and is the slowest read
        open_files = _optional(proc.open_files)
        snap.open_files = len(open_files) if open_files is not None else None
        _check_deadline(deadline)

        if include_children:
            self._collect_children(proc, snap, deadline)

    def collect(
        self,
        run_id: str,
        pid: int,
        hostname: Optional[str] = None,
        include_children: Optional[bool] = None,
        timeout: Optional[float] = None,
    ) -> MetricsSnapshot:
        """Sample one process. Never raises.

        The timeout is checked between psutil reads, so a single blocking read
        can run past it.
        """
        started = time.monotonic()
        timeout = self.timeout if timeout is None else timeout
        include_children = self.include_children if include_children is None else include_children
        snap = MetricsSnapshot(
            run_id=run_id,
            process_id=pid,
            hostname=hostname or self.local_hostname,
            reporter_version=VERSION,
        )

        try:
            if not self._is_local(hostname):
                snap.mark_error(ErrorType.PS_ERROR.value,
                                f"cannot inspect pid {pid} on remote host {hostname}")
            else:
                self._sample(snap, pid, include_children, started + timeout)
        except psutil.ZombieProcess:
            snap.is_alive = False
            snap.mark_error(ErrorType.ZOMBIE_PROCESS.value, f"process {pid} is a zombie")
        except psutil.NoSuchProcess:
            snap.is_alive = False
            snap.mark_error(ErrorType.PROCESS_DIED.value, f"no such process: {pid}")
            self.forget(pid)
        except psutil.AccessDenied as e:
            snap.is_alive = True
            snap.mark_error(ErrorType.PERMISSION_DENIED.value, f"access denied to process {pid}: {e}")
        except CollectionTimeout:
            snap.mark_error(ErrorType.COLLECTION_TIMEOUT.value,
                            f"collection exceeded {timeout:.1f}s for process {pid}")
        except psutil.Error as e:
            snap.mark_error(ErrorType.PS_ERROR.value, f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception("unexpected collection failure", extra={
                "component": "collector", "run_id": run_id, "process_id": pid})
            snap.mark_error(ErrorType.UNKNOWN.value, f"{type(e).__name__}: {e}")

        elapsed = time.monotonic() - started
        snap.collection_duration_ms = round(elapsed * 1000.0, 3)
        prometheus_metrics.record_collection(snap.error_type, elapsed)
        return snap

    def forget(self, pid: int) -> None:
        for key in [k for k in self._procs if k[0] == pid]:
            self._procs.pop(key, None)
            self._iowait.pop(key, None)

    def prune(self, keep_pids: Iterable[int] = ()) -> None:
        """Drop cached processes that have exited and are not being tracked."""
        keep = set(keep_pids)
        for key, proc in list(self._procs.items()):
            if key[0] in keep:
                continue
            try:
                running = proc.is_running()
            except psutil.Error:
                running = False
            if not running:
                self._procs.pop(key, None)
                self._iowait.pop(key, None)


_default_collector: Optional[MetricsCollector] = None


def collect(
    run_id: str,
    pid: int,
    hostname: Optional[str] = None,
    include_children: bool = True,
    timeout: float = COLLECTION_TIMEOUT_SECONDS,
) -> MetricsSnapshot:
    """Module-level convenience using a process-wide collector."""
    global _default_collector
    if _default_collector is None:
        _default_collector = MetricsCollector()
    return _default_collector.collect(run_id, pid, hostname=hostname,
                                      include_children=include_children, timeout=timeout)
