"""
Per-host process reporter.

One reporter runs on each host that executes pipelines. Every interval it
samples the pid of every active run on its host, writes one process_metrics
row per run, and fails runs whose process has died or whose pid was recycled.
Single-instance ownership is a reporter_status row keyed on hostname; the
heartbeat age is measured on the database clock.
"""
import logging
import os
import signal
import socket
import subprocess
import sys
import threading
import time
from typing import Dict, Iterable, List, Optional

import psutil
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tasktrack import db
from tasktrack.config import Settings, VERSION, get_settings
from tasktrack.models import ProcessMetric, ReporterStatus, TaskRun
from tasktrack.schemas.metrics import MetricsSnapshot
from tasktrack.schemas.query import ReporterStartResult
from tasktrack.services import retention, tracking
from tasktrack.services.collector import MetricsCollector
from tasktrack.services.prometheus_metrics import prometheus_metrics
from tasktrack.services.query import get_reporter_status
from tasktrack.status import ACTIVE_STATUSES, ErrorType

logger = logging.getLogger("tasktrack.reporter")

# process start times within this many seconds are the same process
PID_REUSE_TOLERANCE_SECONDS = 1.0
MAX_BACKOFF_FACTOR = 6
STOP_POLL_SECONDS = 0.5


class ProcessReporter:
    def __init__(self, settings: Optional[Settings] = None, hostname: Optional[str] = None,
                 collector: Optional[MetricsCollector] = None):
        self.settings = settings or get_settings()
        self.hostname = hostname or socket.gethostname()
        self.pid = os.getpid()
        self.collector = collector or MetricsCollector(
            include_children=self.settings.include_children,
            timeout=self.settings.collection_timeout_seconds,
        )
        self._stop = threading.Event()
        self._last_cleanup: Optional[float] = None
        self._failures = 0

    def _log_extra(self, **fields) -> dict:
        return {"component": "reporter", "hostname": self.hostname, "process_id": self.pid, **fields}

    # -- registration -------------------------------------------------------

    def start(self, force: bool = False) -> ReporterStartResult:
        """Claim the host's reporter slot.

        A live reporter (fresh heartbeat) is left alone unless force is set;
        a stale or forced one is told to shut down and replaced.
        """
        d = db.get_dialect()
        replaced = None
        with db.session_scope() as session:
            row = session.execute(
                select(ReporterStatus.process_id,
                       d.seconds_since(ReporterStatus.last_heartbeat).label("age"))
                .where(ReporterStatus.hostname == self.hostname)
            ).one_or_none()

            if row is not None and row.process_id != self.pid:
                fresh = row.age is not None and row.age < self.settings.reporter_stale_seconds
                if fresh and not force:
                    logger.info("reporter already running on host", extra=self._log_extra(
                        event="already_running", existing_pid=row.process_id))
                    return ReporterStartResult(hostname=self.hostname, process_id=row.process_id,
                                               started=False, message="reporter already running")
                replaced = row.process_id
                session.execute(
                    update(ReporterStatus)
                    .where(ReporterStatus.hostname == self.hostname)
                    .values(shutdown_requested=True)
                    .execution_options(synchronize_session=False)
                )

            now = d.now()
            session.execute(d.upsert(
                ReporterStatus.__table__,
                {
                    "hostname": self.hostname,
                    "process_id": self.pid,
                    "started_at": now,
                    "last_heartbeat": now,
                    "version": VERSION,
                    "shutdown_requested": False,
                },
                ["hostname"],
            ))

        logger.info("reporter registered", extra=self._log_extra(
            event="registered", replaced_pid=replaced, forced=force))
        return ReporterStartResult(hostname=self.hostname, process_id=self.pid, started=True,
                                   replaced_pid=replaced,
                                   message="replaced stale reporter" if replaced else "started")

    def _shutdown_reason(self, session: Session) -> Optional[str]:
        row = session.execute(
            select(ReporterStatus.process_id, ReporterStatus.shutdown_requested)
            .where(ReporterStatus.hostname == self.hostname)
        ).one_or_none()
        if row is None:
            return "status row removed"
        if row.process_id != self.pid:
            return f"replaced by pid {row.process_id}"
        if row.shutdown_requested:
            return "shutdown requested"
        return None

    def _heartbeat(self, session: Session) -> None:
        session.execute(
            update(ReporterStatus)
            .where(ReporterStatus.hostname == self.hostname, ReporterStatus.process_id == self.pid)
            .values(last_heartbeat=db.get_dialect().now())
            .execution_options(synchronize_session=False)
        )
        prometheus_metrics.set_heartbeat(time.time())

    def deregister(self) -> None:
        """Remove this reporter's own status row; another owner's row is left alone."""
        try:
            with db.session_scope() as session:
                session.execute(
                    delete(ReporterStatus)
                    .where(ReporterStatus.hostname == self.hostname,
                           ReporterStatus.process_id == self.pid)
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            logger.error(f"failed to remove reporter status: {e}", extra=self._log_extra())

    # -- collection ---------------------------------------------------------

    def _active_runs(self, session: Session):
        return session.execute(
            select(TaskRun.run_id, TaskRun.process_id)
            .where(TaskRun.hostname == self.hostname,
                   TaskRun.status.in_(ACTIVE_STATUSES),
                   TaskRun.process_id.is_not(None))
            .order_by(TaskRun.start_time)
        ).all()

    def _previous_start_times(self, session: Session, run_ids: Iterable[str]) -> Dict[str, float]:
        run_ids = list(run_ids)
        if not run_ids:
            return {}
        latest = (
            select(ProcessMetric.run_id, func.max(ProcessMetric.timestamp).label("ts"))
            .where(ProcessMetric.run_id.in_(run_ids), ProcessMetric.process_start_time.is_not(None))
            .group_by(ProcessMetric.run_id)
            .subquery()
        )
        rows = session.execute(
            select(ProcessMetric.run_id, ProcessMetric.process_start_time)
            .join(latest, (ProcessMetric.run_id == latest.c.run_id)
                  & (ProcessMetric.timestamp == latest.c.ts))
        ).all()
        return {r.run_id: r.process_start_time for r in rows}

    def _check_pid_reuse(self, snap: MetricsSnapshot, previous: Optional[float]) -> MetricsSnapshot:
        if previous is None or snap.process_start_time is None:
            return snap
        if abs(snap.process_start_time - previous) <= PID_REUSE_TOLERANCE_SECONDS:
            return snap
        reused = MetricsSnapshot(
            run_id=snap.run_id,
            process_id=snap.process_id,
            hostname=snap.hostname,
            is_alive=False,
            process_start_time=snap.process_start_time,
            reporter_version=snap.reporter_version,
            collection_duration_ms=snap.collection_duration_ms,
        )
        return reused.mark_error(
            ErrorType.PID_REUSED.value,
            f"pid {snap.process_id} now belongs to a process started at {snap.process_start_time:.3f} "
            f"(tracked process started at {previous:.3f})",
        )

    def _write_snapshot(self, session: Session, snap: MetricsSnapshot) -> None:
        d = db.get_dialect()
        session.execute(ProcessMetric.__table__.insert().values(timestamp=d.now(), **snap.to_row()))
        if not snap.collection_error:
            session.execute(
                update(TaskRun)
                .where(TaskRun.run_id == snap.run_id)
                .values(cpu_percent=snap.cpu_percent, memory_mb=snap.memory_mb)
                .execution_options(synchronize_session=False)
            )

    def collect_once(self) -> List[MetricsSnapshot]:
        """Sample every active run on this host once and record the results."""
        with db.session_scope() as session:
            runs = self._active_runs(session)
            previous = self._previous_start_times(session, [r.run_id for r in runs])

        snapshots = []
        for run in runs:
            snap = self.collector.collect(run.run_id, run.process_id, hostname=self.hostname)
            snap = self._check_pid_reuse(snap, previous.get(run.run_id))
            with db.session_scope() as session:
                self._write_snapshot(session, snap)
            if snap.collection_error:
                logger.warning("collection error", extra=self._log_extra(
                    run_id=run.run_id, tracked_pid=run.process_id,
                    error_type=snap.error_type, error_message=snap.error_message))
            if snap.is_fatal:
                tracking.fail_run(run.run_id, f"Process monitoring: {snap.error_message}",
                                  error_detail=snap.error_type)
                prometheus_metrics.increment_runs_failed_by_reporter(snap.error_type)
            snapshots.append(snap)

        self.collector.prune(keep_pids=[r.process_id for r in runs])
        return snapshots

    def _maybe_cleanup(self) -> None:
        now = time.monotonic()
        if self._last_cleanup is not None and now - self._last_cleanup < self.settings.cleanup_interval_seconds:
            return
        retention.cleanup(self.settings.retention_days)
        self._last_cleanup = now

    # -- main loop ----------------------------------------------------------

    def stop(self) -> None:
        self._stop.set()

    def run_forever(self) -> None:
        """Loop until told to stop; store failures skip the iteration and back off."""
        interval = self.settings.reporter_interval_seconds
        logger.info("reporter loop starting", extra=self._log_extra(
            event="loop_start", interval_seconds=interval))
        reason = None
        while not self._stop.is_set():
            loop_started = time.monotonic()
            try:
                with db.session_scope() as session:
                    reason = self._shutdown_reason(session)
                    if reason is None:
                        self._heartbeat(session)
                if reason is not None:
                    break
                snapshots = self.collect_once()
                self._maybe_cleanup()
                self._failures = 0
                elapsed = time.monotonic() - loop_started
                prometheus_metrics.observe_reporter_loop(elapsed, len(snapshots))
                delay = max(0.0, interval - elapsed)
            except SQLAlchemyError as e:
                self._failures += 1
                prometheus_metrics.increment_reporter_iteration_errors()
                # next iteration checks out fresh connections
                db.dispose()
                delay = min(interval * 2 ** self._failures, interval * MAX_BACKOFF_FACTOR)
                logger.error(f"reporter iteration failed: {e}", extra=self._log_extra(
                    event="iteration_error", failures=self._failures, retry_in=delay))
            self._stop.wait(delay)

        if reason is None or reason == "shutdown requested":
            self.deregister()
        logger.info("reporter stopped", extra=self._log_extra(event="loop_stop", reason=reason or "stopped"))


# ---------------------------------------------------------------------------
# Control
# ---------------------------------------------------------------------------

def launch_reporter(settings: Optional[Settings] = None, force: bool = False,
                    hostname: Optional[str] = None) -> ReporterStartResult:
    """Start a detached reporter daemon for this host unless a live one exists."""
    settings = settings or get_settings()
    hostname = hostname or socket.gethostname()
    status = get_reporter_status(hostname)
    if status is not None and status.is_alive and not force:
        return ReporterStartResult(hostname=hostname, process_id=status.process_id, started=False,
                                   message="reporter already running")

    env = dict(os.environ)
    env["DATABASE_URL"] = settings.database_url
    if settings.db_schema:
        env["TASKTRACK_DB_SCHEMA"] = settings.db_schema
    env["TASKTRACK_REPORTER_INTERVAL_SECONDS"] = str(settings.reporter_interval_seconds)
    env["TASKTRACK_REPORTER_FORCE"] = "true" if force else "false"
    proc = subprocess.Popen(
        [sys.executable, "-m", "tasktrack.reporter_daemon"],
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    logger.info("reporter launched", extra={
        "component": "reporter", "hostname": hostname, "process_id": proc.pid, "forced": force})
    return ReporterStartResult(hostname=hostname, process_id=proc.pid, started=True,
                               replaced_pid=status.process_id if status else None,
                               message="launched")


def stop_reporter(hostname: Optional[str] = None, timeout: float = 30.0) -> bool:
    """Ask a host's reporter to exit and wait for its status row to disappear.

    If the reporter runs on this machine and does not exit in time it is
    terminated and its row removed. Returns True once no reporter is
    registered for the host.
    """
    hostname = hostname or socket.gethostname()
    with db.session_scope() as session:
        pid = session.execute(
            select(ReporterStatus.process_id).where(ReporterStatus.hostname == hostname)
        ).scalar_one_or_none()
        if pid is None:
            return True
        session.execute(
            update(ReporterStatus)
            .where(ReporterStatus.hostname == hostname)
            .values(shutdown_requested=True)
            .execution_options(synchronize_session=False)
        )
    logger.info("reporter shutdown requested", extra={
        "component": "reporter", "hostname": hostname, "process_id": pid})

    deadline = time.monotonic() + timeout
    while True:
        with db.session_scope() as session:
            current = session.execute(
                select(ReporterStatus.process_id).where(ReporterStatus.hostname == hostname)
            ).scalar_one_or_none()
        if current is None or current != pid:
            return True
        if time.monotonic() >= deadline:
            break
        time.sleep(STOP_POLL_SECONDS)

    if hostname != socket.gethostname():
        logger.warning("reporter did not stop in time", extra={
            "component": "reporter", "hostname": hostname, "process_id": pid})
        return False

    try:
        psutil.Process(pid).send_signal(signal.SIGTERM)
    except psutil.NoSuchProcess:
        pass
    except psutil.AccessDenied as e:
        logger.error(f"cannot terminate reporter: {e}", extra={
            "component": "reporter", "hostname": hostname, "process_id": pid})
        return False
    with db.session_scope() as session:
        session.execute(
            delete(ReporterStatus)
            .where(ReporterStatus.hostname == hostname, ReporterStatus.process_id == pid)
            .execution_options(synchronize_session=False)
        )
    logger.warning("reporter terminated after timeout", extra={
        "component": "reporter", "hostname": hostname, "process_id": pid})
    return True
