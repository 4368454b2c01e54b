"""
Process reporter daemon entry point.

    python -m tasktrack.reporter_daemon

Configuration comes from the environment (see tasktrack.config). Set
TASKTRACK_REPORTER_FORCE=true to replace a live reporter on this host.
"""
import logging
import signal
import sys

from tasktrack import db
from tasktrack.config import Settings, env_bool
from tasktrack.logging_config import setup_logging
from tasktrack.services.prometheus_metrics import prometheus_metrics
from tasktrack.services.reporter import ProcessReporter

logger = logging.getLogger("tasktrack.reporter")


def main() -> int:
    settings = Settings.from_env()
    setup_logging(settings)
    db.configure(settings)
    db.init_db()

    if settings.reporter_metrics_port:
        prometheus_metrics.start_exporter(settings.reporter_metrics_port)

    reporter = ProcessReporter(settings)
    result = reporter.start(force=env_bool("TASKTRACK_REPORTER_FORCE", False))
    if not result.started:
        logger.info("another reporter owns this host; exiting", extra={
            "component": "reporter", "existing_pid": result.process_id})
        return 0

    def _handle_signal(signum, frame):
        logger.info("signal received", extra={"component": "reporter", "signal": signum})
        reporter.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    reporter.run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
