"""
Atomic item counter for subtasks.

Parallel workers report finished items through increment(), which is a single
server-side UPDATE adding to the stored value, so concurrent increments are
never lost. SQLite lock conflicts are retried with jittered exponential
backoff; any other store failure is logged and swallowed.
"""
import logging
import random
import time
from typing import Optional

from sqlalchemy import case, func, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from tasktrack import db
from tasktrack.errors import InvalidArgumentError
from tasktrack.models import SubtaskProgress
from tasktrack.services.prometheus_metrics import prometheus_metrics
from tasktrack.status import SubtaskStatus

logger = logging.getLogger("tasktrack.counters")

MAX_ATTEMPTS = 6
BASE_DELAY_SECONDS = 0.01


def subtask_percent(items_complete: Optional[int], items_total: Optional[int]) -> Optional[float]:
    """Percent complete derived from item counts, capped at 100."""
    if not items_total or items_complete is None:
        return None
    return min(100.0, items_complete * 100.0 / items_total)


def _is_lock_conflict(error: OperationalError) -> bool:
    message = str(getattr(error, "orig", error)).lower()
    return "database is locked" in message or "database table is locked" in message


def increment(run, subtask_number: Optional[int] = None, delta: int = 1) -> bool:
    """Atomically add delta to a subtask's items_complete.

    The first increment moves the subtask from STARTED to RUNNING. Returns
    True when a subtask row was updated.
    """
    if isinstance(delta, bool) or not isinstance(delta, int) or delta < 1:
        raise InvalidArgumentError("delta must be a positive integer")
    run_id = getattr(run, "run_id", run)
    if not isinstance(run_id, str) or not run_id:
        raise InvalidArgumentError("run must be a RunHandle or a run_id string")
    if subtask_number is None:
        subtask_number = getattr(run, "current_subtask", 0)
        if not subtask_number:
            raise InvalidArgumentError("subtask_number is required for a bare run_id")

    d = db.get_dialect()
    stmt = (
        update(SubtaskProgress)
        .where(SubtaskProgress.run_id == run_id, SubtaskProgress.subtask_number == subtask_number)
        .values(
            items_complete=func.coalesce(SubtaskProgress.items_complete, 0) + delta,
            last_update=d.now(),
            status=case(
                (SubtaskProgress.status == SubtaskStatus.STARTED.value, SubtaskStatus.RUNNING.value),
                else_=SubtaskProgress.status,
            ),
        )
        .execution_options(synchronize_session=False)
    )

    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            with db.session_scope() as session:
                updated = session.execute(stmt).rowcount
            break
        except OperationalError as e:
            if _is_lock_conflict(e) and attempt < MAX_ATTEMPTS:
                prometheus_metrics.increment_counter_retries()
                time.sleep(BASE_DELAY_SECONDS * 2 ** (attempt - 1) + random.uniform(0, BASE_DELAY_SECONDS))
                continue
            prometheus_metrics.increment_store_errors("increment")
            logger.error(f"increment failed after {attempt} attempt(s): {e}", extra={
                "component": "counters", "run_id": run_id, "subtask_number": subtask_number})
            return False
        except SQLAlchemyError as e:
            prometheus_metrics.increment_store_errors("increment")
            logger.error(f"increment failed: {e}", extra={
                "component": "counters", "run_id": run_id, "subtask_number": subtask_number})
            return False

    if not updated:
        logger.warning("increment matched no subtask", extra={
            "component": "counters", "run_id": run_id, "subtask_number": subtask_number})
        return False
    return True
