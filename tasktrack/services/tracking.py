"""
Tracking API.

Pipelines call these functions to register tasks and report run and subtask
lifecycle. Tracking is best-effort: a store failure is logged, counted and
swallowed (the call returns None/False) so it can never abort the pipeline.
Caller misuse (unknown task, out-of-range values) is raised.

Terminal states are final. Any update of a run or subtask that has already
reached a terminal state is accepted, logged as a no-op and returns False.
"""
import getpass
import logging
import os
import socket
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError
from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tasktrack import db
from tasktrack.errors import InvalidArgumentError, TaskNotRegisteredError
from tasktrack.models import (
    MetricsRetention, ProcessMetric, ReporterStatus, Stage, SubtaskProgress, Task, TaskRun
)
from tasktrack.schemas.query import DeleteStageResult
from tasktrack.schemas.tracking import RunPatch, SubtaskPatch
from tasktrack.services.counters import subtask_percent
from tasktrack.services.prometheus_metrics import prometheus_metrics
from tasktrack.services.retention import schedule_retention
from tasktrack.status import (
    ACTIVE_STATUSES, RunStatus, SubtaskStatus, TERMINAL_RUN_STATUSES, TERMINAL_SUBTASK_STATUSES
)

logger = logging.getLogger("tasktrack.tracking")

FAILED_SUBTASK_MESSAGE = "Task failed - subtask terminated"


@dataclass
class RunHandle:
    """Explicit run context returned by start_run and passed to later calls"""
    run_id: str
    stage: str
    task: str
    task_id: int
    hostname: str
    process_id: int
    current_subtask: int = 0


RunRef = Union[RunHandle, str]


def _run_id(run: RunRef) -> str:
    if isinstance(run, RunHandle):
        return run.run_id
    if isinstance(run, str) and run:
        return run
    raise InvalidArgumentError("run must be a RunHandle or a run_id string")


def _store_failed(operation: str, error: Exception, **fields) -> None:
    prometheus_metrics.increment_store_errors(operation)
    logger.error(f"{operation} failed: {error}", extra={
        "component": "tracking", "event": "store_error", "operation": operation, **fields
    })


def _patch(model, **kwargs):
    try:
        return model(**{k: v for k, v in kwargs.items() if v is not None})
    except ValidationError as e:
        raise InvalidArgumentError(str(e)) from e


def _current_user() -> Optional[str]:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return None


def _require_name(value: str, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgumentError(f"{what} must be a non-empty string")
    return value.strip()


def _lookup_task_id(session: Session, stage: str, task: str) -> Optional[int]:
    return session.execute(
        select(Task.task_id)
        .join(Stage, Stage.stage_id == Task.stage_id)
        .where(Stage.stage_name == stage, Task.task_name == task)
    ).scalar_one_or_none()


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

def register_task(
    stage: str,
    task: str,
    task_type: Optional[str] = None,
    stage_order: Optional[int] = None,
    task_order: Optional[int] = None,
    description: Optional[str] = None,
    stage_description: Optional[str] = None,
    script_path: Optional[str] = None,
    script_filename: Optional[str] = None,
    log_path: Optional[str] = None,
    log_filename: Optional[str] = None,
) -> Optional[int]:
    """Idempotently register a stage and task; returns the task_id.

    Re-registering overwrites only the attributes that are passed.
    """
    stage = _require_name(stage, "stage")
    task = _require_name(task, "task")
    d = db.get_dialect()

    stage_values = {"stage_name": stage, "stage_order": stage_order, "description": stage_description}
    stage_values = {k: v for k, v in stage_values.items() if v is not None}
    task_attrs = {
        "task_type": task_type,
        "task_order": task_order,
        "description": description,
        "script_path": script_path,
        "script_filename": script_filename,
        "log_path": log_path,
        "log_filename": log_filename,
    }
    task_attrs = {k: v for k, v in task_attrs.items() if v is not None}

    try:
        with db.session_scope() as session:
            now = d.now()
            session.execute(d.upsert(
                Stage.__table__,
                {**stage_values, "created_at": now, "updated_at": now},
                ["stage_name"],
                update_columns=[k for k in stage_values if k != "stage_name"]
                + (["updated_at"] if len(stage_values) > 1 else []),
            ))
            stage_id = session.execute(
                select(Stage.stage_id).where(Stage.stage_name == stage)
            ).scalar_one()

            session.execute(d.upsert(
                Task.__table__,
                {"stage_id": stage_id, "task_name": task, **task_attrs, "created_at": now, "updated_at": now},
                ["stage_id", "task_name"],
                update_columns=list(task_attrs) + (["updated_at"] if task_attrs else []),
            ))
            task_id = session.execute(
                select(Task.task_id).where(Task.stage_id == stage_id, Task.task_name == task)
            ).scalar_one()
    except SQLAlchemyError as e:
        _store_failed("register_task", e, stage=stage, task=task)
        return None

    logger.info("task registered", extra={
        "component": "tracking", "event": "REGISTER", "stage": stage, "task": task, "task_id": task_id
    })
    return task_id


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------

def start_run(
    stage: str,
    task: str,
    total_subtasks: Optional[int] = None,
    message: Optional[str] = None,
    version: Optional[str] = None,
    git_commit: Optional[str] = None,
    environment: Optional[Dict[str, Any]] = None,
    hostname: Optional[str] = None,
    process_id: Optional[int] = None,
) -> Optional[RunHandle]:
    """Create a new run of a registered task in STARTED state.

    The run is attributed to the calling process unless hostname/process_id
    are given; the reporter on that host samples the pid while the run is
    active.
    """
    stage = _require_name(stage, "stage")
    task = _require_name(task, "task")
    if total_subtasks is not None and total_subtasks < 0:
        raise InvalidArgumentError("total_subtasks must be >= 0")

    hostname = hostname or socket.gethostname()
    process_id = process_id if process_id is not None else os.getpid()
    run_id = str(uuid.uuid4())
    d = db.get_dialect()

    try:
        with db.session_scope() as session:
            task_id = _lookup_task_id(session, stage, task)
            if task_id is None:
                raise TaskNotRegisteredError(stage, task)
            now = d.now()
            session.execute(TaskRun.__table__.insert().values(
                run_id=run_id,
                task_id=task_id,
                hostname=hostname,
                process_id=process_id,
                parent_pid=os.getppid() if process_id == os.getpid() else None,
                start_time=now,
                last_update=now,
                status=RunStatus.STARTED.value,
                total_subtasks=total_subtasks,
                current_subtask=0,
                overall_percent_complete=0.0,
                overall_progress_message=message,
                version=version,
                git_commit=git_commit,
                user_name=_current_user(),
                environment=environment,
            ))
    except SQLAlchemyError as e:
        _store_failed("start_run", e, stage=stage, task=task, run_id=run_id)
        return None

    logger.info("run started", extra={
        "component": "tracking", "event": "START", "run_id": run_id,
        "stage": stage, "task": task, "hostname": hostname, "process_id": process_id,
    })
    return RunHandle(run_id=run_id, stage=stage, task=task, task_id=task_id,
                     hostname=hostname, process_id=process_id)


def _explain_noop(session: Session, model, key_filter, entity: str, **fields) -> None:
    status = session.execute(select(model.status).where(*key_filter)).scalar_one_or_none()
    if status is None:
        logger.warning(f"{entity} not found; update ignored", extra={
            "component": "tracking", "event": "NOT_FOUND", **fields})
    else:
        prometheus_metrics.increment_terminal_noops(entity)
        logger.warning(f"{entity} already {status}; update ignored", extra={
            "component": "tracking", "event": "TERMINAL_NOOP", "status": status, **fields})


def _apply_run_patch(run_id: str, patch: RunPatch, operation: str) -> bool:
    d = db.get_dialect()
    values = patch.to_values()
    values["last_update"] = d.now()
    if patch.is_terminal:
        values["end_time"] = d.now()
    if patch.status == RunStatus.COMPLETED and patch.overall_percent_complete is None:
        values["overall_percent_complete"] = 100.0

    try:
        with db.session_scope() as session:
            result = session.execute(
                update(TaskRun)
                .where(TaskRun.run_id == run_id, TaskRun.status.not_in(TERMINAL_RUN_STATUSES))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                _explain_noop(session, TaskRun, [TaskRun.run_id == run_id], "run", run_id=run_id)
                return False

            if patch.status == RunStatus.FAILED:
                session.execute(
                    update(SubtaskProgress)
                    .where(SubtaskProgress.run_id == run_id,
                           SubtaskProgress.status.in_(ACTIVE_STATUSES))
                    .values(status=SubtaskStatus.FAILED.value,
                            end_time=d.now(),
                            last_update=d.now(),
                            error_message=FAILED_SUBTASK_MESSAGE)
                    .execution_options(synchronize_session=False)
                )
            if patch.is_terminal:
                schedule_retention(session, run_id)
    except SQLAlchemyError as e:
        _store_failed(operation, e, run_id=run_id)
        return False

    if patch.status is not None:
        log = logger.warning if patch.status == RunStatus.FAILED else logger.info
        log(f"run {patch.status.value.lower()}", extra={
            "component": "tracking", "event": patch.status.value, "run_id": run_id,
            "error_message": patch.error_message,
        })
    return True


def update_run(
    run: RunRef,
    status: Optional[Union[RunStatus, str]] = None,
    percent: Optional[float] = None,
    message: Optional[str] = None,
    current_subtask: Optional[int] = None,
    total_subtasks: Optional[int] = None,
    error_message: Optional[str] = None,
    error_detail: Optional[str] = None,
) -> bool:
    """Apply a partial update to a non-terminal run."""
    run_id = _run_id(run)
    patch = _patch(
        RunPatch,
        status=status,
        overall_percent_complete=percent,
        overall_progress_message=message,
        current_subtask=current_subtask,
        total_subtasks=total_subtasks,
        error_message=error_message,
        error_detail=error_detail,
    )
    return _apply_run_patch(run_id, patch, "update_run")


def complete_run(run: RunRef, message: Optional[str] = None) -> bool:
    run_id = _run_id(run)
    patch = RunPatch(status=RunStatus.COMPLETED, overall_percent_complete=100.0,
                     overall_progress_message=message or "Completed")
    return _apply_run_patch(run_id, patch, "complete_run")


def fail_run(run: RunRef, error_message: str, error_detail: Optional[str] = None) -> bool:
    """Mark a run FAILED; its still-active subtasks are failed with it."""
    run_id = _run_id(run)
    patch = _patch(RunPatch, status=RunStatus.FAILED, error_message=error_message or "Task failed",
                   error_detail=error_detail)
    return _apply_run_patch(run_id, patch, "fail_run")


def cancel_run(run: RunRef, message: Optional[str] = None) -> bool:
    run_id = _run_id(run)
    patch = _patch(RunPatch, status=RunStatus.CANCELLED, overall_progress_message=message)
    return _apply_run_patch(run_id, patch, "cancel_run")


def skip_run(run: RunRef, message: Optional[str] = None) -> bool:
    run_id = _run_id(run)
    patch = _patch(RunPatch, status=RunStatus.SKIPPED, overall_progress_message=message)
    return _apply_run_patch(run_id, patch, "skip_run")


# ---------------------------------------------------------------------------
# Subtasks
# ---------------------------------------------------------------------------

def _subtask_number(run: RunRef, number: Optional[int]) -> int:
    if number is not None:
        if number < 1:
            raise InvalidArgumentError("subtask number must be >= 1")
        return number
    if isinstance(run, RunHandle) and run.current_subtask > 0:
        return run.current_subtask
    raise InvalidArgumentError("subtask number is required when no subtask has been started on this handle")


def start_subtask(
    run: RunRef,
    name: str,
    number: Optional[int] = None,
    items_total: Optional[int] = None,
    message: Optional[str] = None,
) -> Optional[int]:
    """Start (or restart) a subtask; returns its number.

    Without an explicit number the next one is used: the handle's counter
    plus one, or the run's highest subtask number plus one for a bare run_id.
    The parent run moves from STARTED to RUNNING. Restarting a subtask that is
    still active keeps its item count; a terminal subtask is left as is and
    None is returned.
    """
    run_id = _run_id(run)
    name = _require_name(name, "subtask name")
    if number is not None and number < 1:
        raise InvalidArgumentError("subtask number must be >= 1")
    if items_total is not None and items_total < 0:
        raise InvalidArgumentError("items_total must be >= 0")
    d = db.get_dialect()

    try:
        with db.session_scope() as session:
            run_status = session.execute(
                select(TaskRun.status).where(TaskRun.run_id == run_id)
            ).scalar_one_or_none()
            if run_status is None or run_status in TERMINAL_RUN_STATUSES:
                _explain_noop(session, TaskRun, [TaskRun.run_id == run_id], "run", run_id=run_id)
                return None

            if number is None:
                if isinstance(run, RunHandle):
                    number = run.current_subtask + 1
                else:
                    number = session.execute(
                        select(func.coalesce(func.max(SubtaskProgress.subtask_number), 0))
                        .where(SubtaskProgress.run_id == run_id)
                    ).scalar_one() + 1

            key = [SubtaskProgress.run_id == run_id, SubtaskProgress.subtask_number == number]
            existing = session.execute(select(SubtaskProgress.status).where(*key)).scalar_one_or_none()
            if existing in TERMINAL_SUBTASK_STATUSES:
                _explain_noop(session, SubtaskProgress, key, "subtask",
                              run_id=run_id, subtask_number=number)
                return None

            now = d.now()
            values = {
                "run_id": run_id,
                "subtask_number": number,
                "subtask_name": name,
                "status": SubtaskStatus.STARTED.value,
                "start_time": now,
                "end_time": None,
                "last_update": now,
                "percent_complete": 0.0,
                "progress_message": message,
                "items_total": items_total,
                "items_complete": 0,
                "error_message": None,
            }
            # a restart keeps the status and the items already counted
            restart_columns = ["subtask_name", "start_time", "end_time", "last_update",
                               "progress_message", "error_message"]
            if items_total is not None:
                restart_columns.append("items_total")
            session.execute(d.upsert(SubtaskProgress.__table__, values, ["run_id", "subtask_number"],
                                     update_columns=restart_columns))
            session.execute(
                update(TaskRun)
                .where(TaskRun.run_id == run_id, TaskRun.status.not_in(TERMINAL_RUN_STATUSES))
                .values(
                    status=case((TaskRun.status == RunStatus.STARTED.value, RunStatus.RUNNING.value),
                                else_=TaskRun.status),
                    current_subtask=number,
                    last_update=d.now(),
                )
                .execution_options(synchronize_session=False)
            )
    except SQLAlchemyError as e:
        _store_failed("start_subtask", e, run_id=run_id, subtask_number=number)
        return None

    if isinstance(run, RunHandle):
        run.current_subtask = number
    logger.info("subtask started", extra={
        "component": "tracking", "event": "SUBTASK_START", "run_id": run_id,
        "subtask_number": number, "subtask_name": name,
    })
    return number


def _apply_subtask_patch(run_id: str, number: int, patch: SubtaskPatch, operation: str,
                         fill_items_from_total: bool = False) -> bool:
    d = db.get_dialect()
    values = patch.to_values()
    values["last_update"] = d.now()
    if patch.is_terminal:
        values["end_time"] = d.now()
    if fill_items_from_total and patch.items_complete is None:
        values["items_complete"] = func.coalesce(SubtaskProgress.items_total, SubtaskProgress.items_complete)
    if patch.percent_complete is None and patch.items_complete is not None:
        if patch.items_total is not None:
            if patch.items_total > 0:
                values["percent_complete"] = subtask_percent(patch.items_complete, patch.items_total)
        else:
            values["percent_complete"] = case(
                (SubtaskProgress.items_total > 0,
                 patch.items_complete * 100.0 / SubtaskProgress.items_total),
                else_=SubtaskProgress.percent_complete,
            )

    key = [SubtaskProgress.run_id == run_id, SubtaskProgress.subtask_number == number]
    try:
        with db.session_scope() as session:
            result = session.execute(
                update(SubtaskProgress)
                .where(*key, SubtaskProgress.status.not_in(TERMINAL_SUBTASK_STATUSES))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                _explain_noop(session, SubtaskProgress, key, "subtask",
                              run_id=run_id, subtask_number=number)
                return False
            session.execute(
                update(TaskRun)
                .where(TaskRun.run_id == run_id, TaskRun.status.not_in(TERMINAL_RUN_STATUSES))
                .values(last_update=d.now())
                .execution_options(synchronize_session=False)
            )
    except SQLAlchemyError as e:
        _store_failed(operation, e, run_id=run_id, subtask_number=number)
        return False

    if patch.status is not None and patch.is_terminal:
        logger.info(f"subtask {patch.status.value.lower()}", extra={
            "component": "tracking", "event": f"SUBTASK_{patch.status.value}",
            "run_id": run_id, "subtask_number": number,
        })
    return True


def update_subtask(
    run: RunRef,
    number: Optional[int] = None,
    status: Optional[Union[SubtaskStatus, str]] = None,
    percent: Optional[float] = None,
    items_complete: Optional[int] = None,
    items_total: Optional[int] = None,
    message: Optional[str] = None,
    error_message: Optional[str] = None,
) -> bool:
    """Overwrite subtask progress fields.

    items_complete is written as an absolute value; concurrent workers must
    use counters.increment instead or their updates will be lost.
    """
    run_id = _run_id(run)
    number = _subtask_number(run, number)
    patch = _patch(
        SubtaskPatch,
        status=status,
        percent_complete=percent,
        items_complete=items_complete,
        items_total=items_total,
        progress_message=message,
        error_message=error_message,
    )
    return _apply_subtask_patch(run_id, number, patch, "update_subtask")


def complete_subtask(
    run: RunRef,
    number: Optional[int] = None,
    items_complete: Optional[int] = None,
    message: Optional[str] = None,
) -> bool:
    run_id = _run_id(run)
    number = _subtask_number(run, number)
    patch = _patch(SubtaskPatch, status=SubtaskStatus.COMPLETED, percent_complete=100.0,
                   items_complete=items_complete, progress_message=message)
    return _apply_subtask_patch(run_id, number, patch, "complete_subtask", fill_items_from_total=True)


def fail_subtask(run: RunRef, error_message: str, number: Optional[int] = None) -> bool:
    run_id = _run_id(run)
    number = _subtask_number(run, number)
    patch = _patch(SubtaskPatch, status=SubtaskStatus.FAILED, error_message=error_message or "Subtask failed")
    return _apply_subtask_patch(run_id, number, patch, "fail_subtask")


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

def reset_task(stage: str, task: str, run_id: Optional[str] = None) -> Optional[int]:
    """Delete a task's runs (or a single run); subtasks and metrics cascade.

    Returns the number of runs deleted.
    """
    stage = _require_name(stage, "stage")
    task = _require_name(task, "task")
    try:
        with db.session_scope() as session:
            task_id = _lookup_task_id(session, stage, task)
            if task_id is None:
                raise TaskNotRegisteredError(stage, task)
            stmt = delete(TaskRun).where(TaskRun.task_id == task_id)
            if run_id is not None:
                stmt = stmt.where(TaskRun.run_id == run_id)
            deleted = session.execute(stmt.execution_options(synchronize_session=False)).rowcount or 0
    except SQLAlchemyError as e:
        _store_failed("reset_task", e, stage=stage, task=task)
        return None

    logger.info("task reset", extra={
        "component": "tracking", "event": "RESET", "stage": stage, "task": task, "runs_deleted": deleted
    })
    return deleted


def delete_stage(stage: str) -> Optional[DeleteStageResult]:
    """Delete a stage with its tasks and their run history."""
    stage = _require_name(stage, "stage")
    try:
        with db.session_scope() as session:
            stage_id = session.execute(
                select(Stage.stage_id).where(Stage.stage_name == stage)
            ).scalar_one_or_none()
            if stage_id is None:
                logger.info("stage not found; nothing to delete", extra={
                    "component": "tracking", "stage": stage})
                return DeleteStageResult(stage_name=stage, stage_deleted=False)

            task_ids = select(Task.task_id).where(Task.stage_id == stage_id)
            runs_deleted = session.execute(
                delete(TaskRun).where(TaskRun.task_id.in_(task_ids))
                .execution_options(synchronize_session=False)
            ).rowcount or 0
            tasks_deleted = session.execute(
                delete(Task).where(Task.stage_id == stage_id)
                .execution_options(synchronize_session=False)
            ).rowcount or 0
            session.execute(
                delete(Stage).where(Stage.stage_id == stage_id)
                .execution_options(synchronize_session=False)
            )
    except SQLAlchemyError as e:
        _store_failed("delete_stage", e, stage=stage)
        return None

    logger.info("stage deleted", extra={
        "component": "tracking", "event": "DELETE_STAGE", "stage": stage,
        "tasks_deleted": tasks_deleted, "runs_deleted": runs_deleted,
    })
    return DeleteStageResult(stage_name=stage, stage_deleted=True,
                             tasks_deleted=tasks_deleted, runs_deleted=runs_deleted)


def purge_tracking_data(include_reporters: bool = False) -> Optional[Dict[str, int]]:
    """Delete every row from the tracking tables; returns rows deleted per table."""
    tables = [MetricsRetention, ProcessMetric, SubtaskProgress, TaskRun, Task, Stage]
    if include_reporters:
        tables.append(ReporterStatus)
    counts = {}
    try:
        with db.session_scope() as session:
            for model in tables:
                counts[model.__tablename__] = session.execute(
                    delete(model).execution_options(synchronize_session=False)
                ).rowcount or 0
    except SQLAlchemyError as e:
        _store_failed("purge_tracking_data", e)
        return None

    logger.warning("tracking data purged", extra={"component": "tracking", "event": "PURGE", **counts})
    return counts
