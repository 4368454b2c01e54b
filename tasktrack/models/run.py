from sqlalchemy import (
    Column, Integer, String, Text, Float, JSON, ForeignKey, CheckConstraint, Index
)
from tasktrack.db import Base, UTCDateTime
from tasktrack.status import RUN_STATUSES


class TaskRun(Base):
    __tablename__ = "task_runs"

    run_id = Column(String(36), primary_key=True)  # uuid4
    task_id = Column(Integer, ForeignKey("tasks.task_id", ondelete="CASCADE"), nullable=False)
    hostname = Column(String(255), nullable=False)
    process_id = Column(Integer, nullable=True)
    parent_pid = Column(Integer, nullable=True)
    start_time = Column(UTCDateTime, nullable=True)
    end_time = Column(UTCDateTime, nullable=True)
    last_update = Column(UTCDateTime, nullable=True)
    status = Column(String(16), nullable=False, default="NOT_STARTED")
    total_subtasks = Column(Integer, nullable=True)
    current_subtask = Column(Integer, nullable=True)
    overall_percent_complete = Column(Float, nullable=True)
    overall_progress_message = Column(Text, nullable=True)
    # mirrored from the latest process_metrics snapshot by the reporter
    memory_mb = Column(Float, nullable=True)
    cpu_percent = Column(Float, nullable=True)
    error_message = Column(Text, nullable=True)
    error_detail = Column(Text, nullable=True)
    version = Column(String(64), nullable=True)
    git_commit = Column(String(64), nullable=True)
    user_name = Column(String(128), nullable=True)
    environment = Column(JSON, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN (%s)" % ", ".join(f"'{s}'" for s in RUN_STATUSES),
            name="ck_task_runs_status",
        ),
        Index("idx_task_runs_host_status", "hostname", "status"),
        Index("idx_task_runs_task_start", "task_id", "start_time"),
    )
