from sqlalchemy import (
    Column, Integer, String, Text, Float, ForeignKey, CheckConstraint, UniqueConstraint
)
from tasktrack.db import Base, UTCDateTime
from tasktrack.status import SUBTASK_STATUSES


class SubtaskProgress(Base):
    __tablename__ = "subtask_progress"

    progress_id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(36), ForeignKey("task_runs.run_id", ondelete="CASCADE"), nullable=False)
    subtask_number = Column(Integer, nullable=False)
    subtask_name = Column(String(255), nullable=True)
    status = Column(String(16), nullable=False, default="NOT_STARTED")
    start_time = Column(UTCDateTime, nullable=True)
    end_time = Column(UTCDateTime, nullable=True)
    last_update = Column(UTCDateTime, nullable=True)
    percent_complete = Column(Float, nullable=True)
    progress_message = Column(Text, nullable=True)
    items_total = Column(Integer, nullable=True)
    items_complete = Column(Integer, nullable=True, default=0)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN (%s)" % ", ".join(f"'{s}'" for s in SUBTASK_STATUSES),
            name="ck_subtask_progress_status",
        ),
        UniqueConstraint("run_id", "subtask_number", name="uq_subtask_run_number"),
    )
