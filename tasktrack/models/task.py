from sqlalchemy import Column, Integer, String, Text, ForeignKey, UniqueConstraint, func
from tasktrack.db import Base, UTCDateTime


class Task(Base):
    __tablename__ = "tasks"

    task_id = Column(Integer, primary_key=True, autoincrement=True)
    stage_id = Column(Integer, ForeignKey("stages.stage_id", ondelete="CASCADE"), nullable=False, index=True)
    task_name = Column(String(255), nullable=False)
    task_type = Column(String(32), nullable=True)  # R|python|sh|...
    task_order = Column(Integer, nullable=True)
    description = Column(Text, nullable=True)
    script_path = Column(Text, nullable=True)
    script_filename = Column(String(255), nullable=True)
    log_path = Column(Text, nullable=True)
    log_filename = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, server_default=func.current_timestamp())
    updated_at = Column(UTCDateTime, nullable=False, server_default=func.current_timestamp())

    __table_args__ = (
        UniqueConstraint("stage_id", "task_name", name="uq_tasks_stage_task"),
    )
