from sqlalchemy import Column, Integer, String, Boolean, ForeignKey
from tasktrack.db import Base, UTCDateTime


class MetricsRetention(Base):
    __tablename__ = "process_metrics_retention"

    run_id = Column(String(36), ForeignKey("task_runs.run_id", ondelete="CASCADE"), primary_key=True)
    task_completed_at = Column(UTCDateTime, nullable=True)
    metrics_delete_after = Column(UTCDateTime, nullable=True)
    metrics_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(UTCDateTime, nullable=True)
    metrics_count = Column(Integer, nullable=True)
