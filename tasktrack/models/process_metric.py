from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, Float, Boolean, ForeignKey, UniqueConstraint, Index
)
from tasktrack.db import Base, UTCDateTime


class ProcessMetric(Base):
    __tablename__ = "process_metrics"

    metric_id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(36), ForeignKey("task_runs.run_id", ondelete="CASCADE"), nullable=False)
    timestamp = Column(UTCDateTime, nullable=False)
    process_id = Column(Integer, nullable=False)
    hostname = Column(String(255), nullable=False)
    is_alive = Column(Boolean, nullable=False, default=False)
    process_start_time = Column(Float, nullable=True)  # epoch seconds as reported by the OS

    cpu_percent = Column(Float, nullable=True)
    cpu_cores = Column(Integer, nullable=True)
    memory_mb = Column(Float, nullable=True)
    memory_percent = Column(Float, nullable=True)
    memory_vms_mb = Column(Float, nullable=True)
    swap_mb = Column(Float, nullable=True)
    read_bytes = Column(BigInteger, nullable=True)
    write_bytes = Column(BigInteger, nullable=True)
    read_count = Column(BigInteger, nullable=True)
    write_count = Column(BigInteger, nullable=True)
    io_wait_percent = Column(Float, nullable=True)
    open_files = Column(Integer, nullable=True)
    num_fds = Column(Integer, nullable=True)
    num_threads = Column(Integer, nullable=True)
    page_faults_minor = Column(BigInteger, nullable=True)
    page_faults_major = Column(BigInteger, nullable=True)
    num_ctx_switches_voluntary = Column(BigInteger, nullable=True)
    num_ctx_switches_involuntary = Column(BigInteger, nullable=True)

    child_count = Column(Integer, nullable=True)
    child_total_cpu_percent = Column(Float, nullable=True)
    child_total_memory_mb = Column(Float, nullable=True)

    collection_error = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    error_type = Column(String(32), nullable=True)
    reporter_version = Column(String(32), nullable=True)
    collection_duration_ms = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("run_id", "timestamp", name="uq_process_metrics_run_ts"),
        Index("idx_process_metrics_run_ts", "run_id", "timestamp"),
    )
