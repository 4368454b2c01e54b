from typing import Optional
from pydantic import BaseModel, Field

from tasktrack.status import FATAL_ERROR_TYPES


class MetricsSnapshot(BaseModel):
    """One collection of process resource usage, or a classified collection error"""
    run_id: str
    process_id: int
    hostname: str
    is_alive: bool = False
    process_start_time: Optional[float] = Field(None, description="OS-reported process start time, epoch seconds")

    cpu_percent: Optional[float] = Field(None, description="CPU percent since previous collection; None on first sample")
    cpu_cores: Optional[int] = None
    memory_mb: Optional[float] = None
    memory_percent: Optional[float] = None
    memory_vms_mb: Optional[float] = None
    swap_mb: Optional[float] = None
    read_bytes: Optional[int] = None
    write_bytes: Optional[int] = None
    read_count: Optional[int] = None
    write_count: Optional[int] = None
    io_wait_percent: Optional[float] = None
    open_files: Optional[int] = None
    num_fds: Optional[int] = None
    num_threads: Optional[int] = None
    page_faults_minor: Optional[int] = None
    page_faults_major: Optional[int] = None
    num_ctx_switches_voluntary: Optional[int] = None
    num_ctx_switches_involuntary: Optional[int] = None

    child_count: Optional[int] = Field(None, description="Direct children only")
    child_total_cpu_percent: Optional[float] = None
    child_total_memory_mb: Optional[float] = None

    collection_error: bool = False
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    reporter_version: Optional[str] = None
    collection_duration_ms: Optional[float] = None

    @property
    def is_fatal(self) -> bool:
        return self.error_type in FATAL_ERROR_TYPES

    def mark_error(self, error_type: str, message: str) -> "MetricsSnapshot":
        self.collection_error = True
        self.error_type = error_type
        self.error_message = message
        return self

    def to_row(self) -> dict:
        return self.model_dump()
