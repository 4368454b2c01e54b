from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field


class StageInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    stage_id: int
    stage_name: str
    stage_order: Optional[int] = None
    description: Optional[str] = None
    task_count: int = 0


class TaskStatus(BaseModel):
    """Row of the current_task_status view: latest run per registered task"""
    stage_id: int
    stage_name: str
    stage_order: Optional[int] = None
    task_id: int
    task_name: str
    task_type: Optional[str] = None
    task_order: Optional[int] = None
    script_filename: Optional[str] = None
    log_path: Optional[str] = None
    log_filename: Optional[str] = None
    run_id: Optional[str] = None
    hostname: Optional[str] = None
    process_id: Optional[int] = None
    status: Optional[str] = Field(None, description="None when the task has never run")
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    last_update: Optional[datetime] = None
    total_subtasks: Optional[int] = None
    current_subtask: Optional[int] = None
    overall_percent_complete: Optional[float] = None
    overall_progress_message: Optional[str] = None
    memory_mb: Optional[float] = None
    cpu_percent: Optional[float] = None
    error_message: Optional[str] = None
    duration_seconds: Optional[float] = None
    seconds_since_update: Optional[float] = None


class RunInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    run_id: str
    task_id: int
    hostname: str
    process_id: Optional[int] = None
    parent_pid: Optional[int] = None
    status: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    last_update: Optional[datetime] = None
    total_subtasks: Optional[int] = None
    current_subtask: Optional[int] = None
    overall_percent_complete: Optional[float] = None
    overall_progress_message: Optional[str] = None
    memory_mb: Optional[float] = None
    cpu_percent: Optional[float] = None
    error_message: Optional[str] = None
    error_detail: Optional[str] = None
    version: Optional[str] = None
    git_commit: Optional[str] = None
    user_name: Optional[str] = None
    environment: Optional[dict] = None


class TaskHistoryEntry(RunInfo):
    stage_name: str
    task_name: str
    duration_seconds: Optional[float] = None


class SubtaskInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    run_id: str
    subtask_number: int
    subtask_name: Optional[str] = None
    status: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    last_update: Optional[datetime] = None
    percent_complete: Optional[float] = None
    progress_message: Optional[str] = None
    items_total: Optional[int] = None
    items_complete: Optional[int] = None
    error_message: Optional[str] = None


class RunWithMetrics(BaseModel):
    """A run's current state joined with its most recent metrics snapshot"""
    run_id: str
    task_id: int
    stage_name: str
    task_name: str
    hostname: str
    process_id: Optional[int] = None
    status: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    last_update: Optional[datetime] = None
    total_subtasks: Optional[int] = None
    current_subtask: Optional[int] = None
    overall_percent_complete: Optional[float] = None
    overall_progress_message: Optional[str] = None
    error_message: Optional[str] = None

    metric_id: Optional[int] = None
    metrics_timestamp: Optional[datetime] = None
    is_alive: Optional[bool] = None
    process_start_time: Optional[float] = None
    cpu_percent: Optional[float] = None
    cpu_cores: Optional[int] = None
    memory_mb: Optional[float] = None
    memory_percent: Optional[float] = None
    memory_vms_mb: Optional[float] = None
    swap_mb: Optional[float] = None
    read_bytes: Optional[int] = None
    write_bytes: Optional[int] = None
    io_wait_percent: Optional[float] = None
    open_files: Optional[int] = None
    num_fds: Optional[int] = None
    num_threads: Optional[int] = None
    child_count: Optional[int] = None
    child_total_cpu_percent: Optional[float] = None
    child_total_memory_mb: Optional[float] = None
    collection_error: Optional[bool] = None
    metrics_error_type: Optional[str] = None
    metrics_error_message: Optional[str] = None
    metrics_age_seconds: Optional[float] = None
    metrics_state: str = Field("unknown", description="fresh, or unknown when absent or stale")


class ProcessMetricRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    metric_id: int
    run_id: str
    timestamp: datetime
    process_id: int
    hostname: str
    is_alive: bool
    process_start_time: Optional[float] = None
    cpu_percent: Optional[float] = None
    cpu_cores: Optional[int] = None
    memory_mb: Optional[float] = None
    memory_percent: Optional[float] = None
    memory_vms_mb: Optional[float] = None
    swap_mb: Optional[float] = None
    read_bytes: Optional[int] = None
    write_bytes: Optional[int] = None
    io_wait_percent: Optional[float] = None
    open_files: Optional[int] = None
    num_fds: Optional[int] = None
    num_threads: Optional[int] = None
    page_faults_minor: Optional[int] = None
    page_faults_major: Optional[int] = None
    num_ctx_switches_voluntary: Optional[int] = None
    num_ctx_switches_involuntary: Optional[int] = None
    child_count: Optional[int] = None
    child_total_cpu_percent: Optional[float] = None
    child_total_memory_mb: Optional[float] = None
    collection_error: bool = False
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    reporter_version: Optional[str] = None
    collection_duration_ms: Optional[float] = None


class ReporterInfo(BaseModel):
    hostname: str
    process_id: int
    started_at: datetime
    last_heartbeat: datetime
    version: Optional[str] = None
    shutdown_requested: bool = False
    heartbeat_age_seconds: Optional[float] = None
    is_alive: bool = Field(False, description="Heartbeat younger than the staleness threshold")


class ReporterStartResult(BaseModel):
    hostname: str
    process_id: Optional[int] = None
    started: bool = Field(..., description="False when a live reporter already owns the host")
    replaced_pid: Optional[int] = None
    message: str = ""


class CleanupResult(BaseModel):
    run_id: str
    end_time: Optional[datetime] = None
    metrics_count: int = 0
    deleted: bool = False


class ReporterStopRequest(BaseModel):
    timeout: float = Field(30.0, ge=0, description="Seconds to wait for the reporter to exit")


class ReporterStartRequest(BaseModel):
    force: bool = Field(False, description="Replace a live reporter on this host")


class DeleteStageResult(BaseModel):
    stage_name: str
    stage_deleted: bool
    tasks_deleted: int = 0
    runs_deleted: int = 0


class RunList(BaseModel):
    runs: List[RunWithMetrics]
    total: int
