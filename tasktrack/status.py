from enum import Enum


class RunStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    STARTED = "STARTED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    SKIPPED = "SKIPPED"


class SubtaskStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    STARTED = "STARTED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class ErrorType(str, Enum):
    PROCESS_DIED = "PROCESS_DIED"
    PID_REUSED = "PID_REUSED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    ZOMBIE_PROCESS = "ZOMBIE_PROCESS"
    PS_ERROR = "PS_ERROR"
    COLLECTION_TIMEOUT = "COLLECTION_TIMEOUT"
    UNKNOWN = "UNKNOWN"


RUN_STATUSES = tuple(s.value for s in RunStatus)
SUBTASK_STATUSES = tuple(s.value for s in SubtaskStatus)

ACTIVE_STATUSES = (RunStatus.STARTED.value, RunStatus.RUNNING.value)
TERMINAL_RUN_STATUSES = (
    RunStatus.COMPLETED.value,
    RunStatus.FAILED.value,
    RunStatus.CANCELLED.value,
    RunStatus.SKIPPED.value,
)
TERMINAL_SUBTASK_STATUSES = (
    SubtaskStatus.COMPLETED.value,
    SubtaskStatus.FAILED.value,
    SubtaskStatus.SKIPPED.value,
)

# Collection errors that mean the tracked process is gone
FATAL_ERROR_TYPES = (ErrorType.PROCESS_DIED.value, ErrorType.PID_REUSED.value)
