from typing import Optional
from pydantic import BaseModel, Field, field_validator

from tasktrack.status import RunStatus, SubtaskStatus, TERMINAL_RUN_STATUSES, TERMINAL_SUBTASK_STATUSES

# Statuses a caller may move a run or subtask into after it has started
RUN_UPDATE_STATUSES = (
    RunStatus.RUNNING,
    RunStatus.COMPLETED,
    RunStatus.FAILED,
    RunStatus.SKIPPED,
    RunStatus.CANCELLED,
)
SUBTASK_UPDATE_STATUSES = (
    SubtaskStatus.RUNNING,
    SubtaskStatus.COMPLETED,
    SubtaskStatus.FAILED,
    SubtaskStatus.SKIPPED,
)


class RunPatch(BaseModel):
    """Partial update of a run; unset fields are left untouched"""
    status: Optional[RunStatus] = Field(None, description="New run status")
    overall_percent_complete: Optional[float] = Field(None, ge=0, le=100, description="Overall percent 0-100")
    overall_progress_message: Optional[str] = Field(None, description="Free-text progress message")
    current_subtask: Optional[int] = Field(None, ge=0, description="Subtask currently executing")
    total_subtasks: Optional[int] = Field(None, ge=0, description="Expected number of subtasks")
    error_message: Optional[str] = Field(None, description="Short error summary")
    error_detail: Optional[str] = Field(None, description="Traceback or long error text")

    @field_validator("status")
    @classmethod
    def _updatable_status(cls, v):
        if v is not None and v not in RUN_UPDATE_STATUSES:
            raise ValueError(f"status must be one of {[s.value for s in RUN_UPDATE_STATUSES]}")
        return v

    @property
    def is_terminal(self) -> bool:
        return self.status is not None and self.status.value in TERMINAL_RUN_STATUSES

    def to_values(self) -> dict:
        values = self.model_dump(exclude_none=True)
        if self.status is not None:
            values["status"] = self.status.value
        return values


class SubtaskPatch(BaseModel):
    """Absolute overwrite of subtask progress fields"""
    status: Optional[SubtaskStatus] = Field(None, description="New subtask status")
    percent_complete: Optional[float] = Field(None, ge=0, le=100, description="Percent 0-100")
    items_total: Optional[int] = Field(None, ge=0, description="Number of items in this subtask")
    items_complete: Optional[int] = Field(None, ge=0, description="Items finished so far")
    progress_message: Optional[str] = Field(None, description="Free-text progress message")
    error_message: Optional[str] = Field(None, description="Short error summary")

    @field_validator("status")
    @classmethod
    def _updatable_status(cls, v):
        if v is not None and v not in SUBTASK_UPDATE_STATUSES:
            raise ValueError(f"status must be one of {[s.value for s in SUBTASK_UPDATE_STATUSES]}")
        return v

    @property
    def is_terminal(self) -> bool:
        return self.status is not None and self.status.value in TERMINAL_SUBTASK_STATUSES

    def to_values(self) -> dict:
        values = self.model_dump(exclude_none=True)
        if self.status is not None:
            values["status"] = self.status.value
        return values
