from typing import Optional, List
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from ..models.schedule_run import RunStatus


class ScheduleRunResponse(BaseModel):
    """Read-only view of a schedule run row."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    schedule_id: int
    planned_run_at: datetime
    dedupe_key: str
    status: RunStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    output: Optional[str] = None
    error_message: Optional[str] = None
    job_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TickSummary(BaseModel):
    """Serialisable outcome of one scheduler tick."""
    worker_id: str
    started_at: datetime
    due: int = Field(0, description="Schedules returned by the due-set query")
    dispatched: int = Field(0, description="Runs handed to the executor")
    completed: int = 0
    failed: int = 0
    skipped: int = Field(0, description="Lease lost or run already handled")
    run_ids: List[int] = Field(default_factory=list)
    duration_ms: Optional[int] = None
