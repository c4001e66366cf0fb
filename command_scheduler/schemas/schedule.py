from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from ..models.schedule import ScheduleStatus


class ScheduleResponse(BaseModel):
    """Read-only view of a schedule row."""
    model_config = ConfigDict(
        from_attributes=True,
        json_schema_extra={
            "example": {
                "id": 1,
                "name": "Morning digest",
                "command_slug": "digest",
                "payload": {"channel": "inbox"},
                "status": "active",
                "recurrence_type": "daily_at",
                "recurrence_value": "07:30",
                "timezone": "Europe/Berlin",
                "next_run_at": "2025-08-15T05:30:00",
                "last_run_at": "2025-08-14T05:30:00",
                "run_count": 12,
                "max_runs": None,
                "locked_at": None,
                "lock_owner": None,
                "created_at": "2025-08-01T10:00:00",
                "updated_at": "2025-08-14T05:30:02"
            }
        }
    )

    id: int
    name: str
    command_slug: str
    payload: Optional[Dict[str, Any]] = None
    status: ScheduleStatus
    recurrence_type: str
    recurrence_value: Optional[str] = None
    timezone: str
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    run_count: int
    max_runs: Optional[int] = None
    locked_at: Optional[datetime] = None
    lock_owner: Optional[str] = None
    last_tick_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UpcomingRun(BaseModel):
    """One entry of the next_runs list in SchedulerStats."""
    id: int
    name: str
    command_slug: str
    next_run_at: datetime


class SchedulerStats(BaseModel):
    """Snapshot of scheduler state for operators and the health check."""
    total: int = Field(0, description="Number of schedules")
    active: int = Field(0, description="Schedules with status active")
    due: int = Field(0, description="Schedules currently in the due set")
    locked: int = Field(0, description="Schedules holding a valid lease")
    by_status: Dict[str, int] = Field(default_factory=dict)
    next_runs: List[UpcomingRun] = Field(default_factory=list, description="Soonest active schedules")
    total_today: int = Field(0, description="Runs created since midnight UTC")
    completed_today: int = 0
    failed_today: int = 0
    running_now: int = 0
