from ..db.base import Base

# Import models for easier access from elsewhere in the application
from .schedule import Schedule, ScheduleStatus
from .schedule_run import ScheduleRun, RunStatus, TERMINAL_STATUSES
