# Import schemas for easier access from elsewhere in the application
from .command import CommandResult
from .schedule import ScheduleResponse, SchedulerStats, UpcomingRun
from .schedule_run import ScheduleRunResponse, TickSummary
