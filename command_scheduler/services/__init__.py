from .schedule_service import ScheduleService, due_conditions, lease_available
from .run_service import RunService, dedupe_key
