from .logger import setup_logging, get_logger, LoggerAdapter
from .metrics import (
    setup_metrics, get_metrics, timing_metric, record_run_metrics,
    record_lease_contention, set_due_schedules, set_stuck_runs,
    SCHEDULE_RUN_COUNT, SCHEDULE_RUN_DURATION, LEASE_CONTENTION_COUNT,
    DUE_SCHEDULES, STUCK_RUNS, TICK_DURATION
)
