"""
Core module for the command scheduler.

Configuration, the exception hierarchy and the default recurrence calculator.
The scheduler loop (core.scheduler) and the command executor (core.executor)
depend on the models and are imported from their own modules.
"""

from .exceptions import (
    SchedulerError,
    ScheduleNotFoundError,
    ScheduleValidationError,
    RunStateError,
    RecurrenceError,
    CommandNotFoundError,
    ConfigurationError,
    StorageError
)
from .config import SchedulerSettings, LEASE_TTL, LEASE_TTL_SECONDS, MAX_OUTPUT_LENGTH, default_worker_id
from .recurrence import NextRunCalculator, RecurrenceCalculator

__version__ = "1.0.0"

__all__ = [
    # Configuration
    "SchedulerSettings",
    "LEASE_TTL",
    "LEASE_TTL_SECONDS",
    "MAX_OUTPUT_LENGTH",
    "default_worker_id",

    # Recurrence
    "NextRunCalculator",
    "RecurrenceCalculator",

    # Exception hierarchy
    "SchedulerError",
    "ScheduleNotFoundError",
    "ScheduleValidationError",
    "RunStateError",
    "RecurrenceError",
    "CommandNotFoundError",
    "ConfigurationError",
    "StorageError",
]
