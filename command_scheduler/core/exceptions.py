"""
Custom exceptions for the command scheduler.

Lease contention and duplicate run creation are normal outcomes and never
raise. Executor failures are recorded on the run instead of being raised.
The exceptions below cover invalid definitions, illegal state transitions
and storage failures.
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class SchedulerError(Exception):
    """Base exception for all command scheduler errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "GENERAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for logs and task results."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


class ScheduleValidationError(SchedulerError):
    """Raised when a schedule definition is invalid."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Any = None
    ):
        details = {
            "field": field,
            "invalid_value": str(value) if value is not None else None,
        }
        super().__init__(message, error_code="VALIDATION_ERROR", details=details)
        self.field = field
        self.value = value


class ScheduleNotFoundError(SchedulerError):
    """Raised when a requested schedule cannot be found."""

    def __init__(self, schedule_id: int, message: Optional[str] = None):
        message = message or f"Schedule with ID '{schedule_id}' not found"
        super().__init__(
            message,
            error_code="SCHEDULE_NOT_FOUND",
            details={"schedule_id": schedule_id}
        )
        self.schedule_id = schedule_id


class RunStateError(SchedulerError):
    """Raised on an illegal ScheduleRun status transition."""

    def __init__(self, run_id: Optional[int], current_status: str, target_status: str):
        message = f"Run {run_id} cannot transition from '{current_status}' to '{target_status}'"
        super().__init__(
            message,
            error_code="INVALID_RUN_TRANSITION",
            details={
                "run_id": run_id,
                "current_status": current_status,
                "target_status": target_status,
            }
        )
        self.run_id = run_id
        self.current_status = current_status
        self.target_status = target_status


class RecurrenceError(ScheduleValidationError):
    """Raised when a recurrence definition cannot be evaluated."""

    def __init__(
        self,
        message: str,
        recurrence_type: Optional[str] = None,
        recurrence_value: Optional[str] = None
    ):
        super().__init__(message, field="recurrence_value", value=recurrence_value)
        self.error_code = "RECURRENCE_ERROR"
        self.details["recurrence_type"] = recurrence_type
        self.recurrence_type = recurrence_type
        self.recurrence_value = recurrence_value


class CommandNotFoundError(SchedulerError):
    """Raised when no handler is registered for a command slug."""

    def __init__(self, command_slug: str):
        super().__init__(
            f"No command registered for slug '{command_slug}'",
            error_code="COMMAND_NOT_FOUND",
            details={"command_slug": command_slug}
        )
        self.command_slug = command_slug


class ConfigurationError(SchedulerError):
    """Raised when there are configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Any = None
    ):
        details = {
            "config_key": config_key,
            "config_value": str(config_value) if config_value is not None else None
        }
        super().__init__(message, error_code="CONFIGURATION_ERROR", details=details)
        self.config_key = config_key
        self.config_value = config_value


class StorageError(SchedulerError):
    """Raised when the database is unavailable or a storage operation fails."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None
    ):
        details = {
            "operation": operation,
            "table": table
        }
        super().__init__(message, error_code="STORAGE_ERROR", details=details)
        self.operation = operation
        self.table = table
