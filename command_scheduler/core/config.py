"""
Configuration for the command scheduler.

Every setting is read from the environment with a sensible default so the
scheduler runs out of the box against a local SQLite database.
"""

import os
import socket
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from .exceptions import ConfigurationError

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///scheduler.db")

# Lease protocol. Both the due-set query and Schedule.is_locked() use LEASE_TTL.
LEASE_TTL_SECONDS = int(os.getenv("SCHEDULER_LEASE_TTL_SECONDS", "300"))  # 5 minutes
LEASE_TTL = timedelta(seconds=LEASE_TTL_SECONDS)

# Tick loop
TICK_INTERVAL_SECONDS = float(os.getenv("SCHEDULER_TICK_INTERVAL", "60"))
MAX_WORKERS = int(os.getenv("SCHEDULER_MAX_WORKERS", "1"))
DUE_BATCH_SIZE = int(os.getenv("SCHEDULER_DUE_BATCH_SIZE", "100"))

# Output and error text stored on a run is truncated to this many characters
MAX_OUTPUT_LENGTH = 100000


def default_worker_id() -> str:
    """Identify this process as ``hostname:pid``."""
    return os.getenv("SCHEDULER_WORKER_ID") or f"{socket.gethostname()}:{os.getpid()}"


def _read_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer", config_key=name, config_value=raw)
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}", config_key=name, config_value=raw)
    return value


def _read_float(name: str, default: Optional[float], minimum: float = 0.0) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number", config_key=name, config_value=raw)
    if value <= minimum:
        raise ConfigurationError(f"{name} must be > {minimum}", config_key=name, config_value=raw)
    return value


@dataclass
class SchedulerSettings:
    """Validated scheduler settings for a worker process."""
    database_url: str = DATABASE_URL
    lease_ttl_seconds: int = LEASE_TTL_SECONDS
    tick_interval_seconds: float = TICK_INTERVAL_SECONDS
    max_workers: int = MAX_WORKERS
    due_batch_size: int = DUE_BATCH_SIZE
    command_timeout_seconds: Optional[float] = None
    worker_id: str = field(default_factory=default_worker_id)
    broker_url: str = "redis://localhost:6379/0"
    result_backend: str = "redis://localhost:6379/0"

    @property
    def lease_ttl(self) -> timedelta:
        return timedelta(seconds=self.lease_ttl_seconds)

    @classmethod
    def from_env(cls) -> "SchedulerSettings":
        """Build settings from environment variables, raising ConfigurationError on bad values."""
        database_url = os.getenv("DATABASE_URL", "sqlite:///scheduler.db")
        if not database_url:
            raise ConfigurationError("DATABASE_URL must not be empty", config_key="DATABASE_URL")

        return cls(
            database_url=database_url,
            lease_ttl_seconds=_read_int("SCHEDULER_LEASE_TTL_SECONDS", 300, minimum=1),
            tick_interval_seconds=_read_float("SCHEDULER_TICK_INTERVAL", 60.0),
            max_workers=_read_int("SCHEDULER_MAX_WORKERS", 1, minimum=1),
            due_batch_size=_read_int("SCHEDULER_DUE_BATCH_SIZE", 100, minimum=1),
            command_timeout_seconds=_read_float("SCHEDULER_COMMAND_TIMEOUT", None),
            worker_id=default_worker_id(),
            broker_url=os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0"),
            result_backend=os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0"),
        )
