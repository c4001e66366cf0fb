import enum
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy import Column, Integer, String, DateTime, Enum, JSON, Index
from sqlalchemy.orm import relationship
from ..core.config import LEASE_TTL
from ..db.base import Base, TimestampMixin, ModelMixin, utcnow


class ScheduleStatus(enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class Schedule(Base, TimestampMixin, ModelMixin):
    """
    A named, recurring (or single-shot) directive to invoke a command.

    The lease columns (locked_at, lock_owner) are written by the scheduler loop
    through a conditional UPDATE in ScheduleService.acquire_lease; the helpers
    on this class only mirror that state in memory.
    """

    __tablename__ = "schedules"
    __table_args__ = (
        Index("ix_schedules_status_next_run_at", "status", "next_run_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    command_slug = Column(String(255), nullable=False)
    payload = Column(JSON, nullable=True)

    status = Column(
        Enum(ScheduleStatus, name="schedule_status", native_enum=False,
             values_callable=lambda statuses: [s.value for s in statuses]),
        default=ScheduleStatus.ACTIVE,
        nullable=False
    )

    # Opaque to the scheduler; handed to the recurrence calculator
    recurrence_type = Column(String(50), nullable=False)
    recurrence_value = Column(String(255), nullable=True)
    timezone = Column(String(50), default="UTC", nullable=False)

    next_run_at = Column(DateTime, nullable=True)  # null means never due
    last_run_at = Column(DateTime, nullable=True)
    run_count = Column(Integer, default=0, nullable=False)
    max_runs = Column(Integer, nullable=True)  # null means unbounded

    # Lease
    locked_at = Column(DateTime, nullable=True)
    lock_owner = Column(String(255), nullable=True)
    last_tick_at = Column(DateTime, nullable=True)

    # Relationships
    runs = relationship(
        "ScheduleRun",
        back_populates="schedule",
        order_by="ScheduleRun.id",
        passive_deletes=True
    )

    def __repr__(self):
        return f"<Schedule(id={self.id}, name='{self.name}', status='{self.status.value}')>"

    def is_locked(self, now: Optional[datetime] = None, ttl: timedelta = LEASE_TTL) -> bool:
        """True while a lease is held and not older than the TTL. Stale leases count as unlocked."""
        if self.locked_at is None:
            return False
        now = now or utcnow()
        return self.locked_at >= now - ttl

    def lock(self, owner_id: str, now: Optional[datetime] = None) -> None:
        """Set the lease fields in memory. Use ScheduleService.acquire_lease across processes."""
        now = now or utcnow()
        self.locked_at = now
        self.lock_owner = owner_id
        self.last_tick_at = now

    def unlock(self) -> None:
        self.locked_at = None
        self.lock_owner = None

    def has_reached_max_runs(self) -> bool:
        return self.max_runs is not None and (self.run_count or 0) >= self.max_runs

    def is_due(self, now: Optional[datetime] = None) -> bool:
        """In-memory version of the due-set predicate, for diagnostics."""
        now = now or utcnow()
        return (
            self.status == ScheduleStatus.ACTIVE
            and self.next_run_at is not None
            and self.next_run_at <= now
            and not self.is_locked(now)
            and not self.has_reached_max_runs()
        )

    def record_run(self, next_run_at: Optional[datetime], now: Optional[datetime] = None) -> None:
        """
        Advance the schedule after a run finished, successfully or not.

        Increments run_count, stamps last_run_at, moves next_run_at forward and
        releases the lease. The schedule completes once max_runs is reached or
        the recurrence has no further occurrences.
        """
        now = now or utcnow()
        self.run_count = (self.run_count or 0) + 1
        self.last_run_at = now
        self.next_run_at = next_run_at
        self.unlock()

        if self.has_reached_max_runs() or next_run_at is None:
            self.status = ScheduleStatus.COMPLETED
            self.next_run_at = None
