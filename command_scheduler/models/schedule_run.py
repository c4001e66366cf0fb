import enum
from datetime import datetime
from typing import Optional
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Enum
from sqlalchemy.orm import relationship
from ..core.config import MAX_OUTPUT_LENGTH
from ..core.exceptions import RunStateError
from ..db.base import Base, TimestampMixin, ModelMixin, utcnow


class RunStatus(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (RunStatus.COMPLETED, RunStatus.FAILED)

# Allowed transitions; terminal states have none
RUN_TRANSITIONS = {
    RunStatus.PENDING: (RunStatus.RUNNING, RunStatus.COMPLETED, RunStatus.FAILED),
    RunStatus.RUNNING: (RunStatus.COMPLETED, RunStatus.FAILED),
    RunStatus.COMPLETED: (),
    RunStatus.FAILED: (),
}


def _truncate(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    return text[:MAX_OUTPUT_LENGTH] if len(text) > MAX_OUTPUT_LENGTH else text


class ScheduleRun(Base, TimestampMixin, ModelMixin):
    """One concrete, timestamped attempt to execute a Schedule at a planned instant."""

    __tablename__ = "schedule_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    schedule_id = Column(Integer, ForeignKey("schedules.id", ondelete="CASCADE"), nullable=False, index=True)
    planned_run_at = Column(DateTime, nullable=False)
    dedupe_key = Column(String(64), nullable=False, unique=True)

    status = Column(
        Enum(RunStatus, name="run_status", native_enum=False,
             values_callable=lambda statuses: [s.value for s in statuses]),
        default=RunStatus.PENDING,
        nullable=False,
        index=True
    )
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    # Runtime data
    output = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    job_id = Column(String(255), nullable=True)  # correlation id of the dispatched execution

    # Relationships
    schedule = relationship("Schedule", back_populates="runs")

    def __repr__(self):
        return f"<ScheduleRun(id={self.id}, schedule_id={self.schedule_id}, status='{self.status.value}')>"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def duration(self) -> Optional[float]:
        """Calculate the run duration in seconds, if applicable."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def _transition(self, target: RunStatus) -> None:
        current = self.status or RunStatus.PENDING
        if target not in RUN_TRANSITIONS[current]:
            raise RunStateError(self.id, current.value, target.value)
        self.status = target

    def mark_started(self, now: Optional[datetime] = None) -> None:
        self._transition(RunStatus.RUNNING)
        self.started_at = now or utcnow()

    def mark_completed(
        self,
        output: Optional[str] = None,
        duration_ms: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> None:
        self._finish(RunStatus.COMPLETED, duration_ms, now)
        self.output = _truncate(output)

    def mark_failed(
        self,
        error_message: Optional[str] = None,
        duration_ms: Optional[int] = None,
        now: Optional[datetime] = None,
        output: Optional[str] = None
    ) -> None:
        self._finish(RunStatus.FAILED, duration_ms, now)
        self.error_message = _truncate(error_message)
        self.output = _truncate(output)

    def _finish(self, target: RunStatus, duration_ms: Optional[int], now: Optional[datetime]) -> None:
        self._transition(target)
        self.completed_at = now or utcnow()
        # started_at <= completed_at holds even for runs finished straight from pending
        if self.started_at is None or self.started_at > self.completed_at:
            self.started_at = self.completed_at
        if duration_ms is None:
            duration_ms = int(round(self.duration() * 1000))
        self.duration_ms = max(int(duration_ms), 0)
