from typing import List, Optional, Dict, Any
from datetime import datetime, timedelta
from sqlalchemy import and_, or_, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import LEASE_TTL
from ..core.exceptions import ScheduleNotFoundError, StorageError
from ..db.base import utcnow, to_naive_utc
from ..models.schedule import Schedule, ScheduleStatus
from ..models.schedule_run import ScheduleRun, RunStatus
from ..utils.logger import get_logger

logger = get_logger(__name__)


def lease_available(now: datetime, ttl: timedelta = LEASE_TTL):
    """SQL predicate: no lease, or a lease older than the TTL."""
    return or_(Schedule.locked_at.is_(None), Schedule.locked_at < now - ttl)


def due_conditions(now: datetime, ttl: timedelta = LEASE_TTL):
    """SQL predicates a schedule must satisfy to be due at ``now``."""
    return and_(
        Schedule.status == ScheduleStatus.ACTIVE,
        Schedule.next_run_at.isnot(None),
        Schedule.next_run_at <= now,
        lease_available(now, ttl),
        or_(Schedule.max_runs.is_(None), Schedule.run_count < Schedule.max_runs),
    )


class ScheduleService:
    """Storage operations on schedules used by the scheduler loop."""

    def __init__(self, db: Session, lease_ttl: timedelta = LEASE_TTL):
        self.db = db
        self.lease_ttl = lease_ttl

    def get_schedule(self, schedule_id: int) -> Optional[Schedule]:
        """Get a schedule by ID."""
        return self.db.query(Schedule).filter(Schedule.id == schedule_id).first()

    def require_schedule(self, schedule_id: int) -> Schedule:
        schedule = self.get_schedule(schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError(schedule_id)
        return schedule

    def get_due_schedules(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[Schedule]:
        """Get schedules that are due at ``now``, soonest first."""
        now = to_naive_utc(now) if now else utcnow()
        query = (
            self.db.query(Schedule)
            .filter(due_conditions(now, self.lease_ttl))
            .order_by(Schedule.next_run_at.asc(), Schedule.id.asc())
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def acquire_lease(self, schedule: Schedule, owner_id: str, now: Optional[datetime] = None) -> bool:
        """
        Atomically take the lease on a due schedule.

        A single conditional UPDATE decides the winner: it only matches while
        the schedule is still due and its lease is free or expired, so of any
        number of concurrent callers at most one sees rowcount == 1. On success
        the schedule is refreshed so the caller works with the current
        next_run_at and run_count.
        """
        now = to_naive_utc(now) if now else utcnow()
        stmt = (
            update(Schedule)
            .where(Schedule.id == schedule.id, due_conditions(now, self.lease_ttl))
            .values(locked_at=now, lock_owner=owner_id, last_tick_at=now)
            .execution_options(synchronize_session=False)
        )

        try:
            acquired = self.db.execute(stmt).rowcount == 1
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to acquire lease: {str(e)}", operation="acquire_lease", table="schedules") from e

        if acquired:
            self.db.refresh(schedule)
        return acquired

    def release_lease(self, schedule: Schedule) -> None:
        """Clear the lease fields and commit."""
        schedule.unlock()
        self._commit("release_lease")

    def record_run(self, schedule: Schedule, next_run_at: Optional[datetime], now: Optional[datetime] = None) -> None:
        """Advance the schedule after a run; also flushes pending changes to the run itself."""
        schedule.record_run(next_run_at, now)
        self._commit("record_run")

    def pause_after_run(self, schedule: Schedule, reason: str, now: Optional[datetime] = None) -> None:
        """
        Count the finished run, then take the schedule out of rotation.

        Used when the next occurrence cannot be calculated. A schedule that
        reached max_runs with this run stays completed.
        """
        schedule.record_run(None, now)
        if not schedule.has_reached_max_runs():
            schedule.status = ScheduleStatus.PAUSED
        self._commit("pause_after_run")
        logger.error(f"Schedule {schedule.id} paused: {reason}")

    def get_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Get scheduler statistics."""
        now = to_naive_utc(now) if now else utcnow()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

        by_status = {status.value: 0 for status in ScheduleStatus}
        for status, count in self.db.query(Schedule.status, func.count(Schedule.id)).group_by(Schedule.status):
            by_status[status.value] = count

        due = self.db.query(func.count(Schedule.id)).filter(due_conditions(now, self.lease_ttl)).scalar()
        locked = (
            self.db.query(func.count(Schedule.id))
            .filter(Schedule.locked_at.isnot(None), Schedule.locked_at >= now - self.lease_ttl)
            .scalar()
        )

        next_runs = (
            self.db.query(Schedule)
            .filter(Schedule.status == ScheduleStatus.ACTIVE, Schedule.next_run_at.isnot(None))
            .order_by(Schedule.next_run_at.asc(), Schedule.id.asc())
            .limit(5)
            .all()
        )

        def runs_since(*criteria) -> int:
            return self.db.query(func.count(ScheduleRun.id)).filter(*criteria).scalar()

        return {
            "total": sum(by_status.values()),
            "active": by_status[ScheduleStatus.ACTIVE.value],
            "due": due,
            "locked": locked,
            "by_status": by_status,
            "next_runs": [
                {
                    "id": s.id,
                    "name": s.name,
                    "command_slug": s.command_slug,
                    "next_run_at": s.next_run_at,
                }
                for s in next_runs
            ],
            "total_today": runs_since(ScheduleRun.planned_run_at >= midnight),
            "completed_today": runs_since(
                ScheduleRun.status == RunStatus.COMPLETED, ScheduleRun.completed_at >= midnight
            ),
            "failed_today": runs_since(
                ScheduleRun.status == RunStatus.FAILED, ScheduleRun.completed_at >= midnight
            ),
            "running_now": runs_since(ScheduleRun.status == RunStatus.RUNNING),
        }

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to {operation.replace('_', ' ')}: {str(e)}", operation=operation, table="schedules") from e
