import hashlib
from typing import List, Optional
from datetime import datetime, timedelta
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import LEASE_TTL
from ..core.exceptions import StorageError
from ..db.base import utcnow, to_naive_utc
from ..models.schedule import Schedule
from ..models.schedule_run import ScheduleRun, RunStatus
from ..schemas.command import CommandResult
from ..utils.logger import get_logger

logger = get_logger(__name__)


def dedupe_key(schedule_id: int, planned_run_at: datetime) -> str:
    """
    Deterministic key for the run of a schedule at a planned instant.

    Second precision, computed on naive UTC so every worker derives the same
    key for the same occurrence.
    """
    planned = to_naive_utc(planned_run_at)
    raw = f"{schedule_id}|{planned:%Y-%m-%dT%H:%M:%S}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class RunService:
    """Service for creating schedule runs and tracking their outcome."""

    def __init__(self, db: Session):
        self.db = db

    def get_run(self, run_id: int) -> Optional[ScheduleRun]:
        """Get a run by ID."""
        return self.db.query(ScheduleRun).filter(ScheduleRun.id == run_id).first()

    def get_by_dedupe_key(self, key: str) -> Optional[ScheduleRun]:
        return self.db.query(ScheduleRun).filter(ScheduleRun.dedupe_key == key).first()

    def get_runs_for_schedule(
        self,
        schedule_id: int,
        status: Optional[RunStatus] = None,
        limit: int = 100
    ) -> List[ScheduleRun]:
        """Get runs for a schedule, newest first, optionally filtered by status."""
        query = self.db.query(ScheduleRun).filter(ScheduleRun.schedule_id == schedule_id)

        if status:
            query = query.filter(ScheduleRun.status == status)

        return query.order_by(ScheduleRun.id.desc()).limit(limit).all()

    def create_for_schedule(
        self,
        schedule: Schedule,
        planned_run_at: datetime,
        job_id: Optional[str] = None
    ) -> ScheduleRun:
        """
        Get or create the run of ``schedule`` planned for ``planned_run_at``.

        An existing run with the same dedupe key is returned unchanged. When a
        concurrent worker inserts the same key between our lookup and insert,
        the unique index rejects ours and the winner's row is returned.
        """
        planned = to_naive_utc(planned_run_at).replace(microsecond=0)
        key = dedupe_key(schedule.id, planned)

        existing = self.get_by_dedupe_key(key)
        if existing:
            return existing

        run = ScheduleRun(
            schedule_id=schedule.id,
            planned_run_at=planned,
            dedupe_key=key,
            status=RunStatus.PENDING,
            job_id=job_id
        )

        try:
            self.db.add(run)
            self.db.commit()
            return run
        except IntegrityError:
            self.db.rollback()
            existing = self.get_by_dedupe_key(key)
            if existing is None:
                # Not a dedupe collision, e.g. the schedule row is gone
                raise StorageError(
                    f"Failed to create run for schedule {schedule.id}",
                    operation="create_run",
                    table="schedule_runs"
                )
            logger.info(f"Run for schedule {schedule.id} at {planned.isoformat()} already created by another worker")
            return existing
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to create run: {str(e)}", operation="create_run", table="schedule_runs") from e

    def start_run(self, run: ScheduleRun, now: Optional[datetime] = None) -> ScheduleRun:
        """Move a pending run to running and commit, so a crash leaves it visible as running."""
        run.mark_started(now)
        self._commit("start_run")
        return run

    def apply_result(
        self,
        run: ScheduleRun,
        result: CommandResult,
        duration_ms: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> ScheduleRun:
        """Record a command result on the run. Not committed, so it lands with the schedule update."""
        if result.success:
            run.mark_completed(result.output, duration_ms=duration_ms, now=now)
        else:
            run.mark_failed(result.error or "Command failed", duration_ms=duration_ms, now=now, output=result.output)
        return run

    def find_stuck_runs(self, older_than: timedelta = LEASE_TTL, now: Optional[datetime] = None) -> List[ScheduleRun]:
        """Runs still running after ``older_than``; their worker most likely died."""
        now = to_naive_utc(now) if now else utcnow()
        return (
            self.db.query(ScheduleRun)
            .filter(
                ScheduleRun.status == RunStatus.RUNNING,
                ScheduleRun.started_at < now - older_than
            )
            .order_by(ScheduleRun.started_at.asc())
            .all()
        )

    def count_by_status(self, status: RunStatus) -> int:
        return self.db.query(ScheduleRun).filter(ScheduleRun.status == status).count()

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to {operation.replace('_', ' ')}: {str(e)}", operation=operation, table="schedule_runs") from e
