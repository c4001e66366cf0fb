"""
Scheduler loop for the command scheduler.

Any number of workers may run the loop against the same database. They do
not talk to each other: the conditional lease UPDATE decides which worker
handles a due schedule, and the unique dedupe key on schedule_runs makes run
creation idempotent when a lease expires while its holder is still working.
"""

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .config import DUE_BATCH_SIZE, default_worker_id
from .exceptions import StorageError
from .executor import CommandExecutor, normalize_result
from .recurrence import NextRunCalculator, RecurrenceCalculator
from ..db.base import utcnow, to_naive_utc
from ..db.session import DBSessionManager
from ..models.schedule import Schedule
from ..models.schedule_run import RunStatus
from ..schemas.command import CommandResult
from ..schemas.schedule_run import TickSummary
from ..services.run_service import RunService
from ..services.schedule_service import ScheduleService
from ..utils.logger import LoggerAdapter, get_logger
from ..utils.metrics import (
    TICK_DURATION, timing_metric, record_run_metrics,
    record_lease_contention, set_due_schedules
)

logger = get_logger(__name__)

# Per-schedule outcomes of a tick
SKIPPED = "skipped"
COMPLETED = "completed"
FAILED = "failed"


@dataclass
class TickResult:
    """Counts for one scheduler tick."""
    worker_id: str
    started_at: datetime
    due: int = 0
    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    run_ids: List[int] = field(default_factory=list)
    duration_ms: Optional[int] = None

    def add(self, outcome: str, run_id: Optional[int] = None):
        if outcome == SKIPPED:
            self.skipped += 1
        else:
            self.dispatched += 1
            if outcome == COMPLETED:
                self.completed += 1
            else:
                self.failed += 1
            if run_id is not None:
                self.run_ids.append(run_id)

    def to_summary(self) -> TickSummary:
        return TickSummary(
            worker_id=self.worker_id,
            started_at=self.started_at,
            due=self.due,
            dispatched=self.dispatched,
            completed=self.completed,
            failed=self.failed,
            skipped=self.skipped,
            run_ids=list(self.run_ids),
            duration_ms=self.duration_ms
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return self.to_summary().model_dump(mode="json")


class SchedulerLoop:
    """Find due schedules, lease them, run their command and advance them."""

    def __init__(
        self,
        session_factory: sessionmaker,
        executor: CommandExecutor,
        recurrence_calculator: Optional[RecurrenceCalculator] = None,
        worker_id: Optional[str] = None,
        max_workers: int = 1,
        clock: Optional[Callable[[], datetime]] = None,
        batch_size: Optional[int] = DUE_BATCH_SIZE
    ):
        self.session_factory = session_factory
        self.executor = executor
        self.recurrence_calculator = recurrence_calculator or NextRunCalculator()
        self.worker_id = worker_id or default_worker_id()
        self.max_workers = max(1, max_workers)
        self.clock = clock or utcnow
        self.batch_size = batch_size

        self.log = LoggerAdapter(logger, {"worker_id": self.worker_id})

        # Polling thread control
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._running = False

    @timing_metric(TICK_DURATION)
    def tick(self, now: Optional[datetime] = None) -> TickResult:
        """
        Run one scheduling cycle.

        ``now`` selects the due set. Leases, run timestamps and the next
        occurrence use the clock read when each schedule is handled, never
        earlier than ``now``.

        Lease contention and runs that were already handled count as skipped;
        a schedule whose run was already handled still moves to its next occurrence.
        Executor and recurrence failures are recorded on the run and schedule.
        Only storage failures escape, as StorageError.
        """
        now = to_naive_utc(now) if now else self.clock()
        result = TickResult(worker_id=self.worker_id, started_at=now)
        tick_started = time.monotonic()

        try:
            with DBSessionManager(self.session_factory) as db:
                schedule_ids = [s.id for s in ScheduleService(db).get_due_schedules(now, limit=self.batch_size)]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load due schedules: {str(e)}", operation="get_due_schedules", table="schedules") from e

        result.due = len(schedule_ids)
        set_due_schedules(result.due)

        if schedule_ids:
            self.log.debug(f"Found {len(schedule_ids)} due schedules")

        if self.max_workers > 1 and len(schedule_ids) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="scheduler") as pool:
                outcomes = list(pool.map(lambda sid: self._process(sid, now), schedule_ids))
        else:
            outcomes = [self._process(sid, now) for sid in schedule_ids]

        for outcome, run_id in outcomes:
            result.add(outcome, run_id)

        result.duration_ms = int((time.monotonic() - tick_started) * 1000)
        if result.due:
            self.log.info(
                f"Tick finished: due={result.due} dispatched={result.dispatched} "
                f"completed={result.completed} failed={result.failed} skipped={result.skipped}"
            )
        return result

    def _process(self, schedule_id: int, now: datetime) -> Tuple[str, Optional[int]]:
        """Handle one due schedule in its own session."""
        log = self.log.bind(schedule_id=schedule_id)
        try:
            with DBSessionManager(self.session_factory) as db:
                return self._process_schedule(db, schedule_id, now, log)
        except SQLAlchemyError as e:
            raise StorageError(
                f"Storage failure while processing schedule {schedule_id}: {str(e)}",
                operation="tick",
                table="schedules"
            ) from e

    def _process_schedule(
        self,
        db: Session,
        schedule_id: int,
        due_at: datetime,
        log: LoggerAdapter
    ) -> Tuple[str, Optional[int]]:
        schedules = ScheduleService(db)
        runs = RunService(db)

        schedule = schedules.get_schedule(schedule_id)
        if schedule is None:
            return SKIPPED, None

        # Earlier commands in this tick may have moved the clock on
        leased_at = self._now(due_at)
        if not schedules.acquire_lease(schedule, self.worker_id, leased_at):
            log.debug("Lease held by another worker, skipping")
            record_lease_contention()
            return SKIPPED, None

        run = runs.create_for_schedule(schedule, schedule.next_run_at, job_id=str(uuid.uuid4()))
        log = log.bind(run_id=run.id)

        if run.status != RunStatus.PENDING:
            # The run for this occurrence was dispatched by a worker whose lease expired.
            # It stays as it is for operators; the schedule moves on to its next occurrence.
            log.warning(f"Run for {run.planned_run_at} already {run.status.value}, advancing past it")
            self._advance(schedules, schedule, leased_at, log)
            return SKIPPED, run.id

        runs.start_run(run, leased_at)
        log.info(f"Dispatching command '{schedule.command_slug}'")

        started = time.monotonic()
        try:
            command_result = normalize_result(self.executor.execute(schedule.command_slug, schedule.payload or {}))
        except Exception as e:
            log.exception(f"Executor raised for command '{schedule.command_slug}'")
            command_result = CommandResult.fail(str(e) or e.__class__.__name__)
        duration_ms = int((time.monotonic() - started) * 1000)

        finished_at = self._now(leased_at)
        completed_at = max(finished_at, leased_at + timedelta(milliseconds=duration_ms))
        runs.apply_result(run, command_result, duration_ms=duration_ms, now=completed_at)
        record_run_metrics(schedule.command_slug, run.status.value, duration_ms / 1000.0)

        if command_result.success:
            log.info(f"Command '{schedule.command_slug}' completed in {duration_ms}ms")
        else:
            log.warning(f"Command '{schedule.command_slug}' failed: {command_result.error}")

        self._advance(schedules, schedule, finished_at, log)

        return (COMPLETED if run.status == RunStatus.COMPLETED else FAILED), run.id

    def _advance(self, schedules: ScheduleService, schedule: Schedule, now: datetime, log: LoggerAdapter) -> None:
        """Count the run, move next_run_at forward and release the lease in one commit."""
        try:
            next_run_at = self.recurrence_calculator.next(
                schedule.recurrence_type,
                schedule.recurrence_value,
                schedule.timezone,
                now
            )
        except Exception as e:
            reason = getattr(e, "message", None) or str(e)
            schedules.pause_after_run(schedule, f"cannot calculate next run: {reason}", now)
            log.error(f"Recurrence failed, schedule paused: {reason}")
        else:
            schedules.record_run(schedule, next_run_at, now)
            if next_run_at is None:
                log.info("Schedule completed")

    def _now(self, floor: datetime) -> datetime:
        """Current clock time, never earlier than ``floor``."""
        return max(to_naive_utc(self.clock()), floor)

    def start(self, interval_seconds: float = 60.0):
        """Start ticking in a background thread."""
        if self._running:
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, args=(interval_seconds,), name="scheduler-loop", daemon=True
        )
        self._thread.start()

        self.log.info(f"SchedulerLoop started with interval={interval_seconds}s")

    def stop(self, timeout: float = 5.0):
        """Stop the background thread, waiting for the current tick to finish."""
        self._running = False
        self._stop_event.set()

        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

        self.log.info("SchedulerLoop stopped")

    @property
    def running(self) -> bool:
        return self._running

    def _loop(self, interval_seconds: float):
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                self.log.exception(f"Error in scheduler loop: {str(e)}")
            self._stop_event.wait(interval_seconds)
