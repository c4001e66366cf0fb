"""Test fixtures and configuration for the command scheduler."""

import random
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from command_scheduler.db.base import Base
from command_scheduler.db.session import build_engine, init_db
from command_scheduler.models.schedule import Schedule, ScheduleStatus
from command_scheduler.models.schedule_run import ScheduleRun, RunStatus
from command_scheduler.schemas.command import CommandResult
from command_scheduler.services.run_service import dedupe_key

# Fixed reference instant used across tests (naive UTC, a Wednesday)
NOW = datetime(2025, 1, 15, 12, 0, 0)


# ===============================
# Database Fixtures
# ===============================

@pytest.fixture(scope="function")
def engine(tmp_path):
    """File-backed SQLite database, one per test, so several sessions see each other's commits."""
    engine = build_engine(f"sqlite:///{tmp_path / 'scheduler.db'}", echo=False)
    init_db(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    """Session factory configured like SessionLocal."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    """Create a new database session for a test."""
    session = session_factory()

    yield session

    session.rollback()
    session.close()


# ===============================
# Model Factory Fixtures
# ===============================

@pytest.fixture
def create_schedule(db_session):
    """Factory fixture to create a due interval schedule."""

    def _create_schedule(**kwargs) -> Schedule:
        schedule_data = {
            "name": f"test-schedule-{random.randint(1, 10000)}",
            "command_slug": "echo",
            "payload": {"message": "hello"},
            "status": ScheduleStatus.ACTIVE,
            "recurrence_type": "interval",
            "recurrence_value": "3600",
            "timezone": "UTC",
            "next_run_at": NOW - timedelta(minutes=1),
            "run_count": 0,
        }
        schedule_data.update(kwargs)

        schedule = Schedule(**schedule_data)
        db_session.add(schedule)
        db_session.commit()
        db_session.refresh(schedule)
        return schedule

    return _create_schedule


@pytest.fixture
def create_run(db_session):
    """Factory fixture to create a run for a schedule."""

    def _create_run(schedule: Schedule, **kwargs) -> ScheduleRun:
        planned_run_at = kwargs.pop("planned_run_at", schedule.next_run_at or NOW)
        run_data = {
            "schedule_id": schedule.id,
            "planned_run_at": planned_run_at,
            "dedupe_key": dedupe_key(schedule.id, planned_run_at),
            "status": RunStatus.PENDING,
        }
        run_data.update(kwargs)

        run = ScheduleRun(**run_data)
        db_session.add(run)
        db_session.commit()
        db_session.refresh(run)
        return run

    return _create_run


# ===============================
# Fakes
# ===============================

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingExecutor:
    """Executor that records calls and returns a configured result."""

    def __init__(self, result: Any = None, error: Optional[Exception] = None):
        self.result = CommandResult.ok("done") if result is None else result
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def execute(self, command_slug: str, payload: Dict[str, Any]):
        self.calls.append({"command_slug": command_slug, "payload": payload})
        if self.error is not None:
            raise self.error
        return self.result


class StaticCalculator:
    """Recurrence calculator returning a fixed value or raising a fixed error."""

    def __init__(self, value: Optional[datetime] = None, error: Optional[Exception] = None):
        self.value = value
        self.error = error
        self.calls = []

    def next(self, recurrence_type, recurrence_value, timezone, after):
        self.calls.append((recurrence_type, recurrence_value, timezone, after))
        if self.error is not None:
            raise self.error
        return self.value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def failing_executor():
    return RecordingExecutor(result=CommandResult.fail("exit code 1", output="partial"))
