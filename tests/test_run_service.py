"""Tests for idempotent run creation and run queries."""

import hashlib
from datetime import datetime, timedelta, timezone

import pytest

from command_scheduler.core.config import LEASE_TTL
from command_scheduler.core.exceptions import StorageError
from command_scheduler.models.schedule import Schedule
from command_scheduler.models.schedule_run import ScheduleRun, RunStatus
from command_scheduler.schemas.command import CommandResult
from command_scheduler.services.run_service import RunService, dedupe_key

from .conftest import NOW


class TestDedupeKey:

    def test_matches_sha256_of_id_and_second(self):
        expected = hashlib.sha256(b"7|2025-01-15T12:00:00").hexdigest()
        assert dedupe_key(7, NOW) == expected

    def test_second_precision(self):
        assert dedupe_key(7, NOW) == dedupe_key(7, NOW.replace(microsecond=999999))
        assert dedupe_key(7, NOW) != dedupe_key(7, NOW + timedelta(seconds=1))

    def test_differs_per_schedule(self):
        assert dedupe_key(1, NOW) != dedupe_key(2, NOW)

    def test_aware_datetimes_are_normalised_to_utc(self):
        berlin = datetime(2025, 1, 15, 13, 0, 0, tzinfo=timezone(timedelta(hours=1)))
        assert dedupe_key(7, berlin) == dedupe_key(7, NOW)


class TestCreateForSchedule:

    def test_creates_pending_run(self, db_session, create_schedule):
        schedule = create_schedule()
        run = RunService(db_session).create_for_schedule(schedule, schedule.next_run_at, job_id="job-1")

        assert run.id is not None
        assert run.status == RunStatus.PENDING
        assert run.planned_run_at == schedule.next_run_at
        assert run.dedupe_key == dedupe_key(schedule.id, schedule.next_run_at)
        assert run.job_id == "job-1"

    def test_second_call_returns_existing_run(self, db_session, create_schedule):
        schedule = create_schedule()
        service = RunService(db_session)

        first = service.create_for_schedule(schedule, NOW)
        second = service.create_for_schedule(schedule, NOW, job_id="other")

        assert second.id == first.id
        assert second.job_id is None
        assert db_session.query(ScheduleRun).count() == 1

    def test_existing_run_is_returned_unchanged(self, db_session, create_schedule, create_run):
        schedule = create_schedule()
        existing = create_run(schedule, planned_run_at=NOW, status=RunStatus.COMPLETED, output="earlier")

        run = RunService(db_session).create_for_schedule(schedule, NOW)

        assert run.id == existing.id
        assert run.status == RunStatus.COMPLETED
        assert run.output == "earlier"

    def test_concurrent_insert_falls_back_to_existing_row(self, session_factory, create_schedule, monkeypatch):
        schedule = create_schedule()
        session_a, session_b = session_factory(), session_factory()
        try:
            winner = RunService(session_a).create_for_schedule(session_a.get(Schedule, schedule.id), NOW)

            # Worker B looked the key up before worker A inserted it
            service_b = RunService(session_b)
            real_lookup = service_b.get_by_dedupe_key
            lookups = []

            def miss_first_lookup(key):
                lookups.append(key)
                if len(lookups) == 1:
                    return None
                return real_lookup(key)

            monkeypatch.setattr(service_b, "get_by_dedupe_key", miss_first_lookup)

            run = service_b.create_for_schedule(session_b.get(Schedule, schedule.id), NOW)

            assert run.id == winner.id
            assert len(lookups) == 2
            assert session_b.query(ScheduleRun).count() == 1
        finally:
            session_a.close()
            session_b.close()

    def test_missing_schedule_raises_storage_error(self, db_session):
        ghost = Schedule(id=999, name="ghost", command_slug="echo", recurrence_type="one_off", timezone="UTC")

        with pytest.raises(StorageError) as exc_info:
            RunService(db_session).create_for_schedule(ghost, NOW)
        assert exc_info.value.details["table"] == "schedule_runs"


class TestRunLifecycle:

    def test_start_run_is_persisted(self, db_session, session_factory, create_schedule, create_run):
        run = create_run(create_schedule())
        RunService(db_session).start_run(run, NOW)

        other = session_factory()
        try:
            assert other.get(ScheduleRun, run.id).status == RunStatus.RUNNING
        finally:
            other.close()

    def test_apply_result(self, db_session, create_schedule, create_run):
        service = RunService(db_session)
        schedule = create_schedule()

        ok = create_run(schedule, planned_run_at=NOW)
        service.start_run(ok, NOW)
        service.apply_result(ok, CommandResult.ok("fine"), duration_ms=12, now=NOW)
        assert ok.status == RunStatus.COMPLETED
        assert ok.output == "fine"
        assert ok.duration_ms == 12

        bad = create_run(schedule, planned_run_at=NOW + timedelta(hours=1))
        service.start_run(bad, NOW)
        service.apply_result(bad, CommandResult(success=False), duration_ms=5, now=NOW)
        assert bad.status == RunStatus.FAILED
        assert bad.error_message == "Command failed"


class TestQueries:

    def test_find_stuck_runs(self, db_session, create_schedule, create_run):
        schedule = create_schedule()
        stuck = create_run(schedule, planned_run_at=NOW - timedelta(hours=1), status=RunStatus.RUNNING,
                           started_at=NOW - LEASE_TTL - timedelta(minutes=1))
        create_run(schedule, planned_run_at=NOW - timedelta(minutes=2), status=RunStatus.RUNNING,
                   started_at=NOW - timedelta(minutes=2))
        create_run(schedule, planned_run_at=NOW - timedelta(hours=2), status=RunStatus.COMPLETED,
                   started_at=NOW - timedelta(hours=2), completed_at=NOW - timedelta(hours=2))

        service = RunService(db_session)
        assert [r.id for r in service.find_stuck_runs(now=NOW)] == [stuck.id]
        assert len(service.find_stuck_runs(older_than=timedelta(minutes=1), now=NOW)) == 2

    def test_get_runs_for_schedule(self, db_session, create_schedule, create_run):
        schedule = create_schedule()
        other = create_schedule()
        first = create_run(schedule, planned_run_at=NOW - timedelta(hours=2), status=RunStatus.COMPLETED)
        second = create_run(schedule, planned_run_at=NOW - timedelta(hours=1), status=RunStatus.FAILED)
        create_run(other, planned_run_at=NOW)

        service = RunService(db_session)
        assert [r.id for r in service.get_runs_for_schedule(schedule.id)] == [second.id, first.id]
        assert [r.id for r in service.get_runs_for_schedule(schedule.id, status=RunStatus.COMPLETED)] == [first.id]
        assert len(service.get_runs_for_schedule(schedule.id, limit=1)) == 1

    def test_count_by_status(self, db_session, create_schedule, create_run):
        schedule = create_schedule()
        create_run(schedule, planned_run_at=NOW)
        create_run(schedule, planned_run_at=NOW + timedelta(hours=1))

        assert RunService(db_session).count_by_status(RunStatus.PENDING) == 2
        assert RunService(db_session).count_by_status(RunStatus.RUNNING) == 0
