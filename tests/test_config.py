"""Tests for settings, the exception hierarchy, logging and metrics."""

import json
import logging
from datetime import timedelta

import pytest

from command_scheduler.core.config import SchedulerSettings, default_worker_id
from command_scheduler.core.exceptions import (
    SchedulerError, ScheduleValidationError, RecurrenceError,
    ConfigurationError, StorageError, ScheduleNotFoundError, RunStateError
)
from command_scheduler.utils import metrics
from command_scheduler.utils.logger import JsonFormatter, ContextFormatter, LoggerAdapter, setup_logging
from command_scheduler.utils.metrics import get_metrics, record_lease_contention, record_run_metrics


SETTINGS_ENV = (
    "SCHEDULER_LEASE_TTL_SECONDS", "SCHEDULER_TICK_INTERVAL", "SCHEDULER_MAX_WORKERS",
    "SCHEDULER_DUE_BATCH_SIZE", "SCHEDULER_COMMAND_TIMEOUT", "SCHEDULER_WORKER_ID",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestSchedulerSettings:

    def test_defaults(self, clean_env):
        settings = SchedulerSettings.from_env()

        assert settings.lease_ttl_seconds == 300
        assert settings.lease_ttl == timedelta(minutes=5)
        assert settings.tick_interval_seconds == 60.0
        assert settings.max_workers == 1
        assert settings.due_batch_size == 100
        assert settings.command_timeout_seconds is None

    def test_reads_environment(self, clean_env):
        clean_env.setenv("SCHEDULER_LEASE_TTL_SECONDS", "120")
        clean_env.setenv("SCHEDULER_TICK_INTERVAL", "2.5")
        clean_env.setenv("SCHEDULER_MAX_WORKERS", "4")
        clean_env.setenv("SCHEDULER_COMMAND_TIMEOUT", "30")
        clean_env.setenv("SCHEDULER_WORKER_ID", "worker-7")

        settings = SchedulerSettings.from_env()

        assert settings.lease_ttl == timedelta(minutes=2)
        assert settings.tick_interval_seconds == 2.5
        assert settings.max_workers == 4
        assert settings.command_timeout_seconds == 30.0
        assert settings.worker_id == "worker-7"

    @pytest.mark.parametrize("name,value", [
        ("SCHEDULER_LEASE_TTL_SECONDS", "0"),
        ("SCHEDULER_LEASE_TTL_SECONDS", "five"),
        ("SCHEDULER_MAX_WORKERS", "0"),
        ("SCHEDULER_TICK_INTERVAL", "-1"),
        ("SCHEDULER_COMMAND_TIMEOUT", "soon"),
    ])
    def test_invalid_values(self, clean_env, name, value):
        clean_env.setenv(name, value)

        with pytest.raises(ConfigurationError) as exc_info:
            SchedulerSettings.from_env()
        assert exc_info.value.config_key == name

    def test_default_worker_id(self, clean_env):
        assert ":" in default_worker_id()
        clean_env.setenv("SCHEDULER_WORKER_ID", "pinned")
        assert default_worker_id() == "pinned"


class TestExceptions:

    def test_to_dict(self):
        error = StorageError("db down", operation="acquire_lease", table="schedules")
        data = error.to_dict()

        assert data["error"] == "StorageError"
        assert data["error_code"] == "STORAGE_ERROR"
        assert data["details"] == {"operation": "acquire_lease", "table": "schedules"}
        assert "timestamp" in data
        assert str(error) == "[STORAGE_ERROR] db down"

    def test_hierarchy(self):
        assert issubclass(RecurrenceError, ScheduleValidationError)
        for cls in (ScheduleValidationError, ConfigurationError, StorageError, ScheduleNotFoundError, RunStateError):
            assert issubclass(cls, SchedulerError)

    def test_recurrence_error_details(self):
        error = RecurrenceError("bad", recurrence_type="daily_at", recurrence_value="25:00")

        assert error.error_code == "RECURRENCE_ERROR"
        assert error.details["field"] == "recurrence_value"
        assert error.details["invalid_value"] == "25:00"
        assert error.details["recurrence_type"] == "daily_at"


def make_record(message="Lease acquired", context=None):
    record = logging.LogRecord("command_scheduler.test", logging.INFO, __file__, 10, message, None, None)
    if context is not None:
        record.context = context
    return record


class TestLogging:

    def test_json_formatter_merges_context(self):
        data = json.loads(JsonFormatter().format(make_record(context={"worker_id": "w1", "schedule_id": 7})))

        assert data["message"] == "Lease acquired"
        assert data["level"] == "INFO"
        assert data["worker_id"] == "w1"
        assert data["schedule_id"] == 7

    def test_context_formatter_appends_pairs(self):
        formatter = ContextFormatter("%(message)s")

        assert formatter.format(make_record(context={"run_id": 3})) == "Lease acquired [run_id=3]"
        assert formatter.format(make_record()) == "Lease acquired"

    def test_adapter_bind_accumulates_context(self):
        records = []

        class Collect(logging.Handler):
            def emit(self, record):
                records.append(record)

        logger = logging.getLogger("command_scheduler.test.adapter")
        logger.setLevel(logging.INFO)
        handler = Collect()
        logger.addHandler(handler)
        try:
            adapter = LoggerAdapter(logger, {"worker_id": "w1"})
            adapter.bind(schedule_id=7).bind(run_id=3).info("done")
            adapter.info("plain")
        finally:
            logger.removeHandler(handler)

        assert records[0].context == {"worker_id": "w1", "schedule_id": 7, "run_id": 3}
        assert records[1].context == {"worker_id": "w1"}


@pytest.fixture
def restore_logging():
    names = ["", "command_scheduler", "sqlalchemy.engine", "kombu", "celery"]
    saved = {}
    for name in names:
        logger = logging.getLogger(name)
        saved[name] = (list(logger.handlers), logger.level, logger.propagate)

    yield

    for name, (handlers, level, propagate) in saved.items():
        logger = logging.getLogger(name)
        for handler in logger.handlers:
            if handler not in handlers:
                handler.close()
        logger.handlers = handlers
        logger.setLevel(level)
        logger.propagate = propagate


class TestSetupLogging:

    def test_json_file_output(self, tmp_path, restore_logging):
        log_file = tmp_path / "scheduler.log"
        setup_logging(log_level="info", log_format="json", log_file=str(log_file))

        LoggerAdapter(logging.getLogger("command_scheduler.test"), {"worker_id": "w1"}).info("Lease acquired")

        lines = [json.loads(line) for line in log_file.read_text().splitlines()]
        entry = next(line for line in lines if line["message"] == "Lease acquired")
        assert entry["worker_id"] == "w1"
        assert entry["level"] == "INFO"

    def test_library_levels(self, restore_logging):
        setup_logging(log_level="DEBUG", log_format="text")

        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
        assert logging.getLogger("celery").level == logging.DEBUG
        assert logging.getLogger().level == logging.DEBUG


class TestMetrics:

    def test_run_metrics_are_exported(self):
        record_run_metrics("digest", "completed", 0.25)
        record_lease_contention()

        exported = get_metrics().decode()

        assert 'schedule_run_count_total{command_slug="digest",status="completed"}' in exported
        assert "lease_contention_count_total" in exported

    def test_setup_without_exporters(self, monkeypatch):
        monkeypatch.setattr(metrics, "PUSH_GATEWAY_URL", "")
        monkeypatch.setattr(metrics, "MULTIPROC_DIR", "")

        assert metrics.setup_metrics(enable_http=False) is metrics.REGISTRY

    def test_disabled(self, monkeypatch):
        monkeypatch.setattr(metrics, "METRICS_ENABLED", False)

        assert metrics.setup_metrics(enable_http=False) is None
        assert get_metrics() == b""
