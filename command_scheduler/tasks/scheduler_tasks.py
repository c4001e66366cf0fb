import os
import time
import psutil
from typing import Optional
from celery import shared_task
from celery.utils.log import get_task_logger
from sqlalchemy import text

from ..core.config import LEASE_TTL, SchedulerSettings
from ..core.exceptions import SchedulerError
from ..core.executor import RegistryExecutor, default_registry
from ..core.recurrence import NextRunCalculator
from ..core.scheduler import SchedulerLoop
from ..db.base import utcnow
from ..models.schedule_run import RunStatus
from ..schemas.schedule import SchedulerStats
from ..services.run_service import RunService
from ..services.schedule_service import ScheduleService
from ..utils.metrics import set_stuck_runs
from .celery_app import get_session_factory

logger = get_task_logger(__name__)

_executor: Optional[RegistryExecutor] = None


def get_executor() -> RegistryExecutor:
    """Process-wide executor over the default command registry."""
    global _executor
    if _executor is None:
        settings = SchedulerSettings.from_env()
        _executor = RegistryExecutor(default_registry, timeout_seconds=settings.command_timeout_seconds)
    return _executor


def build_scheduler_loop() -> SchedulerLoop:
    settings = SchedulerSettings.from_env()
    return SchedulerLoop(
        get_session_factory(),
        get_executor(),
        NextRunCalculator(),
        worker_id=settings.worker_id,
        max_workers=settings.max_workers,
        batch_size=settings.due_batch_size
    )


@shared_task(name="command_scheduler.tasks.scheduler_tasks.scheduler_tick")
def scheduler_tick():
    """Run one scheduler tick: lease due schedules and execute their commands."""
    try:
        result = build_scheduler_loop().tick()
    except SchedulerError as e:
        logger.error(f"Scheduler tick failed: {str(e)}")
        return {"status": "error", "error": e.to_dict()}

    return {"status": "success", **result.to_dict()}


@shared_task(name="command_scheduler.tasks.scheduler_tasks.health_check")
def health_check():
    """Check the health of the scheduler and its database."""
    db = get_session_factory()()
    now = utcnow()
    health_data = {
        "timestamp": now.isoformat(),
        "service": "command_scheduler",
        "status": "healthy",
        "checks": {}
    }

    try:
        # Check database connectivity
        start_time = time.time()
        db.execute(text("SELECT 1"))
        db_response_time = time.time() - start_time

        health_data["checks"]["database"] = {
            "status": "healthy",
            "response_time_ms": round(db_response_time * 1000, 2)
        }

        # Check system resources
        process = psutil.Process(os.getpid())

        memory_info = process.memory_info()
        memory_percent = process.memory_percent()

        health_data["checks"]["memory"] = {
            "status": "healthy" if memory_percent < 80 else "warning",
            "usage_percent": round(memory_percent, 2),
            "rss_mb": round(memory_info.rss / (1024 * 1024), 2)
        }

        cpu_percent = process.cpu_percent(interval=0.1)

        health_data["checks"]["cpu"] = {
            "status": "healthy" if cpu_percent < 80 else "warning",
            "usage_percent": round(cpu_percent, 2)
        }

        # Runs left running past the lease TTL belong to a worker that died
        runs = RunService(db)
        stuck_runs = runs.find_stuck_runs(older_than=LEASE_TTL, now=now)
        set_stuck_runs(len(stuck_runs))

        health_data["checks"]["runs"] = {
            "status": "healthy" if not stuck_runs else "warning",
            "pending_count": runs.count_by_status(RunStatus.PENDING),
            "running_count": runs.count_by_status(RunStatus.RUNNING),
            "stuck_count": len(stuck_runs),
            "stuck_run_ids": [run.id for run in stuck_runs]
        }

        stats = SchedulerStats(**ScheduleService(db).get_stats(now))
        health_data["schedules"] = stats.model_dump(mode="json")

        # Overall status
        if any(check["status"] != "healthy" for check in health_data["checks"].values()):
            health_data["status"] = "warning"

        return health_data

    except Exception as e:
        logger.error(f"Health check failed: {str(e)}")
        health_data["status"] = "unhealthy"
        health_data["error"] = str(e)
        return health_data

    finally:
        db.close()
