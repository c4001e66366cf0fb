import os
from celery import Celery
from celery.signals import setup_logging, worker_init, worker_process_init, task_failure
from kombu import Exchange, Queue
from sqlalchemy.orm import Session, sessionmaker
import logging

from ..core.config import TICK_INTERVAL_SECONDS
from ..db import session as db_session
from ..db.session import init_db
from ..utils.logger import setup_logging as configure_logging
from ..utils.metrics import setup_metrics

# Configure logging
logger = logging.getLogger(__name__)

# Create the Celery app
celery_app = Celery(
    "command_scheduler",
    broker=os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0"),
    backend=os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")
)

# Configure Celery
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Task execution settings
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_time_limit=3600,  # 1 hour maximum task runtime
    task_soft_time_limit=3300,  # 55 minutes soft limit

    # Result settings
    result_expires=86400,  # Results expire after 1 day

    # Beat schedule for periodic tasks
    beat_schedule={
        "scheduler_tick": {
            "task": "command_scheduler.tasks.scheduler_tasks.scheduler_tick",
            "schedule": TICK_INTERVAL_SECONDS,
            "options": {"queue": "scheduler"}
        },
        "health_check": {
            "task": "command_scheduler.tasks.scheduler_tasks.health_check",
            "schedule": 300.0,  # Every 5 minutes
            "options": {"queue": "maintenance"}
        }
    },

    # Task queues
    task_queues=(
        Queue("default", Exchange("default"), routing_key="default"),
        Queue("scheduler", Exchange("scheduler"), routing_key="scheduler.#"),
        Queue("maintenance", Exchange("maintenance"), routing_key="maintenance.#"),
    ),
    task_default_queue="default",

    # Task routing
    task_routes={
        "command_scheduler.tasks.scheduler_tasks.scheduler_tick": {"queue": "scheduler"},
        "command_scheduler.tasks.scheduler_tasks.health_check": {"queue": "maintenance"},
    }
)


@setup_logging.connect
def setup_celery_logging(**kwargs):
    """Replace Celery's logging setup with the scheduler's own configuration."""
    configure_logging()


@worker_init.connect
def setup_worker(sender=None, conf=None, **kwargs):
    """Create tables if they don't exist and start exporting metrics."""
    init_db()
    logger.info("Database initialized for Celery worker")
    setup_metrics()


@worker_process_init.connect
def setup_worker_process(sender=None, **kwargs):
    """Drop connections inherited from the parent process."""
    db_session.engine.dispose(close=False)
    logger.info("Worker process initialized")


@task_failure.connect
def handle_task_failure(sender=None, task_id=None, exception=None, args=None, kwargs=None, traceback=None, einfo=None, **kw):
    """Log task failures."""
    logger.error(f"Task {task_id} failed: {exception}")
    logger.error(f"Task args: {args}, kwargs: {kwargs}")
    logger.error(f"Traceback: {einfo}")


def get_session_factory() -> sessionmaker:
    """Session factory handed to the scheduler loop."""
    return db_session.SessionLocal


def get_db_session() -> Session:
    """Get a database session for use in a task."""
    return get_session_factory()()


# Import Celery tasks to ensure they're registered
from . import scheduler_tasks  # noqa: E402,F401
