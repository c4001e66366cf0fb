# Import tasks for easier access from elsewhere in the application
from .celery_app import celery_app
from .scheduler_tasks import scheduler_tick, health_check
