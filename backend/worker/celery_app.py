"""Celery application configuration.

This module sets up the Celery app with:
- Redis as broker and result backend
- Task routing to specialized queues
- Serialization and timezone settings
- A bounded worker pool (one task at a time per process)
- Beat schedule for the scheduler tick and retention cleanup
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging as celery_setup_logging

from app.config import get_settings
from core.logging_config import setup_logging

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "campaign_engine",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

# Configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task routing: different queues for different workloads
    task_routes={
        "worker.tasks.runs.*": {"queue": "campaigns"},
        "worker.tasks.scheduler.*": {"queue": "scheduler"},
        "worker.tasks.maintenance.*": {"queue": "maintenance"},
    },

    # Default queue
    task_default_queue="campaigns",

    # Failed jobs stay inspectable in the result backend for a week
    result_expires=7 * 86400,

    # Task execution limits
    task_soft_time_limit=300,   # 5 min soft limit (raises SoftTimeLimitExceeded)
    task_time_limit=600,        # 10 min hard limit (kills the task)
    task_acks_late=True,        # Acknowledge after execution (safer)
    worker_prefetch_multiplier=1,  # One task at a time per worker process
    worker_concurrency=settings.WORKER_CONCURRENCY,

    # Retry
    task_reject_on_worker_lost=True,
    task_acks_on_failure_or_timeout=True,

    # Beat schedule for periodic tasks
    beat_schedule={
        "scheduler-tick": {
            "task": "worker.tasks.scheduler.tick",
            "schedule": float(settings.SCHEDULER_INTERVAL_SECONDS),
            "options": {"queue": "scheduler"},
        },
        "cleanup-old-data": {
            "task": "worker.tasks.maintenance.cleanup_old_data",
            "schedule": crontab(hour=3, minute=0),  # Daily at 3 AM
            "options": {"queue": "maintenance"},
        },
    },

    # Auto-discover task modules
    include=[
        "worker.tasks.runs",
        "worker.tasks.scheduler",
        "worker.tasks.maintenance",
    ],
)


@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    """Use the structlog setup instead of Celery's own logging config."""
    setup_logging()
