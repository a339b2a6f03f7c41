"""Celery application configuration."""

import os

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_init

broker_url = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/1")
result_backend = os.environ.get("CELERY_RESULT_BACKEND", "redis://localhost:6379/2")
billing_day = int(os.environ.get("BILLING_DAY_OF_MONTH", "5"))

app = Celery(
    "metering",
    broker=broker_url,
    backend=result_backend,
    include=[
        "worker.tasks.billing",
    ],
)

app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timeouts
    task_time_limit=600,       # 10 min hard limit
    task_soft_time_limit=540,  # 9 min soft limit

    # Prefetch
    worker_prefetch_multiplier=1,

    # Retry
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Task routing
    task_routes={
        "worker.tasks.billing.build_period_aggregate": {"queue": "billing"},
        "worker.tasks.billing.run_billing_cycle": {"queue": "billing"},
        "worker.tasks.billing.replay_dead_letters": {"queue": "default"},
    },

    # Beat schedule (periodic tasks)
    beat_schedule={
        "build-previous-period-aggregate": {
            "task": "worker.tasks.billing.build_period_aggregate",
            "schedule": crontab(minute=30, hour=0, day_of_month=1),
        },
        "run-billing-cycle": {
            "task": "worker.tasks.billing.run_billing_cycle",
            "schedule": crontab(minute=0, hour=1, day_of_month=billing_day),
        },
        "replay-usage-dead-letters": {
            "task": "worker.tasks.billing.replay_dead_letters",
            "schedule": 300.0,  # Every 5 minutes
        },
    },

    timezone="UTC",

    # Results
    result_expires=3600,
)


@worker_init.connect
def on_worker_init(**kwargs):
    """Configure structured logging on worker startup."""
    import structlog
    from metering.config import get_settings
    from metering.middleware.observability import configure_logging

    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    structlog.get_logger().info("worker_init", pid=os.getpid())
