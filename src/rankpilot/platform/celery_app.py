"""
Celery application configuration.

Runs the periodic grace-period sweep.
"""

from typing import Any

from celery import Celery
from kombu import Queue

from rankpilot.platform.settings import settings

# Create Celery application
celery_app = Celery(
    "rankpilot_platform",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["rankpilot.platform.billing.dunning.tasks"],
)

# Configure Celery settings
celery_app.conf.update(
    task_default_queue="default",
    task_queues=(Queue("default", routing_key="default"),),
    # Task execution settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task result settings
    result_expires=3600,  # 1 hour
    task_track_started=True,
    task_time_limit=settings.celery.task_time_limit,
    task_soft_time_limit=settings.celery.task_soft_time_limit,
    # Worker settings
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)


@celery_app.on_after_configure.connect  # type: ignore[misc]
def setup_worker_logging(sender: Any, **kwargs: Any) -> None:
    """Configure structured logging for workers."""
    from rankpilot.platform.logging import setup_logging

    setup_logging()


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Configure periodic tasks."""
    import structlog

    from rankpilot.platform.billing.dunning.tasks import process_expired_grace_periods_task

    interval = float(settings.billing.sweep_interval_seconds)
    sender.add_periodic_task(
        interval,
        process_expired_grace_periods_task.s(),
        name="billing-dunning-expire-grace-periods",
    )

    structlog.get_logger(__name__).info(
        "celery.periodic_tasks.configured", grace_sweep_interval_seconds=interval
    )


__all__ = ["celery_app"]
