"""
Celery application configuration.

Runs the billing renewal sweep and charge reconciliation on a beat schedule.
"""

from typing import Any

import structlog
from celery import Celery
from kombu import Queue

from pricing_engine.settings import settings

# Create Celery application
celery_app = Celery(
    "pricing_engine",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["pricing_engine.tasks"],
)

# Configure Celery settings
celery_app.conf.update(
    task_routes={
        "billing.*": {"queue": "billing"},
    },
    task_default_queue="default",
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("billing", routing_key="billing"),
    ),
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.celery.timezone,
    enable_utc=True,
    result_expires=3600,
    task_track_started=True,
    task_time_limit=settings.celery.task_time_limit,
    task_soft_time_limit=settings.celery.task_soft_time_limit,
    # Money-moving tasks are acknowledged only after they finish
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,
    worker_send_task_events=True,
    task_send_sent_event=True,
)


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Register the billing beat schedule."""
    from pricing_engine.tasks import reconcile_reservations_task, renewal_sweep_task

    sender.add_periodic_task(
        float(settings.celery.renewal_sweep_interval_seconds),
        renewal_sweep_task.s(),
        name="billing-renewal-sweep",
    )
    sender.add_periodic_task(
        float(settings.celery.reconciliation_interval_seconds),
        reconcile_reservations_task.s(),
        name="billing-reconcile-reservations",
    )

    logger = structlog.get_logger(__name__)
    logger.info(
        "celery.worker.configured",
        broker=settings.celery.broker_url,
        backend=settings.celery.result_backend,
        queues=["default", "billing"],
        periodic_tasks=["billing-renewal-sweep", "billing-reconcile-reservations"],
    )


if __name__ == "__main__":
    # For running worker directly: python -m pricing_engine.celery_app worker
    celery_app.start()
