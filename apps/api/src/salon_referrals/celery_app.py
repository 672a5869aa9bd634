"""Celery application that redelivers referral webhook events until they succeed."""

from __future__ import annotations

from celery import Celery
from celery.signals import worker_process_init

from salon_referrals.core.logging import configure_logging
from salon_referrals.core.settings import settings
from salon_referrals.observability.tracing import configure_tracing

WORKER_SERVICE_NAME = "salon-referrals-worker"

celery_app = Celery(
    "salon_referrals",
    broker=settings.celery_broker_url or settings.redis_url,
    backend=settings.celery_result_backend or settings.redis_url,
)

celery_app.conf.update(
    task_default_queue=settings.celery_default_queue,
    task_routes={"referrals.*": {"queue": settings.referral_event_task_queue}},
    timezone="UTC",
    broker_connection_retry_on_startup=True,
    # A worker lost mid-event must hand the webhook back to the broker.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery_app.autodiscover_tasks(["salon_referrals.celery_tasks"])


@worker_process_init.connect
def _configure_worker_observability(**_: object) -> None:
    configure_logging(service_name=WORKER_SERVICE_NAME, environment=settings.environment, version=settings.version)
    configure_tracing(
        service_name=WORKER_SERVICE_NAME,
        service_version=settings.version,
        environment=settings.environment,
    )


__all__ = ["celery_app"]
