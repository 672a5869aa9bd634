from __future__ import annotations

from typing import Any

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from salon_referrals.celery_app import celery_app
from salon_referrals.core.settings import settings
from salon_referrals.services.referrals.engine import RewardIssuanceError
from salon_referrals.services.square import SquareAPIError
from salon_referrals.tasks.referral_events import process_square_event_sync

# Drivers such as asyncpg raise OSError subclasses on connection failures without SQLAlchemy wrapping them.
RETRYABLE_ERRORS = (RewardIssuanceError, SquareAPIError, SQLAlchemyError, OSError)


@celery_app.task(
    name="referrals.process_square_event",
    queue=settings.referral_event_task_queue,
    autoretry_for=RETRYABLE_ERRORS,
    retry_backoff=True,
    retry_backoff_max=settings.referral_event_retry_backoff_max_seconds,
    retry_jitter=True,
    max_retries=settings.referral_event_max_retries,
)
def process_square_event_task(payload: dict[str, Any]) -> dict[str, Any]:
    """Run one Square webhook body through the referral pipeline."""

    if not settings.referral_events_enabled:
        logger.info("Referral event processing disabled; skipping Celery task.")
        return {"status": "disabled"}
    return process_square_event_sync(payload)
