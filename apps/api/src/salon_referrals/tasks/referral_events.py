"""Entry point that runs one Square webhook through the referral pipeline.

Celery tasks, the replay CLI and tests all call ``process_square_event`` so
they share one code path. Session factory, Square client and notification
service stay injectable.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Mapping

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from salon_referrals.core.settings import settings
from salon_referrals.db.session import async_session
from salon_referrals.observability.referrals import get_referral_store
from salon_referrals.observability.tracing import get_tracer
from salon_referrals.services.gift_cards import GiftCardIssuer
from salon_referrals.services.notifications import RewardNotificationService
from salon_referrals.services.referrals.engine import ReferralEvent, ReferralRewardEngine, RewardIssuanceError
from salon_referrals.services.referrals.events import (
    BOOKING_CREATED,
    CUSTOMER_CREATED,
    PAYMENT_EVENT_TYPES,
    BookingCreatedEvent,
    CustomerCreatedEvent,
    InvalidEventPayload,
    PaymentCompletedEvent,
    SquareWebhookEnvelope,
)
from salon_referrals.services.referrals.idempotency import build_correlation_id
from salon_referrals.services.runs import GiftCardRunTracker
from salon_referrals.services.square import SquareClient

SessionFactory = Callable[[], AsyncSession]

_STAGE_PREFIX = {
    CUSTOMER_CREATED: "customer_ingest",
    BOOKING_CREATED: "booking",
}


def _adapt(envelope: SquareWebhookEnvelope) -> ReferralEvent | None:
    if envelope.event_type == CUSTOMER_CREATED:
        return CustomerCreatedEvent.from_envelope(envelope)
    if envelope.event_type == BOOKING_CREATED:
        return BookingCreatedEvent.from_envelope(envelope)
    if envelope.event_type in PAYMENT_EVENT_TYPES:
        return PaymentCompletedEvent.from_envelope(envelope)
    return None


async def process_square_event(
    payload: Mapping[str, Any],
    *,
    session_factory: SessionFactory | None = None,
    square_client: SquareClient | None = None,
    notifications: RewardNotificationService | None = None,
    tracker: GiftCardRunTracker | None = None,
) -> dict[str, Any]:
    """Process one webhook body and return a summary.

    Malformed payloads are logged and dropped. ``RewardIssuanceError`` and
    datastore errors, including raw driver connection errors, propagate so the
    caller can redeliver the event.
    """

    metrics = get_referral_store()
    try:
        envelope = SquareWebhookEnvelope.from_payload(payload)
        event = _adapt(envelope)
    except InvalidEventPayload as exc:
        logger.warning("Dropping invalid Square webhook", error=str(exc), event_type=exc.event_type, event_id=exc.event_id)
        metrics.record_event(exc.event_type or "unknown", "invalid")
        return {"status": "invalid", "reason": str(exc)}

    if event is None:
        logger.debug("Ignoring unhandled Square event type", event_type=envelope.event_type)
        metrics.record_event(envelope.event_type, "ignored")
        return {"status": "ignored", "eventType": envelope.event_type}

    if not settings.referral_events_enabled:
        logger.info("Referral event processing disabled; skipping", event_type=envelope.event_type)
        return {"status": "disabled", "eventType": envelope.event_type}

    if isinstance(event, PaymentCompletedEvent) and not event.is_completed:
        metrics.record_event(envelope.event_type, "ignored")
        return {"status": "ignored", "eventType": envelope.event_type, "paymentStatus": event.status}

    correlation_id = build_correlation_id(envelope.event_type, envelope.resource_id, envelope.event_id)
    factory = session_factory or async_session
    run_tracker = tracker or GiftCardRunTracker(factory)
    await run_tracker.ensure_run(
        correlation_id,
        trigger_type=envelope.event_type,
        square_event_id=envelope.event_id,
        square_event_type=envelope.event_type,
        resource_id=envelope.resource_id,
        payload=envelope.raw,
    )

    square = square_client or SquareClient()
    log = logger.bind(correlation_id=correlation_id, event_type=envelope.event_type, event_id=envelope.event_id)
    with get_tracer().start_as_current_span(
        "referrals.process_event",
        attributes={"square.event_type": envelope.event_type, "square.event_id": envelope.event_id},
    ):
        try:
            async with factory() as session:
                engine = ReferralRewardEngine(
                    session,
                    square=square,
                    issuer=GiftCardIssuer(square),
                    notifications=notifications,
                    tracker=run_tracker,
                )
                outcome = await engine.dispatch(event, correlation_id=correlation_id)
        except RewardIssuanceError as exc:
            log.warning("Referral reward step failed; event will be redelivered", stage=exc.stage, reason=exc.reason)
            metrics.record_event(envelope.event_type, "retry")
            raise
        except (SQLAlchemyError, OSError) as exc:
            log.error("Datastore failure while processing referral event", error=str(exc))
            prefix = _STAGE_PREFIX.get(envelope.event_type, "payment")
            await run_tracker.mark_error(correlation_id, exc, stage=f"{prefix}:error")
            metrics.record_event(envelope.event_type, "retry")
            raise
        finally:
            if square_client is None:
                await square.aclose()

    metrics.record_event(envelope.event_type, "processed")
    log.info("Referral event processed", action=outcome.action, customer_id=outcome.customer_id)
    return {"status": "processed", "correlationId": correlation_id, "eventType": envelope.event_type, **outcome.as_dict()}


def process_square_event_sync(
    payload: Mapping[str, Any],
    *,
    session_factory: SessionFactory | None = None,
) -> dict[str, Any]:
    """Synchronous helper so Celery/cron jobs can reuse the async pipeline."""

    return asyncio.run(process_square_event(payload, session_factory=session_factory))


__all__ = ["process_square_event", "process_square_event_sync"]
