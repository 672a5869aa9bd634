from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from salon_referrals.models import GiftCardRunStatus
from salon_referrals.observability.referrals import get_referral_store
from salon_referrals.services.runs import GiftCardRunTracker, truncate_error
from salon_referrals.services.runs.tracker import MAX_ERROR_LENGTH


def test_truncate_error_never_returns_empty_text():
    assert truncate_error(None) == "unknown error"
    assert truncate_error("   ") == "unknown error"
    assert truncate_error(ValueError("boom")) == "boom"

    long_message = truncate_error("x" * (MAX_ERROR_LENGTH + 50))
    assert len(long_message) == MAX_ERROR_LENGTH + 1
    assert long_message.endswith("…")


@pytest.mark.asyncio
async def test_ensure_run_creates_then_counts_redeliveries(session_factory):
    tracker = GiftCardRunTracker(session_factory)

    assert await tracker.ensure_run(
        "booking-created:abc",
        trigger_type="booking.created",
        square_event_id="evt-1",
        square_event_type="booking.created",
        resource_id="B1",
        payload={"type": "booking.created"},
    )
    await tracker.ensure_run("booking-created:abc", trigger_type="booking.created")

    run = await tracker.get_run("booking-created:abc")
    assert run.attempts == 2
    assert run.status is GiftCardRunStatus.RUNNING
    assert run.resumed_at is not None
    assert run.payload == {"type": "booking.created"}
    assert run.square_event_id == "evt-1"


@pytest.mark.asyncio
async def test_update_stage_creates_missing_run_and_merges_context(session_factory):
    tracker = GiftCardRunTracker(session_factory)

    await tracker.update_stage("payment-created:xyz", stage="payment:received", context={"paymentId": "P1"})
    await tracker.update_stage("payment-created:xyz", stage="referrer_reward:issuing", context={"referrerId": "R1"})

    run = await tracker.get_run("payment-created:xyz")
    assert run.trigger_type == "payment-created"
    assert run.stage == "referrer_reward:issuing"
    assert run.context == {"paymentId": "P1", "referrerId": "R1"}


@pytest.mark.asyncio
async def test_error_then_completion_clears_last_error(session_factory):
    tracker = GiftCardRunTracker(session_factory)

    await tracker.mark_error("booking-created:abc", "", stage="friend_reward:error")
    errored = await tracker.get_run("booking-created:abc")
    assert errored.status is GiftCardRunStatus.ERROR
    assert errored.last_error == "unknown error"
    assert errored.stage == "friend_reward:error"

    await tracker.update_stage("booking-created:abc", stage="booking:completed", status=GiftCardRunStatus.COMPLETED)
    completed = await tracker.get_run("booking-created:abc")
    assert completed.status is GiftCardRunStatus.COMPLETED
    assert completed.last_error is None


@pytest.mark.asyncio
async def test_tracker_failures_are_reported_not_raised():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    tracker = GiftCardRunTracker(factory)

    try:
        assert await tracker.ensure_run("booking-created:abc", trigger_type="booking.created") is False
        assert await tracker.update_stage("booking-created:abc", stage="booking:received") is False
        assert await tracker.mark_error("booking-created:abc", "boom") is False
    finally:
        await engine.dispose()


def _unreachable_factory():
    raise ConnectionRefusedError(111, "Connect call failed ('127.0.0.1', 1)")


@pytest.mark.asyncio
async def test_driver_connection_errors_never_escape_the_tracker():
    tracker = GiftCardRunTracker(_unreachable_factory)

    assert await tracker.ensure_run("booking-created:abc", trigger_type="booking.created") is False
    assert await tracker.update_stage("booking-created:abc", stage="booking:received") is False
    assert await tracker.mark_error("booking-created:abc", "boom", stage="friend_reward:error") is False
    assert await tracker.get_run("booking-created:abc") is None

    assert get_referral_store().snapshot().recorder == {
        "ensure_run:failed": 1,
        "update_stage:failed": 2,
        "get_run:failed": 1,
    }
