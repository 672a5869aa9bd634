from __future__ import annotations

import pytest

from salon_referrals.models import CustomerReferralRecord, GiftCardRewardType, GiftCardRunStatus
from salon_referrals.observability.referrals import get_referral_store
from salon_referrals.services.gift_cards import GiftCardLedger
from salon_referrals.services.notifications import NotificationKind
from salon_referrals.services.referrals.engine import ReferralRewardEngine, RewardIssuanceError
from salon_referrals.services.referrals.events import BookingCreatedEvent, CustomerCreatedEvent, CustomField
from salon_referrals.services.runs import GiftCardRunTracker

CORRELATION_ID = "booking-created:0123456789abcdef01234567"


def _engine(session, square_client, notifications, tracker) -> ReferralRewardEngine:
    return ReferralRewardEngine(
        session,
        square=square_client,
        notifications=notifications,
        tracker=tracker,
        friend_reward_cents=1000,
        referrer_reward_cents=1000,
        referral_base_url="https://salon.test",
        promotion_orders_enabled=False,
    )


async def _seed(session, *records: CustomerReferralRecord) -> None:
    session.add_all(records)
    await session.commit()


def _referrer() -> CustomerReferralRecord:
    return CustomerReferralRecord(
        customer_id="R1",
        given_name="Umi",
        email_address="umi@example.com",
        personal_code="UMI1234",
        activated_as_referrer=True,
    )


def _friend() -> CustomerReferralRecord:
    return CustomerReferralRecord(customer_id="F1", given_name="Fern", email_address="fern@example.com")


def _booking(code: str | None = " umi1234 ", **overrides) -> BookingCreatedEvent:
    values = {"booking_id": "B1", "customer_id": "F1", "referral_code": code}
    values.update(overrides)
    return BookingCreatedEvent(**values)


@pytest.mark.asyncio
async def test_customer_created_ingests_record(session_factory, square_client, notifications, tracker):
    async with session_factory() as session:
        engine = _engine(session, square_client, notifications, tracker)
        outcome = await engine.handle_customer_created(
            CustomerCreatedEvent(customer_id="C9", given_name="Ivy", email_address="ivy@example.com"),
            correlation_id="customer-created:abc",
        )
        record = await engine.store.get("C9")

    assert outcome.action == "customer_ingested"
    assert record.email_address == "ivy@example.com"
    assert not record.got_signup_bonus
    run = await tracker.get_run("customer-created:abc")
    assert run.stage == "customer_ingest:completed"
    assert run.status is GiftCardRunStatus.COMPLETED


@pytest.mark.asyncio
async def test_booking_with_referral_code_issues_friend_bonus(
    session_factory, fake_square, square_client, notifications, tracker
):
    async with session_factory() as session:
        await _seed(session, _referrer(), _friend())
        engine = _engine(session, square_client, notifications, tracker)

        outcome = await engine.handle_booking_created(_booking(), correlation_id=CORRELATION_ID)
        record = await engine.store.get("F1")

    assert outcome.action == "friend_bonus_issued"
    assert outcome.details["referrerId"] == "R1"
    assert record.got_signup_bonus
    assert record.used_referral_code == "UMI1234"
    assert record.gift_card_id == outcome.details["giftCardId"]
    assert record.gift_card_delivery_channel == "owner_funded_activate"
    assert record.gift_card_activation_url == f"https://square.test/gift/{record.gift_card_id}"

    card = fake_square.gift_cards[record.gift_card_id]
    assert card["balance_money"]["amount"] == 1000
    assert card["customer_ids"] == ["F1"]

    assert [event.kind for event in notifications.sent_events] == [NotificationKind.FRIEND_GIFT_CARD]
    assert notifications.sent_events[0].recipient == "fern@example.com"

    run = await tracker.get_run(CORRELATION_ID)
    assert run.stage == "booking:completed"
    assert run.status is GiftCardRunStatus.COMPLETED
    assert run.context["referralCode"] == "UMI1234"
    assert get_referral_store().snapshot().rewards == {
        "friend:issued": 1,
        "channel:owner_funded_activate": 1,
    }


@pytest.mark.asyncio
async def test_repeated_booking_event_is_idempotent(session_factory, fake_square, square_client, notifications, tracker):
    async with session_factory() as session:
        await _seed(session, _referrer(), _friend())
        engine = _engine(session, square_client, notifications, tracker)

        first = await engine.handle_booking_created(_booking(), correlation_id=CORRELATION_ID)
        second = await engine.handle_booking_created(_booking(), correlation_id=CORRELATION_ID)

    assert first.action == "friend_bonus_issued"
    assert second.action == "already_rewarded"
    assert len(fake_square.gift_cards) == 1
    assert len(fake_square.activities) == 1
    assert len(notifications.sent_events) == 1


@pytest.mark.asyncio
async def test_booking_without_code_issues_nothing(session_factory, fake_square, square_client, notifications, tracker):
    async with session_factory() as session:
        await _seed(session, _referrer(), _friend())
        engine = _engine(session, square_client, notifications, tracker)

        outcome = await engine.handle_booking_created(
            _booking(None, custom_fields=(CustomField(name="Notes", key=None, value="first visit, please be gentle"),)),
            correlation_id=CORRELATION_ID,
        )
        record = await engine.store.get("F1")

    assert outcome.action == "no_referral_code"
    assert not record.got_signup_bonus
    assert fake_square.calls("create_gift_card") == []
    run = await tracker.get_run(CORRELATION_ID)
    assert run.context["outcome"] == "no_referral_code"


@pytest.mark.asyncio
async def test_booking_with_own_code_is_not_rewarded(session_factory, fake_square, square_client, notifications, tracker):
    friend = _friend()
    friend.personal_code = "FERN0001"
    async with session_factory() as session:
        await _seed(session, _referrer(), friend)
        engine = _engine(session, square_client, notifications, tracker)

        outcome = await engine.handle_booking_created(_booking("fern0001"), correlation_id=CORRELATION_ID)

    assert outcome.action == "no_referral_code"
    assert fake_square.gift_cards == {}


@pytest.mark.asyncio
async def test_failed_issuance_leaves_flag_false_and_redelivery_completes(
    session_factory, fake_square, square_client, notifications, tracker
):
    fake_square.fail("activate_owner", status=500, code="INTERNAL_SERVER_ERROR")
    async with session_factory() as session:
        await _seed(session, _referrer(), _friend())
        engine = _engine(session, square_client, notifications, tracker)

        with pytest.raises(RewardIssuanceError) as excinfo:
            await engine.handle_booking_created(_booking(), correlation_id=CORRELATION_ID)
        after_failure = await engine.store.get("F1")
        assert not after_failure.got_signup_bonus

        failed_run = await tracker.get_run(CORRELATION_ID)
        assert failed_run.status is GiftCardRunStatus.ERROR
        assert failed_run.stage == "friend_reward:error"
        assert "funding-failed" in failed_run.last_error

        fake_square.recover()
        outcome = await engine.handle_booking_created(_booking(), correlation_id=CORRELATION_ID)
        record = await engine.store.get("F1")

    assert excinfo.value.stage == "friend_reward"
    assert outcome.action == "friend_bonus_issued"
    assert record.got_signup_bonus
    assert len(fake_square.gift_cards) == 1
    assert fake_square.gift_cards[record.gift_card_id]["balance_money"]["amount"] == 1000
    completed_run = await tracker.get_run(CORRELATION_ID)
    assert completed_run.last_error is None
    assert get_referral_store().snapshot().rewards["friend:failed"] == 1


@pytest.mark.asyncio
async def test_booking_creates_missing_record_from_square_profile(
    session_factory, fake_square, square_client, notifications, tracker
):
    fake_square.add_customer("F1", given_name="Fern", family_name="Lee", email_address="fern@example.com")
    async with session_factory() as session:
        await _seed(session, _referrer())
        engine = _engine(session, square_client, notifications, tracker)

        outcome = await engine.handle_booking_created(_booking(), correlation_id=CORRELATION_ID)
        record = await engine.store.get("F1")

    assert outcome.action == "friend_bonus_issued"
    assert record.family_name == "Lee"
    assert record.got_signup_bonus
    assert notifications.sent_events[0].recipient == "fern@example.com"


@pytest.mark.asyncio
async def test_booking_for_unknown_square_customer_still_rewards(
    session_factory, fake_square, square_client, notifications, tracker
):
    async with session_factory() as session:
        await _seed(session, _referrer())
        engine = _engine(session, square_client, notifications, tracker)

        outcome = await engine.handle_booking_created(_booking(), correlation_id=CORRELATION_ID)
        record = await engine.store.get("F1")

    assert outcome.action == "friend_bonus_issued"
    assert record.email_address is None
    assert notifications.sent_events == []


def _unreachable_factory():
    raise ConnectionRefusedError(111, "Connect call failed ('127.0.0.1', 1)")


@pytest.mark.asyncio
async def test_unreachable_stage_recorder_does_not_block_the_friend_bonus(
    session_factory, fake_square, square_client, notifications
):
    offline_tracker = GiftCardRunTracker(_unreachable_factory)
    async with session_factory() as session:
        await _seed(session, _referrer(), _friend())
        engine = _engine(session, square_client, notifications, offline_tracker)

        outcome = await engine.handle_booking_created(_booking(), correlation_id=CORRELATION_ID)
        record = await engine.store.get("F1")

    assert outcome.action == "friend_bonus_issued"
    assert record.got_signup_bonus
    assert fake_square.gift_cards[record.gift_card_id]["balance_money"]["amount"] == 1000
    assert get_referral_store().snapshot().recorder["update_stage:failed"] >= 3


@pytest.mark.asyncio
async def test_customer_created_backfills_missing_contact_fields_from_square(
    session_factory, fake_square, square_client, notifications, tracker
):
    fake_square.add_customer(
        "C9",
        given_name="Ivy (Square)",
        family_name="Lee",
        email_address="ivy@example.com",
        phone_number="+15550001111",
    )
    async with session_factory() as session:
        engine = _engine(session, square_client, notifications, tracker)
        await engine.handle_customer_created(
            CustomerCreatedEvent(customer_id="C9", given_name="Ivy"),
            correlation_id="customer-created:abc",
        )
        record = await engine.store.get("C9")

    assert record.given_name == "Ivy"
    assert record.family_name == "Lee"
    assert record.email_address == "ivy@example.com"
    assert record.phone_number == "+15550001111"
    assert len(fake_square.calls("retrieve_customer")) == 1


@pytest.mark.asyncio
async def test_customer_created_with_full_profile_skips_square_lookup(
    session_factory, fake_square, square_client, notifications, tracker
):
    async with session_factory() as session:
        engine = _engine(session, square_client, notifications, tracker)
        await engine.handle_customer_created(
            CustomerCreatedEvent(
                customer_id="C9",
                given_name="Ivy",
                family_name="Lee",
                email_address="ivy@example.com",
                phone_number="+15550001111",
            ),
            correlation_id="customer-created:abc",
        )

    assert fake_square.requests == []


@pytest.mark.asyncio
async def test_friend_bonus_is_recorded_in_ledger_and_customer_note(
    session_factory, fake_square, square_client, notifications, tracker
):
    fake_square.add_customer("F1", given_name="Fern", note="Prefers mornings")
    async with session_factory() as session:
        await _seed(session, _referrer(), _friend())
        engine = _engine(session, square_client, notifications, tracker)

        await engine.handle_booking_created(_booking(), correlation_id=CORRELATION_ID)
        await engine.handle_booking_created(_booking(), correlation_id=CORRELATION_ID)
        record = await engine.store.get("F1")

    ledger = GiftCardLedger(session_factory)
    card = await ledger.get_card(record.gift_card_id)
    assert card.reward_type is GiftCardRewardType.FRIEND_SIGNUP_BONUS
    assert card.square_customer_id == "F1"
    assert card.current_balance_cents == 1000
    transactions = await ledger.list_transactions(record.gift_card_id)
    assert sorted(entry.transaction_type.value for entry in transactions) == ["activate", "create"]
    assert {entry.context_label for entry in transactions} == {"Signup bonus gift card"}

    note = fake_square.customers["F1"]["note"]
    first_line, entry = note.split("\n")
    assert first_line == "Prefers mornings"
    assert entry.endswith(f"] Signup bonus gift card: {record.gift_card_gan} ($10.00)")
    assert len(fake_square.calls("update_customer")) == 1
