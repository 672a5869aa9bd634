from __future__ import annotations

from datetime import date

import pytest

from salon_referrals.services.referrals.notes import append_gift_card_note, append_referral_note

TODAY = date(2026, 10, 17)


@pytest.mark.asyncio
async def test_gift_card_note_is_appended_below_existing_note(fake_square, square_client):
    fake_square.add_customer("F1", note="Prefers mornings", version=3)

    appended = await append_gift_card_note(
        square_client, "F1", "7783-0001", 1000, currency="USD", label="Signup bonus gift card", today=TODAY
    )

    assert appended
    assert fake_square.customers["F1"]["note"] == (
        "Prefers mornings\n[2026-10-17] Signup bonus gift card: 7783-0001 ($10.00)"
    )
    assert fake_square.calls("update_customer")[0]["version"] == 3


@pytest.mark.asyncio
async def test_gift_card_note_is_skipped_when_the_gan_is_already_noted(fake_square, square_client):
    fake_square.add_customer("F1", note="[2026-10-01] Referral gift card: 7783-0001 ($10.00)")

    appended = await append_gift_card_note(square_client, "F1", "7783-0001", 1000, currency="USD", today=TODAY)

    assert not appended
    assert fake_square.calls("update_customer") == []


@pytest.mark.asyncio
async def test_referral_note_uses_default_entry_and_dedupes_on_code_or_url(fake_square, square_client):
    fake_square.add_customer("R1")

    first = await append_referral_note(square_client, "R1", "UMI1234", "https://salon.test/ref/UMI1234", today=TODAY)
    again = await append_referral_note(square_client, "R1", "UMI1234", "https://salon.test/ref/UMI1234", today=TODAY)

    assert first
    assert not again
    assert fake_square.customers["R1"]["note"] == (
        "[2026-10-17] Personal referral code: UMI1234 - https://salon.test/ref/UMI1234"
    )
    assert len(fake_square.calls("update_customer")) == 1


@pytest.mark.asyncio
async def test_note_failures_are_not_fatal(fake_square, square_client):
    fake_square.add_customer("F1")
    fake_square.fail("update_customer", status=409, code="CONFLICT")

    appended = await append_gift_card_note(square_client, "F1", "7783-0001", 1000, currency="USD", today=TODAY)
    missing = await append_referral_note(square_client, "NOPE", "UMI1234", None, today=TODAY)

    assert not appended
    assert not missing
    assert "note" not in fake_square.customers["F1"]


@pytest.mark.asyncio
async def test_gift_card_note_needs_a_gan(fake_square, square_client):
    assert not await append_gift_card_note(square_client, "F1", None, 1000, currency="USD", today=TODAY)
    assert fake_square.requests == []
