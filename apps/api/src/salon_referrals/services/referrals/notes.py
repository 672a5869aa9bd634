"""Dated entries appended to the Square customer note.

Staff read the note in the Square dashboard, so each reward or personal code
leaves one line there. Note updates never block a reward: Square failures are
logged and reported as ``False``.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Iterable

from loguru import logger

from salon_referrals.services.notifications.templates import format_amount
from salon_referrals.services.square import SquareAPIError, SquareClient

DEFAULT_GIFT_CARD_LABEL = "Referral gift card"


def _stamp(today: date | None) -> str:
    return (today or datetime.now(timezone.utc).date()).isoformat()


async def append_customer_note(
    square: SquareClient,
    customer_id: str,
    entry: str,
    *,
    markers: Iterable[str | None] = (),
) -> bool:
    """Append ``entry`` unless the current note already mentions one of ``markers``."""

    try:
        customer = await square.retrieve_customer(customer_id)
        note = str(customer.get("note") or "")
        if any(marker and marker in note for marker in markers):
            logger.debug("Customer note already has this entry", customer_id=customer_id)
            return False

        updated = f"{note}\n{entry}" if note else entry
        await square.update_customer(customer_id, {"note": updated}, version=customer.get("version"))
    except SquareAPIError as exc:
        logger.warning("Could not update Square customer note", customer_id=customer_id, error=str(exc))
        return False

    logger.info("Customer note updated", customer_id=customer_id)
    return True


async def append_gift_card_note(
    square: SquareClient,
    customer_id: str,
    gan: str | None,
    amount_cents: int,
    *,
    currency: str,
    label: str | None = None,
    today: date | None = None,
) -> bool:
    if not gan:
        return False
    entry = f"[{_stamp(today)}] {label or DEFAULT_GIFT_CARD_LABEL}: {gan} ({format_amount(amount_cents, currency)})"
    return await append_customer_note(square, customer_id, entry, markers=[gan])


async def append_referral_note(
    square: SquareClient,
    customer_id: str,
    code: str,
    referral_url: str | None,
    *,
    today: date | None = None,
) -> bool:
    entry = f"[{_stamp(today)}] Personal referral code: {code}"
    if referral_url:
        entry = f"{entry} - {referral_url}"
    return await append_customer_note(square, customer_id, entry, markers=[code, referral_url])


__all__ = ["append_customer_note", "append_gift_card_note", "append_referral_note"]
