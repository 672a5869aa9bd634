"""Referral code discovery and referrer lookup."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

from loguru import logger

from salon_referrals.core.settings import settings
from salon_referrals.models import CustomerReferralRecord
from salon_referrals.services.referrals.customers import CustomerReferralStore
from salon_referrals.services.referrals.events import BookingCreatedEvent, CustomField
from salon_referrals.services.square import SquareAPIError, SquareClient

MAX_LOOSE_CODE_LENGTH = 20
MAX_LOOSE_CODE_WORDS = 3


@dataclass(frozen=True)
class CodeCandidate:
    value: str
    source: str


@dataclass(frozen=True)
class ReferralMatch:
    code: str
    referrer: CustomerReferralRecord
    source: str


ExtractionStrategy = Callable[[BookingCreatedEvent], Awaitable[list[CodeCandidate]]]


def looks_like_code(value: str) -> bool:
    stripped = value.strip()
    return 0 < len(stripped) <= MAX_LOOSE_CODE_LENGTH and len(stripped.split()) <= MAX_LOOSE_CODE_WORDS


def _attribute_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class ReferralCodeResolver:
    """Maps free text to the referring customer.

    Booking discovery walks ``strategies`` in order; each strategy yields
    candidate tokens and the first candidate that resolves to a referrer wins.
    Loose fields (form answers, attribute values) qualify when their label looks
    like a referral field or the value is short enough to be a code, which can
    produce false positives on short unrelated answers.
    """

    def __init__(
        self,
        store: CustomerReferralStore,
        square: SquareClient | None = None,
        *,
        field_hints: Sequence[str] | None = None,
        attribute_key: str | None = None,
    ) -> None:
        self._store = store
        self._square = square
        self._field_hints = tuple(hint.lower() for hint in (field_hints or settings.referral_code_field_hints))
        self._attribute_key = attribute_key or settings.square_referral_code_attribute_key
        self.strategies: list[tuple[str, ExtractionStrategy]] = [
            ("structured", self._structured_candidates),
            ("booking_custom_fields", self._booking_field_candidates),
            ("segment_custom_fields", self._segment_field_candidates),
            ("booking_attributes", self._booking_attribute_candidates),
            ("customer_attributes", self._customer_attribute_candidates),
        ]

    async def resolve_referrer(self, code: Any) -> CustomerReferralRecord | None:
        """Return the customer owning ``code``; malformed input resolves to ``None``."""

        if not isinstance(code, str) or not code.strip():
            return None
        return await self._store.find_by_code(code)

    async def discover(self, booking: BookingCreatedEvent) -> ReferralMatch | None:
        for source, strategy in self.strategies:
            candidates = await strategy(booking)
            for candidate in candidates:
                referrer = await self.resolve_referrer(candidate.value)
                if referrer is None:
                    continue
                if referrer.customer_id == booking.customer_id:
                    logger.info(
                        "Ignoring self-referral candidate",
                        customer_id=booking.customer_id,
                        source=source,
                    )
                    continue
                logger.info(
                    "Referral code discovered",
                    booking_id=booking.booking_id,
                    customer_id=booking.customer_id,
                    referrer_id=referrer.customer_id,
                    source=source,
                )
                return ReferralMatch(code=candidate.value.strip().upper(), referrer=referrer, source=source)
        return None

    def _looks_like_referral_label(self, *labels: str | None) -> bool:
        for label in labels:
            if not label:
                continue
            lowered = label.lower()
            if "ref" in lowered or any(hint in lowered for hint in self._field_hints):
                return True
        return False

    def _field_candidates(self, fields: Iterable[CustomField], source: str) -> list[CodeCandidate]:
        labelled: list[CodeCandidate] = []
        loose: list[CodeCandidate] = []
        for custom_field in fields:
            if self._looks_like_referral_label(custom_field.name, custom_field.key):
                labelled.append(CodeCandidate(custom_field.value, source))
            elif looks_like_code(custom_field.value):
                loose.append(CodeCandidate(custom_field.value, source))
        return labelled + loose

    async def _structured_candidates(self, booking: BookingCreatedEvent) -> list[CodeCandidate]:
        candidates: list[CodeCandidate] = []
        if booking.referral_code:
            candidates.append(CodeCandidate(booking.referral_code, "structured"))
        for key, value in booking.capability_values:
            if "ref" in key.lower():
                candidates.append(CodeCandidate(value, "capability"))
        return candidates

    async def _booking_field_candidates(self, booking: BookingCreatedEvent) -> list[CodeCandidate]:
        return self._field_candidates(booking.custom_fields, "booking_custom_fields")

    async def _segment_field_candidates(self, booking: BookingCreatedEvent) -> list[CodeCandidate]:
        return self._field_candidates(booking.segment_custom_fields, "segment_custom_fields")

    async def _booking_attribute_candidates(self, booking: BookingCreatedEvent) -> list[CodeCandidate]:
        if self._square is None:
            return []
        try:
            attributes = await self._square.list_booking_custom_attributes(booking.booking_id)
        except SquareAPIError as exc:
            logger.warning("Booking custom attributes unavailable", booking_id=booking.booking_id, error=str(exc))
            return []
        return self._attribute_candidates(attributes, "booking_attributes")

    async def _customer_attribute_candidates(self, booking: BookingCreatedEvent) -> list[CodeCandidate]:
        if self._square is None:
            return []
        try:
            attributes = await self._square.list_customer_custom_attributes(booking.customer_id)
        except SquareAPIError as exc:
            logger.warning("Customer custom attributes unavailable", customer_id=booking.customer_id, error=str(exc))
            return []

        keyed: list[CodeCandidate] = []
        loose: list[CodeCandidate] = []
        for attribute in attributes:
            value = _attribute_text(attribute.get("value"))
            if value is None:
                continue
            if attribute.get("key") == self._attribute_key:
                keyed.append(CodeCandidate(value, "customer_attributes"))
            elif looks_like_code(value):
                loose.append(CodeCandidate(value, "customer_attributes"))
        return keyed + loose

    def _attribute_candidates(self, attributes: Iterable[Mapping[str, Any]], source: str) -> list[CodeCandidate]:
        fields = []
        for attribute in attributes:
            value = _attribute_text(attribute.get("value"))
            if value is None:
                continue
            key = attribute.get("key") if isinstance(attribute.get("key"), str) else None
            fields.append(CustomField(name=None, key=key, value=value))
        return self._field_candidates(fields, source)


__all__ = ["CodeCandidate", "ReferralCodeResolver", "ReferralMatch", "looks_like_code"]
