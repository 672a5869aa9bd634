"""Typed views over loosely-shaped Square webhook payloads.

Raw webhook bodies are only ever read here; everything downstream works with
the dataclasses below and never sees a missing-key ``KeyError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

CUSTOMER_CREATED = "customer.created"
BOOKING_CREATED = "booking.created"
PAYMENT_EVENT_TYPES = frozenset({"payment.created", "payment.updated", "payment.completed"})
PAYMENT_COMPLETED_STATUS = "COMPLETED"

_FIELD_NAME_KEYS = ("name", "label", "title")
_FIELD_KEY_KEYS = ("booking_custom_field_id", "custom_field_id", "key")
_FIELD_VALUE_KEYS = ("string_value", "stringValue", "text_value", "value")


class InvalidEventPayload(ValueError):
    """Raised when a webhook body cannot be mapped to a known event shape."""

    def __init__(self, message: str, *, event_type: str | None = None, event_id: str | None = None) -> None:
        super().__init__(message)
        self.event_type = event_type
        self.event_id = event_id


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _first_text(source: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = _text(source.get(key))
        if value:
            return value
    return None


@dataclass(frozen=True)
class CustomField:
    """A free-form field captured on a booking form or appointment segment."""

    name: str | None
    key: str | None
    value: str

    @classmethod
    def from_raw(cls, raw: Any) -> "CustomField | None":
        source = _mapping(raw)
        value = _first_text(source, _FIELD_VALUE_KEYS)
        if value is None:
            return None
        return cls(name=_first_text(source, _FIELD_NAME_KEYS), key=_first_text(source, _FIELD_KEY_KEYS), value=value)


def _custom_fields(raw: Any) -> tuple[CustomField, ...]:
    if not isinstance(raw, list):
        return ()
    parsed = (CustomField.from_raw(item) for item in raw)
    return tuple(item for item in parsed if item is not None)


@dataclass(frozen=True)
class SquareWebhookEnvelope:
    event_id: str
    event_type: str
    merchant_id: str | None
    resource_id: str | None
    data_object: Mapping[str, Any]
    raw: Mapping[str, Any] = field(repr=False)

    @classmethod
    def from_payload(cls, payload: Any) -> "SquareWebhookEnvelope":
        if not isinstance(payload, Mapping):
            raise InvalidEventPayload("Webhook payload must be a JSON object")
        event_type = _text(payload.get("type"))
        event_id = _text(payload.get("event_id"))
        if not event_type:
            raise InvalidEventPayload("Webhook payload is missing its event type", event_id=event_id)
        if not event_id:
            raise InvalidEventPayload("Webhook payload is missing its event id", event_type=event_type)
        data = _mapping(payload.get("data"))
        return cls(
            event_id=event_id,
            event_type=event_type,
            merchant_id=_text(payload.get("merchant_id")),
            resource_id=_text(data.get("id")),
            data_object=_mapping(data.get("object")),
            raw=payload,
        )

    def require_object(self, key: str) -> Mapping[str, Any]:
        obj = _mapping(self.data_object.get(key))
        if not obj:
            raise InvalidEventPayload(
                f"{self.event_type} payload has no {key} object",
                event_type=self.event_type,
                event_id=self.event_id,
            )
        return obj


@dataclass(frozen=True)
class CustomerCreatedEvent:
    customer_id: str
    given_name: str | None = None
    family_name: str | None = None
    email_address: str | None = None
    phone_number: str | None = None

    @classmethod
    def from_envelope(cls, envelope: SquareWebhookEnvelope) -> "CustomerCreatedEvent":
        customer = envelope.require_object("customer")
        customer_id = _text(customer.get("id")) or envelope.resource_id
        if not customer_id:
            raise InvalidEventPayload(
                "customer.created payload has no customer id",
                event_type=envelope.event_type,
                event_id=envelope.event_id,
            )
        return cls.from_profile(customer_id, customer)

    @classmethod
    def from_profile(cls, customer_id: str, profile: Mapping[str, Any]) -> "CustomerCreatedEvent":
        return cls(
            customer_id=customer_id,
            given_name=_text(profile.get("given_name")),
            family_name=_text(profile.get("family_name")),
            email_address=_text(profile.get("email_address")),
            phone_number=_text(profile.get("phone_number")),
        )


@dataclass(frozen=True)
class BookingCreatedEvent:
    booking_id: str
    customer_id: str
    location_id: str | None = None
    referral_code: str | None = None
    capability_values: tuple[tuple[str, str], ...] = ()
    custom_fields: tuple[CustomField, ...] = ()
    segment_custom_fields: tuple[CustomField, ...] = ()

    @classmethod
    def from_envelope(cls, envelope: SquareWebhookEnvelope) -> "BookingCreatedEvent":
        booking = envelope.require_object("booking")
        booking_id = _text(booking.get("id")) or envelope.resource_id
        customer_id = _text(booking.get("customer_id"))
        if not booking_id or not customer_id:
            raise InvalidEventPayload(
                "booking.created payload needs both a booking id and a customer id",
                event_type=envelope.event_type,
                event_id=envelope.event_id,
            )

        capability = _mapping(
            booking.get("service_variation_capability_details") or booking.get("serviceVariationCapabilityDetails")
        )
        capability_values: list[tuple[str, str]] = []
        for key, value in _mapping(capability.get("values")).items():
            text = _text(value)
            if text is not None:
                capability_values.append((str(key), text))

        segment_fields: list[CustomField] = []
        segments = booking.get("appointment_segments")
        if isinstance(segments, list):
            for segment in segments:
                segment_fields.extend(_custom_fields(_mapping(segment).get("custom_fields")))

        return cls(
            booking_id=booking_id,
            customer_id=customer_id,
            location_id=_text(booking.get("location_id")),
            referral_code=_text(booking.get("referral_code")),
            capability_values=tuple(capability_values),
            custom_fields=_custom_fields(booking.get("custom_fields")),
            segment_custom_fields=tuple(segment_fields),
        )


@dataclass(frozen=True)
class PaymentCompletedEvent:
    payment_id: str
    customer_id: str | None
    status: str
    order_id: str | None = None
    amount_cents: int | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == PAYMENT_COMPLETED_STATUS

    @classmethod
    def from_envelope(cls, envelope: SquareWebhookEnvelope) -> "PaymentCompletedEvent":
        payment = envelope.require_object("payment")
        payment_id = _text(payment.get("id")) or envelope.resource_id
        if not payment_id:
            raise InvalidEventPayload(
                "payment payload has no payment id",
                event_type=envelope.event_type,
                event_id=envelope.event_id,
            )
        amount = _mapping(payment.get("amount_money")).get("amount")
        return cls(
            payment_id=payment_id,
            customer_id=_text(payment.get("customer_id")),
            status=(_text(payment.get("status")) or "").upper(),
            order_id=_text(payment.get("order_id")),
            amount_cents=amount if isinstance(amount, int) and not isinstance(amount, bool) else None,
        )


__all__ = [
    "BOOKING_CREATED",
    "CUSTOMER_CREATED",
    "PAYMENT_COMPLETED_STATUS",
    "PAYMENT_EVENT_TYPES",
    "BookingCreatedEvent",
    "CustomField",
    "CustomerCreatedEvent",
    "InvalidEventPayload",
    "PaymentCompletedEvent",
    "SquareWebhookEnvelope",
]
