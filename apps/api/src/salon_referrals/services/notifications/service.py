"""Reward and referral notification dispatch."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from loguru import logger

from salon_referrals.core.settings import get_settings
from salon_referrals.observability.referrals import get_referral_store

from .backend import EmailBackend, SMSBackend, SMTPEmailBackend, TwilioSMSBackend
from .templates import RenderedTemplate, render_gift_card_issued, render_referral_invite, render_referral_sms


class NotificationKind(str, Enum):
    FRIEND_GIFT_CARD = "friend_gift_card"
    REFERRER_GIFT_CARD = "referrer_gift_card"
    REFERRAL_INVITE = "referral_invite"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


@dataclass
class NotificationRecipient:
    customer_id: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None


@dataclass
class NotificationArtifacts:
    """Values a template may need; unused ones stay ``None``."""

    gan: str | None = None
    amount_cents: int = 0
    currency: str = "USD"
    activation_url: str | None = None
    pass_kit_url: str | None = None
    personal_code: str | None = None
    referral_url: str | None = None


@dataclass
class NotificationOutcome:
    success: bool
    skipped: bool = False
    reason: str | None = None
    external_id: str | None = None

    @classmethod
    def skip(cls, reason: str) -> "NotificationOutcome":
        return cls(success=False, skipped=True, reason=reason)


@dataclass
class NotificationEvent:
    """Representation of a notification that was sent."""

    recipient: str
    channel: NotificationChannel
    kind: NotificationKind
    subject: str | None
    body_text: str
    metadata: dict[str, Any] = field(default_factory=dict)


class RewardNotificationService:
    """Delivers reward emails and referral invites.

    Missing artifacts produce a skipped outcome and provider failures produce
    an unsuccessful outcome; neither raises, and nothing is retried here.
    Callers own the per-customer sent flags.
    """

    def __init__(
        self,
        email_backend: Optional[EmailBackend] = None,
        sms_backend: Optional[SMSBackend] = None,
        *,
        email_enabled: bool | None = None,
        sms_enabled: bool | None = None,
        sms_template: str | None = None,
        friend_reward_cents: int | None = None,
    ) -> None:
        settings = get_settings()
        self._email_backend = email_backend if email_backend is not None else self._build_email_backend()
        self._sms_backend = sms_backend if sms_backend is not None else self._build_sms_backend()
        self._email_enabled = settings.referral_email_enabled if email_enabled is None else email_enabled
        self._sms_enabled = settings.sms_enabled if sms_enabled is None else sms_enabled
        self._sms_template = sms_template or settings.referral_sms_template
        self._friend_reward_cents = (
            settings.friend_reward_cents if friend_reward_cents is None else friend_reward_cents
        )
        self._events: list[NotificationEvent] = []

    @property
    def sent_events(self) -> list[NotificationEvent]:
        return self._events

    async def notify(
        self,
        kind: NotificationKind,
        recipient: NotificationRecipient,
        artifacts: NotificationArtifacts,
        *,
        channel: NotificationChannel = NotificationChannel.EMAIL,
    ) -> NotificationOutcome:
        if channel is NotificationChannel.SMS:
            outcome = await self._notify_sms(kind, recipient, artifacts)
        else:
            outcome = await self._notify_email(kind, recipient, artifacts)

        label = "skipped" if outcome.skipped else ("sent" if outcome.success else "failed")
        get_referral_store().record_notification(channel.value, label)
        log = logger.bind(customer_id=recipient.customer_id, kind=kind.value, channel=channel.value)
        if outcome.skipped:
            log.info("Notification skipped", reason=outcome.reason)
        elif not outcome.success:
            log.warning("Notification failed", reason=outcome.reason)
        return outcome

    async def _notify_email(
        self,
        kind: NotificationKind,
        recipient: NotificationRecipient,
        artifacts: NotificationArtifacts,
    ) -> NotificationOutcome:
        if not self._email_enabled or self._email_backend is None:
            return NotificationOutcome.skip("email-disabled")
        if not recipient.email:
            return NotificationOutcome.skip("missing-email")

        if kind is NotificationKind.REFERRAL_INVITE:
            if not artifacts.personal_code or not artifacts.referral_url:
                return NotificationOutcome.skip("missing-referral-url")
            template = render_referral_invite(
                contact_name=recipient.name,
                personal_code=artifacts.personal_code,
                referral_url=artifacts.referral_url,
                friend_reward_cents=self._friend_reward_cents,
                currency=artifacts.currency,
            )
        else:
            if not artifacts.gan:
                return NotificationOutcome.skip("missing-gan")
            if artifacts.amount_cents <= 0:
                return NotificationOutcome.skip("zero-amount")
            template = render_gift_card_issued(
                reward_kind="referrer" if kind is NotificationKind.REFERRER_GIFT_CARD else "friend",
                contact_name=recipient.name,
                amount_cents=artifacts.amount_cents,
                currency=artifacts.currency,
                gan=artifacts.gan,
                activation_url=artifacts.activation_url,
                pass_kit_url=artifacts.pass_kit_url,
            )

        return await self._deliver_email(recipient, template, kind=kind)

    async def _notify_sms(
        self,
        kind: NotificationKind,
        recipient: NotificationRecipient,
        artifacts: NotificationArtifacts,
    ) -> NotificationOutcome:
        if kind is not NotificationKind.REFERRAL_INVITE:
            return NotificationOutcome.skip("unsupported-kind")
        if not self._sms_enabled or self._sms_backend is None:
            return NotificationOutcome.skip("sms-disabled")
        if not recipient.phone:
            return NotificationOutcome.skip("missing-phone")
        if not artifacts.referral_url:
            return NotificationOutcome.skip("missing-referral-url")

        body = render_referral_sms(self._sms_template, contact_name=recipient.name, referral_url=artifacts.referral_url)
        try:
            message_sid = await self._sms_backend.send_sms(recipient.phone, body)
        except Exception as exc:  # noqa: BLE001
            logger.opt(exception=exc).warning("SMS backend raised", customer_id=recipient.customer_id)
            return NotificationOutcome(success=False, reason=str(exc) or exc.__class__.__name__)

        self._events.append(
            NotificationEvent(
                recipient=recipient.phone,
                channel=NotificationChannel.SMS,
                kind=kind,
                subject=None,
                body_text=body,
                metadata={"customer_id": recipient.customer_id, "sid": message_sid},
            )
        )
        return NotificationOutcome(success=True, external_id=message_sid)

    async def _deliver_email(
        self,
        recipient: NotificationRecipient,
        template: RenderedTemplate,
        *,
        kind: NotificationKind,
    ) -> NotificationOutcome:
        backend = self._email_backend
        email = recipient.email or ""
        try:
            await backend.send_email(
                email,
                template.subject,
                template.text_body,
                body_html=template.html_body,
            )
        except Exception as exc:  # noqa: BLE001
            logger.opt(exception=exc).warning("Email backend raised", customer_id=recipient.customer_id)
            return NotificationOutcome(success=False, reason=str(exc) or exc.__class__.__name__)

        self._events.append(
            NotificationEvent(
                recipient=email,
                channel=NotificationChannel.EMAIL,
                kind=kind,
                subject=template.subject,
                body_text=template.text_body,
                metadata={"customer_id": recipient.customer_id},
            )
        )
        return NotificationOutcome(success=True)

    def _build_email_backend(self) -> Optional[EmailBackend]:
        settings = get_settings()
        if not settings.smtp_host or not settings.smtp_sender_email:
            return None

        return SMTPEmailBackend(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            sender_email=settings.smtp_sender_email,
        )

    def _build_sms_backend(self) -> Optional[SMSBackend]:
        settings = get_settings()
        if not settings.twilio_account_sid or not settings.twilio_auth_token:
            return None
        if not settings.twilio_messaging_service_sid and not settings.twilio_phone_number:
            return None

        return TwilioSMSBackend(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            messaging_service_sid=settings.twilio_messaging_service_sid,
            from_number=settings.twilio_phone_number,
            timeout_seconds=settings.twilio_timeout_seconds,
        )
