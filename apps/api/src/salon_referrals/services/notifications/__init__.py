"""Notification service package."""

from .backend import (
    EmailBackend,
    InMemoryEmailBackend,
    InMemorySMSBackend,
    NotificationDeliveryError,
    SMSBackend,
    SMTPEmailBackend,
    TwilioSMSBackend,
)
from .service import (
    NotificationArtifacts,
    NotificationChannel,
    NotificationEvent,
    NotificationKind,
    NotificationOutcome,
    NotificationRecipient,
    RewardNotificationService,
)

__all__ = [
    "EmailBackend",
    "InMemoryEmailBackend",
    "InMemorySMSBackend",
    "NotificationArtifacts",
    "NotificationChannel",
    "NotificationDeliveryError",
    "NotificationEvent",
    "NotificationKind",
    "NotificationOutcome",
    "NotificationRecipient",
    "RewardNotificationService",
    "SMSBackend",
    "SMTPEmailBackend",
    "TwilioSMSBackend",
]
