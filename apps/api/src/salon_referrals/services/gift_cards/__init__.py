"""Gift card issuance and the local gift card ledger."""

from .issuer import DeliveryChannel, GiftCardIssuer, GiftCardResult, PendingOrderInfo
from .ledger import GiftCardLedger

__all__ = ["DeliveryChannel", "GiftCardIssuer", "GiftCardLedger", "GiftCardResult", "PendingOrderInfo"]
