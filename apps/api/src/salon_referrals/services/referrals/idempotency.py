"""Deterministic key derivation for provider mutations and pipeline runs.

Keys are pure functions of their inputs: the same logical step always yields
the same key, so a redelivered event replays into the provider's idempotency
window instead of producing a second card or a second funding activity.
"""

from __future__ import annotations

import hashlib
import re
from typing import Any, Iterable

# Square rejects idempotency keys longer than 45 characters.
MAX_IDEMPOTENCY_KEY_LENGTH = 45

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9:_\-]")


def safe_part(value: Any) -> str:
    if value is None:
        return ""
    return _UNSAFE_CHARS.sub("-", str(value)).lower()


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def build_idempotency_key(parts: Iterable[Any], *, max_length: int = MAX_IDEMPOTENCY_KEY_LENGTH) -> str:
    """Join the non-empty parts into a provider-safe key.

    Args:
        parts: Ordered key components such as ``[seed, "activate-owner", card_id]``.
        max_length: Upper bound for the resulting key.

    Returns:
        The joined key when it fits, otherwise a short prefix followed by a
        sha256 digest of every part so distinct inputs stay distinct.
    """

    normalized = [safe_part(part) for part in parts if part not in (None, "")]
    normalized = [part for part in normalized if part]
    if not normalized:
        normalized = ["key"]

    joined = ":".join(normalized)
    if len(joined) <= max_length:
        return joined

    prefix = normalized[0][:10]
    digest = _digest("::".join(normalized))
    return f"{prefix}:{digest[: max_length - len(prefix) - 1]}"


def build_correlation_id(trigger_type: str, resource_id: str | None, event_id: str | None) -> str:
    """Stable run identifier for one webhook delivery of one resource."""

    digest = _digest("::".join([trigger_type or "", resource_id or "", event_id or ""]))
    return f"{safe_part(trigger_type) or 'event'}:{digest[:24]}"


def friend_bonus_seed(customer_id: str) -> str:
    return build_idempotency_key(["friend-bonus", customer_id])


def referrer_reward_seed(referrer_id: str, friend_id: str) -> str:
    return build_idempotency_key(["referrer-reward", referrer_id, friend_id])


__all__ = [
    "MAX_IDEMPOTENCY_KEY_LENGTH",
    "build_correlation_id",
    "build_idempotency_key",
    "friend_bonus_seed",
    "referrer_reward_seed",
    "safe_part",
]
