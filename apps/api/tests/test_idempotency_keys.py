from __future__ import annotations

from salon_referrals.services.referrals.idempotency import (
    MAX_IDEMPOTENCY_KEY_LENGTH,
    build_correlation_id,
    build_idempotency_key,
    friend_bonus_seed,
    referrer_reward_seed,
    safe_part,
)


def test_safe_part_lowercases_and_replaces_unsafe_characters():
    assert safe_part("Gift Card/ABC") == "gift-card-abc"
    assert safe_part(None) == ""
    assert safe_part(42) == "42"


def test_short_keys_join_non_empty_parts():
    assert build_idempotency_key(["friend-bonus", None, "", "C1"]) == "friend-bonus:c1"


def test_empty_parts_fall_back_to_placeholder():
    assert build_idempotency_key([None, ""]) == "key"


def test_long_keys_are_hashed_within_limit_and_stay_distinct():
    first = build_idempotency_key(["referrer-reward", "R" * 40, "F1"])
    second = build_idempotency_key(["referrer-reward", "R" * 40, "F2"])

    assert len(first) <= MAX_IDEMPOTENCY_KEY_LENGTH
    assert len(second) <= MAX_IDEMPOTENCY_KEY_LENGTH
    assert first.startswith("referrer-r:")
    assert first != second


def test_keys_are_stable_across_calls():
    assert build_idempotency_key(["a", "b", "c" * 60]) == build_idempotency_key(["a", "b", "c" * 60])
    assert friend_bonus_seed("F1") == friend_bonus_seed("F1")
    assert referrer_reward_seed("R1", "F1") != referrer_reward_seed("R1", "F2")


def test_correlation_id_is_deterministic_per_delivery():
    first = build_correlation_id("booking.created", "B1", "evt-1")
    again = build_correlation_id("booking.created", "B1", "evt-1")
    redelivered = build_correlation_id("booking.created", "B1", "evt-2")

    assert first == again
    assert first != redelivered
    assert first.startswith("booking-created:")
    assert len(first.split(":", 1)[1]) == 24
