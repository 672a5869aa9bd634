from __future__ import annotations

from salon_referrals.core.settings import Settings
from salon_referrals.observability.referrals import ReferralObservabilityStore


def test_referral_store_counts_events_rewards_and_notifications():
    store = ReferralObservabilityStore()

    store.record_event("booking.created", "processed")
    store.record_event("booking.created", "processed")
    store.record_event("payment.updated", "retry")
    store.record_reward("friend", "owner_funded_activate", success=True)
    store.record_reward("referrer", None, success=False)
    store.record_notification("email", "sent")
    store.record_recorder_failure("update_stage")

    snapshot = store.snapshot().as_dict()
    assert snapshot["events"] == {"booking.created:processed": 2, "payment.updated:retry": 1}
    assert snapshot["rewards"] == {
        "friend:issued": 1,
        "channel:owner_funded_activate": 1,
        "referrer:failed": 1,
    }
    assert snapshot["notifications"] == {"email:sent": 1}
    assert snapshot["recorder"] == {"update_stage:failed": 1}

    store.reset()
    assert store.snapshot().as_dict() == {"events": {}, "rewards": {}, "notifications": {}, "recorder": {}}


def test_settings_normalize_hints_and_base_url():
    configured = Settings(
        referral_code_field_hints="Referral, Invited By ,,",
        referral_base_url="https://salon.test/",
        square_environment="production",
    )

    assert configured.referral_code_field_hints == ["referral", "invited by"]
    assert configured.referral_base_url == "https://salon.test"
    assert configured.square_base_url == "https://connect.squareup.com"
    assert Settings().square_base_url == "https://connect.squareupsandbox.com"
