from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class ReferralSnapshot:
    events: Dict[str, int]
    rewards: Dict[str, int]
    notifications: Dict[str, int]
    recorder: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "events": dict(self.events),
            "rewards": dict(self.rewards),
            "notifications": dict(self.notifications),
            "recorder": dict(self.recorder),
        }


class ReferralObservabilityStore:
    """In-process counters for webhook outcomes, issued rewards, notifications and stage recorder failures."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._events: Dict[str, int] = defaultdict(int)
        self._rewards: Dict[str, int] = defaultdict(int)
        self._notifications: Dict[str, int] = defaultdict(int)
        self._recorder: Dict[str, int] = defaultdict(int)

    def record_event(self, event_type: str, outcome: str) -> None:
        with self._lock:
            self._events[f"{event_type}:{outcome}"] += 1

    def record_reward(self, reward_kind: str, channel: str | None, *, success: bool) -> None:
        with self._lock:
            status = "issued" if success else "failed"
            self._rewards[f"{reward_kind}:{status}"] += 1
            if success and channel:
                self._rewards[f"channel:{channel}"] += 1

    def record_notification(self, channel: str, outcome: str) -> None:
        with self._lock:
            self._notifications[f"{channel}:{outcome}"] += 1

    def record_recorder_failure(self, operation: str) -> None:
        with self._lock:
            self._recorder[f"{operation}:failed"] += 1

    def snapshot(self) -> ReferralSnapshot:
        with self._lock:
            return ReferralSnapshot(
                events=dict(self._events),
                rewards=dict(self._rewards),
                notifications=dict(self._notifications),
                recorder=dict(self._recorder),
            )

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
            self._rewards.clear()
            self._notifications.clear()
            self._recorder.clear()


_STORE = ReferralObservabilityStore()


def get_referral_store() -> ReferralObservabilityStore:
    return _STORE


__all__ = ["ReferralObservabilityStore", "ReferralSnapshot", "get_referral_store"]
