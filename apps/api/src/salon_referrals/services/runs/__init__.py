"""Pipeline run tracking."""

from .tracker import GiftCardRunTracker, truncate_error

__all__ = ["GiftCardRunTracker", "truncate_error"]
