"""Celery task modules for the referral pipeline."""

# Import submodules so Celery autodiscovery registers tasks.
from . import referrals as _referrals  # noqa: F401

__all__ = ["_referrals"]
